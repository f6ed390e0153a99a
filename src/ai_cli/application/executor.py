"""Shell command execution with a timeout."""

from __future__ import annotations

import asyncio
import os
import signal
from dataclasses import dataclass

from ai_cli.infrastructure.logging import get_logger

logger = get_logger(__name__)

DEFAULT_COMMAND_TIMEOUT = 30.0


def _decode(chunks: list[bytes]) -> str:
    return b"".join(chunks).decode("utf-8", errors="replace").rstrip("\n")


@dataclass(frozen=True)
class ExecutionResult:
    """コマンドの実行結果."""

    command: str
    output: str
    exit_code: int
    timed_out: bool = False
    timeout: float = DEFAULT_COMMAND_TIMEOUT

    @property
    def success(self) -> bool:
        """正常終了したか."""
        return not self.timed_out and self.exit_code == 0

    def format_result(self) -> str:
        """
        モデルに返すテキストに整形する.

        Returns:
            出力（失敗時は終了コードやタイムアウトの注記付き）
        """
        if self.timed_out:
            text = f"Command timed out after {self.timeout:g}s"
            return f"{text}\nPartial output:\n{self.output}" if self.output else text
        if self.exit_code != 0:
            text = f"Command failed with exit code {self.exit_code}"
            return f"{text}\n{self.output}" if self.output else text
        return self.output or "Command executed successfully (no output)"


class CommandExecutor:
    """シェル経由でコマンドを実行する."""

    def __init__(self, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> None:
        """
        Initialize CommandExecutor.

        Args:
            timeout: 1コマンドあたりのタイムアウト秒数
        """
        self.timeout = timeout

    async def execute(self, command: str) -> ExecutionResult:
        """
        コマンドを実行し、標準出力と標準エラーをまとめて返す.

        タイムアウトは例外ではなく timed_out=True の結果になる.
        タスクがキャンセルされた場合はプロセスを終了させてから CancelledError を送出する.

        Args:
            command: 実行するシェルコマンド

        Returns:
            実行結果
        """
        logger.info("Executing command", command=command)
        try:
            process = await asyncio.create_subprocess_shell(
                command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            # コマンド中のNULバイトなど、プロセスを起動できない場合
            logger.warning("Failed to start command", command=command, error=str(e))
            return ExecutionResult(
                command=command,
                output=f"Error: failed to start command: {e}",
                exit_code=-1,
                timeout=self.timeout,
            )

        chunks: list[bytes] = []
        try:
            await asyncio.wait_for(self._collect(process, chunks), self.timeout)
        except TimeoutError:
            await self._kill(process)
            logger.warning("Command timed out", command=command, timeout=self.timeout)
            return ExecutionResult(
                command=command,
                output=_decode(chunks),
                exit_code=-1,
                timed_out=True,
                timeout=self.timeout,
            )
        except asyncio.CancelledError:
            await self._kill(process)
            logger.info("Command cancelled", command=command)
            raise

        output = _decode(chunks)
        exit_code = process.returncode if process.returncode is not None else -1
        logger.debug("Command finished", command=command, exit_code=exit_code)
        return ExecutionResult(
            command=command, output=output, exit_code=exit_code, timeout=self.timeout
        )

    @staticmethod
    async def _collect(
        process: asyncio.subprocess.Process, chunks: list[bytes]
    ) -> None:
        """終了まで出力を読み続ける（タイムアウト時も読めた分は chunks に残る）."""
        if process.stdout is not None:
            while True:
                chunk = await process.stdout.read(4096)
                if not chunk:
                    break
                chunks.append(chunk)
        await process.wait()

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        """プロセスグループごと終了させる."""
        if process.returncode is not None:
            return
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except OSError:
            process.kill()
        await process.wait()

"""Main entry point for the ai-cli interactive agent."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import TYPE_CHECKING

import httpx

from ai_cli.application.agent import AgentLoop
from ai_cli.application.executor import CommandExecutor
from ai_cli.application.permissions import PermissionManager
from ai_cli.application.tool_handlers import ToolDispatcher
from ai_cli.infrastructure.api_client import new_client
from ai_cli.infrastructure.config import get_config
from ai_cli.infrastructure.errors import (
    AICliError,
    ConfigurationError,
    CredentialError,
    OperationCancelledError,
    SettingsError,
)
from ai_cli.infrastructure.logging import configure_logging, get_logger
from ai_cli.infrastructure.settings import SettingsStore
from ai_cli.presentation.commands import CommandHandler
from ai_cli.presentation.console import ConsoleUI

if TYPE_CHECKING:
    from ai_cli.infrastructure.api_client import AIClient

logger = get_logger(__name__)

CLEANUP_TIMEOUT = 5.0


class InteractiveSession:
    """
    対話ループ.

    1ターンはタスクとして実行し、実行中の Ctrl+C はそのターンだけを中断する.
    ターン外の Ctrl+C や SIGTERM はセッションを終了させる.
    """

    def __init__(
        self, ui: ConsoleUI, agent: AgentLoop, shutdown_event: asyncio.Event
    ) -> None:
        """
        Initialize InteractiveSession.

        Args:
            ui: 入出力
            agent: エージェントループ
            shutdown_event: セットされると対話ループを終える
        """
        self.ui = ui
        self.agent = agent
        self.shutdown_event = shutdown_event
        self.commands: CommandHandler | None = None
        self._turn_task: asyncio.Task[str] | None = None
        self._cancel_event: asyncio.Event | None = None

    @property
    def turn_active(self) -> bool:
        """ターンを実行中か."""
        return self._turn_task is not None and not self._turn_task.done()

    def interrupt(self) -> None:
        """実行中のターンを中断する（ターン外ならシャットダウンを要求する）."""
        if self.turn_active and self._turn_task is not None:
            logger.info("Interrupting current turn")
            if self._cancel_event is not None:
                self._cancel_event.set()
            self._turn_task.cancel()
            return
        self.request_shutdown()

    def request_shutdown(self) -> None:
        if self.shutdown_event.is_set():
            return  # 二重呼び出しを防止
        logger.info("Received shutdown signal, shutting down gracefully...")
        self.shutdown_event.set()

    async def run_turn(self, text: str) -> None:
        """
        ユーザー入力を1ターン実行し、結果やエラーを表示する.

        Args:
            text: ユーザー入力
        """
        self._cancel_event = asyncio.Event()
        task = asyncio.create_task(self.agent.run_turn(text, self._cancel_event))
        self._turn_task = task
        try:
            await asyncio.wait({task})
        finally:
            self._turn_task = None
            self._cancel_event = None
            self.ui.end_stream()

        if task.cancelled():
            self.ui.warning("Interrupted")
            return
        try:
            answer = task.result()
        except OperationCancelledError:
            self.ui.warning("Request cancelled")
        except CredentialError as e:
            logger.error("Credential error", error=str(e))
            self.ui.error(str(e))
        except (AICliError, httpx.HTTPError) as e:
            logger.warning("Turn failed", error=str(e))
            self.ui.error(str(e))
        else:
            if not self.agent.stream:
                self.ui.show_answer(answer)

    async def _read_line(self) -> str | None:
        """入力を1行読む（シャットダウンが要求されたらNone）."""
        read_task = asyncio.create_task(self.ui.read_line())
        shutdown_task = asyncio.create_task(self.shutdown_event.wait())
        done, _ = await asyncio.wait(
            {read_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED
        )
        for task in (read_task, shutdown_task):
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        if read_task not in done:
            return None
        return read_task.result()

    async def run(self) -> None:
        """EOF、終了コマンド、またはシャットダウン要求まで入力を処理する."""
        self.ui.info(
            f"ai-cli (model: {self.agent.model}). Type /help for commands, /exit to quit."
        )
        while not self.shutdown_event.is_set():
            line = await self._read_line()
            if line is None:
                break
            line = line.strip()
            if not line:
                continue
            if self.commands is not None and self.commands.is_command(line):
                if await self.commands.handle(line):
                    break
                continue
            await self.run_turn(line)


async def main() -> None:
    """アプリケーションのメインエントリポイント."""
    # 設定を読み込み（ロギング設定より前に必要）
    config = get_config()

    # 構造化ロギングを設定
    configure_logging(
        log_level=config.log_level,
        log_dir=config.log_dir,
        log_backup_count=config.log_backup_count,
    )

    logger.info("Starting ai-cli...")

    ui = ConsoleUI()
    shutdown_event = asyncio.Event()
    session: InteractiveSession | None = None

    def on_sigint() -> None:
        if session is not None:
            session.interrupt()
        else:
            shutdown_event.set()

    def on_sigterm() -> None:
        shutdown_event.set()
        if session is not None:
            session.interrupt()

    # Windows では loop.add_signal_handler が未実装のため signal.signal にフォールバック
    loop = asyncio.get_running_loop()
    handlers = {signal.SIGINT: on_sigint, signal.SIGTERM: on_sigterm}
    try:
        for sig, handler in handlers.items():
            loop.add_signal_handler(sig, handler)
    except NotImplementedError:
        for sig, handler in handlers.items():
            signal.signal(sig, lambda s, f, h=handler: loop.call_soon_threadsafe(h))

    client: AIClient | None = None
    commands: CommandHandler | None = None

    try:
        permission_manager = PermissionManager(SettingsStore.default())
        try:
            permission_manager.load()
        except SettingsError as e:
            logger.warning("Failed to load permission settings", error=str(e))
            ui.warning(f"{e} (using defaults)")

        client = new_client(config)
        logger.info("Configuration loaded", model=client.model)

        dispatcher = ToolDispatcher(
            permission_manager,
            CommandExecutor(config.command_timeout),
            confirm_command=ui.ask_command_approval,
            confirm_file=ui.ask_file_confirmation,
            on_plan_update=ui.show_plan,
            notify=ui.notice,
        )
        agent = AgentLoop(
            client,
            dispatcher,
            system_message=config.system_message,
            stream=config.stream,
            on_chunk=ui.write_chunk if config.stream else None,
            max_tool_rounds=config.max_tool_rounds,
        )
        session = InteractiveSession(ui, agent, shutdown_event)
        commands = CommandHandler(
            ui,
            agent,
            permission_manager,
            dispatcher,
            config,
            run_turn=session.run_turn,
        )
        session.commands = commands

        await session.run()

    except CredentialError as e:
        logger.error("Credential error", error=str(e))
        ui.error(str(e))
        sys.exit(1)
    except ConfigurationError as e:
        logger.error("Configuration error", error=str(e))
        ui.error(str(e))
        sys.exit(1)
    except Exception:
        logger.exception("Fatal error occurred")
        sys.exit(1)
    finally:
        if commands is not None:
            try:
                await commands.close()
            except Exception:
                logger.exception("Error during search client cleanup")

        # クライアントを閉じるとトークン更新タスクも停止する
        if client is not None:
            try:
                await asyncio.wait_for(client.close(), timeout=CLEANUP_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning("Client close timed out")
            except Exception:
                logger.exception("Error during client cleanup")

        # シグナルハンドラーの解除
        try:
            for sig in handlers:
                loop.remove_signal_handler(sig)
        except NotImplementedError:
            for sig in handlers:
                signal.signal(sig, signal.SIG_DFL)

        logger.info("Shutdown complete")

        # ログのフラッシュと確実なクローズ
        logging.shutdown()


def run() -> None:
    """コンソールスクリプトのエントリポイント."""
    asyncio.run(main())


if __name__ == "__main__":
    run()

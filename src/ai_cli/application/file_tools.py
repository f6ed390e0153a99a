"""File operations available to the model, with system path protection."""

from __future__ import annotations

import asyncio
import os
import shutil
from dataclasses import dataclass
from pathlib import Path

from ai_cli.infrastructure.logging import get_logger

logger = get_logger(__name__)

MAX_FILE_SIZE = 512 * 1024
MAX_SEARCH_RESULTS = 50
FILE_OPERATION_TIMEOUT = 30.0

BLOCKED_PATHS = (
    "/etc/",
    "/usr/",
    "/bin/",
    "/sbin/",
    "/boot/",
    "/sys/",
    "/proc/",
    "/dev/",
    "/var/",
    "/lib/",
    # macOS
    "/System/",
    "/Library/",
)


@dataclass(frozen=True)
class FileToolResult:
    """ファイル操作の結果（失敗も例外ではなく結果として返す）."""

    success: bool
    output: str
    truncated: bool = False


def _error(message: str) -> FileToolResult:
    return FileToolResult(success=False, output=message)


def _resolve(path: str) -> Path:
    """シンボリックリンクを解決した絶対パス（存在しなければ親ディレクトリを解決）."""
    absolute = Path(os.path.abspath(os.path.expanduser(path)))
    if absolute.exists():
        return absolute.resolve()
    return absolute.parent.resolve() / absolute.name


def is_path_safe(path: str) -> tuple[bool, str]:
    """
    書き込み・削除してよいパスか判定する.

    macOS の /etc → /private/etc のようなリンクも解決した上で判定する.

    Args:
        path: 判定するパス（相対パスも可）

    Returns:
        (安全か, ブロックした理由)
    """
    try:
        resolved = str(_resolve(path))
    except (OSError, RuntimeError, ValueError):
        return False, "invalid path"

    # ディレクトリ自体（末尾スラッシュなし）も対象にする
    candidates = (resolved, resolved + "/")
    for blocked in BLOCKED_PATHS:
        for candidate in candidates:
            if candidate.startswith(blocked) or candidate.startswith(
                "/private" + blocked
            ):
                return False, f"path {blocked} is protected"
    return True, ""


def read_file(path: str) -> FileToolResult:
    """
    ファイルを読み込む. 512KBを超える部分は切り捨てる.

    Args:
        path: ファイルパス

    Returns:
        ファイル内容（切り捨てた場合は末尾に注記）
    """
    target = Path(path).expanduser()
    try:
        if target.is_dir():
            return _error(f"Error: {path} is a directory, use list_directory instead")
        size = target.stat().st_size
        with target.open("rb") as f:
            data = f.read(MAX_FILE_SIZE)
    except FileNotFoundError:
        return _error(f"Error: file not found: {path}")
    except (OSError, ValueError) as e:
        return _error(f"Error: {e}")

    output = data.decode("utf-8", errors="replace")
    truncated = size > MAX_FILE_SIZE
    if truncated:
        output += f"\n\n[Truncated: file is {size} bytes, showing first 512KB]"
    return FileToolResult(success=True, output=output, truncated=truncated)


def write_file(path: str, content: str) -> FileToolResult:
    """
    ファイルを作成・上書きする. 親ディレクトリがなければ作成する.

    Args:
        path: ファイルパス
        content: 書き込む内容

    Returns:
        書き込み結果
    """
    safe, reason = is_path_safe(path)
    if not safe:
        return _error(f"Blocked: {reason}")

    target = Path(path).expanduser()
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
    except (OSError, ValueError) as e:
        return _error(f"Error creating directory: {e}")

    data = content.encode("utf-8")
    try:
        target.write_bytes(data)
    except (OSError, ValueError) as e:
        return _error(f"Error: {e}")

    logger.info("File written", path=str(target), size=len(data))
    return FileToolResult(success=True, output=f"Wrote {len(data)} bytes to {path}")


def edit_file(path: str, old_text: str, new_text: str) -> FileToolResult:
    """
    ファイル内の最初の old_text を new_text に置き換える.

    Args:
        path: ファイルパス
        old_text: 置き換える文字列（完全一致）
        new_text: 置き換え後の文字列

    Returns:
        編集結果（複数箇所に一致した場合はその数も含む）
    """
    safe, reason = is_path_safe(path)
    if not safe:
        return _error(f"Blocked: {reason}")

    target = Path(path).expanduser()
    try:
        content = target.read_text(encoding="utf-8")
    except FileNotFoundError:
        return _error(f"Error: file not found: {path}")
    except (OSError, ValueError) as e:
        return _error(f"Error: {e}")

    count = content.count(old_text) if old_text else 0
    if count == 0:
        return _error("Error: text not found in file")

    try:
        target.write_text(content.replace(old_text, new_text, 1), encoding="utf-8")
    except (OSError, ValueError) as e:
        return _error(f"Error: {e}")

    message = f"Edited {path}"
    if count > 1:
        message += f" (replaced 1 of {count} occurrences)"
    logger.info("File edited", path=str(target), occurrences=count)
    return FileToolResult(success=True, output=message)


def delete_file(path: str) -> FileToolResult:
    """
    ファイルを1つ削除する（ディレクトリは対象外）.

    Args:
        path: ファイルパス

    Returns:
        削除結果
    """
    safe, reason = is_path_safe(path)
    if not safe:
        return _error(f"Blocked: {reason}")

    target = Path(path).expanduser()
    if target.is_dir():
        return _error(
            "Error: cannot delete directories with this tool, "
            "use execute_command with 'rm -r' instead"
        )
    try:
        target.unlink()
    except FileNotFoundError:
        return _error(f"Error: file not found: {path}")
    except (OSError, ValueError) as e:
        return _error(f"Error: {e}")

    logger.info("File deleted", path=str(target))
    return FileToolResult(success=True, output=f"Deleted {path}")


async def _run(
    *args: str, timeout: float = FILE_OPERATION_TIMEOUT
) -> tuple[int, str]:
    """外部コマンドを実行し、(終了コード, 標準出力+標準エラー) を返す.

    Raises:
        TimeoutError: timeout 秒以内に終了しなかった場合（プロセスは終了させる）
    """
    process = await asyncio.create_subprocess_exec(
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout)
    except BaseException:
        if process.returncode is None:
            process.kill()
            await process.wait()
        raise
    return process.returncode or 0, stdout.decode("utf-8", errors="replace")


async def search_files(pattern: str, path: str = "", file_type: str = "") -> FileToolResult:
    """
    ripgrep（なければ grep）でファイル内を検索する.

    Args:
        pattern: 検索パターン（正規表現）
        path: 検索するディレクトリまたはファイル（空ならカレントディレクトリ）
        file_type: ripgrep のファイル種別フィルタ（grep では無視）

    Returns:
        一致した行（最大50件）
    """
    path = path or "."
    try:
        if shutil.which("rg"):
            args = ["rg", "-n", "--color=never", "-m", str(MAX_SEARCH_RESULTS)]
            if file_type:
                args += ["-t", file_type]
            _, output = await _run(*args, "--", pattern, path)
        else:
            _, output = await _run("grep", "-rn", "--", pattern, path)
    except TimeoutError:
        return _error("Error: search timed out (30s limit)")
    except (OSError, ValueError) as e:
        return _error(f"Error: {e}")

    result = output.strip()
    if not result:
        return FileToolResult(success=True, output="No matches found")

    lines = result.splitlines()
    if len(lines) > MAX_SEARCH_RESULTS:
        result = "\n".join(lines[:MAX_SEARCH_RESULTS])
        result += f"\n[Truncated: showing first {MAX_SEARCH_RESULTS} matches]"
        return FileToolResult(success=True, output=result, truncated=True)
    return FileToolResult(success=True, output=result)


async def list_directory(path: str = "", recursive: bool = False) -> FileToolResult:
    """
    ディレクトリの内容を ``ls -la`` 形式で一覧表示する.

    Args:
        path: ディレクトリ（空ならカレントディレクトリ）
        recursive: サブディレクトリも含めるか

    Returns:
        一覧
    """
    try:
        code, output = await _run("ls", "-laR" if recursive else "-la", "--", path or ".")
    except TimeoutError:
        return _error("Error: list directory timed out (30s limit)")
    except (OSError, ValueError) as e:
        return _error(f"Error: {e}")

    if code != 0:
        return _error(f"Error: ls exited with status {code}\n{output}")
    return FileToolResult(success=True, output=output)


def generate_diff(old_text: str, new_text: str) -> str:
    """
    置き換え前後を表示用の簡易diffにする.

    Args:
        old_text: 置き換え前
        new_text: 置き換え後

    Returns:
        ``--- old`` / ``+++ new`` ヘッダー付きの差分
    """
    lines = ["--- old", "+++ new"]
    lines += [f"- {line}" for line in old_text.split("\n")]
    lines += [f"+ {line}" for line in new_text.split("\n")]
    return "\n".join(lines) + "\n"

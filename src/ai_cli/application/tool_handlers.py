"""Dispatch of model tool calls to commands and file operations."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import ValidationError

from ai_cli.application import file_tools
from ai_cli.application.permissions import ApprovalType
from ai_cli.application.tools import (
    DeleteFileArgs,
    EditFileArgs,
    ExecuteCommandArgs,
    ListDirectoryArgs,
    ReadFileArgs,
    SearchFilesArgs,
    UpdatePlanArgs,
    WriteFileArgs,
    parse_tool_arguments,
)
from ai_cli.infrastructure.errors import SettingsError, UnknownToolError
from ai_cli.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from ai_cli.application.executor import CommandExecutor
    from ai_cli.application.models import ToolCall
    from ai_cli.application.permissions import PermissionManager
    from ai_cli.application.tools import ToolArguments

    # (command, reasoning, reason) -> 承認種別（None は拒否）
    CommandConfirm = Callable[[str, str, str], Awaitable[ApprovalType | None]]
    # (operation, path, detail) -> 承認したか
    FileConfirm = Callable[[str, str, str], Awaitable[bool]]

logger = get_logger(__name__)

DELETE_DISABLED_MESSAGE = (
    "Delete blocked: dangerous operations are disabled. "
    "Use /allow-dangerous to enable."
)


class ToolDispatcher:
    """
    ツール呼び出しを実行し、モデルに返す結果テキストを作る.

    - execute_command: パーミッション判定 → 必要なら確認 → 実行
    - write_file / edit_file: パス保護 → 確認 → 実行
    - delete_file: パス保護 → 危険モード → 確認 → 実行
    - read_file / search_files / list_directory: 確認なしで実行
    - update_plan: 現在の計画を置き換える

    拒否やエラーは例外ではなく結果テキストとして返す.
    """

    def __init__(
        self,
        permission_manager: PermissionManager,
        executor: CommandExecutor,
        confirm_command: CommandConfirm | None = None,
        confirm_file: FileConfirm | None = None,
        on_plan_update: Callable[[UpdatePlanArgs], None] | None = None,
        notify: Callable[[str], None] | None = None,
    ) -> None:
        """
        Initialize ToolDispatcher.

        Args:
            permission_manager: コマンドのパーミッション管理
            executor: コマンド実行
            confirm_command: コマンド実行の確認（未指定なら確認が必要なものは拒否）
            confirm_file: ファイル変更の確認（未指定なら拒否）
            on_plan_update: 計画が更新されたときのコールバック
            notify: 実行中の操作などをユーザーに表示するコールバック
        """
        self.permission_manager = permission_manager
        self.executor = executor
        self.confirm_command = confirm_command
        self.confirm_file = confirm_file
        self.on_plan_update = on_plan_update
        self.notify = notify
        self.current_plan: UpdatePlanArgs | None = None

    def _notify(self, message: str) -> None:
        if self.notify is not None:
            self.notify(message)

    async def dispatch(self, tool_call: ToolCall) -> str:
        """
        ツール呼び出しを1つ実行する.

        Args:
            tool_call: モデルが要求したツール呼び出し

        Returns:
            tool メッセージとしてモデルに返すテキスト
        """
        name = tool_call.function.name
        try:
            args = parse_tool_arguments(name, tool_call.function.arguments)
        except UnknownToolError as e:
            logger.warning("Unknown tool requested", tool=name)
            return str(e)
        except ValidationError as e:
            logger.warning("Invalid tool arguments", tool=name, error=str(e))
            return f"Error parsing arguments: {e}"

        logger.debug("Dispatching tool call", tool=name, call_id=tool_call.id)
        try:
            return await self._handle(args)
        except Exception as e:
            # ツールの失敗はターンを止めずにモデルへ返す
            logger.exception("Tool call failed", tool=name, call_id=tool_call.id)
            return f"Error: {e}"

    async def _handle(self, args: ToolArguments) -> str:
        if isinstance(args, ExecuteCommandArgs):
            return await self._execute_command(args)
        if isinstance(args, ReadFileArgs):
            return self._read_file(args)
        if isinstance(args, WriteFileArgs):
            return await self._write_file(args)
        if isinstance(args, EditFileArgs):
            return await self._edit_file(args)
        if isinstance(args, SearchFilesArgs):
            return await self._search_files(args)
        if isinstance(args, ListDirectoryArgs):
            return await self._list_directory(args)
        if isinstance(args, DeleteFileArgs):
            return await self._delete_file(args)
        return self._update_plan(args)

    async def _execute_command(self, args: ExecuteCommandArgs) -> str:
        decision = self.permission_manager.check_permission(args.command)
        if not decision.allowed:
            logger.info("Command blocked", command=args.command, reason=decision.reason)
            self._notify(f"Blocked: {args.command} ({decision.reason})")
            return f"Command blocked: {decision.reason}"

        if decision.needs_confirm:
            approval = None
            if self.confirm_command is not None:
                approval = await self.confirm_command(
                    args.command, args.reasoning, decision.reason
                )
            if approval is None:
                logger.info("Command denied by user", command=args.command)
                return "Command execution denied by user"
            try:
                self.permission_manager.add_to_allowlist(args.command, approval)
            except SettingsError as e:
                # 保存に失敗してもコマンドは実行する
                logger.warning("Failed to save permission", error=str(e))
                self._notify(f"Warning: failed to save permission: {e}")

        self._notify(f"Executing: {args.command}")
        result = await self.executor.execute(args.command)
        return result.format_result()

    def _read_file(self, args: ReadFileArgs) -> str:
        self._notify(f"Reading {args.path}")
        result = file_tools.read_file(args.path)
        if result.truncated:
            self._notify("File truncated to 512KB")
        return result.output

    async def _confirm_file(self, operation: str, path: str, detail: str) -> bool:
        if self.confirm_file is None:
            return False
        return await self.confirm_file(operation, path, detail)

    def _blocked(self, operation: str, path: str) -> str | None:
        safe, reason = file_tools.is_path_safe(path)
        if safe:
            return None
        logger.info("File operation blocked", operation=operation, path=path)
        self._notify(f"Blocked {operation}: {path} ({reason})")
        return f"Blocked: {reason}"

    async def _write_file(self, args: WriteFileArgs) -> str:
        blocked = self._blocked("write", args.path)
        if blocked is not None:
            return blocked
        detail = f"Content length: {len(args.content.encode('utf-8'))} bytes"
        if not await self._confirm_file("write", args.path, detail):
            return "Write denied by user"
        return file_tools.write_file(args.path, args.content).output

    async def _edit_file(self, args: EditFileArgs) -> str:
        blocked = self._blocked("edit", args.path)
        if blocked is not None:
            return blocked
        diff = file_tools.generate_diff(args.old_text, args.new_text)
        if not await self._confirm_file("edit", args.path, diff):
            return "Edit denied by user"
        return file_tools.edit_file(args.path, args.old_text, args.new_text).output

    async def _search_files(self, args: SearchFilesArgs) -> str:
        self._notify(f"Searching {args.pattern} in {args.path or '.'}")
        result = await file_tools.search_files(args.pattern, args.path, args.file_type)
        return result.output

    async def _list_directory(self, args: ListDirectoryArgs) -> str:
        self._notify(f"Listing {args.path or '.'}")
        result = await file_tools.list_directory(args.path, args.recursive)
        return result.output

    async def _delete_file(self, args: DeleteFileArgs) -> str:
        blocked = self._blocked("delete", args.path)
        if blocked is not None:
            return blocked
        if not self.permission_manager.is_dangerous_enabled():
            self._notify(DELETE_DISABLED_MESSAGE)
            return DELETE_DISABLED_MESSAGE
        if not await self._confirm_file("delete", args.path, ""):
            return "Delete denied by user"
        return file_tools.delete_file(args.path).output

    def _update_plan(self, args: UpdatePlanArgs) -> str:
        self.current_plan = args
        if self.on_plan_update is not None:
            self.on_plan_update(args)
        return f"Plan updated: {args.title} ({len(args.items)} items)"

"""Terminal input and output rendered with rich."""

from __future__ import annotations

import asyncio
import sys
from typing import TYPE_CHECKING, Any

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table

from ai_cli.application.permissions import ApprovalType

if TYPE_CHECKING:
    from ai_cli.application.tools import UpdatePlanArgs

PROMPT = "> "

PLAN_STATUS_ICONS = {
    "pending": "[dim]○[/dim]",
    "in_progress": "[yellow]◐[/yellow]",
    "completed": "[green]●[/green]",
}

_APPROVAL_CHOICES = {
    "y": ApprovalType.ONCE,
    "yes": ApprovalType.ONCE,
    "s": ApprovalType.SESSION,
    "session": ApprovalType.SESSION,
    "a": ApprovalType.ALWAYS,
    "always": ApprovalType.ALWAYS,
}


class ConsoleUI:
    """
    対話ループの入出力.

    出力は rich の Console に、入力は標準入力を asyncio の StreamReader として読む
    （入力待ちの間もイベントループを止めない）.
    """

    def __init__(
        self,
        console: Console | None = None,
        reader: asyncio.StreamReader | None = None,
    ) -> None:
        """
        Initialize ConsoleUI.

        Args:
            console: 出力先（Noneなら標準出力）
            reader: 入力元（Noneなら最初の読み込み時に標準入力に接続する）
        """
        self.console = console or Console(highlight=False)
        self._reader = reader
        self._streaming = False

    async def _get_reader(self) -> asyncio.StreamReader:
        if self._reader is None:
            loop = asyncio.get_running_loop()
            reader = asyncio.StreamReader()
            protocol = asyncio.StreamReaderProtocol(reader)
            await loop.connect_read_pipe(lambda: protocol, sys.stdin)
            self._reader = reader
        return self._reader

    async def read_line(self, prompt: str = PROMPT) -> str | None:
        """
        1行読み込む.

        Args:
            prompt: 表示するプロンプト

        Returns:
            改行を除いた入力（EOFならNone）
        """
        self.console.print(prompt, end="", style="bold cyan", markup=False)
        reader = await self._get_reader()
        line = await reader.readline()
        if not line:
            return None
        return line.decode("utf-8", errors="replace").rstrip("\r\n")

    # 出力

    def write_chunk(self, text: str) -> None:
        """ストリーミング中の本文の差分をそのまま出力する."""
        self._streaming = True
        self.console.print(text, end="", markup=False, highlight=False)

    def end_stream(self) -> None:
        """ストリーミング出力を改行で終える."""
        if self._streaming:
            self.console.print()
            self._streaming = False

    def show_answer(self, text: str) -> None:
        """非ストリーミング時の最終応答を表示する."""
        self.console.print(text, markup=False)

    def info(self, message: str) -> None:
        self.console.print(f"[cyan]{escape(message)}[/cyan]")

    def warning(self, message: str) -> None:
        self.console.print(f"[yellow]Warning:[/yellow] {escape(message)}")

    def error(self, message: str) -> None:
        self.console.print(f"[bold red]Error:[/bold red] {escape(message)}")

    def notice(self, message: str) -> None:
        """ツール実行などの経過を控えめに表示する."""
        self.console.print(f"[dim]{escape(message)}[/dim]")

    def show_plan(self, plan: UpdatePlanArgs | None) -> None:
        """
        計画をチェックリストとして表示する.

        Args:
            plan: 表示する計画（Noneなら計画がない旨を表示）
        """
        if plan is None:
            self.info("No plan yet")
            return
        done = sum(1 for item in plan.items if item.status == "completed")
        lines = [
            f"{PLAN_STATUS_ICONS.get(item.status, '?')} {escape(item.description)}"
            for item in plan.items
        ]
        self.console.print(
            Panel(
                "\n".join(lines) or "[dim](no items)[/dim]",
                title=f"[bold]{escape(plan.title)}[/bold]",
                subtitle=f"{done}/{len(plan.items)} completed",
                border_style="blue",
            )
        )

    def show_permissions(self, settings: dict[str, Any]) -> None:
        """
        現在のパーミッション設定を表示する.

        Args:
            settings: PermissionManager.get_settings() の結果
        """
        table = Table(title="Permissions", show_header=False, box=None)
        table.add_column("key", style="bold")
        table.add_column("value")
        table.add_row("Auto-allow safe commands", _on_off(settings["auto_allow_safe"]))
        table.add_row("Dangerous commands", _on_off(settings["dangerous_enabled"]))
        table.add_row("Session approvals", str(settings["session_count"]))
        table.add_row("Global settings", escape(settings["global_path"]))
        if settings["project_path"]:
            table.add_row("Project settings", escape(settings["project_path"]))
        table.add_row("Allow rules", _rules(settings["allow_rules"]))
        table.add_row("Deny rules", _rules(settings["deny_rules"]))
        self.console.print(table)

    def show_diff(self, path: str, diff: str) -> None:
        """編集内容の差分を表示する."""
        self.console.print(
            Panel(Syntax(diff, "diff", word_wrap=True), title=escape(path))
        )

    # 確認

    async def ask_command_approval(
        self, command: str, reasoning: str, reason: str
    ) -> ApprovalType | None:
        """
        コマンド実行の可否を尋ねる.

        Args:
            command: 実行するコマンド
            reasoning: モデルが示した実行理由
            reason: 確認が必要な理由

        Returns:
            承認種別（y: 今回のみ / s: セッション中 / a: 常に）、拒否またはEOFならNone
        """
        body = f"[bold]{escape(command)}[/bold]"
        if reasoning:
            body += f"\n[dim]{escape(reasoning)}[/dim]"
        self.console.print(
            Panel(body, title="Run command?", subtitle=escape(reason), border_style="yellow")
        )
        answer = await self.read_line("[y]es / [s]ession / [a]lways / [N]o: ")
        if answer is None:
            return None
        return _APPROVAL_CHOICES.get(answer.strip().lower())

    async def ask_confirmation(self, question: str) -> bool:
        """
        y/N で確認する.

        Args:
            question: 質問文

        Returns:
            y/yes ならTrue
        """
        answer = await self.read_line(f"{question} [y/N]: ")
        return answer is not None and answer.strip().lower() in ("y", "yes")

    async def ask_file_confirmation(self, operation: str, path: str, detail: str) -> bool:
        """
        ファイル変更の可否を尋ねる.

        Args:
            operation: write / edit / delete
            path: 対象のパス
            detail: 補足（edit なら差分）

        Returns:
            承認したか
        """
        if operation == "edit" and detail:
            self.show_diff(path, detail)
        elif detail:
            self.notice(detail)
        return await self.ask_confirmation(f"Allow {operation} of {path}?")


def _on_off(value: bool) -> str:
    return "[green]enabled[/green]" if value else "[red]disabled[/red]"


def _rules(rules: list[str]) -> str:
    return escape("\n".join(rules)) if rules else "[dim](none)[/dim]"

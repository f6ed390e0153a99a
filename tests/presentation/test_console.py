"""Tests for the rich console UI."""

from __future__ import annotations

import asyncio
import io

import pytest
from rich.console import Console

from ai_cli.application.permissions import ApprovalType
from ai_cli.application.tools import PlanItem, UpdatePlanArgs
from ai_cli.presentation.console import ConsoleUI


def _console() -> tuple[Console, io.StringIO]:
    output = io.StringIO()
    return Console(file=output, width=100, color_system=None), output


def _ui(*lines: str) -> tuple[ConsoleUI, io.StringIO]:
    """入力行を流し込んだ StreamReader を使うUIを作成する（イベントループ内で呼ぶ）."""
    reader = asyncio.StreamReader()
    for line in lines:
        reader.feed_data(f"{line}\n".encode())
    reader.feed_eof()
    console, output = _console()
    return ConsoleUI(console=console, reader=reader), output


def _output_ui() -> tuple[ConsoleUI, io.StringIO]:
    console, output = _console()
    return ConsoleUI(console=console), output


class TestInput:
    """入力のテスト."""

    @pytest.mark.asyncio
    async def test_read_line_and_eof(self) -> None:
        """行が読み込まれ、EOFでNoneになることを確認する."""
        ui, output = _ui("hello")

        assert await ui.read_line() == "hello"
        assert await ui.read_line() is None
        assert output.getvalue().startswith("> ")

    @pytest.mark.asyncio
    async def test_command_approval_choices(self) -> None:
        """回答が承認種別に変換されることを確認する."""
        ui, output = _ui("s", "always", "n", "")

        assert await ui.ask_command_approval("make", "build it", "why") == (
            ApprovalType.SESSION
        )
        assert await ui.ask_command_approval("make", "", "why") == ApprovalType.ALWAYS
        assert await ui.ask_command_approval("make", "", "why") is None
        assert await ui.ask_command_approval("make", "", "why") is None
        assert "[y]es / [s]ession / [a]lways / [N]o" in output.getvalue()

    @pytest.mark.asyncio
    async def test_file_confirmation_shows_diff(self) -> None:
        """編集の確認で差分が表示されることを確認する."""
        ui, output = _ui("y")

        approved = await ui.ask_file_confirmation(
            "edit", "a.py", "--- old\n+++ new\n- x = 1\n+ x = 2\n"
        )

        assert approved
        assert "+ x = 2" in output.getvalue()
        assert "Allow edit of a.py? [y/N]" in output.getvalue()


class TestOutput:
    """出力のテスト."""

    def test_messages_are_escaped(self) -> None:
        """メッセージ中の角括弧がマークアップとして解釈されないことを確認する."""
        ui, output = _output_ui()

        ui.error("bad [red]input[/red]")

        assert "Error: bad [red]input[/red]" in output.getvalue()

    def test_plan(self) -> None:
        """計画が完了数とともに表示されることを確認する."""
        ui, output = _output_ui()
        plan = UpdatePlanArgs(
            title="Refactor",
            items=[
                PlanItem(description="read code", status="completed"),
                PlanItem(description="edit code"),
            ],
        )

        ui.show_plan(plan)

        text = output.getvalue()
        assert "Refactor" in text
        assert "read code" in text
        assert "1/2 completed" in text

    def test_stream_ends_with_newline(self) -> None:
        """ストリーミング出力の後に改行されることを確認する."""
        ui, output = _output_ui()

        ui.write_chunk("Hel")
        ui.write_chunk("lo")
        ui.end_stream()
        ui.end_stream()

        assert output.getvalue() == "Hello\n"

"""Tests for slash command handling."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from ai_cli.infrastructure.errors import KeysExhaustedError, SettingsError
from ai_cli.infrastructure.search import SearchResponse, SearchResult
from ai_cli.presentation.commands import CommandHandler


def _handler(
    search_client: MagicMock | None = None,
) -> tuple[CommandHandler, MagicMock, MagicMock, MagicMock, AsyncMock]:
    ui = MagicMock()
    agent = MagicMock()
    agent.model = "gpt-5-mini"
    pm = MagicMock()
    config = MagicMock()
    config.available_models.return_value = ["gpt-5-mini", "claude-sonnet-4"]
    config.resolve_search_provider.return_value = "tavily"
    run_turn = AsyncMock()
    handler = CommandHandler(
        ui,
        agent,
        pm,
        MagicMock(),
        config,
        run_turn,
        search_factory=lambda _config: search_client,  # type: ignore[arg-type,return-value]
    )
    return handler, ui, agent, pm, run_turn


def _search_client(response: SearchResponse | None = None) -> MagicMock:
    client = MagicMock()
    client.provider = "tavily"
    client.search = AsyncMock(return_value=response or SearchResponse())
    client.close = AsyncMock()
    return client


class TestBasicCommands:
    """基本コマンドのテスト."""

    @pytest.mark.asyncio
    async def test_exit_aliases(self) -> None:
        """終了コマンドはTrueを返すことを確認する."""
        handler, *_ = _handler()

        for line in ("/exit", "/quit", "/q", "/EXIT"):
            assert await handler.handle(line) is True

    @pytest.mark.asyncio
    async def test_clear(self) -> None:
        """会話履歴が消去されることを確認する."""
        handler, ui, agent, _, _ = _handler()

        assert await handler.handle("/clear") is False

        agent.clear.assert_called_once()
        ui.info.assert_called_with("Conversation cleared.")

    @pytest.mark.asyncio
    async def test_unknown_command(self) -> None:
        """未知のコマンドは警告されることを確認する."""
        handler, ui, *_ = _handler()

        await handler.handle("/frobnicate now")

        ui.warning.assert_called_with("Unknown command: /frobnicate")

    def test_is_command(self) -> None:
        """スラッシュで始まる入力だけがコマンドになることを確認する."""
        assert CommandHandler.is_command("/help")
        assert not CommandHandler.is_command("what is /etc?")


class TestModelCommand:
    """/model のテスト."""

    @pytest.mark.asyncio
    async def test_show_current(self) -> None:
        """引数なしで現在のモデルが表示されることを確認する."""
        handler, ui, *_ = _handler()

        await handler.handle("/model")

        ui.info.assert_any_call("Current model: gpt-5-mini")

    @pytest.mark.asyncio
    async def test_switch(self) -> None:
        """利用可能なモデルに切り替わることを確認する."""
        handler, ui, agent, _, _ = _handler()

        await handler.handle("/model claude-sonnet-4")

        assert agent.model == "claude-sonnet-4"
        ui.info.assert_called_with("Switched to model: claude-sonnet-4")

    @pytest.mark.asyncio
    async def test_invalid(self) -> None:
        """利用できないモデルには切り替わらないことを確認する."""
        handler, ui, agent, _, _ = _handler()

        await handler.handle("/model gpt-2")

        assert agent.model == "gpt-5-mini"
        ui.error.assert_called_once_with("Invalid model: gpt-2")


class TestPermissionCommands:
    """パーミッション関連コマンドのテスト."""

    @pytest.mark.asyncio
    async def test_allow(self) -> None:
        """許可ルールが追加されることを確認する."""
        handler, ui, _, pm, _ = _handler()

        await handler.handle("/allow git:*")

        pm.add_pattern_rule.assert_called_once_with("git:*", deny=False)
        ui.info.assert_called_with("Added allow rule: git:*")

    @pytest.mark.asyncio
    async def test_deny(self) -> None:
        """拒否ルールが優先される旨とともに追加されることを確認する."""
        handler, ui, _, pm, _ = _handler()

        await handler.handle("/deny rm *")

        pm.add_pattern_rule.assert_called_once_with("rm *", deny=True)
        ui.info.assert_called_with(
            "Added deny rule: rm * (takes precedence over allow rules)"
        )

    @pytest.mark.asyncio
    async def test_allow_without_pattern_shows_usage(self) -> None:
        """パターンがなければ使い方を表示することを確認する."""
        handler, ui, _, pm, _ = _handler()

        await handler.handle("/allow")

        pm.add_pattern_rule.assert_not_called()
        ui.info.assert_any_call("Usage: /allow <pattern>")

    @pytest.mark.asyncio
    async def test_save_failure(self) -> None:
        """保存に失敗したらエラーを表示することを確認する."""
        handler, ui, _, pm, _ = _handler()
        pm.add_pattern_rule.side_effect = SettingsError("settings.json", "disk full")

        await handler.handle("/allow make *")

        assert ui.error.call_args.args[0].startswith("Failed to add allow rule: ")

    @pytest.mark.asyncio
    async def test_dangerous_toggle(self) -> None:
        """危険なコマンドの有効化と無効化を確認する."""
        handler, ui, _, pm, _ = _handler()

        await handler.handle("/allow-dangerous")
        await handler.handle("/disallow-dangerous")

        pm.enable_dangerous.assert_called_once()
        pm.disable_dangerous.assert_called_once()
        ui.warning.assert_called_with("Dangerous commands enabled for this session")
        ui.info.assert_called_with("Dangerous commands disabled")

    @pytest.mark.asyncio
    async def test_auto_allow_safe_toggle(self) -> None:
        """安全なコマンドの自動許可を切り替えられることを確認する."""
        handler, ui, _, pm, _ = _handler()

        await handler.handle("/auto-allow-safe off")
        pm.set_auto_allow_safe.assert_called_once_with(False)
        ui.info.assert_called_with("Auto-allow safe commands disabled for this session")

        await handler.handle("/auto-allow-safe ON")
        pm.set_auto_allow_safe.assert_called_with(True)
        ui.info.assert_called_with("Auto-allow safe commands enabled for this session")

    @pytest.mark.asyncio
    async def test_auto_allow_safe_status_and_usage(self) -> None:
        """引数なしで現在の状態、不正な引数で使い方が表示されることを確認する."""
        handler, ui, _, pm, _ = _handler()
        pm.get_settings.return_value = {"auto_allow_safe": True}

        await handler.handle("/auto-allow-safe")
        ui.info.assert_called_with("Auto-allow safe commands: on")

        await handler.handle("/auto-allow-safe maybe")
        ui.info.assert_called_with("Usage: /auto-allow-safe on|off")
        pm.set_auto_allow_safe.assert_not_called()

    @pytest.mark.asyncio
    async def test_show_and_clear_session(self) -> None:
        """設定の表示とセッション許可の消去を確認する."""
        handler, ui, _, pm, _ = _handler()
        pm.get_settings.return_value = {"allow_rules": []}

        await handler.handle("/show-permissions")
        await handler.handle("/clear-session")

        ui.show_permissions.assert_called_once_with({"allow_rules": []})
        pm.clear_session_allowlist.assert_called_once()


class TestWebCommand:
    """/web のテスト."""

    @pytest.mark.asyncio
    async def test_search_and_ask(self) -> None:
        """検索結果を添えて質問し、出典が表示されることを確認する."""
        response = SearchResponse(
            results=[
                SearchResult(title="Docs", url="https://example.com", content="body")
            ]
        )
        client = _search_client(response)
        handler, ui, _, _, run_turn = _handler(client)

        await handler.handle("/web python 3.13 release")

        client.search.assert_awaited_once_with("python 3.13 release")
        prompt = run_turn.await_args.args[0]
        assert "python 3.13 release" in prompt
        assert "https://example.com" in prompt
        printed = [c.args[0] for c in ui.console.print.call_args_list if c.args]
        assert "  [1] Docs - https://example.com" in printed

    @pytest.mark.asyncio
    async def test_no_results(self) -> None:
        """結果がなければモデルに問い合わせないことを確認する."""
        handler, ui, _, _, run_turn = _handler(_search_client())

        await handler.handle("/web nothing")

        ui.warning.assert_called_with("No search results found")
        run_turn.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_search_error(self) -> None:
        """検索エラーは表示され、ターンは実行されないことを確認する."""
        client = _search_client()
        client.search.side_effect = KeysExhaustedError("no more keys")
        handler, ui, _, _, run_turn = _handler(client)

        await handler.handle("/web q")

        assert ui.error.call_args.args[0].startswith("Web search failed: ")
        run_turn.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_network_error(self) -> None:
        """通信エラーも検索エラーとして扱われることを確認する."""
        client = _search_client()
        client.search.side_effect = httpx.ConnectError("refused")
        handler, ui, _, _, _ = _handler(client)

        await handler.handle("/web q")

        assert ui.error.call_args.args[0] == "Web search failed: refused"

    @pytest.mark.asyncio
    async def test_switch_provider(self) -> None:
        """プロバイダー名を指定すると切り替わり、作成済みクライアントが閉じられることを確認する."""
        client = _search_client()
        handler, ui, _, _, _ = _handler(client)
        await handler.handle("/web warmup")

        await handler.handle("/web Brave")

        assert handler.config.web_search_provider == "brave"
        client.close.assert_awaited_once()
        ui.info.assert_called_with("Web search provider changed to: brave")

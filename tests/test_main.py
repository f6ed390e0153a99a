"""Test cases for main entry point."""

from __future__ import annotations

import asyncio
import signal
from typing import TYPE_CHECKING
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from ai_cli.infrastructure.errors import CredentialError, OperationCancelledError

if TYPE_CHECKING:
    from collections.abc import Callable


def _setup_mocks() -> tuple[
    MagicMock, MagicMock, MagicMock, dict[int, Callable[[], None]]
]:
    """テスト用の共通モックをセットアップする."""
    config = MagicMock()
    config.log_level = "INFO"
    config.stream = True
    config.system_message = "Be precise and concise."
    config.command_timeout = 30.0
    config.max_tool_rounds = None

    mock_client = MagicMock()
    mock_client.model = "gpt-5-mini"
    mock_client.close = AsyncMock()

    mock_ui = MagicMock()
    mock_ui.read_line = AsyncMock(return_value=None)

    signal_handlers: dict[int, Callable[[], None]] = {}

    return config, mock_client, mock_ui, signal_handlers


def _patch_loop_signal_handlers(
    signal_handlers: dict[int, Callable[[], None]],
) -> None:
    """イベントループのシグナルハンドラーをモンキーパッチする."""
    loop = asyncio.get_running_loop()

    def fake_add(sig: int, handler: Callable[[], None]) -> None:
        signal_handlers[sig] = handler

    def fake_remove(sig: int) -> bool:
        signal_handlers.pop(sig, None)
        return True

    loop.add_signal_handler = fake_add  # type: ignore[assignment]
    loop.remove_signal_handler = fake_remove  # type: ignore[method-assign]


def _patches(config: MagicMock, client: MagicMock, ui: MagicMock) -> tuple:
    return (
        patch("ai_cli.main.get_config", return_value=config),
        patch("ai_cli.main.configure_logging"),
        patch("ai_cli.main.SettingsStore"),
        patch("ai_cli.main.new_client", return_value=client),
        patch("ai_cli.main.ConsoleUI", return_value=ui),
        patch("ai_cli.main.logging.shutdown"),
    )


@pytest.mark.asyncio
async def test_sigint_at_prompt_shuts_down() -> None:
    """入力待ちの SIGINT でシャットダウンし、後片付けされることを確認."""
    from ai_cli.main import main

    config, mock_client, mock_ui, signal_handlers = _setup_mocks()
    p1, p2, p3, p4, p5, p6 = _patches(config, mock_client, mock_ui)

    with p1, p2, p3, p4, p5, p6:
        _patch_loop_signal_handlers(signal_handlers)

        async def fake_read() -> str | None:
            assert signal.SIGINT in signal_handlers
            assert signal.SIGTERM in signal_handlers
            signal_handlers[signal.SIGINT]()
            await asyncio.sleep(10)
            return "never"

        mock_ui.read_line = AsyncMock(side_effect=fake_read)

        await asyncio.wait_for(main(), timeout=5.0)

        mock_client.close.assert_called_once()
        # シグナルハンドラーが解除されている
        assert signal.SIGINT not in signal_handlers
        assert signal.SIGTERM not in signal_handlers


@pytest.mark.asyncio
async def test_sigterm_triggers_shutdown() -> None:
    """SIGTERMでもシャットダウンが発生することを確認."""
    from ai_cli.main import main

    config, mock_client, mock_ui, signal_handlers = _setup_mocks()
    p1, p2, p3, p4, p5, p6 = _patches(config, mock_client, mock_ui)

    with p1, p2, p3, p4, p5, p6:
        _patch_loop_signal_handlers(signal_handlers)

        async def fake_read() -> str | None:
            signal_handlers[signal.SIGTERM]()
            signal_handlers[signal.SIGTERM]()
            await asyncio.sleep(10)
            return "never"

        mock_ui.read_line = AsyncMock(side_effect=fake_read)

        await asyncio.wait_for(main(), timeout=5.0)

        mock_client.close.assert_called_once()


@pytest.mark.asyncio
async def test_exit_command_ends_session() -> None:
    """/exit でセッションが終了することを確認."""
    from ai_cli.main import main

    config, mock_client, mock_ui, signal_handlers = _setup_mocks()
    mock_ui.read_line = AsyncMock(side_effect=["", "/exit", "unreachable"])
    p1, p2, p3, p4, p5, p6 = _patches(config, mock_client, mock_ui)

    with p1, p2, p3, p4, p5, p6:
        _patch_loop_signal_handlers(signal_handlers)

        await asyncio.wait_for(main(), timeout=5.0)

        assert mock_ui.read_line.await_count == 2
        mock_client.close.assert_called_once()


@pytest.mark.asyncio
async def test_credential_error_exits_with_hint() -> None:
    """認証エラーでは再認証を促して終了コード1で終わることを確認."""
    from ai_cli.main import main

    config, mock_client, mock_ui, signal_handlers = _setup_mocks()
    p1, p2, p3, p4, p5, p6 = _patches(config, mock_client, mock_ui)

    with p1, p2, p3, p5, p6, patch(
        "ai_cli.main.new_client",
        side_effect=CredentialError("Not logged in, please re-authenticate"),
    ):
        _patch_loop_signal_handlers(signal_handlers)

        with pytest.raises(SystemExit) as exc_info:
            await main()

        assert exc_info.value.code == 1
        message = mock_ui.error.call_args.args[0]
        assert "please re-authenticate" in message
        assert signal.SIGINT not in signal_handlers


@pytest.mark.asyncio
async def test_client_close_error_does_not_prevent_shutdown() -> None:
    """クライアントのクローズに失敗してもシグナルハンドラーが解除されることを確認."""
    from ai_cli.main import main

    config, mock_client, mock_ui, signal_handlers = _setup_mocks()
    mock_client.close = AsyncMock(side_effect=RuntimeError("close failed"))
    p1, p2, p3, p4, p5, p6 = _patches(config, mock_client, mock_ui)

    with p1, p2, p3, p4, p5, p6:
        _patch_loop_signal_handlers(signal_handlers)

        await asyncio.wait_for(main(), timeout=5.0)

        assert signal.SIGINT not in signal_handlers


class TestInteractiveSession:
    """InteractiveSession のターン制御のテスト."""

    def _session(self, agent: MagicMock) -> tuple[object, MagicMock, asyncio.Event]:
        from ai_cli.main import InteractiveSession

        ui = MagicMock()
        shutdown = asyncio.Event()
        return InteractiveSession(ui, agent, shutdown), ui, shutdown

    @pytest.mark.asyncio
    async def test_interrupt_cancels_only_the_turn(self) -> None:
        """ターン中の中断ではターンだけがキャンセルされることを確認."""
        started = asyncio.Event()
        seen_cancel: list[asyncio.Event] = []

        async def slow_turn(text: str, cancel_event: asyncio.Event) -> str:
            seen_cancel.append(cancel_event)
            started.set()
            await asyncio.sleep(10)
            return "late"

        agent = MagicMock()
        agent.stream = True
        agent.run_turn = slow_turn
        session, ui, shutdown = self._session(agent)

        turn = asyncio.create_task(session.run_turn("hello"))  # type: ignore[attr-defined]
        await started.wait()
        assert session.turn_active  # type: ignore[attr-defined]

        session.interrupt()  # type: ignore[attr-defined]
        await asyncio.wait_for(turn, timeout=2.0)

        assert seen_cancel[0].is_set()
        assert not shutdown.is_set()
        assert not session.turn_active  # type: ignore[attr-defined]
        ui.warning.assert_called_with("Interrupted")

    @pytest.mark.asyncio
    async def test_interrupt_without_turn_requests_shutdown(self) -> None:
        """ターン外の中断はシャットダウン要求になることを確認."""
        session, _, shutdown = self._session(MagicMock())

        session.interrupt()  # type: ignore[attr-defined]

        assert shutdown.is_set()

    @pytest.mark.asyncio
    async def test_cancelled_operation_is_reported(self) -> None:
        """OperationCancelledError は警告として表示されることを確認."""
        agent = MagicMock()
        agent.stream = False
        agent.run_turn = AsyncMock(side_effect=OperationCancelledError())
        session, ui, _ = self._session(agent)

        await session.run_turn("hello")  # type: ignore[attr-defined]

        ui.warning.assert_called_with("Request cancelled")
        ui.show_answer.assert_not_called()

    @pytest.mark.asyncio
    async def test_non_streaming_answer_is_shown(self) -> None:
        """非ストリーミング時は最終応答が表示されることを確認."""
        agent = MagicMock()
        agent.stream = False
        agent.run_turn = AsyncMock(return_value="42")
        session, ui, _ = self._session(agent)

        await session.run_turn("question")  # type: ignore[attr-defined]

        ui.show_answer.assert_called_once_with("42")

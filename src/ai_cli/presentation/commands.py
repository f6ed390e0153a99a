"""Slash commands available in the interactive session."""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx

from ai_cli.infrastructure.config import SEARCH_PROVIDERS
from ai_cli.infrastructure.errors import AICliError
from ai_cli.infrastructure.logging import get_logger
from ai_cli.infrastructure.search import format_results_as_context, new_search_client

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from ai_cli.application.agent import AgentLoop
    from ai_cli.application.permissions import PermissionManager
    from ai_cli.application.tool_handlers import ToolDispatcher
    from ai_cli.infrastructure.config import Config
    from ai_cli.infrastructure.search import SearchClient
    from ai_cli.presentation.console import ConsoleUI

logger = get_logger(__name__)

HELP_SECTIONS = (
    (
        "Commands",
        (
            ("/exit, /quit, /q", "Exit interactive mode"),
            ("/clear, /c", "Clear conversation history"),
            ("/model", "Show current model"),
            ("/model <name>", "Switch model"),
            ("/web <query>", "Search web and ask about results"),
            ("/web <provider>", "Switch search provider (tavily, linkup, brave)"),
            ("/plan", "Show current task plan/checklist"),
            ("/help, /h", "Show this help"),
        ),
    ),
    (
        "Permission commands",
        (
            ("/allow <pattern>", "Add persistent allow rule (e.g., git:*)"),
            ("/deny <pattern>", "Add persistent deny rule (takes precedence)"),
            ("/allow-dangerous", "Allow dangerous commands (with confirmation)"),
            ("/disallow-dangerous", "Block dangerous commands again"),
            ("/auto-allow-safe on|off", "Toggle auto-approval of safe commands"),
            ("/show-permissions", "Show permission settings and rules"),
            ("/clear-session", "Clear session-only permissions"),
        ),
    ),
)


def web_search_prompt(query: str, context: str) -> str:
    """
    検索結果を添えてモデルに渡す質問文を作る.

    Args:
        query: 検索クエリ
        context: format_results_as_context() の結果

    Returns:
        ユーザーメッセージとして送る文字列
    """
    return (
        f'Web search results for "{query}":\n\n{context}'
        "Using the search results above, answer the following and cite the "
        f"sources by number: {query}"
    )


class CommandHandler:
    """``/`` で始まる入力を処理する."""

    def __init__(
        self,
        ui: ConsoleUI,
        agent: AgentLoop,
        permission_manager: PermissionManager,
        dispatcher: ToolDispatcher,
        config: Config,
        run_turn: Callable[[str], Awaitable[None]],
        search_factory: Callable[[Config], SearchClient] | None = None,
    ) -> None:
        """
        Initialize CommandHandler.

        Args:
            ui: 入出力
            agent: エージェントループ
            permission_manager: パーミッション管理
            dispatcher: ツール実行（現在の計画を保持している）
            config: アプリケーション設定
            run_turn: ユーザー入力として1ターン実行する処理（/web で使う）
            search_factory: 検索クライアントの作成（Noneなら設定から作成）
        """
        self.ui = ui
        self.agent = agent
        self.permission_manager = permission_manager
        self.dispatcher = dispatcher
        self.config = config
        self.run_turn = run_turn
        self._search_factory = search_factory or self._default_search_factory
        self._search_client: SearchClient | None = None

    def _default_search_factory(self, config: Config) -> SearchClient:
        return new_search_client(
            config,
            on_key_rotation=lambda old, new, total: self.ui.warning(
                f"Search API key {old} failed, switched to key {new}/{total}"
            ),
        )

    @staticmethod
    def is_command(line: str) -> bool:
        """スラッシュコマンドか判定する."""
        return line.startswith("/")

    async def handle(self, line: str) -> bool:
        """
        スラッシュコマンドを1つ処理する.

        Args:
            line: ``/`` で始まる入力

        Returns:
            セッションを終了すべきならTrue
        """
        name, _, arg = line.strip().partition(" ")
        name = name.lower()
        arg = arg.strip()
        logger.debug("Slash command", command=name)

        if name in ("/exit", "/quit", "/q"):
            self.ui.info("Goodbye!")
            return True
        if name in ("/clear", "/c"):
            self.agent.clear()
            self.ui.info("Conversation cleared.")
        elif name in ("/help", "/h"):
            self.show_help()
        elif name == "/model":
            self._model(arg)
        elif name == "/web":
            await self._web(arg)
        elif name == "/allow":
            self._add_rule(arg, deny=False)
        elif name == "/deny":
            self._add_rule(arg, deny=True)
        elif name == "/allow-dangerous":
            self.permission_manager.enable_dangerous()
            self.ui.warning("Dangerous commands enabled for this session")
            self.ui.info("You will still be asked to confirm before execution")
        elif name == "/disallow-dangerous":
            self.permission_manager.disable_dangerous()
            self.ui.info("Dangerous commands disabled")
        elif name == "/auto-allow-safe":
            self._auto_allow_safe(arg)
        elif name == "/show-permissions":
            self.ui.show_permissions(self.permission_manager.get_settings())
        elif name == "/clear-session":
            self.permission_manager.clear_session_allowlist()
            self.ui.info("Session allowlist cleared.")
        elif name == "/plan":
            self.ui.show_plan(self.dispatcher.current_plan)
        else:
            self.ui.warning(f"Unknown command: {name}")
            self.ui.info("Type /help for available commands")
        return False

    def show_help(self) -> None:
        """コマンド一覧を表示する."""
        for title, rows in HELP_SECTIONS:
            self.ui.console.print(f"\n[bold]{title}:[/bold]")
            for usage, description in rows:
                self.ui.console.print(f"  {usage:<24} {description}", markup=False)
        self.ui.console.print()

    def _model(self, arg: str) -> None:
        available = self.config.available_models()
        if not arg:
            self.ui.info(f"Current model: {self.agent.model}")
            if available:
                self.ui.info(f"Available: {', '.join(available)}")
            return
        if available and arg not in available:
            self.ui.error(f"Invalid model: {arg}")
            self.ui.info(f"Available: {', '.join(available)}")
            return
        self.agent.model = arg
        self.ui.info(f"Switched to model: {arg}")

    def _auto_allow_safe(self, arg: str) -> None:
        choice = arg.lower()
        if not choice:
            enabled = self.permission_manager.get_settings()["auto_allow_safe"]
            self.ui.info(f"Auto-allow safe commands: {'on' if enabled else 'off'}")
            return
        if choice not in ("on", "off"):
            self.ui.info("Usage: /auto-allow-safe on|off")
            return
        enabled = choice == "on"
        self.permission_manager.set_auto_allow_safe(enabled)
        state = "enabled" if enabled else "disabled"
        self.ui.info(f"Auto-allow safe commands {state} for this session")

    def _add_rule(self, pattern: str, deny: bool) -> None:
        kind = "deny" if deny else "allow"
        if not pattern:
            self.ui.info(f"Usage: /{kind} <pattern>")
            if deny:
                self.ui.info("Examples: /deny rm *   /deny curl *")
            else:
                self.ui.info("Examples: /allow git:*   /allow npm run *   /allow ls -la")
            return
        try:
            self.permission_manager.add_pattern_rule(pattern, deny=deny)
        except AICliError as e:
            self.ui.error(f"Failed to add {kind} rule: {e}")
            return
        suffix = " (takes precedence over allow rules)" if deny else ""
        self.ui.info(f"Added {kind} rule: {pattern}{suffix}")

    async def _web(self, arg: str) -> None:
        if not arg:
            self.ui.info(
                f"Search provider: {self.config.resolve_search_provider()} "
                f"(available: {', '.join(SEARCH_PROVIDERS)})"
            )
            self.ui.info("Usage: /web <query> | /web <provider>")
            return

        if arg.lower() in SEARCH_PROVIDERS:
            self.config.web_search_provider = arg.lower()
            await self.close()
            self.ui.info(f"Web search provider changed to: {arg.lower()}")
            return

        try:
            if self._search_client is None:
                self._search_client = self._search_factory(self.config)
            self.ui.notice(f"Searching the web ({self._search_client.provider}): {arg}")
            response = await self._search_client.search(arg)
        except (AICliError, httpx.HTTPError) as e:
            logger.warning("Web search failed", error=str(e))
            self.ui.error(f"Web search failed: {e}")
            return

        if not response.results:
            self.ui.warning("No search results found")
            return

        await self.run_turn(
            web_search_prompt(arg, format_results_as_context(response.results))
        )
        self.ui.console.print("\n[bold]Sources:[/bold]")
        for i, result in enumerate(response.results, start=1):
            self.ui.console.print(f"  [{i}] {result.title} - {result.url}", markup=False)

    async def close(self) -> None:
        """作成済みの検索クライアントを閉じる."""
        if self._search_client is not None:
            await self._search_client.close()
            self._search_client = None

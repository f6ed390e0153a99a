"""Agentic conversation loop that runs model tool calls until a final answer."""

from __future__ import annotations

from typing import TYPE_CHECKING

from ai_cli.application.models import Message
from ai_cli.application.tools import get_default_tools
from ai_cli.infrastructure.errors import MaxToolRoundsExceededError
from ai_cli.infrastructure.logging import get_logger

if TYPE_CHECKING:
    import asyncio
    from collections.abc import Callable

    from ai_cli.application.models import ChatResponse, Tool
    from ai_cli.application.tool_handlers import ToolDispatcher
    from ai_cli.infrastructure.api_client import AIClient

logger = get_logger(__name__)


class AgentLoop:
    """
    会話履歴を保持し、1ターン分のモデル呼び出しとツール実行を繰り返す.

    ターンの途中で例外（キャンセルを含む）が発生した場合、
    履歴はターン開始前の状態に戻される.
    """

    def __init__(
        self,
        client: AIClient,
        dispatcher: ToolDispatcher,
        system_message: str = "",
        stream: bool = True,
        on_chunk: Callable[[str], None] | None = None,
        max_tool_rounds: int | None = None,
        tools: list[Tool] | None = None,
    ) -> None:
        """
        Initialize AgentLoop.

        Args:
            client: AIクライアント
            dispatcher: ツール呼び出しの実行
            system_message: 会話の先頭に置くシステムメッセージ
            stream: ストリーミングで問い合わせるか
            on_chunk: ストリーミング時に本文の差分を受け取るコールバック
            max_tool_rounds: 1ターン内のツール呼び出しラウンド上限（Noneなら無制限）
            tools: モデルに提示するツール（Noneならデフォルトの8種類）
        """
        self.client = client
        self.dispatcher = dispatcher
        self.system_message = system_message
        self.stream = stream
        self.on_chunk = on_chunk
        self.max_tool_rounds = max_tool_rounds
        self.tools = tools if tools is not None else get_default_tools()
        self._messages: list[Message] = []
        self.clear()

    @property
    def messages(self) -> list[Message]:
        """会話履歴のコピー."""
        return list(self._messages)

    @property
    def model(self) -> str:
        """使用中のモデル."""
        return self.client.model

    @model.setter
    def model(self, value: str) -> None:
        logger.info("Model switched", old_model=self.client.model, new_model=value)
        self.client.model = value

    def clear(self) -> None:
        """会話履歴をシステムメッセージのみに戻す."""
        self._messages = []
        if self.system_message:
            self._messages.append(Message(role="system", content=self.system_message))

    async def _query(self, cancel_event: asyncio.Event | None) -> ChatResponse:
        if self.stream:
            return await self.client.query_stream(
                self._messages, self.tools, self.on_chunk, cancel_event
            )
        return await self.client.query(self._messages, self.tools, cancel_event)

    async def run_turn(
        self, user_input: str, cancel_event: asyncio.Event | None = None
    ) -> str:
        """
        ユーザー入力を1つ処理し、最終的な応答本文を返す.

        Args:
            user_input: ユーザーの入力
            cancel_event: キャンセルを通知するイベント

        Returns:
            アシスタントの最終応答

        Raises:
            MaxToolRoundsExceededError: ツール呼び出しのラウンド数が上限を超えた場合
            OperationCancelledError: キャンセルされた場合
            APIError: モデルAPIがエラーを返した場合
        """
        checkpoint = len(self._messages)
        self._messages.append(Message(role="user", content=user_input))
        try:
            return await self._run(cancel_event)
        except BaseException:
            del self._messages[checkpoint:]
            logger.info("Turn aborted, history rolled back", kept_messages=checkpoint)
            raise

    async def _run(self, cancel_event: asyncio.Event | None) -> str:
        rounds = 0
        while True:
            response = await self._query(cancel_event)
            tool_calls = response.tool_calls
            if not tool_calls:
                content = response.content
                self._messages.append(Message(role="assistant", content=content))
                if response.usage is not None:
                    logger.debug(
                        "Turn completed",
                        total_tokens=response.usage.total_tokens,
                        tool_rounds=rounds,
                    )
                return content

            rounds += 1
            if self.max_tool_rounds is not None and rounds > self.max_tool_rounds:
                raise MaxToolRoundsExceededError(self.max_tool_rounds)

            self._messages.append(
                Message(
                    role="assistant",
                    content=response.content or None,
                    tool_calls=tool_calls,
                )
            )
            for tool_call in tool_calls:
                result = await self.dispatcher.dispatch(tool_call)
                self._messages.append(
                    Message(role="tool", content=result, tool_call_id=tool_call.id)
                )

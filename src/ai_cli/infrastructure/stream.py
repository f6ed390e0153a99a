"""Server-sent event stream processing for chat completions."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import ValidationError

from ai_cli.application.models import (
    ChatResponse,
    Choice,
    FunctionCall,
    Message,
    ToolCall,
    Usage,
)
from ai_cli.infrastructure.errors import OperationCancelledError
from ai_cli.infrastructure.logging import get_logger

if TYPE_CHECKING:
    import asyncio
    from collections.abc import AsyncIterable, Callable

logger = get_logger(__name__)

DATA_PREFIX = "data: "
DONE_MARKER = "[DONE]"


class StreamProcessor:
    """
    SSE形式のストリーミング応答を1つの完全な応答に組み立てる.

    - 本文の差分は到着順に連結し、到着するたびに1回だけ on_chunk に渡す
    - ツール呼び出しの差分は index ごとにまとめ、引数は追記のみで組み立てる
    - 不正なJSONのイベントはログに残して読み飛ばす
    """

    def __init__(self) -> None:
        """Initialize StreamProcessor."""
        self._response_id = ""
        self._content: list[str] = []
        self._tool_calls: dict[int, ToolCall] = {}
        self._usage: Usage | None = None

    async def process(
        self,
        lines: AsyncIterable[str],
        on_chunk: Callable[[str], None] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ChatResponse:
        """
        ストリームを最後まで読み、組み立てた応答を返す.

        Args:
            lines: SSEの行（改行なし）の非同期イテレータ
            on_chunk: 本文の差分を受け取るコールバック
            cancel_event: セットされると読み込みを中断するイベント

        Returns:
            組み立てた応答

        Raises:
            OperationCancelledError: 読み込み中にキャンセルされた場合
        """
        async for line in lines:
            if cancel_event is not None and cancel_event.is_set():
                raise OperationCancelledError()

            line = line.strip()
            if not line.startswith(DATA_PREFIX):
                continue
            data = line[len(DATA_PREFIX) :]
            if data == DONE_MARKER:
                break
            self._handle_event(data, on_chunk)

        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledError()
        return self.build_response()

    def _handle_event(
        self, data: str, on_chunk: Callable[[str], None] | None
    ) -> None:
        try:
            chunk = ChatResponse.model_validate_json(data)
        except ValidationError:
            logger.warning("Skipping malformed stream event", data=data[:200])
            return

        if chunk.id:
            self._response_id = chunk.id
        if chunk.usage is not None and chunk.usage.total_tokens > 0:
            self._usage = chunk.usage

        if not chunk.choices or chunk.choices[0].delta is None:
            return
        delta = chunk.choices[0].delta

        if delta.content:
            self._content.append(delta.content)
            if on_chunk is not None:
                on_chunk(delta.content)

        for fragment in delta.tool_calls or []:
            self._merge_tool_call(fragment)

    def _merge_tool_call(self, fragment: ToolCall) -> None:
        index = fragment.index if fragment.index is not None else 0
        existing = self._tool_calls.get(index)
        if existing is None:
            self._tool_calls[index] = ToolCall(
                id=fragment.id,
                type=fragment.type or "function",
                index=index,
                function=FunctionCall(
                    name=fragment.function.name,
                    arguments=fragment.function.arguments,
                ),
            )
            return

        # 2回目以降は引数の追記のみ（id/name は最初の値を保持）
        existing.function.arguments += fragment.function.arguments
        if not existing.id and fragment.id:
            existing.id = fragment.id
        if not existing.function.name and fragment.function.name:
            existing.function.name = fragment.function.name

    def build_response(self) -> ChatResponse:
        """
        これまでに受け取った差分から応答を組み立てる.

        Returns:
            role=assistant の単一候補を持つ応答
        """
        tool_calls = [self._tool_calls[i] for i in sorted(self._tool_calls)]
        message = Message(
            role="assistant",
            content="".join(self._content),
            tool_calls=tool_calls or None,
        )
        return ChatResponse(
            id=self._response_id,
            choices=[
                Choice(
                    index=0,
                    message=message,
                    finish_reason="tool_calls" if tool_calls else "stop",
                )
            ],
            usage=self._usage,
        )

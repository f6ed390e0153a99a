"""Tests for the SSE stream processor."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Iterable

import pytest

from ai_cli.infrastructure.errors import OperationCancelledError
from ai_cli.infrastructure.stream import StreamProcessor


async def _lines(lines: Iterable[str]) -> AsyncIterator[str]:
    for line in lines:
        yield line


def _event(delta: dict[str, object], **extra: object) -> str:
    payload: dict[str, object] = {"id": "chatcmpl-1", "choices": [{"delta": delta}]}
    payload.update(extra)
    return "data: " + json.dumps(payload)


class TestContent:
    """本文の組み立てのテスト."""

    @pytest.mark.asyncio
    async def test_concatenates_content_in_order(self) -> None:
        """本文の差分が到着順に連結され、1回ずつコールバックされることを確認する."""
        chunks: list[str] = []
        lines = [
            _event({"role": "assistant", "content": "Hel"}),
            "",
            _event({"content": "lo"}),
            "data: [DONE]",
        ]

        response = await StreamProcessor().process(_lines(lines), chunks.append)

        assert chunks == ["Hel", "lo"]
        assert response.content == "Hello"
        assert response.id == "chatcmpl-1"
        assert response.choices[0].finish_reason == "stop"
        assert response.message is not None
        assert response.message.role == "assistant"

    @pytest.mark.asyncio
    async def test_ignores_non_data_lines_and_malformed_json(self) -> None:
        """data: 以外の行と不正なJSONが読み飛ばされることを確認する."""
        lines = [
            ": keep-alive",
            "event: message",
            "data: {not json",
            _event({"content": "ok"}),
        ]

        response = await StreamProcessor().process(_lines(lines))

        assert response.content == "ok"

    @pytest.mark.asyncio
    async def test_stops_at_done_marker(self) -> None:
        """[DONE] 以降のイベントが無視されることを確認する."""
        lines = [_event({"content": "a"}), "data: [DONE]", _event({"content": "b"})]

        response = await StreamProcessor().process(_lines(lines))

        assert response.content == "a"

    @pytest.mark.asyncio
    async def test_usage_is_kept(self) -> None:
        """使用量を含むチャンクが応答に反映されることを確認する."""
        usage = {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5}
        lines = [_event({"content": "x"}), _event({}, usage=usage)]

        response = await StreamProcessor().process(_lines(lines))

        assert response.usage is not None
        assert response.usage.total_tokens == 5


class TestToolCalls:
    """ツール呼び出しの組み立てのテスト."""

    @pytest.mark.asyncio
    async def test_merges_fragments_by_index(self) -> None:
        """引数の断片が index ごとに連結され、index 順に並ぶことを確認する."""
        lines = [
            _event(
                {
                    "tool_calls": [
                        {
                            "index": 1,
                            "id": "call_b",
                            "type": "function",
                            "function": {"name": "read_file", "arguments": ""},
                        }
                    ]
                }
            ),
            _event(
                {
                    "tool_calls": [
                        {
                            "index": 0,
                            "id": "call_a",
                            "type": "function",
                            "function": {"name": "execute_command", "arguments": '{"com'},
                        }
                    ]
                }
            ),
            _event(
                {
                    "tool_calls": [
                        {"index": 0, "id": None, "function": {"arguments": 'mand": "ls"}'}}
                    ]
                }
            ),
            _event(
                {"tool_calls": [{"index": 1, "function": {"arguments": '{"path": "a"}'}}]}
            ),
        ]

        response = await StreamProcessor().process(_lines(lines))

        calls = response.tool_calls
        assert [c.id for c in calls] == ["call_a", "call_b"]
        assert calls[0].function.name == "execute_command"
        assert json.loads(calls[0].function.arguments) == {"command": "ls"}
        assert json.loads(calls[1].function.arguments) == {"path": "a"}
        assert response.choices[0].finish_reason == "tool_calls"

    @pytest.mark.asyncio
    async def test_later_fragment_does_not_overwrite_name(self) -> None:
        """2回目以降の断片で関数名が上書きされないことを確認する."""
        lines = [
            _event(
                {
                    "tool_calls": [
                        {"index": 0, "id": "c1", "function": {"name": "list_directory"}}
                    ]
                }
            ),
            _event(
                {"tool_calls": [{"index": 0, "function": {"name": "other", "arguments": "{}"}}]}
            ),
        ]

        response = await StreamProcessor().process(_lines(lines))

        assert response.tool_calls[0].function.name == "list_directory"
        assert response.tool_calls[0].function.arguments == "{}"

    @pytest.mark.asyncio
    async def test_index_is_not_serialized(self) -> None:
        """組み立てたツール呼び出しの送信用dictに index が含まれないことを確認する."""
        lines = [
            _event(
                {"tool_calls": [{"index": 0, "id": "c1", "function": {"name": "f"}}]}
            )
        ]

        response = await StreamProcessor().process(_lines(lines))

        assert response.message is not None
        payload = response.message.to_payload()
        assert "index" not in payload["tool_calls"][0]


class TestCancellation:
    """キャンセルのテスト."""

    @pytest.mark.asyncio
    async def test_cancel_before_start(self) -> None:
        """開始前にキャンセル済みなら例外になることを確認する."""
        cancel = asyncio.Event()
        cancel.set()

        with pytest.raises(OperationCancelledError):
            await StreamProcessor().process(_lines([_event({"content": "x"})]), None, cancel)

    @pytest.mark.asyncio
    async def test_cancel_during_stream(self) -> None:
        """読み込み中にキャンセルされると以降の本文が届かないことを確認する."""
        cancel = asyncio.Event()
        chunks: list[str] = []

        def on_chunk(text: str) -> None:
            chunks.append(text)
            cancel.set()

        lines = [_event({"content": "first"}), _event({"content": "second"})]

        with pytest.raises(OperationCancelledError):
            await StreamProcessor().process(_lines(lines), on_chunk, cancel)
        assert chunks == ["first"]

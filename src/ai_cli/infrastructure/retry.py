"""Retry policies with exponential backoff and cancellation."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, TypeVar

from ai_cli.infrastructure.errors import (
    APIError,
    MaxRetriesExceededError,
    OperationCancelledError,
)
from ai_cli.infrastructure.logging import get_logger
from ai_cli.infrastructure.stream import StreamProcessor

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    import httpx

    from ai_cli.application.models import ChatResponse

logger = get_logger(__name__)

T = TypeVar("T")

BACKOFF_MULTIPLIER = 2.0

# Web検索（キーローテーション）用
SEARCH_MAX_ATTEMPTS = 5
SEARCH_INITIAL_BACKOFF = 0.1
SEARCH_MAX_BACKOFF = 2.0

# モデルAPI用
API_MAX_ATTEMPTS = 3
API_INITIAL_BACKOFF = 0.5
API_MAX_BACKOFF = 5.0

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
ROTATABLE_STATUS_CODES = frozenset({401, 403, 429})


def calculate_backoff(attempt: int, initial: float, maximum: float) -> float:
    """
    試行回数に応じた待機秒数を計算する.

    Args:
        attempt: 0始まりの試行回数
        initial: 初回の待機秒数
        maximum: 待機秒数の上限

    Returns:
        待機秒数
    """
    return min(initial * BACKOFF_MULTIPLIER**attempt, maximum)


def calculate_search_backoff(attempt: int) -> float:
    """Web検索のリトライ待機秒数."""
    return calculate_backoff(attempt, SEARCH_INITIAL_BACKOFF, SEARCH_MAX_BACKOFF)


def calculate_api_backoff(attempt: int) -> float:
    """モデルAPIのリトライ待機秒数."""
    return calculate_backoff(attempt, API_INITIAL_BACKOFF, API_MAX_BACKOFF)


def should_retry_api_call(error: BaseException) -> bool:
    """一時的なエラー（429, 5xx の一部）ならTrue."""
    return isinstance(error, APIError) and error.status_code in RETRYABLE_STATUS_CODES


def should_rotate_key(error: BaseException) -> bool:
    """キーを切り替えるべきエラー（401, 403, 429）ならTrue."""
    return isinstance(error, APIError) and error.status_code in ROTATABLE_STATUS_CODES


def ensure_not_cancelled(cancel_event: asyncio.Event | None) -> None:
    """
    キャンセル済みなら例外を送出する.

    Raises:
        OperationCancelledError: cancel_event がセットされている場合
    """
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelledError()


async def wait_backoff(delay: float, cancel_event: asyncio.Event | None) -> None:
    """
    指定秒数待機する. 待機中にキャンセルされたら即座に中断する.

    Args:
        delay: 待機秒数
        cancel_event: キャンセルを通知するイベント

    Raises:
        OperationCancelledError: 待機中にキャンセルされた場合
    """
    if cancel_event is None:
        await asyncio.sleep(delay)
        return
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return
    raise OperationCancelledError()


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    cancel_event: asyncio.Event | None = None,
) -> T:
    """
    一時的なAPIエラーに対して指数バックオフでリトライする.

    リトライ対象は RETRYABLE_STATUS_CODES の APIError のみ.
    それ以外の例外はそのまま送出する.

    Args:
        operation: 実行する非同期処理
        cancel_event: キャンセルを通知するイベント

    Returns:
        operation の戻り値

    Raises:
        MaxRetriesExceededError: 試行回数の上限に達した場合
        OperationCancelledError: キャンセルされた場合
    """
    last_error: APIError | None = None
    for attempt in range(API_MAX_ATTEMPTS):
        ensure_not_cancelled(cancel_event)
        try:
            return await operation()
        except APIError as e:
            if not should_retry_api_call(e):
                raise
            last_error = e

        if attempt < API_MAX_ATTEMPTS - 1:
            delay = calculate_api_backoff(attempt)
            logger.warning(
                "Transient API error, retrying",
                attempt=attempt + 1,
                status_code=last_error.status_code,
                delay=delay,
            )
            await wait_backoff(delay, cancel_event)

    raise MaxRetriesExceededError(API_MAX_ATTEMPTS) from last_error


async def with_stream_retry(
    open_stream: Callable[[], Awaitable[httpx.Response]],
    on_chunk: Callable[[str], None] | None = None,
    cancel_event: asyncio.Event | None = None,
) -> ChatResponse:
    """
    ストリーミング接続の確立のみをリトライし、確立後は最後まで読み込む.

    本文の受信が始まった後は、部分的に届いた応答を再送できないためリトライしない.

    Args:
        open_stream: ステータス確認済みのストリーミングレスポンスを返す処理
        on_chunk: 本文の差分を受け取るコールバック
        cancel_event: キャンセルを通知するイベント

    Returns:
        組み立てた応答

    Raises:
        MaxRetriesExceededError: 接続の試行回数の上限に達した場合
        OperationCancelledError: キャンセルされた場合
    """
    response = await with_retry(open_stream, cancel_event)
    try:
        return await StreamProcessor().process(
            response.aiter_lines(), on_chunk, cancel_event
        )
    finally:
        await response.aclose()

"""Web search backends with multi-key rotation."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, TypeVar

import httpx
from pydantic import BaseModel, Field, ValidationError

from ai_cli.infrastructure.errors import (
    APIError,
    ConfigurationError,
    KeysExhaustedError,
    MaxRetriesExceededError,
)
from ai_cli.infrastructure.logging import get_logger
from ai_cli.infrastructure.retry import (
    SEARCH_MAX_ATTEMPTS,
    calculate_search_backoff,
    ensure_not_cancelled,
    should_rotate_key,
    wait_backoff,
)

if TYPE_CHECKING:
    import asyncio
    from collections.abc import Callable, Sequence

    from ai_cli.infrastructure.config import Config

logger = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)

DEFAULT_SEARCH_TIMEOUT = 30.0
MAX_RESULTS = 5

TAVILY_API_URL = "https://api.tavily.com/search"
LINKUP_API_URL = "https://api.linkup.so/v1/search"
BRAVE_API_URL = "https://api.search.brave.com/res/v1/web/search"

class SearchResult(BaseModel):
    """検索結果1件."""

    title: str = ""
    url: str = ""
    content: str = ""


class SearchResponse(BaseModel):
    """検索結果の一覧（プロバイダー共通形式）."""

    results: list[SearchResult] = Field(default_factory=list)


class SearchClient(Protocol):
    """Web検索クライアントのインターフェース."""

    provider: str

    async def search(
        self, query: str, cancel_event: asyncio.Event | None = None
    ) -> SearchResponse:
        """検索を実行する."""
        ...

    async def close(self) -> None:
        """保持しているリソースを解放する."""
        ...


class KeyRotator:
    """複数のAPIキーを順番に切り替える."""

    def __init__(self, keys: Sequence[str]) -> None:
        """
        Initialize KeyRotator.

        Args:
            keys: APIキーの一覧（空要素は除外される）
        """
        self._keys = [k.strip() for k in keys if k.strip()]
        self._index = 0

    @property
    def count(self) -> int:
        """キーの数."""
        return len(self._keys)

    @property
    def current_index(self) -> int:
        """現在のキーの位置（0始まり）."""
        return self._index

    @property
    def current_key(self) -> str:
        """現在のキー（キーがなければ空文字）."""
        return self._keys[self._index] if self._keys else ""

    def rotate(self) -> str:
        """
        次のキーに切り替える.

        Returns:
            切り替え後のキー

        Raises:
            KeysExhaustedError: 次のキーがない場合
        """
        if self._index + 1 >= len(self._keys):
            raise KeysExhaustedError()
        self._index += 1
        return self._keys[self._index]

    def reset(self) -> None:
        """最初のキーに戻す."""
        self._index = 0


class BaseSearchClient:
    """キーローテーション付きの検索クライアントの共通部分."""

    provider = ""

    def __init__(
        self,
        keys: Sequence[str],
        http_client: httpx.AsyncClient | None = None,
        on_key_rotation: Callable[[int, int, int], None] | None = None,
    ) -> None:
        """
        Initialize BaseSearchClient.

        Args:
            keys: APIキーの一覧
            http_client: 使用するHTTPクライアント
            on_key_rotation: キー切り替え時に (切替前, 切替後, 総数) を1始まりで受け取る
        """
        self.keys = KeyRotator(keys)
        self.on_key_rotation = on_key_rotation
        self._http = http_client or httpx.AsyncClient(timeout=DEFAULT_SEARCH_TIMEOUT)

    def rotate_key(self) -> None:
        """
        次のキーに切り替え、コールバックに通知する.

        Raises:
            KeysExhaustedError: 次のキーがない場合
        """
        old_index = self.keys.current_index
        self.keys.rotate()
        logger.info(
            "Rotated search API key",
            provider=self.provider,
            from_key=old_index + 1,
            to_key=self.keys.current_index + 1,
        )
        if self.on_key_rotation is not None:
            self.on_key_rotation(
                old_index + 1, self.keys.current_index + 1, self.keys.count
            )

    async def search(
        self, query: str, cancel_event: asyncio.Event | None = None
    ) -> SearchResponse:
        """
        検索を実行する（認証・レート制限エラーではキーを切り替えて再試行）.

        Args:
            query: 検索クエリ
            cancel_event: キャンセルを通知するイベント

        Returns:
            検索結果

        Raises:
            APIError: 切り替え対象外のエラー
            KeysExhaustedError: 切り替え可能なキーが残っていない場合
            OperationCancelledError: キャンセルされた場合
        """
        if not self.keys.count:
            raise ConfigurationError(f"No {self.provider} API keys configured")
        return await search_with_retry(self, query, cancel_event)

    async def do_search(self, query: str) -> SearchResponse:
        """現在のキーで1回だけ検索する."""
        raise NotImplementedError

    def _check_status(self, response: httpx.Response) -> None:
        if response.status_code != 200:
            raise APIError(
                response.status_code,
                f"{self.provider} API error: status code {response.status_code}",
            )

    async def close(self) -> None:
        """HTTPクライアントを閉じる."""
        await self._http.aclose()


async def search_with_retry(
    client: BaseSearchClient,
    query: str,
    cancel_event: asyncio.Event | None = None,
) -> SearchResponse:
    """
    キーを切り替えながら検索を再試行する.

    キーが1つ以下なら再試行しない. 401/403/429 のエラーでは次のキーに切り替え、
    キーが尽きたら KeysExhaustedError を送出する.

    Args:
        client: 検索クライアント
        query: 検索クエリ
        cancel_event: キャンセルを通知するイベント

    Returns:
        検索結果

    Raises:
        APIError: 切り替え対象外のエラー
        KeysExhaustedError: 切り替え可能なキーが残っていない場合
        MaxRetriesExceededError: 試行回数の上限に達した場合
        OperationCancelledError: キャンセルされた場合
    """
    ensure_not_cancelled(cancel_event)
    if client.keys.count <= 1:
        return await client.do_search(query)

    last_error: APIError | None = None
    for attempt in range(SEARCH_MAX_ATTEMPTS):
        ensure_not_cancelled(cancel_event)
        try:
            return await client.do_search(query)
        except APIError as e:
            if not should_rotate_key(e):
                raise
            last_error = e

        try:
            client.rotate_key()
        except KeysExhaustedError:
            raise KeysExhaustedError(
                f"{last_error} (no more {client.provider} API keys available)"
            ) from last_error

        if attempt < SEARCH_MAX_ATTEMPTS - 1:
            await wait_backoff(calculate_search_backoff(attempt), cancel_event)

    raise MaxRetriesExceededError(SEARCH_MAX_ATTEMPTS) from last_error


class _TavilyResponse(BaseModel):
    results: list[SearchResult] = Field(default_factory=list)


class TavilyClient(BaseSearchClient):
    """Tavily Search API クライアント."""

    provider = "Tavily"

    async def do_search(self, query: str) -> SearchResponse:
        """現在のキーで1回だけ検索する."""
        response = await self._http.post(
            TAVILY_API_URL,
            json={"query": query, "max_results": MAX_RESULTS},
            headers={"Authorization": f"Bearer {self.keys.current_key}"},
        )
        self._check_status(response)
        parsed = _parse(_TavilyResponse, response, self.provider)
        return SearchResponse(results=parsed.results)


class _LinkupResult(BaseModel):
    name: str = ""
    url: str = ""
    content: str = ""


class _LinkupResponse(BaseModel):
    results: list[_LinkupResult] = Field(default_factory=list)


class LinkupClient(BaseSearchClient):
    """Linkup Search API クライアント."""

    provider = "Linkup"

    async def do_search(self, query: str) -> SearchResponse:
        """現在のキーで1回だけ検索する."""
        response = await self._http.post(
            LINKUP_API_URL,
            json={"q": query, "depth": "standard", "outputType": "searchResults"},
            headers={"Authorization": f"Bearer {self.keys.current_key}"},
        )
        self._check_status(response)
        parsed = _parse(_LinkupResponse, response, self.provider)
        return SearchResponse(
            results=[
                SearchResult(title=r.name, url=r.url, content=r.content)
                for r in parsed.results[:MAX_RESULTS]
            ]
        )


class _BraveResult(BaseModel):
    title: str = ""
    url: str = ""
    description: str = ""


class _BraveWeb(BaseModel):
    results: list[_BraveResult] = Field(default_factory=list)


class _BraveResponse(BaseModel):
    web: _BraveWeb = Field(default_factory=_BraveWeb)


class BraveClient(BaseSearchClient):
    """Brave Search API クライアント."""

    provider = "Brave"

    async def do_search(self, query: str) -> SearchResponse:
        """現在のキーで1回だけ検索する."""
        response = await self._http.get(
            BRAVE_API_URL,
            params={"q": query, "count": str(MAX_RESULTS)},
            headers={
                "Accept": "application/json",
                "X-Subscription-Token": self.keys.current_key,
            },
        )
        self._check_status(response)
        parsed = _parse(_BraveResponse, response, self.provider)
        return SearchResponse(
            results=[
                SearchResult(title=r.title, url=r.url, content=r.description)
                for r in parsed.web.results
            ]
        )


def _parse(model: type[M], response: httpx.Response, provider: str) -> M:
    try:
        return model.model_validate_json(response.content)
    except ValidationError as e:
        raise APIError(
            response.status_code, f"{provider} returned malformed JSON"
        ) from e


_CLIENTS: dict[str, type[BaseSearchClient]] = {
    "tavily": TavilyClient,
    "linkup": LinkupClient,
    "brave": BraveClient,
}


def new_search_client(
    config: Config,
    on_key_rotation: Callable[[int, int, int], None] | None = None,
) -> BaseSearchClient:
    """
    設定に応じた検索クライアントを作成する.

    Args:
        config: アプリケーション設定
        on_key_rotation: キー切り替え時のコールバック

    Returns:
        検索クライアント

    Raises:
        ConfigurationError: プロバイダーが不正、またはキーが未設定の場合
    """
    provider = config.resolve_search_provider()
    keys = config.search_keys(provider)
    if not keys:
        raise ConfigurationError(
            f"No API keys configured for {provider} "
            f"(set {provider.upper()}_API_KEYS)"
        )
    return _CLIENTS[provider](keys, on_key_rotation=on_key_rotation)


def format_results_as_context(results: Sequence[SearchResult]) -> str:
    """
    検索結果をモデルに渡すコンテキスト文字列に整形する.

    Args:
        results: 検索結果

    Returns:
        ``[番号] タイトル / URL / 本文`` 形式の文字列（結果がなければ空文字）
    """
    return "".join(
        f"[{i}] {r.title}\nURL: {r.url}\n{r.content}\n\n"
        for i, r in enumerate(results, start=1)
    )

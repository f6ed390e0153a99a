"""Chat completion clients for the supported model providers."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Protocol

import httpx
from pydantic import ValidationError

from ai_cli.application.models import ChatRequest, ChatResponse
from ai_cli.infrastructure.auth import (
    REAUTH_HINT,
    TokenManager,
    build_copilot_headers,
    get_copilot_base_url,
    load_github_token,
)
from ai_cli.infrastructure.errors import APIError, ConfigurationError
from ai_cli.infrastructure.logging import get_logger
from ai_cli.infrastructure.retry import with_retry, with_stream_retry

if TYPE_CHECKING:
    import asyncio
    from collections.abc import Callable, Sequence

    from ai_cli.application.models import Message, Tool
    from ai_cli.infrastructure.config import Config

logger = get_logger(__name__)

DEFAULT_API_TIMEOUT = 120.0


class AIClient(Protocol):
    """モデルプロバイダーのクライアントが満たすべきインターフェース."""

    model: str

    async def query(
        self,
        messages: Sequence[Message],
        tools: Sequence[Tool] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ChatResponse:
        """非ストリーミングで問い合わせる."""
        ...

    async def query_stream(
        self,
        messages: Sequence[Message],
        tools: Sequence[Tool] | None = None,
        on_chunk: Callable[[str], None] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ChatResponse:
        """ストリーミングで問い合わせ、組み立て済みの応答を返す."""
        ...

    async def close(self) -> None:
        """保持しているリソースを解放する."""
        ...


def extract_error_message(body: str) -> str:
    """``{"error": {"message": ...}}`` 形式のエラー本文からメッセージを取り出す."""
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        return ""
    if isinstance(data, dict) and isinstance(data.get("error"), dict):
        message = data["error"].get("message")
        if isinstance(message, str):
            return message
    return ""


class _ChatCompletionsClient:
    """Chat Completions 互換エンドポイントへのリクエスト処理の共通部分."""

    provider = ""

    def __init__(
        self,
        model: str,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_API_TIMEOUT,
    ) -> None:
        self.model = model
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    @property
    def url(self) -> str:
        raise NotImplementedError

    async def _headers(self, messages: Sequence[Message]) -> dict[str, str]:
        raise NotImplementedError

    def _error(self, status_code: int, body: str) -> APIError:
        message = extract_error_message(body) or f"status code {status_code}"
        return APIError(status_code, f"{self.provider} API error: {message}")

    def _payload(
        self, messages: Sequence[Message], tools: Sequence[Tool] | None, stream: bool
    ) -> dict[str, object]:
        request = ChatRequest(
            model=self.model,
            messages=list(messages),
            tools=list(tools) if tools else None,
            stream=stream,
        )
        return request.to_payload()

    async def query(
        self,
        messages: Sequence[Message],
        tools: Sequence[Tool] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ChatResponse:
        """
        非ストリーミングで問い合わせる（一時的なエラーはリトライ）.

        Args:
            messages: 会話全体
            tools: モデルに提示するツール
            cancel_event: キャンセルを通知するイベント

        Returns:
            応答

        Raises:
            APIError: リトライ対象外のエラー応答
            MaxRetriesExceededError: リトライ上限に達した場合
            OperationCancelledError: キャンセルされた場合
        """
        payload = self._payload(messages, tools, stream=False)

        async def send() -> ChatResponse:
            headers = await self._headers(messages)
            response = await self._http.post(self.url, json=payload, headers=headers)
            if response.status_code != 200:
                raise self._error(response.status_code, response.text)
            try:
                return ChatResponse.model_validate_json(response.content)
            except ValidationError as e:
                raise APIError(response.status_code, "malformed response body") from e

        logger.debug("Sending chat request", provider=self.provider, model=self.model)
        return await with_retry(send, cancel_event)

    async def query_stream(
        self,
        messages: Sequence[Message],
        tools: Sequence[Tool] | None = None,
        on_chunk: Callable[[str], None] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ChatResponse:
        """
        ストリーミングで問い合わせる（接続確立のみリトライ）.

        Args:
            messages: 会話全体
            tools: モデルに提示するツール
            on_chunk: 本文の差分を受け取るコールバック
            cancel_event: キャンセルを通知するイベント

        Returns:
            組み立て済みの応答

        Raises:
            APIError: リトライ対象外のエラー応答
            MaxRetriesExceededError: リトライ上限に達した場合
            OperationCancelledError: キャンセルされた場合
        """
        payload = self._payload(messages, tools, stream=True)

        async def open_stream() -> httpx.Response:
            headers = await self._headers(messages)
            headers["Accept"] = "text/event-stream"
            request = self._http.build_request(
                "POST", self.url, json=payload, headers=headers
            )
            response = await self._http.send(request, stream=True)
            if response.status_code != 200:
                body = await response.aread()
                await response.aclose()
                raise self._error(
                    response.status_code, body.decode("utf-8", errors="replace")
                )
            return response

        logger.debug(
            "Sending streaming chat request", provider=self.provider, model=self.model
        )
        return await with_stream_retry(open_stream, on_chunk, cancel_event)

    async def close(self) -> None:
        """HTTPクライアントを閉じる."""
        await self._http.aclose()


class CopilotClient(_ChatCompletionsClient):
    """GitHub Copilot Chat API クライアント."""

    provider = "Copilot"

    def __init__(
        self,
        model: str,
        token_manager: TokenManager,
        account_type: str = "individual",
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_API_TIMEOUT,
    ) -> None:
        """
        Initialize CopilotClient.

        Args:
            model: 使用するモデル
            token_manager: Copilotトークンの管理（close() で停止される）
            account_type: Copilotのアカウント種別
            http_client: 使用するHTTPクライアント
            timeout: リクエストのタイムアウト秒数
        """
        super().__init__(model, http_client, timeout)
        self._tokens = token_manager
        self._base_url = get_copilot_base_url(account_type)

    @property
    def url(self) -> str:
        return f"{self._base_url}/chat/completions"

    async def _headers(self, messages: Sequence[Message]) -> dict[str, str]:
        token = await self._tokens.get_token()
        return build_copilot_headers(token, messages)

    def _error(self, status_code: int, body: str) -> APIError:
        if status_code == 401:
            return APIError(
                status_code, f"Copilot token expired or invalid, {REAUTH_HINT}"
            )
        if status_code == 403:
            return APIError(
                status_code,
                "Access denied. Make sure you have an active GitHub Copilot "
                "subscription",
            )
        return super()._error(status_code, body)

    async def close(self) -> None:
        """トークン更新タスクを止めてからHTTPクライアントを閉じる."""
        await self._tokens.stop()
        await super().close()


class AzureClient(_ChatCompletionsClient):
    """Azure OpenAI（v1互換エンドポイント）クライアント."""

    provider = "Azure"

    def __init__(
        self,
        model: str,
        endpoint: str,
        api_key: str,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_API_TIMEOUT,
    ) -> None:
        """
        Initialize AzureClient.

        Args:
            model: 使用するモデル（デプロイ名）
            endpoint: Azure OpenAI エンドポイント
            api_key: APIキー
            http_client: 使用するHTTPクライアント
            timeout: リクエストのタイムアウト秒数
        """
        super().__init__(model, http_client, timeout)
        self._endpoint = endpoint.rstrip("/")
        self._api_key = api_key

    @property
    def url(self) -> str:
        return f"{self._endpoint}/openai/v1/chat/completions"

    async def _headers(self, messages: Sequence[Message]) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key}"}


def new_client(config: Config) -> AIClient:
    """
    設定に応じたクライアントを作成する.

    Copilotの場合はトークンのバックグラウンド更新も開始する
    （実行中のイベントループ内で呼び出すこと）.

    Args:
        config: アプリケーション設定

    Returns:
        AIクライアント

    Raises:
        ConfigurationError: プロバイダーの設定が不正な場合
        CredentialError: GitHubトークンが読み込めない場合
    """
    provider = config.resolve_provider()
    model = config.resolve_model()

    if provider == "azure":
        logger.info("Using Azure OpenAI provider", model=model)
        return AzureClient(
            model,
            config.azure_openai_endpoint,
            config.azure_openai_api_key,
            timeout=config.api_timeout,
        )

    if provider == "copilot":
        token_manager = TokenManager(load_github_token(config.github_token_path))
        token_manager.start()
        logger.info(
            "Using GitHub Copilot provider",
            model=model,
            account_type=config.copilot_account_type,
        )
        return CopilotClient(
            model,
            token_manager,
            account_type=config.copilot_account_type,
            timeout=config.api_timeout,
        )

    raise ConfigurationError(f"Unknown AI provider: {provider}")

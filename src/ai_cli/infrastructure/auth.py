"""GitHub Copilot credential exchange and background refresh."""

from __future__ import annotations

import asyncio
import time
import uuid
from typing import TYPE_CHECKING

import httpx
from pydantic import BaseModel, ValidationError

from ai_cli.infrastructure.errors import APIError, CredentialError
from ai_cli.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence
    from pathlib import Path

    from ai_cli.application.models import Message

logger = get_logger(__name__)

COPILOT_TOKEN_URL = "https://api.github.com/copilot_internal/v2/token"
COPILOT_VERSION = "0.26.7"
EDITOR_PLUGIN_VERSION = f"copilot-chat/{COPILOT_VERSION}"
USER_AGENT = f"GitHubCopilotChat/{COPILOT_VERSION}"
GITHUB_API_VERSION = "2025-04-01"
VSCODE_VERSION = "1.96.0"

# 有効期限の何秒前に更新するか
REFRESH_MARGIN = 60.0
# バックグラウンド更新が失敗した場合の再試行間隔
REFRESH_RETRY_DELAY = 30.0
TOKEN_REQUEST_TIMEOUT = 30.0

REAUTH_HINT = "please re-authenticate"


class CopilotToken(BaseModel):
    """トークン発行エンドポイントの応答."""

    token: str
    expires_at: int
    refresh_in: int = 0


def load_github_token(path: Path) -> str:
    """
    保存済みのGitHubトークンを読み込む.

    Args:
        path: トークンファイルのパス

    Returns:
        GitHubトークン

    Raises:
        CredentialError: ファイルが存在しない、読めない、または空の場合
    """
    path = path.expanduser()
    try:
        token = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError as e:
        raise CredentialError(
            f"Not logged in: no GitHub token at {path}, {REAUTH_HINT}"
        ) from e
    except OSError as e:
        raise CredentialError(f"Failed to read GitHub token: {e}") from e
    if not token:
        raise CredentialError(f"GitHub token file {path} is empty, {REAUTH_HINT}")
    return token


def get_copilot_base_url(account_type: str) -> str:
    """アカウント種別に応じたCopilot APIのベースURLを返す."""
    if account_type in ("", "individual"):
        return "https://api.githubcopilot.com"
    return f"https://api.{account_type}.githubcopilot.com"


def build_copilot_headers(token: str, messages: Sequence[Message]) -> dict[str, str]:
    """
    Copilot Chat API 呼び出し用のヘッダーを組み立てる.

    会話にアシスタントやツールのメッセージが含まれていれば、
    エージェントによる呼び出しとして X-Initiator: agent を付ける.

    Args:
        token: Copilotトークン
        messages: 送信する会話

    Returns:
        HTTPヘッダー
    """
    from_agent = any(m.role in ("assistant", "tool") for m in messages)
    return {
        "Authorization": f"Bearer {token}",
        "Copilot-Integration-Id": "vscode-chat",
        "Editor-Version": f"vscode/{VSCODE_VERSION}",
        "Editor-Plugin-Version": EDITOR_PLUGIN_VERSION,
        "User-Agent": USER_AGENT,
        "Openai-Intent": "conversation-panel",
        "X-GitHub-Api-Version": GITHUB_API_VERSION,
        "X-Initiator": "agent" if from_agent else "user",
        "X-Request-Id": str(uuid.uuid4()),
    }


class TokenManager:
    """
    短命なCopilotトークンを保持し、期限切れ前に更新する.

    - get_token(): 期限の60秒前までならキャッシュを返し、過ぎていればその場で更新する
    - start()/stop(): 期限前に更新し続けるバックグラウンドタスクを起動・停止する

    更新はロック内で有効性を再確認してから行うため、
    フォアグラウンドとバックグラウンドが同時に更新しても二重には取得しない.
    """

    def __init__(
        self,
        github_token: str,
        http_client: httpx.AsyncClient | None = None,
        token_url: str = COPILOT_TOKEN_URL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize TokenManager.

        Args:
            github_token: 長期間有効なGitHubトークン
            http_client: 使用するHTTPクライアント（Noneなら内部で作成し、stop()で閉じる）
            token_url: トークン発行エンドポイント
            clock: 現在時刻（エポック秒）を返す関数
        """
        self._github_token = github_token
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=TOKEN_REQUEST_TIMEOUT)
        self._token_url = token_url
        self._clock = clock
        self._token = ""
        self._expires_at = 0.0
        self._lock = asyncio.Lock()
        self._refresh_task: asyncio.Task[None] | None = None

    @property
    def expires_at(self) -> float:
        """現在のトークンの有効期限（エポック秒、未取得なら0）."""
        return self._expires_at

    def _is_fresh(self) -> bool:
        return bool(self._token) and self._clock() + REFRESH_MARGIN < self._expires_at

    async def get_token(self) -> str:
        """
        有効なCopilotトークンを返す.

        Returns:
            Copilotトークン

        Raises:
            CredentialError: GitHubトークンが無効、またはCopilotへのアクセスが拒否された場合
            APIError: トークン発行エンドポイントがその他のエラーを返した場合
        """
        if self._is_fresh():
            return self._token
        return await self._refresh()

    async def _refresh(self) -> str:
        async with self._lock:
            # 待っている間に別の呼び出し元が更新済みの場合
            if self._is_fresh():
                return self._token

            response = await self._http.get(
                self._token_url,
                headers={
                    "Authorization": f"token {self._github_token}",
                    "Accept": "application/json",
                    "Editor-Version": f"vscode/{VSCODE_VERSION}",
                    "Editor-Plugin-Version": EDITOR_PLUGIN_VERSION,
                    "User-Agent": USER_AGENT,
                    "X-GitHub-Api-Version": GITHUB_API_VERSION,
                },
            )
            if response.status_code == 401:
                raise CredentialError(
                    f"GitHub token is invalid or expired, {REAUTH_HINT}"
                )
            if response.status_code == 403:
                raise CredentialError(
                    "GitHub Copilot access denied. "
                    "Make sure you have an active Copilot subscription"
                )
            if response.status_code != 200:
                raise APIError(response.status_code, response.text[:500])

            try:
                issued = CopilotToken.model_validate_json(response.content)
            except ValidationError as e:
                raise APIError(
                    response.status_code, "malformed token response"
                ) from e

            self._token = issued.token
            self._expires_at = float(issued.expires_at)
            logger.info(
                "Copilot token refreshed",
                expires_in=round(self._expires_at - self._clock()),
            )
            return self._token

    def start(self) -> None:
        """バックグラウンド更新タスクを起動する（起動済みなら何もしない）."""
        if self._refresh_task is not None and not self._refresh_task.done():
            return
        self._refresh_task = asyncio.create_task(self._refresh_loop())
        logger.debug("Token refresh task started")

    async def stop(self) -> None:
        """バックグラウンド更新タスクを停止し、保持しているHTTPクライアントを閉じる."""
        task, self._refresh_task = self._refresh_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._owns_client:
            await self._http.aclose()
        logger.debug("Token refresh task stopped")

    def _seconds_until_refresh(self) -> float:
        if not self._token:
            return 0.0
        return max(self._expires_at - REFRESH_MARGIN - self._clock(), 0.0)

    async def _refresh_loop(self) -> None:
        """期限の60秒前になるたびにトークンを更新するループ."""
        try:
            while True:
                await asyncio.sleep(self._seconds_until_refresh())
                try:
                    await self._refresh()
                except Exception:
                    logger.warning("Background token refresh failed", exc_info=True)
                    await asyncio.sleep(REFRESH_RETRY_DELAY)
                    continue
                # 発行直後から期限が迫っているトークンで連続取得しない
                if self._seconds_until_refresh() == 0.0:
                    await asyncio.sleep(REFRESH_RETRY_DELAY)
        except asyncio.CancelledError:
            logger.debug("Token refresh loop cancelled")
            raise

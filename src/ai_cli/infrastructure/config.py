"""Configuration management."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from ai_cli.infrastructure.errors import ConfigurationError

DEFAULT_COPILOT_MODELS = [
    "gpt-5-mini",
    "gpt-4.1",
    "gpt-5.1",
    "gpt-5.1-codex",
    "gpt-5.1-codex-mini",
    "gpt-5.2",
    "grok-code-fast-1",
    "claude-sonnet-4.5",
    "claude-opus-4.5",
    "claude-haiku-4.5",
    "gemini-2.5-pro",
    "gemini-3-pro-preview",
]

SEARCH_PROVIDERS = ("tavily", "linkup", "brave")

_DATA_DIR = Path.home() / ".local" / "share" / "ai-cli"

CommaList = Annotated[list[str], NoDecode]


class Config(BaseSettings):
    """アプリケーション設定."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # AIプロバイダー設定
    ai_provider: str = Field(
        default="",
        description="AIプロバイダー（copilot / azure、空の場合は自動判定）",
    )
    ai_model: str = Field(
        default="",
        description="使用するモデル（空の場合は利用可能な最初のモデル）",
    )
    system_message: str = Field(
        default="Be precise and concise.",
        description="会話の先頭に置くシステムメッセージ",
    )
    stream: bool = Field(
        default=True,
        description="ストリーミングモードで応答を受け取るか",
    )
    max_tool_rounds: int | None = Field(
        default=None,
        ge=1,
        description="1ターン内のツール呼び出しラウンド上限（未指定なら無制限）",
    )
    api_timeout: float = Field(
        default=120.0,
        description="モデルAPI呼び出しのタイムアウト秒数",
    )
    command_timeout: float = Field(
        default=30.0,
        description="シェルコマンド実行のタイムアウト秒数",
    )

    # Azure OpenAI設定
    azure_openai_endpoint: str = Field(
        default="",
        description="Azure OpenAI エンドポイントURL",
    )
    azure_openai_api_key: str = Field(
        default="",
        description="Azure OpenAI APIキー",
    )
    azure_openai_models: CommaList = Field(
        default_factory=list,
        description="Azureで利用可能なモデル（カンマ区切り）",
    )

    # GitHub Copilot設定
    copilot_account_type: str = Field(
        default="individual",
        description="Copilotのアカウント種別（individual / business / enterprise）",
    )
    copilot_models: CommaList = Field(
        default_factory=lambda: list(DEFAULT_COPILOT_MODELS),
        description="Copilotで利用可能なモデル（カンマ区切り）",
    )
    github_token_path: Path = Field(
        default=_DATA_DIR / "github-token",
        description="GitHubトークンを保存したファイルのパス",
    )

    # Web検索設定
    web_search_provider: str = Field(
        default="",
        description="Web検索プロバイダー（tavily / linkup / brave、空の場合は自動判定）",
    )
    tavily_api_keys: CommaList = Field(default_factory=list)
    linkup_api_keys: CommaList = Field(default_factory=list)
    brave_api_keys: CommaList = Field(default_factory=list)

    # ログ設定
    log_level: str = Field(default="INFO", description="ログレベル")
    log_dir: str = Field(
        default="~/.local/state/ai-cli/logs",
        description="ログ出力ディレクトリ",
    )
    log_backup_count: int = Field(default=7, description="ログの保持日数")

    @field_validator(
        "azure_openai_models",
        "copilot_models",
        "tavily_api_keys",
        "linkup_api_keys",
        "brave_api_keys",
        mode="before",
    )
    @classmethod
    def parse_comma_list(cls, v: str | list[str]) -> list[str]:
        """カンマ区切りの文字列をリストに変換する（空要素は除外）."""
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @field_validator("azure_openai_endpoint", mode="before")
    @classmethod
    def strip_endpoint(cls, v: str) -> str:
        """エンドポイント末尾のスラッシュを取り除く."""
        return v.strip().rstrip("/") if isinstance(v, str) else v

    @field_validator("copilot_models", mode="after")
    @classmethod
    def default_copilot_models(cls, v: list[str]) -> list[str]:
        """空のモデル一覧はデフォルトに置き換える."""
        return v or list(DEFAULT_COPILOT_MODELS)

    @property
    def azure_configured(self) -> bool:
        """Azure OpenAI の接続情報が揃っているか."""
        return bool(self.azure_openai_endpoint and self.azure_openai_api_key)

    def resolve_provider(self) -> str:
        """
        使用するAIプロバイダーを決定する.

        明示指定がなければ、GitHubトークンがあれば copilot、
        Azureの接続情報があれば azure、どちらもなければ copilot を選ぶ.

        Returns:
            "copilot" または "azure"

        Raises:
            ConfigurationError: 未知のプロバイダー、またはAzureの設定不足
        """
        provider = self.ai_provider.strip().lower()
        if provider in ("copilot", "github"):
            return "copilot"
        if provider == "azure":
            if not self.azure_configured:
                raise ConfigurationError(
                    "AZURE_OPENAI_ENDPOINT and AZURE_OPENAI_API_KEY must be set "
                    "for the azure provider"
                )
            return "azure"
        if provider:
            raise ConfigurationError(f"Unknown AI provider: {self.ai_provider}")

        if self.github_token_path.expanduser().exists():
            return "copilot"
        if self.azure_configured:
            return "azure"
        return "copilot"

    def available_models(self) -> list[str]:
        """
        選択中のプロバイダーで利用可能なモデル一覧を返す.

        Returns:
            モデル名のリスト
        """
        if self.resolve_provider() == "azure":
            return list(self.azure_openai_models)
        return list(self.copilot_models)

    def resolve_model(self) -> str:
        """
        使用するモデルを決定する（未指定なら利用可能な最初のモデル）.

        Returns:
            モデル名
        """
        if self.ai_model:
            return self.ai_model
        models = self.available_models()
        return models[0] if models else "gpt-5-mini"

    def search_keys(self, provider: str) -> list[str]:
        """
        指定した検索プロバイダーのAPIキー一覧を返す.

        Args:
            provider: tavily / linkup / brave

        Returns:
            APIキーのリスト
        """
        keys = {
            "tavily": self.tavily_api_keys,
            "linkup": self.linkup_api_keys,
            "brave": self.brave_api_keys,
        }
        return list(keys.get(provider, []))

    def resolve_search_provider(self) -> str:
        """
        使用するWeb検索プロバイダーを決定する.

        明示指定がなければ、キーが設定されている最初のプロバイダー
        （tavily → linkup → brave）を選び、どれもなければ tavily.

        Returns:
            プロバイダー名

        Raises:
            ConfigurationError: 未知のプロバイダーが指定された場合
        """
        provider = self.web_search_provider.strip().lower()
        if provider:
            if provider not in SEARCH_PROVIDERS:
                raise ConfigurationError(
                    f"Invalid web search provider: {self.web_search_provider}"
                )
            return provider
        for candidate in SEARCH_PROVIDERS:
            if self.search_keys(candidate):
                return candidate
        return "tavily"


# グローバル設定インスタンス（シングルトン）
_config: Config | None = None


def get_config() -> Config:
    """
    グローバル設定インスタンスを取得する.

    Returns:
        設定インスタンス
    """
    global _config
    if _config is None:
        _config = Config()
    return _config

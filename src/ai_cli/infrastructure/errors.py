"""Exception types shared across layers."""

from __future__ import annotations


class AICliError(Exception):
    """ai-cli の例外の基底クラス."""


class APIError(AICliError):
    """HTTP API がエラーステータスを返した場合の例外."""

    def __init__(self, status_code: int, message: str) -> None:
        """
        Initialize APIError.

        Args:
            status_code: HTTPステータスコード
            message: レスポンスから取り出したエラーメッセージ
        """
        super().__init__(f"API error (status {status_code}): {message}")
        self.status_code = status_code
        self.message = message


class OperationCancelledError(AICliError):
    """ユーザー操作などにより処理がキャンセルされた場合の例外."""

    def __init__(self) -> None:
        """Initialize OperationCancelledError."""
        super().__init__("operation cancelled")


class MaxRetriesExceededError(AICliError):
    """リトライ回数の上限に達した場合の例外."""

    def __init__(self, attempts: int) -> None:
        """
        Initialize MaxRetriesExceededError.

        Args:
            attempts: 実行した試行回数
        """
        super().__init__(f"max retry attempts ({attempts}) exceeded")
        self.attempts = attempts


class KeysExhaustedError(AICliError):
    """ローテーション可能なAPIキーが残っていない場合の例外."""

    def __init__(self, message: str = "all API keys exhausted") -> None:
        """
        Initialize KeysExhaustedError.

        Args:
            message: エラーメッセージ
        """
        super().__init__(message)


class CredentialError(AICliError):
    """認証情報が無効で、ユーザーによる再認証が必要な場合の例外."""

    def __init__(self, message: str) -> None:
        """
        Initialize CredentialError.

        Args:
            message: エラーメッセージ（再認証の案内を含む）
        """
        super().__init__(message)


class SettingsError(AICliError):
    """パーミッション設定ファイルの読み書きに失敗した場合の例外."""

    def __init__(self, path: str, reason: str) -> None:
        """
        Initialize SettingsError.

        Args:
            path: 対象の設定ファイルパス
            reason: 失敗理由
        """
        super().__init__(f"Settings file {path}: {reason}")
        self.path = path


class ConfigurationError(AICliError):
    """アプリケーション設定が不足・不正な場合の例外."""

    def __init__(self, message: str) -> None:
        """
        Initialize ConfigurationError.

        Args:
            message: エラーメッセージ
        """
        super().__init__(message)


class UnknownToolError(AICliError):
    """モデルが未知のツールを呼び出した場合の例外."""

    def __init__(self, name: str) -> None:
        """
        Initialize UnknownToolError.

        Args:
            name: 呼び出されたツール名
        """
        super().__init__(f"Unknown tool: {name}")
        self.name = name


class MaxToolRoundsExceededError(AICliError):
    """1ターン内のツール呼び出しラウンド数が上限を超えた場合の例外."""

    def __init__(self, max_rounds: int) -> None:
        """
        Initialize MaxToolRoundsExceededError.

        Args:
            max_rounds: 設定されている上限ラウンド数
        """
        super().__init__(f"Tool call round limit ({max_rounds}) exceeded")
        self.max_rounds = max_rounds

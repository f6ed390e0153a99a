"""Persistent permission settings (global and project scopes)."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path

from pydantic import ValidationError

from ai_cli.application.models import (
    PermissionRule,
    Permissions,
    PermissionSettings,
)
from ai_cli.infrastructure.errors import SettingsError
from ai_cli.infrastructure.logging import get_logger

logger = get_logger(__name__)

APP_NAME = "ai-cli"
SETTINGS_FILE = "settings.json"
PROJECT_SETTINGS_DIR = ".ai-cli"

_TOGGLES = ("auto_allow_safe_commands", "dangerous_enabled")


def default_global_settings_path() -> Path:
    """
    ユーザー全体の設定ファイルパスを返す.

    $XDG_DATA_HOME が設定されていればその配下、なければ ~/.local/share 配下.

    Returns:
        設定ファイルのパス
    """
    data_home = os.environ.get("XDG_DATA_HOME")
    base = Path(data_home) if data_home else Path.home() / ".local" / "share"
    return base / APP_NAME / SETTINGS_FILE


def default_project_settings_path(cwd: Path | None = None) -> Path:
    """カレントディレクトリ（またはcwd）のプロジェクト設定ファイルパスを返す."""
    return (cwd or Path.cwd()) / PROJECT_SETTINGS_DIR / SETTINGS_FILE


def _read_settings(path: Path) -> PermissionSettings | None:
    """
    設定ファイルを読み込む.

    Args:
        path: 設定ファイルのパス

    Returns:
        設定内容（ファイルが存在しない場合None）

    Raises:
        SettingsError: 読み込みまたはパースに失敗した場合
    """
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except (OSError, UnicodeDecodeError) as e:
        raise SettingsError(str(path), f"cannot read: {e}") from e

    try:
        return PermissionSettings.model_validate_json(content)
    except ValidationError as e:
        raise SettingsError(str(path), f"invalid format: {e}") from e


class SettingsStore:
    """
    グローバル設定とプロジェクト設定を読み込み、マージ結果を提供する.

    マージ規則:
    - ルール一覧: グローバル → プロジェクトの順に連結
    - 真偽値の設定: プロジェクトのファイルに記述があればそちらを優先
    - セッション中に set_* で変更した値は最優先

    スレッドセーフではない. 呼び出し側（PermissionManager）がロックを保持する.
    """

    def __init__(self, global_path: Path, project_path: Path | None = None) -> None:
        """
        Initialize SettingsStore.

        Args:
            global_path: グローバル設定ファイルのパス
            project_path: プロジェクト設定ファイルのパス（Noneなら使用しない）
        """
        self.global_path = global_path
        self.project_path = project_path
        self._global = PermissionSettings()
        self._project: PermissionSettings | None = None
        self._overrides: dict[str, bool] = {}
        self._approved: set[str] = set()
        self._merged = PermissionSettings()

    @classmethod
    def default(cls) -> SettingsStore:
        """標準のパス構成でストアを作成する."""
        return cls(default_global_settings_path(), default_project_settings_path())

    @property
    def merged(self) -> PermissionSettings:
        """マージ済みの有効な設定."""
        return self._merged

    def load(self) -> None:
        """
        両方の設定ファイルを読み込み直す.

        プロジェクト設定の読み込みエラーは警告を出して無視する.

        Raises:
            SettingsError: グローバル設定が読み込めない場合
        """
        self._global = _read_settings(self.global_path) or PermissionSettings()

        self._project = None
        if self.project_path is not None:
            try:
                self._project = _read_settings(self.project_path)
            except SettingsError:
                logger.warning(
                    "Ignoring unreadable project settings",
                    path=str(self.project_path),
                    exc_info=True,
                )

        self._remerge()
        logger.debug(
            "Loaded permission settings",
            global_path=str(self.global_path),
            project_loaded=self._project is not None,
            allow_rules=len(self._merged.permissions.allow),
            deny_rules=len(self._merged.permissions.deny),
        )

    def save(self) -> None:
        """
        グローバル設定をファイルに保存する.

        Raises:
            SettingsError: 書き込みに失敗した場合
        """
        self._write(self.global_path, self._global)

    def _write(self, path: Path, settings: PermissionSettings) -> None:
        content = json.dumps(settings.model_dump(), ensure_ascii=False, indent=2)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # 同じディレクトリの一時ファイルに書いてから置き換える
            fd, tmp_name = tempfile.mkstemp(
                dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(content + "\n")
                os.replace(tmp_name, path)
            except OSError:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            logger.exception("Failed to write settings file", path=str(path))
            raise SettingsError(str(path), f"cannot write: {e}") from e
        logger.info("Saved permission settings", path=str(path))

    def _remerge(self) -> None:
        allow = list(self._global.permissions.allow)
        deny = list(self._global.permissions.deny)
        toggles = {name: getattr(self._global, name) for name in _TOGGLES}

        if self._project is not None:
            allow.extend(self._project.permissions.allow)
            deny.extend(self._project.permissions.deny)
            for name in _TOGGLES:
                if name in self._project.model_fields_set:
                    toggles[name] = getattr(self._project, name)

        toggles.update(self._overrides)
        self._merged = PermissionSettings(
            permissions=Permissions(allow=allow, deny=deny),
            **toggles,
        )

    def add_allow_rule(self, rule: PermissionRule) -> None:
        """グローバル設定に許可ルールを追加する（保存はしない）."""
        self._global.permissions.allow.append(rule)
        self._remerge()

    def add_deny_rule(self, rule: PermissionRule) -> None:
        """グローバル設定に拒否ルールを追加する（保存はしない）."""
        self._global.permissions.deny.append(rule)
        self._remerge()

    def set_auto_allow_safe(self, enabled: bool) -> None:
        """安全なコマンドの自動許可を切り替える（グローバル設定にも反映）."""
        self._set_toggle("auto_allow_safe_commands", enabled)

    def set_dangerous_enabled(self, enabled: bool) -> None:
        """危険なコマンドの確認付き実行を切り替える（グローバル設定にも反映）."""
        self._set_toggle("dangerous_enabled", enabled)

    def _set_toggle(self, name: str, enabled: bool) -> None:
        setattr(self._global, name, enabled)
        self._overrides[name] = enabled
        self._remerge()

    def remember_approval(self, command: str) -> None:
        """恒久的に承認されたコマンドを記録する（再読み込み後も有効）."""
        self._approved.add(command)

    def is_approved(self, command: str) -> bool:
        """コマンドが承認済みとして記録されているか."""
        return command in self._approved

    def clear_approved(self) -> None:
        """承認済みコマンドの記録を消去する."""
        self._approved.clear()

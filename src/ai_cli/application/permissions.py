"""Permission management for shell command execution."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from ai_cli.application.classifier import RiskLevel, classify_command
from ai_cli.application.matcher import (
    DEFAULT_TOOL,
    MatchResult,
    PatternMatcher,
    format_pattern,
    parse_pattern,
)
from ai_cli.application.models import PermissionRule
from ai_cli.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from ai_cli.infrastructure.settings import SettingsStore

logger = get_logger(__name__)


class ApprovalType(str, Enum):
    """ユーザーによる承認の範囲."""

    ONCE = "once"
    SESSION = "session"
    ALWAYS = "always"


@dataclass(frozen=True)
class PermissionDecision:
    """コマンド実行可否の判定結果."""

    allowed: bool
    needs_confirm: bool
    reason: str


class PermissionManager:
    """
    コマンド実行の可否を判定する唯一の窓口.

    判定順序:
    1. セッション許可リスト
    2. 恒久承認済みの記録
    3. 拒否ルール
    4. 許可ルール
    5. 危険度判定（auto_allow_safe_commands / dangerous_enabled を考慮）

    設定の参照・変更はすべて単一のロックで直列化する.
    """

    def __init__(self, store: SettingsStore) -> None:
        """
        Initialize PermissionManager.

        Args:
            store: パーミッション設定ストア
        """
        self._store = store
        self._matcher = PatternMatcher()
        self._session_allowlist: set[str] = set()
        self._lock = threading.RLock()

    def load(self) -> None:
        """
        設定ファイルを読み込む.

        Raises:
            SettingsError: グローバル設定が読み込めない場合
        """
        with self._lock:
            self._store.load()

    def check_permission(self, command: str) -> PermissionDecision:
        """
        コマンドの実行可否を判定する.

        Args:
            command: 実行しようとしているコマンド

        Returns:
            判定結果
        """
        with self._lock:
            if command in self._session_allowlist:
                return PermissionDecision(True, False, "Allowed for this session")

            if self._store.is_approved(command):
                return PermissionDecision(True, False, "Previously approved")

            settings = self._store.merged
            result = self._matcher.check_permission(command, settings.permissions)
            if result == MatchResult.DENY:
                logger.info("Command denied by rule", command=command)
                return PermissionDecision(False, False, "Command blocked by deny rule")
            if result == MatchResult.ALLOW:
                return PermissionDecision(True, False, "Allowed by permission rule")

            risk = classify_command(command)
            if risk == RiskLevel.SAFE:
                if settings.auto_allow_safe_commands:
                    return PermissionDecision(True, False, "Safe read-only command")
                return PermissionDecision(True, True, "Confirmation required")

            if risk == RiskLevel.NEEDS_CONFIRM:
                return PermissionDecision(True, True, "Command may modify system state")

            if settings.dangerous_enabled:
                return PermissionDecision(
                    True, True, "Dangerous command (requires explicit confirmation)"
                )
            logger.warning("Dangerous command blocked", command=command)
            return PermissionDecision(
                False,
                False,
                "Dangerous command blocked (use /allow-dangerous to enable)",
            )

    def add_to_allowlist(self, command: str, approval: ApprovalType) -> None:
        """
        ユーザーの承認を記録する.

        Args:
            command: 承認されたコマンド
            approval: ONCE は記録しない、SESSION はメモリ上、ALWAYS は設定ファイルに保存

        Raises:
            SettingsError: ALWAYS で設定ファイルの保存に失敗した場合
        """
        with self._lock:
            if approval == ApprovalType.SESSION:
                self._session_allowlist.add(command)
            elif approval == ApprovalType.ALWAYS:
                self._store.add_allow_rule(
                    PermissionRule(pattern=command, tool=DEFAULT_TOOL)
                )
                self._store.remember_approval(command)
                self._store.save()
            else:
                return
        logger.info("Command approved", command=command, approval=approval.value)

    def add_pattern_rule(self, pattern: str, deny: bool = False) -> PermissionRule:
        """
        パターンルールを追加して保存する.

        Args:
            pattern: ``git:*`` や ``Bash(npm run *)`` 形式のパターン
            deny: Trueなら拒否ルール、Falseなら許可ルール

        Returns:
            追加されたルール

        Raises:
            SettingsError: 設定ファイルの保存に失敗した場合
        """
        rule = parse_pattern(pattern)
        with self._lock:
            if deny:
                self._store.add_deny_rule(rule)
            else:
                self._store.add_allow_rule(rule)
            self._store.save()
        logger.info(
            "Permission rule added",
            pattern=format_pattern(rule),
            kind="deny" if deny else "allow",
        )
        return rule

    def enable_dangerous(self) -> None:
        """危険なコマンドを確認付きで実行可能にする."""
        with self._lock:
            self._store.set_dangerous_enabled(True)

    def disable_dangerous(self) -> None:
        """危険なコマンドを再びブロックする."""
        with self._lock:
            self._store.set_dangerous_enabled(False)

    def is_dangerous_enabled(self) -> bool:
        """危険なコマンドが有効化されているか."""
        with self._lock:
            return self._store.merged.dangerous_enabled

    def set_auto_allow_safe(self, enabled: bool) -> None:
        """安全なコマンドの自動許可を切り替える."""
        with self._lock:
            self._store.set_auto_allow_safe(enabled)

    def get_allow_rules(self) -> list[str]:
        """許可ルールを表示用文字列で返す."""
        with self._lock:
            return [format_pattern(r) for r in self._store.merged.permissions.allow]

    def get_deny_rules(self) -> list[str]:
        """拒否ルールを表示用文字列で返す."""
        with self._lock:
            return [format_pattern(r) for r in self._store.merged.permissions.deny]

    def get_settings(self) -> dict[str, Any]:
        """
        現在の設定の概要を返す.

        Returns:
            auto_allow_safe, dangerous_enabled, session_count, global_path,
            project_path, allow_rules, deny_rules を含むdict
        """
        with self._lock:
            merged = self._store.merged
            return {
                "auto_allow_safe": merged.auto_allow_safe_commands,
                "dangerous_enabled": merged.dangerous_enabled,
                "session_count": len(self._session_allowlist),
                "global_path": str(self._store.global_path),
                "project_path": (
                    str(self._store.project_path) if self._store.project_path else ""
                ),
                "allow_rules": [format_pattern(r) for r in merged.permissions.allow],
                "deny_rules": [format_pattern(r) for r in merged.permissions.deny],
            }

    def clear_session_allowlist(self) -> None:
        """セッション中の承認をすべて取り消す."""
        with self._lock:
            self._session_allowlist.clear()
            self._store.clear_approved()
        logger.info("Session allowlist cleared")

    def save_settings(self) -> None:
        """
        グローバル設定を保存する.

        Raises:
            SettingsError: 書き込みに失敗した場合
        """
        with self._lock:
            self._store.save()

    def reload_settings(self) -> None:
        """
        設定ファイルを読み込み直す（セッション中の承認は保持される）.

        Raises:
            SettingsError: グローバル設定が読み込めない場合
        """
        with self._lock:
            self._store.load()

"""Permission rule pattern matching."""

from __future__ import annotations

import re
from enum import Enum
from typing import TYPE_CHECKING

from ai_cli.application.models import PermissionRule

if TYPE_CHECKING:
    from collections.abc import Iterable

    from ai_cli.application.models import Permissions

DEFAULT_TOOL = "Bash"


class MatchResult(str, Enum):
    """ルール評価の結果."""

    NO_MATCH = "no_match"
    ALLOW = "allow"
    DENY = "deny"


class PatternMatcher:
    """
    コマンドとパーミッションルールの照合を行う.

    サポートするパターン形式（上から順に評価）:
    - ``Tool(pattern)``: ツール名で修飾されたパターン（中身のみを使う）
    - 完全一致: ``ls -la``
    - コロン形式: ``git:*`` / ``npm:run``（先頭語 + 残りの照合）
    - グロブ: ``npm run *`` / ``*.go``
    - 暗黙の前方一致: ``ls`` は ``ls -la`` に一致するが ``lsof`` には一致しない
    """

    def match(self, command: str, rule: PermissionRule) -> bool:
        """
        コマンドがルールに一致するか判定する.

        Args:
            command: 判定対象のコマンド
            rule: パーミッションルール

        Returns:
            一致する場合True
        """
        command = command.strip()
        pattern = rule.pattern
        if rule.tool and "(" in pattern:
            pattern = _unwrap_tool(pattern)
        pattern = pattern.strip()

        if pattern == command:
            return True
        if ":" in pattern:
            return self._match_colon(command, pattern)
        if "*" in pattern:
            return _match_glob(command, pattern)
        return command.startswith(pattern + " ")

    def _match_colon(self, command: str, pattern: str) -> bool:
        prefix, suffix = pattern.split(":", 1)
        if command != prefix and not command.startswith(prefix + " "):
            return False

        rest = command[len(prefix) :].removeprefix(" ")
        if suffix == "*":
            return True
        if "*" in suffix:
            return _match_glob(rest, suffix)

        words = rest.split()
        if words and words[0] == suffix:
            return True
        return rest == suffix

    def match_any(self, command: str, rules: Iterable[PermissionRule]) -> bool:
        """いずれかのルールに一致するか判定する."""
        return any(self.match(command, rule) for rule in rules)

    def check_permission(self, command: str, permissions: Permissions) -> MatchResult:
        """
        拒否ルール → 許可ルールの順で評価する.

        Args:
            command: 判定対象のコマンド
            permissions: 許可・拒否ルール

        Returns:
            DENY / ALLOW / NO_MATCH
        """
        if self.match_any(command, permissions.deny):
            return MatchResult.DENY
        if self.match_any(command, permissions.allow):
            return MatchResult.ALLOW
        return MatchResult.NO_MATCH


def _unwrap_tool(pattern: str) -> str:
    start = pattern.find("(")
    end = pattern.rfind(")")
    if start != -1 and end > start:
        return pattern[start + 1 : end]
    return pattern


def _match_glob(text: str, pattern: str) -> bool:
    regex = re.escape(pattern).replace(r"\*", ".*")
    return re.fullmatch(regex, text) is not None


def parse_pattern(pattern: str) -> PermissionRule:
    """
    ユーザー入力のパターン文字列をルールに変換する.

    ``Read(*.go)`` は tool="Read"、それ以外は tool="Bash" として扱う.

    Args:
        pattern: パターン文字列

    Returns:
        パーミッションルール
    """
    pattern = pattern.strip()
    idx = pattern.find("(")
    if idx != -1:
        inner = pattern[idx:].removeprefix("(").removesuffix(")")
        return PermissionRule(pattern=inner, tool=pattern[:idx])
    return PermissionRule(pattern=pattern, tool=DEFAULT_TOOL)


def format_pattern(rule: PermissionRule) -> str:
    """ルールを表示用の文字列に戻す（Bashの場合はパターンのみ）."""
    if rule.tool in ("", DEFAULT_TOOL):
        return rule.pattern
    return f"{rule.tool}({rule.pattern})"

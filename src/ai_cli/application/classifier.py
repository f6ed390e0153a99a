"""Shell command risk classification."""

from __future__ import annotations

import re
from enum import Enum


class RiskLevel(str, Enum):
    """コマンドの危険度."""

    SAFE = "safe"
    NEEDS_CONFIRM = "needs_confirm"
    DANGEROUS = "dangerous"


_SAFE_COMMANDS = frozenset(
    {
        "ls", "cat", "pwd", "echo", "head", "tail", "grep", "find",
        "which", "whoami", "date", "wc", "sort", "uniq", "diff",
        "env", "printenv", "df", "du", "ps", "top", "tree",
        "file", "stat", "basename", "dirname", "realpath",
        "ping", "traceroute", "nslookup", "dig",
    }
)  # fmt: skip

# 読み取り専用のサブコマンド
_SAFE_PATTERNS = [
    re.compile(r"^git\s+(status|log|diff|branch|show|remote)"),
    re.compile(r"^npm\s+(list|ls|view|info|outdated)"),
    re.compile(r"^pip\s+(list|show|freeze)"),
    re.compile(r"^cargo\s+(tree|search|check)"),
    re.compile(r"^go\s+(list|version|env)"),
    re.compile(r"^docker\s+(ps|images|inspect|logs)"),
    re.compile(r"^kubectl\s+(get|describe|logs)"),
]

_DANGEROUS_PATTERNS = [
    re.compile(r"rm\s+(-[rf]*\s+)?/"),  # ルート配下の削除
    re.compile(r"\bsudo\b"),
    re.compile(r"\bsu\b"),
    re.compile(r"dd\s+if="),
    re.compile(r"mkfs"),
    re.compile(r":\(\)\{"),  # fork bomb
    re.compile(r"curl.*\|\s*(sh|bash|zsh)"),
    re.compile(r"wget.*\|\s*(sh|bash|zsh)"),
    re.compile(r">\s*/dev/sd"),
    re.compile(r"chmod.*777"),
    re.compile(r"chown.*-R\s+"),
    re.compile(r"\beval\b"),
    re.compile(r"\bsource\b"),
    re.compile(r"\bexec\b"),
    re.compile(r">\s*/etc/"),
    re.compile(r"rm\s+-rf\s+[~$]"),
    re.compile(r">\s*/dev/null\s*2>&1\s*&"),  # 出力を隠したバックグラウンド実行
    re.compile(r"\|.*base64.*-d"),
    re.compile(r"python.*-c.*exec"),
    re.compile(r"perl.*-e"),
    re.compile(r"ruby.*-e"),
]

# ; & | および && || ;; など
_CHAINING_PATTERN = re.compile(r"[;&|]{1,2}")

_RISK_DESCRIPTIONS = {
    RiskLevel.SAFE: "Safe read-only command",
    RiskLevel.NEEDS_CONFIRM: "Command may modify system state",
    RiskLevel.DANGEROUS: "Potentially dangerous command",
}


def classify_command(command: str) -> RiskLevel:
    """
    シェルコマンドの危険度を判定する.

    判定順序（先に該当したものが優先）:
    1. 空文字 → DANGEROUS
    2. 危険パターンに一致 → DANGEROUS
    3. コマンド連結演算子を含む → NEEDS_CONFIRM
    4. 先頭トークンが読み取り専用コマンド、または読み取り専用パターンに一致 → SAFE
    5. それ以外 → NEEDS_CONFIRM

    Args:
        command: 判定対象のコマンド文字列

    Returns:
        危険度
    """
    command = command.strip()
    if not command:
        return RiskLevel.DANGEROUS

    if any(pattern.search(command) for pattern in _DANGEROUS_PATTERNS):
        return RiskLevel.DANGEROUS

    if _CHAINING_PATTERN.search(command):
        return RiskLevel.NEEDS_CONFIRM

    if command.split()[0] in _SAFE_COMMANDS:
        return RiskLevel.SAFE

    if any(pattern.search(command) for pattern in _SAFE_PATTERNS):
        return RiskLevel.SAFE

    return RiskLevel.NEEDS_CONFIRM


def get_risk_description(level: RiskLevel) -> str:
    """危険度の説明文を返す."""
    return _RISK_DESCRIPTIONS.get(level, "Unknown risk level")

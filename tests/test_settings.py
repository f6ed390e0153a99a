"""Tests for persistent permission settings."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from ai_cli.application.models import PermissionRule
from ai_cli.infrastructure import settings as settings_module
from ai_cli.infrastructure.errors import SettingsError
from ai_cli.infrastructure.settings import (
    SettingsStore,
    default_global_settings_path,
    default_project_settings_path,
)


@pytest.fixture
def global_path(tmp_path: Path) -> Path:
    """グローバル設定ファイルのパスを返す."""
    return tmp_path / "data" / "ai-cli" / "settings.json"


@pytest.fixture
def project_path(tmp_path: Path) -> Path:
    """プロジェクト設定ファイルのパスを返す."""
    return tmp_path / "project" / ".ai-cli" / "settings.json"


def _write(path: Path, data: object) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data), encoding="utf-8")


class TestPaths:
    """設定ファイルパスのテスト."""

    def test_global_path_uses_xdg_data_home(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """XDG_DATA_HOMEが優先されることを確認する."""
        monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path))
        assert default_global_settings_path() == tmp_path / "ai-cli" / "settings.json"

    def test_global_path_fallback(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """XDG_DATA_HOME未設定時は~/.local/share配下になることを確認する."""
        monkeypatch.delenv("XDG_DATA_HOME", raising=False)
        expected = Path.home() / ".local" / "share" / "ai-cli" / "settings.json"
        assert default_global_settings_path() == expected

    def test_project_path(self, tmp_path: Path) -> None:
        """プロジェクト設定のパスを確認する."""
        assert default_project_settings_path(tmp_path) == (
            tmp_path / ".ai-cli" / "settings.json"
        )


class TestLoad:
    """SettingsStore.load のテスト."""

    def test_defaults_when_files_missing(
        self, global_path: Path, project_path: Path
    ) -> None:
        """ファイルがなければデフォルト値になることを確認する."""
        store = SettingsStore(global_path, project_path)
        store.load()

        assert store.merged.auto_allow_safe_commands is True
        assert store.merged.dangerous_enabled is False
        assert store.merged.permissions.allow == []

    def test_merge_rules_and_toggles(
        self, global_path: Path, project_path: Path
    ) -> None:
        """ルールは連結され、プロジェクトの真偽値が優先されることを確認する."""
        _write(
            global_path,
            {
                "permissions": {
                    "allow": [{"pattern": "git:*", "tool": "Bash"}],
                    "deny": [{"pattern": "rm -rf *", "tool": "Bash"}],
                },
                "auto_allow_safe_commands": True,
                "dangerous_enabled": False,
            },
        )
        _write(
            project_path,
            {
                "permissions": {"allow": [{"pattern": "make:*", "tool": "Bash"}]},
                "dangerous_enabled": True,
            },
        )

        store = SettingsStore(global_path, project_path)
        store.load()
        merged = store.merged

        assert [r.pattern for r in merged.permissions.allow] == ["git:*", "make:*"]
        assert [r.pattern for r in merged.permissions.deny] == ["rm -rf *"]
        assert merged.dangerous_enabled is True
        # プロジェクトに記述のない値はグローバルのまま
        assert merged.auto_allow_safe_commands is True

    def test_project_absent_toggle_keeps_global(
        self, global_path: Path, project_path: Path
    ) -> None:
        """プロジェクト設定に値がなければグローバルの値が使われることを確認する."""
        _write(global_path, {"auto_allow_safe_commands": False})
        _write(project_path, {"permissions": {"allow": [], "deny": None}})

        store = SettingsStore(global_path, project_path)
        store.load()

        assert store.merged.auto_allow_safe_commands is False

    def test_invalid_global_raises(self, global_path: Path) -> None:
        """グローバル設定が不正ならSettingsErrorになることを確認する."""
        global_path.parent.mkdir(parents=True)
        global_path.write_text("{not json", encoding="utf-8")

        store = SettingsStore(global_path)
        with pytest.raises(SettingsError, match="invalid format"):
            store.load()

    def test_invalid_project_is_ignored(
        self, global_path: Path, project_path: Path
    ) -> None:
        """プロジェクト設定が不正でも読み込みが継続することを確認する."""
        project_path.parent.mkdir(parents=True)
        project_path.write_text("[]", encoding="utf-8")

        store = SettingsStore(global_path, project_path)
        store.load()

        assert store.merged.auto_allow_safe_commands is True


class TestMutation:
    """設定の変更と保存のテスト."""

    def test_add_rules_and_save(self, global_path: Path, project_path: Path) -> None:
        """追加したルールがグローバル設定として保存されることを確認する."""
        _write(project_path, {"permissions": {"allow": [{"pattern": "make"}]}})
        store = SettingsStore(global_path, project_path)
        store.load()

        store.add_allow_rule(PermissionRule(pattern="npm:*"))
        store.add_deny_rule(PermissionRule(pattern="git push"))
        store.save()

        saved = json.loads(global_path.read_text(encoding="utf-8"))
        assert saved["permissions"]["allow"] == [{"pattern": "npm:*", "tool": "Bash"}]
        assert saved["permissions"]["deny"] == [{"pattern": "git push", "tool": "Bash"}]
        # プロジェクトのルールはグローバルファイルに書き込まれない
        assert "make" not in global_path.read_text(encoding="utf-8")
        assert [r.pattern for r in store.merged.permissions.allow] == ["npm:*", "make"]

    def test_saved_file_is_indented(self, global_path: Path) -> None:
        """保存ファイルがインデント付きJSONであることを確認する."""
        store = SettingsStore(global_path)
        store.save()

        assert '\n  "permissions"' in global_path.read_text(encoding="utf-8")

    def test_set_toggle_overrides_project(
        self, global_path: Path, project_path: Path
    ) -> None:
        """セッション中の切り替えがプロジェクト設定より優先されることを確認する."""
        _write(project_path, {"dangerous_enabled": False})
        store = SettingsStore(global_path, project_path)
        store.load()

        store.set_dangerous_enabled(True)
        store.add_allow_rule(PermissionRule(pattern="ls"))

        assert store.merged.dangerous_enabled is True
        store.save()
        saved = json.loads(global_path.read_text(encoding="utf-8"))
        assert saved["dangerous_enabled"] is True

        store.set_auto_allow_safe(False)
        assert store.merged.auto_allow_safe_commands is False

    def test_save_failure_raises_settings_error(self, tmp_path: Path) -> None:
        """書き込みに失敗した場合SettingsErrorになることを確認する."""
        blocker = tmp_path / "file"
        blocker.write_text("")
        store = SettingsStore(blocker / "settings.json")

        with pytest.raises(SettingsError, match="cannot write"):
            store.save()

    def test_save_leaves_no_temp_files(self, global_path: Path) -> None:
        """保存後に一時ファイルが残らないことを確認する."""
        store = SettingsStore(global_path)
        store.save()
        store.set_dangerous_enabled(True)
        store.save()

        assert [p.name for p in global_path.parent.iterdir()] == ["settings.json"]

    def test_failed_replace_keeps_previous_file(
        self, global_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """置き換えに失敗しても既存の設定ファイルが壊れないことを確認する."""
        store = SettingsStore(global_path)
        store.save()
        before = global_path.read_text(encoding="utf-8")

        def fail_replace(src: str, dst: Path) -> None:
            raise OSError("disk full")

        monkeypatch.setattr(settings_module.os, "replace", fail_replace)
        store.set_dangerous_enabled(True)

        with pytest.raises(SettingsError, match="cannot write"):
            store.save()

        assert global_path.read_text(encoding="utf-8") == before
        assert [p.name for p in global_path.parent.iterdir()] == ["settings.json"]

    def test_approvals_survive_reload(self, global_path: Path) -> None:
        """承認済みの記録が再読み込み後も保持されることを確認する."""
        store = SettingsStore(global_path)
        store.remember_approval("make deploy")
        store.load()

        assert store.is_approved("make deploy")
        store.clear_approved()
        assert not store.is_approved("make deploy")

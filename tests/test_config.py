from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from safebackup.core.config import Settings


def test_relative_and_home_paths_are_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValidationError):
        Settings(state_root="relative/state", content_root=tmp_path / "content")
    with pytest.raises(ValidationError):
        Settings(state_root="~/state", content_root=tmp_path / "content")
    with pytest.raises(ValidationError):
        Settings(state_root=tmp_path / "state", content_root="$HOME/site")


def test_backup_root_defaults_under_state_root(tmp_path: Path) -> None:
    settings = Settings(state_root=tmp_path / "state", content_root=tmp_path / "content")

    assert settings.effective_backup_root == (tmp_path / "state" / "backups").resolve()
    assert settings.effective_backup_root.is_dir()
    assert settings.effective_database_url.endswith("safebackup.sqlite3")
    assert settings.effective_source_database_url == settings.effective_database_url
    assert settings.effective_maintenance_flag_path == (tmp_path / "state").resolve() / "maintenance.flag"


def test_content_root_inside_backup_root_is_rejected(tmp_path: Path) -> None:
    try:
        Settings(
            state_root=tmp_path / "state",
            backup_root=tmp_path / "backups",
            content_root=tmp_path / "backups" / "site",
        )
    except ValidationError:
        pass
    else:
        raise AssertionError("expected ValidationError")


def test_backup_root_inside_content_root_is_allowed(tmp_path: Path) -> None:
    settings = Settings(
        state_root=tmp_path / "state",
        content_root=tmp_path / "site",
        backup_root=tmp_path / "site" / "backups",
    )
    assert settings.effective_backup_root == (tmp_path / "site" / "backups").resolve()


def test_lock_ttl_must_exceed_batch_budget(tmp_path: Path) -> None:
    with pytest.raises(ValidationError):
        Settings(
            state_root=tmp_path / "state",
            content_root=tmp_path / "content",
            batch_time_budget_seconds=30,
            lock_ttl_seconds=30,
        )


def test_unknown_continuation_mode_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValidationError):
        Settings(state_root=tmp_path / "state", content_root=tmp_path / "content", continuation_mode="celery")

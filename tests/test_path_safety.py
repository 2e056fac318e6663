from __future__ import annotations

from pathlib import Path

import pytest

from safebackup.core.path_safety import PathSafetyError, resolve_under_root, validate_archive_member_path


@pytest.mark.parametrize(
    "raw_path",
    [
        "../evil.bin",
        "nested/../../escape.bin",
        "~/private.bin",
        "/absolute/path.bin",
        "",
    ],
)
def test_validate_archive_member_path_rejects_unsafe_input(raw_path: str) -> None:
    with pytest.raises(PathSafetyError):
        validate_archive_member_path(raw_path)


def test_validate_archive_member_path_accepts_normal_relative_path() -> None:
    member = validate_archive_member_path("uploads\\2024/photo.jpg")
    assert member.as_posix() == "uploads/2024/photo.jpg"


def test_resolve_under_root_keeps_target_inside_root(tmp_path: Path) -> None:
    resolved = resolve_under_root(tmp_path, "themes/site/style.css")
    assert resolved == (tmp_path / "themes" / "site" / "style.css").resolve()


def test_resolve_under_root_rejects_symlink_escape(tmp_path: Path) -> None:
    root = tmp_path / "root"
    outside = tmp_path / "outside"
    root.mkdir()
    outside.mkdir()
    (root / "link").symlink_to(outside, target_is_directory=True)

    with pytest.raises(PathSafetyError):
        resolve_under_root(root, "link/secret.txt")

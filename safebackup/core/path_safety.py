from __future__ import annotations

from pathlib import Path, PurePosixPath


class PathSafetyError(ValueError):
    pass


def validate_archive_member_path(raw_path: str) -> PurePosixPath:
    normalized = raw_path.replace("\\", "/").strip()
    if not normalized:
        raise PathSafetyError("Archive path must not be empty")
    if normalized.startswith("/"):
        raise PathSafetyError("Archive path must be relative to the content root")
    member = PurePosixPath(normalized)
    if ".." in member.parts:
        raise PathSafetyError("Path traversal is not allowed")
    if member.parts[0].startswith("~"):
        raise PathSafetyError("Home expansion is not allowed")
    return member


def resolve_under_root(root: Path, raw_path: str) -> Path:
    member = validate_archive_member_path(raw_path)
    base = root.resolve(strict=False)
    candidate = (base / Path(*member.parts)).resolve(strict=False)

    if candidate == base or base in candidate.parents:
        return candidate

    raise PathSafetyError("Path escapes content root")


def is_within(path: Path, root: Path) -> bool:
    resolved_root = root.resolve(strict=False)
    resolved = path.resolve(strict=False)
    return resolved == resolved_root or resolved_root in resolved.parents

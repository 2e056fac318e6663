from __future__ import annotations

import json
import zipfile
from pathlib import Path
from typing import Any

from safebackup.core.config import Settings
from safebackup.db.models import BackupJobType
from safebackup.export.archive import ArchiveStage
from safebackup.jobs.types import JobState, StageOutcome


def make_settings(tmp_path: Path, **overrides: Any) -> Settings:
    return Settings(
        state_root=tmp_path / "state",
        content_root=tmp_path / "content",
        backup_root=tmp_path / "backups",
        **overrides,
    )


def make_files(settings: Settings, sizes: dict[str, int]) -> list[str]:
    paths = []
    for name, size in sizes.items():
        path = settings.content_root / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"a" * size)
        paths.append(path.as_posix())
    return paths


def make_state(settings: Settings, paths: list[str]) -> JobState:
    work_dir = settings.effective_backup_root / "backup-test"
    work_dir.mkdir(parents=True, exist_ok=True)
    file_list = work_dir / "file-list.jsonl"
    file_list.write_text("".join(json.dumps(path) + "\n" for path in paths), encoding="utf-8")
    return JobState(
        job_id="job-1",
        job_type=BackupJobType.FULL,
        session_id="session-1",
        work_dir=work_dir.as_posix(),
        started_at=0.0,
        file_list_path=file_list.as_posix(),
        file_total=len(paths),
    )


def archive_names(state: JobState, index: int) -> list[str]:
    with zipfile.ZipFile(Path(state.work_dir) / f"files-{index}.zip") as archive:
        return archive.namelist()


def test_second_file_that_would_overflow_goes_to_next_chunk(tmp_path: Path) -> None:
    settings = make_settings(tmp_path, archive_chunk_max_bytes=50_000)
    state = make_state(settings, make_files(settings, {"a.bin": 30_000, "b.bin": 30_000}))

    outcome = ArchiveStage(settings).run_unit(state)

    assert outcome == StageOutcome.DONE
    assert archive_names(state, 1) == ["a.bin"]
    assert archive_names(state, 2) == ["b.bin"]
    assert state.archive_chunk_index == 2
    assert state.archive_chunk_bytes == (Path(state.work_dir) / "files-2.zip").stat().st_size
    assert state.archive_chunk_start_offset == 1


def test_vanished_files_are_counted_not_fatal(tmp_path: Path) -> None:
    settings = make_settings(tmp_path)
    paths = make_files(settings, {"keep.txt": 10, "gone.txt": 10, "nested/also.txt": 10})
    state = make_state(settings, paths)
    Path(paths[1]).unlink()

    outcome = ArchiveStage(settings).run_unit(state)

    assert outcome == StageOutcome.DONE
    assert archive_names(state, 1) == ["keep.txt", "nested/also.txt"]
    assert state.stats.files_vanished == 1
    assert state.file_offset == 3


def test_each_call_is_capped_by_files_per_batch(tmp_path: Path) -> None:
    settings = make_settings(tmp_path, archive_files_per_batch=2)
    state = make_state(settings, make_files(settings, {f"f{index}.txt": 5 for index in range(5)}))
    stage = ArchiveStage(settings)

    assert stage.run_unit(state) == StageOutcome.CONTINUE
    assert state.file_offset == 2
    assert stage.run_unit(state) == StageOutcome.CONTINUE
    assert stage.run_unit(state) == StageOutcome.DONE
    assert archive_names(state, 1) == [f"f{index}.txt" for index in range(5)]


def test_expired_deadline_stops_before_next_file(tmp_path: Path) -> None:
    settings = make_settings(tmp_path)
    state = make_state(settings, make_files(settings, {"a.txt": 1, "b.txt": 1}))
    stage = ArchiveStage(settings, clock=lambda: 100.0)

    assert stage.run_unit(state, deadline=50.0) == StageOutcome.CONTINUE
    assert state.file_offset == 0


def test_replayed_slice_does_not_duplicate_members(tmp_path: Path) -> None:
    settings = make_settings(tmp_path, archive_files_per_batch=2)
    state = make_state(settings, make_files(settings, {"a.txt": 3, "b.txt": 3, "c.txt": 3}))
    stage = ArchiveStage(settings)
    checkpoint = state.to_payload()

    stage.run_unit(state)
    resumed = JobState.from_payload(checkpoint)
    while stage.run_unit(resumed) != StageOutcome.DONE:
        pass

    assert archive_names(resumed, 1) == ["a.txt", "b.txt", "c.txt"]


def test_corrupt_chunk_is_discarded_and_rebuilt_from_its_first_file(tmp_path: Path) -> None:
    settings = make_settings(tmp_path, archive_chunk_max_bytes=15)
    state = make_state(settings, make_files(settings, {"a.txt": 10, "b.txt": 10, "c.txt": 10, "d.txt": 10}))
    stage = ArchiveStage(settings)
    while stage.run_unit(state) != StageOutcome.DONE:
        pass
    assert archive_names(state, 4) == ["d.txt"]

    # Simulate a torn write of chunk 3 followed by a resume from its checkpoint.
    state.archive_chunk_index = 3
    state.archive_chunk_bytes = 10
    state.archive_chunk_start_offset = 2
    state.file_offset = 3
    (Path(state.work_dir) / "files-3.zip").write_bytes(b"PK\x03\x04 torn")

    assert stage.run_unit(state) == StageOutcome.CONTINUE
    assert state.file_offset == 2
    assert not (Path(state.work_dir) / "files-3.zip").exists()
    assert not (Path(state.work_dir) / "files-4.zip").exists()

    while stage.run_unit(state) != StageOutcome.DONE:
        pass
    assert archive_names(state, 3) == ["c.txt"]
    assert archive_names(state, 4) == ["d.txt"]


def test_unopenable_chunk_skips_its_batch(tmp_path: Path) -> None:
    settings = make_settings(tmp_path)
    state = make_state(settings, make_files(settings, {"a.txt": 1, "b.txt": 1}))
    state.work_dir = (tmp_path / "unmounted" / "backup-test").as_posix()

    outcome = ArchiveStage(settings).run_unit(state)

    assert outcome == StageOutcome.DONE
    assert state.stats.skipped_archive_chunks == [1]
    assert state.stats.files_skipped == 2
    assert state.archive_chunk_index == 2

from __future__ import annotations

import logging
import stat
import time
from pathlib import Path

from safebackup.core.config import Settings
from safebackup.export.chunks import ArchiveChunkWriter, CorruptArchiveChunkError
from safebackup.export.files import read_file_list
from safebackup.jobs.types import JobState, StageOutcome

logger = logging.getLogger(__name__)


class ArchiveStage:
    """Adds the next slice of the selected file list to ``files-N.zip`` chunks.

    Each call handles at most ``archive_files_per_batch`` files and stops early
    once ``deadline`` (a ``time.monotonic`` value) has passed. Files already in
    the current chunk are not added again, so a batch that died before saving
    its offset is replayed without duplicates.
    """

    def __init__(self, settings: Settings, clock=time.monotonic):
        self._settings = settings
        self._clock = clock

    def _arcname(self, path: Path) -> str:
        return path.relative_to(self._settings.content_root).as_posix()

    def run_unit(self, state: JobState, deadline: float | None = None) -> StageOutcome:
        if state.file_offset >= state.file_total or state.file_list_path is None:
            return StageOutcome.DONE

        batch = read_file_list(Path(state.file_list_path), state.file_offset, self._settings.archive_files_per_batch)
        if not batch:
            state.file_offset = state.file_total
            return StageOutcome.DONE

        writer = ArchiveChunkWriter(
            Path(state.work_dir),
            self._settings.archive_chunk_max_bytes,
            state.archive_chunk_index,
            state.archive_chunk_bytes,
        )
        try:
            writer.open()
        except CorruptArchiveChunkError as exc:
            logger.warning("%s, rebuilding it from file %s", exc, state.archive_chunk_start_offset)
            writer.discard_current()
            state.file_offset = state.archive_chunk_start_offset
            state.archive_chunk_bytes = 0
            return StageOutcome.CONTINUE
        except OSError as exc:
            logger.warning(
                "Skipping archive chunk %s and %s files: could not open archive: %s",
                writer.index,
                len(batch),
                exc,
            )
            state.stats.skipped_archive_chunks.append(writer.index)
            state.stats.files_skipped += len(batch)
            state.file_offset += len(batch)
            state.archive_chunk_index = writer.index + 1
            state.archive_chunk_bytes = 0
            state.archive_chunk_start_offset = state.file_offset
            return self._outcome(state)

        with writer:
            for raw_path in batch:
                if deadline is not None and self._clock() >= deadline:
                    break
                self._archive_one(state, writer, Path(raw_path))
                state.file_offset += 1

        state.archive_chunk_index = writer.index
        state.archive_chunk_bytes = writer.bytes_written
        return self._outcome(state)

    def _archive_one(self, state: JobState, writer: ArchiveChunkWriter, path: Path) -> None:
        try:
            arcname = self._arcname(path)
        except ValueError:
            logger.warning("Skipping %s: outside the content root", path)
            state.stats.files_skipped += 1
            return

        try:
            info = path.stat(follow_symlinks=False)
        except FileNotFoundError:
            state.stats.files_vanished += 1
            return
        except OSError as exc:
            logger.warning("Skipping %s: %s", path, exc)
            state.stats.files_skipped += 1
            return
        if not stat.S_ISREG(info.st_mode):
            state.stats.files_vanished += 1
            return

        if writer.contains(arcname):
            return

        index_before = writer.index
        try:
            writer.add(path, arcname, info.st_size)
        except FileNotFoundError:
            state.stats.files_vanished += 1
        except (OSError, ValueError) as exc:
            logger.warning("Skipping %s: could not add to archive chunk %s: %s", path, writer.index, exc)
            state.stats.files_skipped += 1
        finally:
            if writer.index != index_before:
                state.archive_chunk_start_offset = state.file_offset

    def _outcome(self, state: JobState) -> StageOutcome:
        if state.file_offset >= state.file_total:
            return StageOutcome.DONE
        return StageOutcome.CONTINUE

from __future__ import annotations

import logging
import time
from typing import Callable

from sqlalchemy.orm import Session, sessionmaker

from safebackup.core.config import Settings
from safebackup.jobs.types import JobState, JobStep, ProgressSnapshot, progress_to_dict
from safebackup.state.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

PROGRESS_KEY = "backup_progress"

DB_PERCENT_SPAN = (0, 40)
FILE_SCAN_PERCENT = 45
ARCHIVE_PERCENT_SPAN = (50, 90)
FINISH_PERCENT_SPAN = (90, 100)


def _scaled(span: tuple[int, int], done: int, total: int) -> int:
    low, high = span
    if total <= 0:
        return high
    ratio = min(max(done / total, 0.0), 1.0)
    return low + int((high - low) * ratio)


def stage_percent(state: JobState) -> int:
    if state.step == JobStep.DB:
        return _scaled(DB_PERCENT_SPAN, state.current_table_index, len(state.tables))
    if state.step == JobStep.FILE_SCAN:
        return FILE_SCAN_PERCENT
    if state.step == JobStep.ARCHIVE:
        return _scaled(ARCHIVE_PERCENT_SPAN, state.file_offset, state.file_total)
    return FINISH_PERCENT_SPAN[0]


def stage_message(state: JobState) -> str:
    if state.step == JobStep.DB:
        if state.current_table_index < len(state.tables):
            table = state.tables[state.current_table_index]
            return (
                f"Exporting table {state.current_table_index + 1}/{len(state.tables)}: {table} "
                f"({state.stats.rows_exported} rows)"
            )
        return "Database export complete"
    if state.step == JobStep.FILE_SCAN:
        return "Scanning files"
    if state.step == JobStep.ARCHIVE:
        return f"Archiving files {state.file_offset}/{state.file_total}"
    return "Finalizing backup"


class ProgressReporter:
    """Persists throttled progress snapshots for external polling.

    A snapshot that reached 100% for a session can only be replaced by a
    write from a different session; same-session writes below 100 are
    dropped so a straggling batch cannot un-complete a finished job.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        clock: Callable[[], float] = time.monotonic,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._store = KeyValueStore(session_factory)
        self._clock = clock
        self._last_write_at: float | None = None

    def _throttled(self) -> bool:
        if self._last_write_at is None:
            return False
        return (self._clock() - self._last_write_at) < self._settings.progress_throttle_seconds

    def report(
        self,
        percent: int,
        message: str,
        session_id: str | None,
        *,
        force: bool = False,
        active: bool | None = None,
    ) -> bool:
        bounded = max(0, min(100, int(percent)))
        if not force and bounded < 100 and self._throttled():
            return False

        snapshot = ProgressSnapshot(
            percent=bounded,
            message=message,
            active=bounded < 100 if active is None else active,
            session_id=session_id,
            updated_at=time.time(),
        )
        with self._session_factory() as session:
            if bounded < 100:
                current = self._parse(self._store.read(session, PROGRESS_KEY))
                if current is not None and current.percent >= 100 and current.session_id == session_id:
                    logger.debug("Discarding stale progress write for completed session %s", session_id)
                    return False
            self._store.write(session, PROGRESS_KEY, progress_to_dict(snapshot))
            session.commit()

        self._last_write_at = self._clock()
        return True

    def report_state(self, state: JobState, *, force: bool = False) -> bool:
        return self.report(stage_percent(state), stage_message(state), state.session_id, force=force)

    def read(self) -> ProgressSnapshot:
        snapshot = self._parse(self._store.get(PROGRESS_KEY))
        return snapshot if snapshot is not None else ProgressSnapshot.idle()

    def clear(self) -> None:
        self._store.delete(PROGRESS_KEY)
        self._last_write_at = None

    def _parse(self, payload: dict | None) -> ProgressSnapshot | None:
        if not payload:
            return None
        return ProgressSnapshot(
            percent=int(payload.get("percent", 0)),
            message=str(payload.get("message", "")),
            active=bool(payload.get("active", False)),
            session_id=payload.get("session_id"),
            updated_at=payload.get("updated_at"),
        )

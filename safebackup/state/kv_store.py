from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete
from sqlalchemy.orm import Session, sessionmaker

from safebackup.db.models import KeyValueEntry


class KeyValueStore:
    """Durable JSON entries stored in ``kv_entries``.

    ``read``/``write``/``remove`` operate inside a caller-owned session so several
    entries can be read-modify-written in one transaction. ``get``/``set``/``delete``
    open and commit their own session.
    """

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def read(self, session: Session, key: str, default: Any = None) -> Any:
        entry = session.get(KeyValueEntry, key, populate_existing=True)
        if entry is None:
            return default
        return entry.value

    def write(self, session: Session, key: str, value: Any) -> None:
        now = self._now()
        entry = session.get(KeyValueEntry, key)
        if entry is None:
            session.add(KeyValueEntry(key=key, value=value, updated_at=now))
        else:
            entry.value = value
            entry.updated_at = now
        session.flush()

    def remove(self, session: Session, key: str) -> bool:
        result = session.execute(delete(KeyValueEntry).where(KeyValueEntry.key == key))
        return bool(result.rowcount)

    def get(self, key: str, default: Any = None) -> Any:
        with self._session_factory() as session:
            return self.read(session, key, default)

    def set(self, key: str, value: Any) -> None:
        with self._session_factory() as session:
            self.write(session, key, value)
            session.commit()

    def delete(self, key: str) -> bool:
        with self._session_factory() as session:
            removed = self.remove(session, key)
            session.commit()
            return removed

from __future__ import annotations

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from safebackup.core.config import get_settings

_engine: Engine | None = None
_source_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def _configure_sqlite_pragma(engine: Engine) -> None:
    if not engine.url.drivername.startswith("sqlite"):
        return

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, _connection_record) -> None:  # type: ignore[no-untyped-def]
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA synchronous=NORMAL;")
        cursor.execute("PRAGMA busy_timeout=5000;")
        cursor.execute("PRAGMA foreign_keys=ON;")
        cursor.close()


def _build_engine(database_url: str) -> Engine:
    connect_args: dict[str, object] = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False

    engine = create_engine(
        database_url,
        pool_pre_ping=True,
        future=True,
        connect_args=connect_args,
    )
    _configure_sqlite_pragma(engine)
    return engine


def get_engine() -> Engine:
    global _engine
    if _engine is not None:
        return _engine

    _engine = _build_engine(get_settings().effective_database_url)
    return _engine


def get_source_engine() -> Engine:
    """Engine for the relational store being backed up and restored."""
    global _source_engine
    if _source_engine is not None:
        return _source_engine

    settings = get_settings()
    if settings.effective_source_database_url == settings.effective_database_url:
        _source_engine = get_engine()
    else:
        _source_engine = _build_engine(settings.effective_source_database_url)
    return _source_engine


def get_session_factory() -> sessionmaker[Session]:
    global _session_factory
    if _session_factory is not None:
        return _session_factory

    _session_factory = sessionmaker(
        bind=get_engine(),
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        class_=Session,
    )
    return _session_factory


def reset_engines() -> None:
    global _engine, _source_engine, _session_factory
    for engine in {id(e): e for e in (_engine, _source_engine) if e is not None}.values():
        engine.dispose()
    _engine = None
    _source_engine = None
    _session_factory = None

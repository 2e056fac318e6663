from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from sqlalchemy import Connection, Engine, inspect, text


@dataclass(frozen=True)
class MigrationStep:
    version: int
    name: str
    apply: Callable[[Connection], None]


def _ensure_schema_migrations_table(conn: Connection) -> None:
    conn.execute(
        text(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                name VARCHAR(255) NOT NULL,
                applied_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
    )


def _table_exists(conn: Connection, table_name: str) -> bool:
    inspector = inspect(conn)
    return inspector.has_table(table_name)


def _column_exists(conn: Connection, table_name: str, column_name: str) -> bool:
    if not _table_exists(conn, table_name):
        return False

    if conn.engine.dialect.name == "sqlite":
        rows = conn.execute(text(f"PRAGMA table_info('{table_name}')")).mappings().all()
        return any(str(row["name"]) == column_name for row in rows)

    inspector = inspect(conn)
    return any(col["name"] == column_name for col in inspector.get_columns(table_name))


def _index_exists(conn: Connection, table_name: str, index_name: str) -> bool:
    if not _table_exists(conn, table_name):
        return False

    if conn.engine.dialect.name == "sqlite":
        rows = conn.execute(text(f"PRAGMA index_list('{table_name}')")).mappings().all()
        return any(str(row["name"]) == index_name for row in rows)

    inspector = inspect(conn)
    return any(index.get("name") == index_name for index in inspector.get_indexes(table_name))


def _migration_0001_baseline(_conn: Connection) -> None:
    return


def _migration_0002_backup_record_session_and_stats(conn: Connection) -> None:
    if not _table_exists(conn, "backup_records"):
        return

    if not _column_exists(conn, "backup_records", "session_id"):
        conn.execute(text("ALTER TABLE backup_records ADD COLUMN session_id VARCHAR(128)"))

    if not _column_exists(conn, "backup_records", "notes"):
        conn.execute(text("ALTER TABLE backup_records ADD COLUMN notes TEXT"))

    if not _column_exists(conn, "backup_records", "stats"):
        conn.execute(text("ALTER TABLE backup_records ADD COLUMN stats JSON NOT NULL DEFAULT '{}'"))


def _migration_0003_backup_record_lock_flag(conn: Connection) -> None:
    if not _table_exists(conn, "backup_records"):
        return

    if not _column_exists(conn, "backup_records", "locked"):
        conn.execute(text("ALTER TABLE backup_records ADD COLUMN locked BOOLEAN NOT NULL DEFAULT 0"))


def _migration_0004_retention_and_checksum_indexes(conn: Connection) -> None:
    if _table_exists(conn, "backup_records") and not _index_exists(
        conn, "backup_records", "ix_backup_records_status_created"
    ):
        conn.execute(
            text(
                "CREATE INDEX IF NOT EXISTS ix_backup_records_status_created "
                "ON backup_records(status, created_at, id)"
            )
        )

    if _table_exists(conn, "file_checksums") and not _index_exists(
        conn, "file_checksums", "ix_file_checksums_backup_id"
    ):
        conn.execute(text("CREATE INDEX IF NOT EXISTS ix_file_checksums_backup_id ON file_checksums(backup_id)"))


MIGRATIONS: tuple[MigrationStep, ...] = (
    MigrationStep(version=1, name="baseline", apply=_migration_0001_baseline),
    MigrationStep(
        version=2,
        name="backup_record_session_and_stats",
        apply=_migration_0002_backup_record_session_and_stats,
    ),
    MigrationStep(version=3, name="backup_record_lock_flag", apply=_migration_0003_backup_record_lock_flag),
    MigrationStep(
        version=4,
        name="retention_and_checksum_indexes",
        apply=_migration_0004_retention_and_checksum_indexes,
    ),
)


def apply_migrations(engine: Engine) -> list[int]:
    with engine.begin() as conn:
        _ensure_schema_migrations_table(conn)

        existing_versions = {
            int(row[0])
            for row in conn.execute(text("SELECT version FROM schema_migrations ORDER BY version ASC")).all()
        }

        applied: list[int] = []
        for step in MIGRATIONS:
            if step.version in existing_versions:
                continue

            step.apply(conn)
            conn.execute(
                text("INSERT INTO schema_migrations(version, name) VALUES (:version, :name)"),
                {"version": step.version, "name": step.name},
            )
            applied.append(step.version)

    return applied

from __future__ import annotations

import logging
import math
from datetime import date, datetime, time
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterator

from sqlalchemy import Engine, MetaData, Table, inspect, select, text
from sqlalchemy.schema import CreateIndex, CreateTable

from safebackup.core.config import Settings
from safebackup.export.chunks import SqlChunkWriter
from safebackup.jobs.types import JobState, StageOutcome

logger = logging.getLogger(__name__)

_KEYSET_PYTHON_TYPES = (int, str)


def sql_literal(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if math.isfinite(value):
            return repr(value)
        return _quote(str(value))
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return f"X'{bytes(value).hex()}'"
    if isinstance(value, datetime):
        return _quote(value.isoformat(sep=" "))
    if isinstance(value, (date, time)):
        return _quote(value.isoformat())
    return _quote(str(value))


def _quote(raw: str) -> str:
    return "'" + raw.replace("'", "''") + "'"


def split_sql_statements(lines: Iterator[str]) -> Iterator[str]:
    """Yield complete statements from dump text, honouring quoted literals.

    Lines starting with ``--`` outside a statement are comments. A statement
    ends at a ``;`` that is not inside a single- or double-quoted token.
    """
    buffer: list[str] = []
    quote: str | None = None
    for line in lines:
        if quote is None and not buffer and (not line.strip() or line.lstrip().startswith("--")):
            continue
        start = 0
        for position, char in enumerate(line):
            if quote is not None:
                if char == quote:
                    quote = None
                continue
            if char in ("'", '"'):
                quote = char
            elif char == ";":
                buffer.append(line[start : position + 1])
                statement = "".join(buffer).strip()
                buffer = []
                start = position + 1
                if statement and statement != ";":
                    yield statement
        remainder = line[start:]
        if remainder.strip() or quote is not None or buffer:
            buffer.append(remainder)
    tail = "".join(buffer).strip()
    if tail:
        yield tail


class SourceDatabase:
    """Table listing, key discovery and paged row access on the store being backed up."""

    def __init__(self, engine: Engine, exclude_tables: list[str] | None = None):
        self._engine = engine
        self._exclude = set(exclude_tables or [])
        self._tables: dict[str, Table] = {}

    @property
    def engine(self) -> Engine:
        return self._engine

    def _quote_identifier(self, name: str) -> str:
        return self._engine.dialect.identifier_preparer.quote(name)

    def _table(self, name: str) -> Table:
        table = self._tables.get(name)
        if table is None:
            table = Table(name, MetaData(), autoload_with=self._engine)
            self._tables[name] = table
        return table

    def list_tables(self) -> list[str]:
        names = inspect(self._engine).get_table_names()
        return sorted(name for name in names if name not in self._exclude)

    def primary_key_column(self, table_name: str) -> str | None:
        """Single integer/string primary key column, or None for offset pagination."""
        table = self._table(table_name)
        columns = list(table.primary_key.columns)
        if len(columns) != 1:
            return None
        column = columns[0]
        try:
            python_type = column.type.python_type
        except NotImplementedError:
            return None
        if not issubclass(python_type, _KEYSET_PYTHON_TYPES):
            return None
        return column.name

    def schema_statements(self, table_name: str) -> str:
        table = self._table(table_name)
        dialect = self._engine.dialect
        parts = [f"DROP TABLE IF EXISTS {self._quote_identifier(table_name)};"]
        parts.append(str(CreateTable(table).compile(dialect=dialect)).strip() + ";")
        for index in sorted(table.indexes, key=lambda item: item.name or ""):
            parts.append(str(CreateIndex(index).compile(dialect=dialect)).strip() + ";")
        return "\n".join(parts) + "\n\n"

    def fetch_after(self, table_name: str, key: str, cursor: Any, limit: int) -> list[dict[str, Any]]:
        table = self._table(table_name)
        column = table.c[key]
        stmt = select(table).order_by(column.asc()).limit(limit)
        if cursor is not None:
            stmt = stmt.where(column > cursor)
        with self._engine.connect() as conn:
            return [dict(row) for row in conn.execute(stmt).mappings().all()]

    def fetch_offset(self, table_name: str, offset: int, limit: int) -> list[dict[str, Any]]:
        table = self._table(table_name)
        stmt = select(table).offset(offset).limit(limit)
        with self._engine.connect() as conn:
            return [dict(row) for row in conn.execute(stmt).mappings().all()]

    def insert_statement(self, table_name: str, row: dict[str, Any]) -> str:
        columns = ", ".join(self._quote_identifier(name) for name in row)
        values = ", ".join(sql_literal(value) for value in row.values())
        return f"INSERT INTO {self._quote_identifier(table_name)} ({columns}) VALUES ({values});\n"

    def execute_statements(self, statements: Iterator[str]) -> int:
        executed = 0
        sqlite = self._engine.dialect.name == "sqlite"
        with self._engine.connect() as conn:
            if sqlite:
                conn.execute(text("PRAGMA foreign_keys=OFF"))
                conn.commit()
            try:
                with conn.begin():
                    for statement in statements:
                        conn.exec_driver_sql(statement)
                        executed += 1
            finally:
                if sqlite:
                    conn.execute(text("PRAGMA foreign_keys=ON"))
                    conn.commit()
        self._tables.clear()
        return executed


class DatabaseExportStage:
    """Exports one page of the current table per call, resumable from ``JobState``.

    Tables with a single integer or string primary key are paged with
    ``key > cursor``; other tables fall back to ``OFFSET`` paging, which can skip
    or repeat rows if the table changes while the export is in progress.
    """

    def __init__(self, settings: Settings, source: SourceDatabase):
        self._settings = settings
        self._source = source

    def run_unit(self, state: JobState) -> StageOutcome:
        if state.current_table_index >= len(state.tables):
            return StageOutcome.DONE

        table = state.tables[state.current_table_index]
        writer = SqlChunkWriter(
            Path(state.work_dir),
            self._settings.sql_chunk_max_bytes,
            state.sql_chunk_index,
            state.sql_chunk_bytes,
        )
        try:
            with writer:
                writer.open()
                exhausted = self._export_page(state, table, writer)
        except OSError as exc:
            logger.warning("Skipping table %s: could not write SQL chunk %s: %s", table, writer.index, exc)
            state.stats.skipped_tables.append(table)
            exhausted = True
        else:
            state.sql_chunk_index = writer.index
            state.sql_chunk_bytes = writer.bytes_written

        if exhausted:
            state.current_table_index += 1
            state.reset_table_cursor()
        if state.current_table_index >= len(state.tables):
            return StageOutcome.DONE
        return StageOutcome.CONTINUE

    def _export_page(self, state: JobState, table: str, writer: SqlChunkWriter) -> bool:
        batch_size = self._settings.db_fetch_batch_size

        if not state.table_started:
            state.primary_key_column = self._source.primary_key_column(table)
            state.offset_mode = state.primary_key_column is None
            state.cursor_value = 0 if state.offset_mode else None
            if state.offset_mode:
                logger.info("Table %s has no usable primary key, exporting with offset pagination", table)
            writer.write(self._source.schema_statements(table))
            state.table_started = True

        if state.offset_mode:
            rows = self._source.fetch_offset(table, int(state.cursor_value or 0), batch_size)
        else:
            assert state.primary_key_column is not None
            rows = self._source.fetch_after(table, state.primary_key_column, state.cursor_value, batch_size)

        for row in rows:
            writer.write(self._source.insert_statement(table, row))

        if rows:
            if state.offset_mode:
                state.cursor_value = int(state.cursor_value or 0) + len(rows)
            else:
                state.cursor_value = rows[-1][state.primary_key_column]
            state.stats.rows_exported += len(rows)

        exhausted = len(rows) < batch_size
        if exhausted:
            writer.write("\n")
        return exhausted

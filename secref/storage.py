#!/usr/bin/env python3
"""
Storage sink for synced filing rows.

The orchestrator only needs an idempotent upsert-by-key and an age-based
delete. ``SQLStorageSink`` provides both on top of the SQLModel tables in
``secref.db_models`` using INSERT ... ON CONFLICT DO UPDATE (Postgres and
SQLite both support it).
"""

from datetime import date
from typing import Dict, List, Optional, Protocol, Sequence

from loguru import logger
from sqlalchemy import Date, Table, delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import SQLModel

from secref.constants import CHILD_TABLES
from secref.db_models import DatabaseManager
from secref.exceptions import StorageError
from secref.validators import parse_date

# SQLite caps bound parameters per statement
MAX_BOUND_PARAMETERS = 999


class StorageSink(Protocol):
    """Injected storage: upsert is atomic per call."""

    def upsert_rows(self, table: str, rows: List[Dict], key_columns: Sequence[str]) -> int: ...

    def delete_older_than(self, table: str, column: str, cutoff: date) -> int: ...


def dedupe_rows(rows: List[Dict], key_columns: Sequence[str]) -> List[Dict]:
    """Keep the last row per key; one statement may not touch a key twice."""
    unique: Dict[tuple, Dict] = {}
    for row in rows:
        unique[tuple(row.get(column) for column in key_columns)] = row
    return list(unique.values())


class SQLStorageSink:
    """StorageSink backed by a SQLAlchemy engine."""

    def __init__(self, db_manager: DatabaseManager):
        """Initialize sink with database manager."""
        self.db_manager = db_manager
        dialect = db_manager.dialect
        if dialect == "postgresql":
            self._insert = pg_insert
        elif dialect == "sqlite":
            self._insert = sqlite_insert
        else:
            raise StorageError(f"Unsupported database dialect for upsert: {dialect}")

    def _table(self, name: str) -> Table:
        try:
            return SQLModel.metadata.tables[name]
        except KeyError:
            raise StorageError(f"Unknown table: {name}") from None

    @staticmethod
    def _coerce(table: Table, columns: List[str], row: Dict) -> Dict:
        values = {}
        for column in columns:
            value = row.get(column)
            if isinstance(table.c[column].type, Date) and isinstance(value, str):
                value = parse_date(value)
            values[column] = value
        return values

    def upsert_rows(self, table: str, rows: List[Dict], key_columns: Sequence[str]) -> int:
        """
        Insert or overwrite rows by primary key in one transaction.

        Args:
            table: Table name
            rows: Row dicts keyed by column name (unknown keys are ignored)
            key_columns: Conflict target columns

        Returns:
            Number of rows written

        Raises:
            StorageError: If the database rejects the write; nothing is committed
        """
        if not rows:
            return 0

        sql_table = self._table(table)
        key_columns = list(key_columns)
        present = {key for row in rows for key in row}
        columns = [column.name for column in sql_table.columns if column.name in present]
        missing_keys = [column for column in key_columns if column not in columns]
        if missing_keys:
            raise StorageError(f"Rows for {table} are missing key columns {missing_keys}")

        rows = [self._coerce(sql_table, columns, row) for row in dedupe_rows(rows, key_columns)]
        chunk_size = max(1, MAX_BOUND_PARAMETERS // len(columns))
        update_columns = [column for column in columns if column not in key_columns]

        try:
            with self.db_manager.get_session() as session:
                for start in range(0, len(rows), chunk_size):
                    stmt = self._insert(sql_table).values(rows[start:start + chunk_size])
                    if update_columns:
                        stmt = stmt.on_conflict_do_update(
                            index_elements=key_columns,
                            set_={column: stmt.excluded[column] for column in update_columns},
                        )
                    else:
                        stmt = stmt.on_conflict_do_nothing(index_elements=key_columns)
                    session.execute(stmt)
                session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to upsert {len(rows)} rows into {table}: {e}")
            raise StorageError(f"Upsert into {table} failed: {e}") from e

        logger.debug(f"Upserted {len(rows)} rows into {table}")
        return len(rows)

    def delete_older_than(self, table: str, column: str, cutoff: date) -> int:
        """
        Delete rows whose ``column`` is before ``cutoff``.

        Child rows (holdings, reporting owners, transactions) of the deleted
        filings are removed in the same transaction.

        Returns:
            Number of header rows deleted
        """
        sql_table = self._table(table)
        old_accessions = select(sql_table.c.accession_number).where(sql_table.c[column] < cutoff)

        try:
            with self.db_manager.get_session() as session:
                for child in CHILD_TABLES.get(table, []):
                    child_table = self._table(child)
                    session.execute(
                        delete(child_table).where(child_table.c.accession_number.in_(old_accessions))
                    )
                result = session.execute(delete(sql_table).where(sql_table.c[column] < cutoff))
                session.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"Prune of {table} failed: {e}") from e

        deleted = result.rowcount or 0
        if deleted:
            logger.info(f"Pruned {deleted} rows from {table} filed before {cutoff.isoformat()}")
        return deleted

    def count_rows(self, table: str, where: Optional[Dict] = None) -> int:
        """Row count, optionally filtered by column equality."""
        sql_table = self._table(table)
        stmt = select(sql_table)
        for column, value in (where or {}).items():
            stmt = stmt.where(sql_table.c[column] == value)
        with self.db_manager.get_session() as session:
            return len(session.execute(stmt).all())

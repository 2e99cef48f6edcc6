"""
Repository pattern for data access.

Holds the schema of the quota database and the stores of raw usage records
and of the usage entries parsed from them.
"""

import sqlite3
from dataclasses import replace
from datetime import datetime
from typing import Iterable, List, Optional

import structlog

from .db import DEFAULT_DB_PATH, from_db_timestamp, get_connection, to_db_timestamp
from .models import UsageEntry, UsageRecord
from cloud_quota.core.errors import ValidationError

logger = structlog.get_logger(__name__)

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS usage_record (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        resource_id INTEGER NOT NULL,
        resource_type INTEGER NOT NULL,
        account_id INTEGER NOT NULL,
        domain_id INTEGER NOT NULL,
        zone_id INTEGER NOT NULL,
        quantity INTEGER NOT NULL DEFAULT 0,
        protected_size INTEGER,
        offering_id INTEGER,
        vm_id INTEGER,
        created_at TEXT NOT NULL,
        removed_at TEXT
    );
    CREATE INDEX IF NOT EXISTS idx_usage_record_account
        ON usage_record (account_id, resource_type, created_at);

    CREATE TABLE IF NOT EXISTS usage_entry (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        account_id INTEGER NOT NULL,
        domain_id INTEGER NOT NULL,
        zone_id INTEGER NOT NULL,
        usage_type INTEGER NOT NULL,
        description TEXT NOT NULL,
        usage_display TEXT NOT NULL,
        raw_usage REAL NOT NULL,
        resource_id INTEGER,
        vm_id INTEGER,
        offering_id INTEGER,
        size INTEGER,
        protected_size INTEGER,
        start_date TEXT NOT NULL,
        end_date TEXT NOT NULL,
        interval_start TEXT NOT NULL,
        interval_end TEXT NOT NULL,
        quota_calculated INTEGER NOT NULL DEFAULT 0
    );
    CREATE INDEX IF NOT EXISTS idx_usage_entry_account
        ON usage_entry (account_id, interval_start);

    CREATE TABLE IF NOT EXISTS quota_tariff (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        usage_type INTEGER NOT NULL,
        usage_name TEXT,
        usage_unit TEXT,
        usage_discriminator TEXT,
        currency_value TEXT NOT NULL,
        activation_rule TEXT,
        processing_period TEXT NOT NULL,
        execute_on INTEGER,
        effective_from TEXT NOT NULL,
        effective_to TEXT,
        version INTEGER NOT NULL DEFAULT 1,
        position INTEGER NOT NULL DEFAULT 1,
        description TEXT,
        removed TEXT
    );
    CREATE INDEX IF NOT EXISTS idx_quota_tariff_usage_type
        ON quota_tariff (usage_type, effective_from);

    CREATE TABLE IF NOT EXISTS quota_usage (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        account_id INTEGER NOT NULL,
        domain_id INTEGER NOT NULL,
        usage_type INTEGER NOT NULL,
        usage_entry_id INTEGER,
        processing_period TEXT NOT NULL,
        period_start TEXT NOT NULL,
        period_end TEXT NOT NULL,
        start_date TEXT NOT NULL,
        end_date TEXT NOT NULL,
        quota_used TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_quota_usage_period
        ON quota_usage (account_id, period_start, period_end, processing_period);

    CREATE TABLE IF NOT EXISTS quota_usage_detail (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        quota_usage_id INTEGER NOT NULL REFERENCES quota_usage (id) ON DELETE CASCADE,
        tariff_id INTEGER NOT NULL,
        tariff_value TEXT NOT NULL,
        quota_used TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS quota_period (
        account_id INTEGER NOT NULL,
        period_start TEXT NOT NULL,
        period_end TEXT NOT NULL,
        processing_period TEXT NOT NULL,
        state TEXT NOT NULL,
        usage_value REAL NOT NULL DEFAULT 0,
        aggregated_value TEXT NOT NULL DEFAULT '0',
        processed_data TEXT,
        finalized_at TEXT,
        PRIMARY KEY (account_id, period_start, period_end, processing_period)
    );

    CREATE TABLE IF NOT EXISTS domain (
        id INTEGER PRIMARY KEY,
        uuid TEXT NOT NULL,
        name TEXT NOT NULL,
        path TEXT NOT NULL DEFAULT '/'
    );

    CREATE TABLE IF NOT EXISTS account (
        id INTEGER PRIMARY KEY,
        uuid TEXT NOT NULL,
        name TEXT NOT NULL,
        domain_id INTEGER NOT NULL,
        role_uuid TEXT,
        role_name TEXT,
        role_type TEXT,
        project_uuid TEXT,
        project_name TEXT
    );

    CREATE TABLE IF NOT EXISTS zone (
        id INTEGER PRIMARY KEY,
        uuid TEXT NOT NULL,
        name TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS resource (
        id INTEGER NOT NULL,
        usage_type INTEGER NOT NULL,
        uuid TEXT NOT NULL,
        name TEXT NOT NULL,
        os_name TEXT,
        tags TEXT NOT NULL DEFAULT '{}',
        virtual_size INTEGER,
        offering_uuid TEXT,
        offering_name TEXT,
        offering_customized INTEGER,
        cpu_number INTEGER,
        cpu_speed INTEGER,
        memory INTEGER,
        PRIMARY KEY (id, usage_type)
    );
"""


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create every table of the quota database if it doesn't exist.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript(_SCHEMA)
        conn.commit()
    finally:
        conn.close()


_RECORD_COLUMNS = (
    "id, resource_id, resource_type, account_id, domain_id, zone_id, quantity, "
    "protected_size, offering_id, vm_id, created_at, removed_at"
)


def _row_to_record(row: tuple) -> UsageRecord:
    return UsageRecord(
        id=row[0],
        resource_id=row[1],
        resource_type=row[2],
        account_id=row[3],
        domain_id=row[4],
        zone_id=row[5],
        quantity=row[6],
        protected_size=row[7],
        offering_id=row[8],
        vm_id=row[9],
        created_at=from_db_timestamp(row[10]),
        removed_at=from_db_timestamp(row[11])
    )


class UsageRecordStore:
    """Store of the raw usage intervals of resources.

    Parsers only read from it; the metering side persists records and
    records their removal.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def persist(self, record: UsageRecord) -> UsageRecord:
        """Insert a raw usage record.

        Returns:
            The record with its generated id

        Raises:
            ValidationError: If the record is removed before it was created
        """
        if record.removed_at is not None and record.removed_at < record.created_at:
            raise ValidationError(
                f"Usage record of resource [{record.resource_id}] cannot be removed before it was created"
            )

        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                INSERT INTO usage_record
                (resource_id, resource_type, account_id, domain_id, zone_id, quantity,
                 protected_size, offering_id, vm_id, created_at, removed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.resource_id,
                record.resource_type,
                record.account_id,
                record.domain_id,
                record.zone_id,
                record.quantity,
                record.protected_size,
                record.offering_id,
                record.vm_id,
                to_db_timestamp(record.created_at),
                to_db_timestamp(record.removed_at)
            ))
            conn.commit()
            return replace(record, id=cursor.lastrowid)
        finally:
            conn.close()

    def list_records(
        self,
        account_id: int,
        start: datetime,
        end: datetime,
        resource_type: Optional[int] = None
    ) -> List[UsageRecord]:
        """List the records of an account whose interval overlaps [start, end].

        Records still active (no removal date) overlap every window after
        their creation.

        Returns:
            Records ordered by creation date
        """
        conn = get_connection(self.db_path)
        try:
            query = f"""
                SELECT {_RECORD_COLUMNS}
                FROM usage_record
                WHERE account_id = ?
                  AND created_at <= ?
                  AND (removed_at IS NULL OR removed_at >= ?)
            """
            params = [account_id, to_db_timestamp(end), to_db_timestamp(start)]
            if resource_type is not None:
                query += " AND resource_type = ?"
                params.append(resource_type)
            query += " ORDER BY created_at, id"

            cursor = conn.execute(query, params)
            return [_row_to_record(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def list_account_ids(self) -> List[int]:
        """Ids of every account that has usage records."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("SELECT DISTINCT account_id FROM usage_record ORDER BY account_id")
            return [row[0] for row in cursor.fetchall()]
        finally:
            conn.close()

    def remove_by_resource_id(self, resource_id: int) -> int:
        """Delete every record of a resource.

        Returns:
            Number of deleted records
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("DELETE FROM usage_record WHERE resource_id = ?", (resource_id,))
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def record_removal(self, resource_id: int, removed_at: datetime) -> int:
        """Set the removal date of the active records of a resource.

        Records that already have a removal date are left untouched, as are
        records created after ``removed_at``.

        Returns:
            Number of updated records
        """
        removed = to_db_timestamp(removed_at)
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                UPDATE usage_record
                SET removed_at = ?
                WHERE resource_id = ? AND removed_at IS NULL AND created_at <= ?
            """, (removed, resource_id, removed))
            conn.commit()
            if cursor.rowcount:
                logger.info("usage_record_removal_recorded", resource_id=resource_id, records=cursor.rowcount)
            return cursor.rowcount
        finally:
            conn.close()


_ENTRY_COLUMNS = (
    "id, account_id, domain_id, zone_id, usage_type, description, usage_display, raw_usage, "
    "resource_id, vm_id, offering_id, size, protected_size, start_date, end_date, "
    "interval_start, interval_end, quota_calculated"
)


def _row_to_entry(row: tuple) -> UsageEntry:
    return UsageEntry(
        id=row[0],
        account_id=row[1],
        domain_id=row[2],
        zone_id=row[3],
        usage_type=row[4],
        description=row[5],
        usage_display=row[6],
        raw_usage=row[7],
        resource_id=row[8],
        vm_id=row[9],
        offering_id=row[10],
        size=row[11],
        protected_size=row[12],
        start_date=from_db_timestamp(row[13]),
        end_date=from_db_timestamp(row[14]),
        interval_start=from_db_timestamp(row[15]),
        interval_end=from_db_timestamp(row[16]),
        quota_calculated=bool(row[17])
    )


def _insert_entry(conn: sqlite3.Connection, entry: UsageEntry) -> int:
    cursor = conn.execute("""
        INSERT INTO usage_entry
        (account_id, domain_id, zone_id, usage_type, description, usage_display, raw_usage,
         resource_id, vm_id, offering_id, size, protected_size, start_date, end_date,
         interval_start, interval_end, quota_calculated)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, (
        entry.account_id,
        entry.domain_id,
        entry.zone_id,
        entry.usage_type,
        entry.description,
        entry.usage_display,
        entry.raw_usage,
        entry.resource_id,
        entry.vm_id,
        entry.offering_id,
        entry.size,
        entry.protected_size,
        to_db_timestamp(entry.start_date),
        to_db_timestamp(entry.end_date),
        to_db_timestamp(entry.interval_start),
        to_db_timestamp(entry.interval_end),
        int(entry.quota_calculated)
    ))
    return cursor.lastrowid


class UsageEntryStore:
    """Store of the usage entries produced by the parsers."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def persist_entry(self, entry: UsageEntry) -> UsageEntry:
        """Insert a usage entry and return it with its generated id."""
        return self.persist_entries([entry])[0]

    def persist_entries(self, entries: List[UsageEntry]) -> List[UsageEntry]:
        """Insert several usage entries atomically.

        Returns:
            The entries with their generated ids
        """
        if not entries:
            return []

        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            persisted = []
            for entry in entries:
                entry_id = _insert_entry(conn, entry)
                persisted.append(replace(entry, id=entry_id))
            conn.commit()
            return persisted
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def persist_new_entries(self, entries: List[UsageEntry]) -> List[UsageEntry]:
        """Insert the entries not stored yet, atomically.

        An entry is already stored when one exists for the same account,
        resource, usage type and interval.

        Returns:
            The inserted entries with their generated ids
        """
        if not entries:
            return []

        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            persisted = []
            for entry in entries:
                existing = conn.execute("""
                    SELECT id FROM usage_entry
                    WHERE account_id = ? AND resource_id IS ? AND usage_type = ?
                      AND interval_start = ? AND interval_end = ?
                """, (
                    entry.account_id,
                    entry.resource_id,
                    entry.usage_type,
                    to_db_timestamp(entry.interval_start),
                    to_db_timestamp(entry.interval_end)
                )).fetchone()
                if existing is not None:
                    continue
                entry_id = _insert_entry(conn, entry)
                persisted.append(replace(entry, id=entry_id))
            conn.commit()
            return persisted
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def list_entries(
        self,
        account_id: Optional[int] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        usage_type: Optional[int] = None,
        pending_only: bool = False
    ) -> List[UsageEntry]:
        """List usage entries whose interval starts within [start, end).

        Returns:
            Entries in chronological order of their interval start, ties
            broken by id
        """
        conn = get_connection(self.db_path)
        try:
            query = f"SELECT {_ENTRY_COLUMNS} FROM usage_entry"
            params = []
            conditions = []

            if account_id is not None:
                conditions.append("account_id = ?")
                params.append(account_id)
            if start is not None:
                conditions.append("interval_start >= ?")
                params.append(to_db_timestamp(start))
            if end is not None:
                conditions.append("interval_start < ?")
                params.append(to_db_timestamp(end))
            if usage_type is not None:
                conditions.append("usage_type = ?")
                params.append(usage_type)
            if pending_only:
                conditions.append("quota_calculated = 0")

            if conditions:
                query += " WHERE " + " AND ".join(conditions)
            query += " ORDER BY interval_start, id"

            cursor = conn.execute(query, params)
            return [_row_to_entry(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def list_account_ids(self, start: datetime, end: datetime) -> List[int]:
        """Ids of the accounts with usage entries starting within [start, end)."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT DISTINCT account_id FROM usage_entry
                WHERE interval_start >= ? AND interval_start < ?
                ORDER BY account_id
            """, (to_db_timestamp(start), to_db_timestamp(end)))
            return [row[0] for row in cursor.fetchall()]
        finally:
            conn.close()

    def mark_calculated(self, entry_ids: Iterable[int]) -> int:
        """Flag entries as rated.

        Returns:
            Number of updated entries
        """
        ids = [(entry_id,) for entry_id in entry_ids]
        if not ids:
            return 0

        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            updated = 0
            for params in ids:
                updated += conn.execute(
                    "UPDATE usage_entry SET quota_calculated = 1 WHERE id = ?", params
                ).rowcount
            conn.commit()
            return updated
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

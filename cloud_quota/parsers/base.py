"""
Base class of the usage parsers.

A usage parser turns the raw usage intervals of one resource type into usage
entries. Each interval is clipped to the parse window; its duration counts
both boundary instants, so a record removed exactly one hour after it was
created yields 3600001 ms.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Callable, ClassVar, Iterable, List, Optional

import structlog

from cloud_quota.core.errors import DataGapError
from cloud_quota.storage.db import utc_now
from cloud_quota.storage.models import UsageEntry, UsageRecord
from cloud_quota.storage.repository import UsageEntryStore, UsageRecordStore

logger = structlog.get_logger(__name__)

_ONE_MILLISECOND = timedelta(milliseconds=1)


def usage_hours(duration_ms: int) -> float:
    """Convert a duration in milliseconds to hours."""
    return duration_ms / 1000 / 60 / 60


def format_usage_hours(hours: float) -> str:
    """Render hours the way usage entries display them, e.g. ``1.000000 Hrs``."""
    return f"{hours:.6f} Hrs"


class UsageParser(ABC):
    """Parses the raw usage records of one usage type."""

    usage_type: ClassVar[int]

    def __init__(
        self,
        record_store: UsageRecordStore,
        entry_store: UsageEntryStore,
        clock: Callable[[], datetime] = utc_now
    ):
        self._record_store = record_store
        self._entry_store = entry_store
        self._clock = clock

    def parse(self, account_id: int, start_date: datetime, end_date: Optional[datetime] = None) -> bool:
        """Create and persist the usage entries of an account for a window.

        Args:
            account_id: Account whose records are parsed
            start_date: Start of the parse window
            end_date: End of the parse window; None or a future date means now

        Returns:
            True on success (including when there is nothing to parse),
            False if the window is empty
        """
        log = logger.bind(parser=type(self).__name__, account_id=account_id)
        now = self._clock()
        if end_date is None or end_date > now:
            end_date = now
        if start_date > end_date:
            log.warning("usage_parse_window_invalid", start_date=str(start_date), end_date=str(end_date))
            return False

        log.debug("usage_parse_started", start_date=str(start_date), end_date=str(end_date))
        records = self._record_store.list_records(account_id, start_date, end_date, self.usage_type)
        if not records:
            log.debug("usage_records_not_found", start_date=str(start_date), end_date=str(end_date))
            return True

        entries = []
        for record in records:
            try:
                entries.append(self.create_entry(record, start_date, end_date))
            except DataGapError as e:
                log.warning("usage_record_skipped", record_id=record.id, resource_id=record.resource_id, reason=str(e))

        persisted = self._entry_store.persist_new_entries(entries)
        if len(persisted) < len(entries):
            log.info("usage_entry_duplicate_skipped", duplicates=len(entries) - len(persisted))
        log.info("usage_parsed", records=len(records), entries=len(persisted))
        return True

    def create_entry(self, record: UsageRecord, start_date: datetime, end_date: datetime) -> UsageEntry:
        """Clip a raw record to the window and build its usage entry.

        Raises:
            DataGapError: If the record is removed before it was created, or
                lies outside the window
        """
        if record.removed_at is not None and record.removed_at < record.created_at:
            raise DataGapError(
                f"Usage record [{record.id}] was removed at [{record.removed_at}] "
                f"before it was created at [{record.created_at}]"
            )

        created = max(record.created_at, start_date)
        removed = record.removed_at
        if removed is None or removed > end_date:
            removed = end_date
        if removed < created:
            raise DataGapError(f"Usage record [{record.id}] does not overlap [{start_date}, {end_date}]")

        duration_ms = (removed - created) // _ONE_MILLISECOND + 1
        return self.build_entry(record, start_date, end_date, created, removed, usage_hours(duration_ms))

    @abstractmethod
    def build_entry(
        self,
        record: UsageRecord,
        start_date: datetime,
        end_date: datetime,
        interval_start: datetime,
        interval_end: datetime,
        hours: float
    ) -> UsageEntry:
        """Build the usage entry of a clipped record."""


def parse_all(
    parsers: Iterable[UsageParser],
    account_id: int,
    start_date: datetime,
    end_date: Optional[datetime] = None
) -> List[str]:
    """Run every parser for an account.

    Returns:
        Names of the parsers that failed
    """
    failed = []
    for parser in parsers:
        if not parser.parse(account_id, start_date, end_date):
            failed.append(type(parser).__name__)
    return failed

"""
Unit tests for the usage parsers.
"""

from datetime import datetime, timedelta

import pytest
from structlog.testing import capture_logs

from cloud_quota.core.quota_types import BACKUP_OBJECT, RUNNING_VM
from cloud_quota.parsers import PARSERS, BackupObjectUsageParser, create_parsers, format_usage_hours, parse_all, usage_hours
from cloud_quota.storage.models import UsageRecord
from cloud_quota.storage.repository import UsageEntryStore, UsageRecordStore

T0 = datetime(2024, 3, 1, 10, 0, 0)
NOW = datetime(2024, 6, 1)


def _record(**overrides):
    values = dict(
        resource_id=40,
        resource_type=BACKUP_OBJECT,
        account_id=1,
        domain_id=2,
        zone_id=3,
        created_at=T0,
        removed_at=T0 + timedelta(milliseconds=3600000),
        quantity=100,
        protected_size=50,
        offering_id=5,
        vm_id=9
    )
    values.update(overrides)
    return UsageRecord(**values)


class _InMemoryRecordStore:
    """Record store returning fixed records, bypassing persistence checks."""

    def __init__(self, records):
        self.records = records

    def list_records(self, account_id, start, end, resource_type=None):
        return list(self.records)


@pytest.fixture
def stores(db_path):
    return UsageRecordStore(db_path), UsageEntryStore(db_path)


@pytest.fixture
def parser(stores):
    return BackupObjectUsageParser(*stores, clock=lambda: NOW)


class TestUsageHours:
    """Test duration conversion and display."""

    def test_one_hour(self):
        assert usage_hours(3600000) == 1.0

    def test_display_has_six_decimals(self):
        assert format_usage_hours(1.0) == "1.000000 Hrs"
        assert format_usage_hours(usage_hours(3600001)) == "1.000000 Hrs"
        assert format_usage_hours(2.5) == "2.500000 Hrs"


class TestBackupObjectUsageParser:
    """Test parsing of backup object usage."""

    def test_one_hour_record_in_window(self, stores, parser):
        """A record of one hour inside the window yields one entry of one hour."""
        record_store, entry_store = stores
        record_store.persist(_record())

        assert parser.parse(1, T0, T0 + timedelta(milliseconds=7200000)) is True

        entries = entry_store.list_entries(account_id=1)
        assert len(entries) == 1
        entry = entries[0]
        assert entry.usage_type == BACKUP_OBJECT
        assert entry.usage_display == "1.000000 Hrs"
        assert entry.raw_usage == pytest.approx(3600001 / 3600000)
        assert entry.zone_id == 3
        assert entry.size == 100
        assert entry.protected_size == 50
        assert entry.description == "Backup object usage for backup with ID: 40, backup offering: 5, and VM: 9"
        assert entry.start_date == T0
        assert entry.end_date == T0 + timedelta(hours=2)
        assert not entry.quota_calculated

    def test_parsing_a_window_twice_keeps_one_entry(self, stores, parser):
        record_store, entry_store = stores
        record_store.persist(_record())
        end = T0 + timedelta(hours=2)

        assert parser.parse(1, T0, end) is True
        with capture_logs() as logs:
            assert parser.parse(1, T0, end) is True

        assert len(entry_store.list_entries(account_id=1)) == 1
        skipped = [log for log in logs if log["event"] == "usage_entry_duplicate_skipped"]
        assert skipped[0]["duplicates"] == 1

    def test_duration_includes_both_boundaries(self, stores, parser):
        record_store, entry_store = stores
        record_store.persist(_record(removed_at=T0 + timedelta(hours=2)))

        parser.parse(1, T0 - timedelta(hours=1), T0 + timedelta(hours=3))

        entry = entry_store.list_entries(account_id=1)[0]
        assert entry.raw_usage == (7200000 + 1) / 1000 / 60 / 60

    def test_record_is_clipped_to_window(self, stores, parser):
        record_store, entry_store = stores
        record_store.persist(_record(created_at=T0 - timedelta(hours=5), removed_at=T0 + timedelta(hours=5)))

        parser.parse(1, T0, T0 + timedelta(hours=2))

        entry = entry_store.list_entries(account_id=1)[0]
        assert entry.interval_start == T0
        assert entry.interval_end == T0 + timedelta(hours=2)
        assert entry.usage_display == "2.000000 Hrs"

    def test_active_record_is_clipped_to_window_end(self, stores, parser):
        record_store, entry_store = stores
        record_store.persist(_record(removed_at=None))

        parser.parse(1, T0, T0 + timedelta(hours=3))

        entry = entry_store.list_entries(account_id=1)[0]
        assert entry.interval_end == T0 + timedelta(hours=3)

    def test_future_end_date_is_clamped_to_now(self, stores):
        record_store, entry_store = stores
        record_store.persist(_record(removed_at=None))
        parser = BackupObjectUsageParser(*stores, clock=lambda: T0 + timedelta(hours=1))

        parser.parse(1, T0, T0 + timedelta(days=30))

        entry = entry_store.list_entries(account_id=1)[0]
        assert entry.end_date == T0 + timedelta(hours=1)
        assert entry.usage_display == "1.000000 Hrs"

    def test_missing_end_date_means_now(self, stores):
        record_store, entry_store = stores
        record_store.persist(_record())
        parser = BackupObjectUsageParser(*stores, clock=lambda: T0 + timedelta(hours=4))

        assert parser.parse(1, T0, None) is True
        assert entry_store.list_entries(account_id=1)[0].end_date == T0 + timedelta(hours=4)

    def test_empty_window_is_a_successful_no_op(self, stores, parser):
        _, entry_store = stores
        assert parser.parse(1, T0, T0 + timedelta(hours=1)) is True
        assert entry_store.list_entries() == []

    def test_other_accounts_and_types_are_ignored(self, stores, parser):
        record_store, entry_store = stores
        record_store.persist(_record(account_id=2))
        record_store.persist(_record(resource_type=RUNNING_VM))

        parser.parse(1, T0, T0 + timedelta(hours=2))

        assert entry_store.list_entries() == []

    def test_inverted_window_fails(self, parser):
        assert parser.parse(1, T0, T0 - timedelta(hours=1)) is False

    def test_record_removed_before_creation_is_skipped(self, stores):
        _, entry_store = stores
        broken = _record(id=7, removed_at=T0 - timedelta(hours=1))
        valid = _record(id=8, resource_id=41)
        parser = BackupObjectUsageParser(_InMemoryRecordStore([broken, valid]), entry_store, clock=lambda: NOW)

        with capture_logs() as logs:
            assert parser.parse(1, T0 - timedelta(hours=2), T0 + timedelta(hours=2)) is True

        entries = entry_store.list_entries(account_id=1)
        assert [entry.resource_id for entry in entries] == [41]
        skipped = [log for log in logs if log["event"] == "usage_record_skipped"]
        assert len(skipped) == 1
        assert skipped[0]["log_level"] == "warning"
        assert skipped[0]["record_id"] == 7


class TestParserRegistry:
    """Test parser registration."""

    def test_backup_object_parser_is_registered(self):
        assert PARSERS[BACKUP_OBJECT] is BackupObjectUsageParser

    def test_parse_all_runs_every_parser(self, stores):
        record_store, entry_store = stores
        record_store.persist(_record())
        parsers = create_parsers(record_store, entry_store, clock=lambda: NOW)

        assert parse_all(parsers, 1, T0, T0 + timedelta(hours=2)) == []
        assert len(entry_store.list_entries(account_id=1)) == 1

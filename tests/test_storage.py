"""
Unit tests for the storage layer.
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from cloud_quota.core.aggregation import AccountPeriod
from cloud_quota.core.errors import ValidationError
from cloud_quota.core.quota_types import BACKUP_OBJECT, RUNNING_VM, VOLUME, ProcessingPeriod
from cloud_quota.core.tariff import QuotaTariff
from cloud_quota.storage.db import from_db_timestamp, get_connection, to_db_timestamp
from cloud_quota.storage.inventory_repository import InventoryRepository
from cloud_quota.storage.models import Account, Domain, QuotaUsage, QuotaUsageDetail, Resource, UsageEntry, UsageRecord, Zone
from cloud_quota.storage.quota_repository import QuotaUsageWriter
from cloud_quota.storage.repository import UsageEntryStore, UsageRecordStore
from cloud_quota.storage.tariff_repository import QuotaTariffStore

T0 = datetime(2024, 3, 1, 10, 0, 0)


def _record(**overrides):
    values = dict(
        resource_id=40,
        resource_type=BACKUP_OBJECT,
        account_id=1,
        domain_id=2,
        zone_id=3,
        created_at=T0,
        removed_at=T0 + timedelta(hours=1),
        quantity=100
    )
    values.update(overrides)
    return UsageRecord(**values)


def _entry(**overrides):
    values = dict(
        account_id=1,
        domain_id=2,
        zone_id=3,
        usage_type=RUNNING_VM,
        description="Running VM",
        usage_display="1.000000 Hrs",
        raw_usage=1.0,
        start_date=T0,
        end_date=T0 + timedelta(days=1),
        interval_start=T0,
        interval_end=T0 + timedelta(hours=1),
        resource_id=7
    )
    values.update(overrides)
    return UsageEntry(**values)


class TestDatabase:
    """Test connections and timestamps."""

    def test_schema_creates_every_table(self, db_path):
        conn = get_connection(db_path)
        try:
            tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
        finally:
            conn.close()

        assert {
            "usage_record", "usage_entry", "quota_tariff", "quota_usage", "quota_usage_detail",
            "quota_period", "account", "domain", "zone", "resource"
        } <= tables

    def test_foreign_keys_enabled(self, db_path):
        conn = get_connection(db_path)
        try:
            assert conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1
        finally:
            conn.close()

    def test_timestamps_sort_chronologically(self):
        early = to_db_timestamp(datetime(2024, 1, 9, 23, 0))
        late = to_db_timestamp(datetime(2024, 1, 10, 1, 0))
        assert early < late
        assert from_db_timestamp(early) == datetime(2024, 1, 9, 23, 0)
        assert to_db_timestamp(None) is None


class TestUsageRecordStore:
    """Test raw usage records."""

    def test_persist_assigns_id(self, db_path):
        store = UsageRecordStore(db_path)
        record = store.persist(_record())
        assert record.id is not None

    def test_persist_rejects_removal_before_creation(self, db_path):
        store = UsageRecordStore(db_path)
        with pytest.raises(ValidationError):
            store.persist(_record(removed_at=T0 - timedelta(seconds=1)))

    def test_list_records_overlapping_window(self, db_path):
        store = UsageRecordStore(db_path)
        before = store.persist(_record(resource_id=1, created_at=T0 - timedelta(days=2),
                                       removed_at=T0 - timedelta(days=1)))
        overlapping = store.persist(_record(resource_id=2, created_at=T0 - timedelta(hours=1)))
        active = store.persist(_record(resource_id=3, created_at=T0 - timedelta(days=5), removed_at=None))
        after = store.persist(_record(resource_id=4, created_at=T0 + timedelta(days=2),
                                      removed_at=T0 + timedelta(days=3)))

        records = store.list_records(1, T0, T0 + timedelta(days=1))

        assert [record.resource_id for record in records] == [3, 2]
        assert before.id not in [record.id for record in records]
        assert after.id not in [record.id for record in records]
        assert active.removed_at is None
        assert overlapping.duration_hours == 2.0

    def test_list_records_filters_resource_type(self, db_path):
        store = UsageRecordStore(db_path)
        store.persist(_record(resource_type=RUNNING_VM))
        store.persist(_record())

        records = store.list_records(1, T0, T0 + timedelta(hours=2), BACKUP_OBJECT)

        assert [record.resource_type for record in records] == [BACKUP_OBJECT]

    def test_record_removal_only_updates_active_records(self, db_path):
        store = UsageRecordStore(db_path)
        store.persist(_record(removed_at=None))
        store.persist(_record(created_at=T0 - timedelta(days=1), removed_at=T0 - timedelta(hours=1)))

        assert store.record_removal(40, T0 + timedelta(hours=5)) == 1

        removals = sorted(
            record.removed_at for record in store.list_records(1, T0 - timedelta(days=2), T0 + timedelta(days=1))
        )
        assert removals == [T0 - timedelta(hours=1), T0 + timedelta(hours=5)]

    def test_remove_by_resource_id(self, db_path):
        store = UsageRecordStore(db_path)
        store.persist(_record())
        store.persist(_record(resource_id=41))

        assert store.remove_by_resource_id(40) == 1
        assert store.list_account_ids() == [1]
        assert [r.resource_id for r in store.list_records(1, T0, T0 + timedelta(hours=2))] == [41]


class TestUsageEntryStore:
    """Test usage entries."""

    def test_entries_ordered_by_interval_start_then_id(self, db_path):
        store = UsageEntryStore(db_path)
        late = store.persist_entry(_entry(interval_start=T0 + timedelta(hours=2)))
        first, second = store.persist_entries([_entry(), _entry(resource_id=8)])

        entries = store.list_entries(account_id=1)

        assert [entry.id for entry in entries] == [first.id, second.id, late.id]

    def test_window_is_half_open(self, db_path):
        store = UsageEntryStore(db_path)
        store.persist_entries([_entry(), _entry(interval_start=T0 + timedelta(hours=1))])

        entries = store.list_entries(start=T0, end=T0 + timedelta(hours=1))

        assert [entry.interval_start for entry in entries] == [T0]

    def test_mark_calculated(self, db_path):
        store = UsageEntryStore(db_path)
        first, second = store.persist_entries([_entry(), _entry(resource_id=8)])

        assert store.mark_calculated([first.id]) == 1
        assert store.mark_calculated([]) == 0

        pending = store.list_entries(pending_only=True)
        assert [entry.id for entry in pending] == [second.id]

    def test_persist_new_entries_skips_stored_intervals(self, db_path):
        store = UsageEntryStore(db_path)
        stored = store.persist_entry(_entry())

        inserted = store.persist_new_entries([_entry(), _entry(resource_id=8), _entry(resource_id=8)])

        assert [entry.resource_id for entry in inserted] == [8]
        assert [entry.id for entry in store.list_entries(account_id=1)] == [stored.id, inserted[0].id]

    def test_list_account_ids(self, db_path):
        store = UsageEntryStore(db_path)
        store.persist_entries([_entry(account_id=5), _entry(account_id=3), _entry(account_id=5)])

        assert store.list_account_ids(T0, T0 + timedelta(days=1)) == [3, 5]
        assert store.list_account_ids(T0 + timedelta(days=1), T0 + timedelta(days=2)) == []


class TestQuotaTariffStore:
    """Test tariff validation and versioning."""

    @pytest.fixture
    def store(self, db_path):
        return QuotaTariffStore(db_path, clock=lambda: T0)

    def test_create_fills_usage_type_data(self, store):
        tariff = store.create_tariff(QuotaTariff(name="vm", usage_type=RUNNING_VM, currency_value=Decimal("0.05")))

        assert tariff.id is not None
        assert tariff.usage_name == "RUNNING_VM"
        assert tariff.usage_unit == "Compute*Month"
        assert tariff.effective_from == T0
        assert tariff.version == 1
        assert store.get_tariff(tariff.id).currency_value == Decimal("0.05")

    @pytest.mark.parametrize("tariff", [
        QuotaTariff(name="", usage_type=RUNNING_VM),
        QuotaTariff(name="unknown", usage_type=999),
        QuotaTariff(name="negative", usage_type=RUNNING_VM, currency_value=Decimal("-1")),
        QuotaTariff(name="by-entry-day", usage_type=RUNNING_VM, execute_on=5),
        QuotaTariff(name="monthly-no-day", usage_type=RUNNING_VM, processing_period=ProcessingPeriod.MONTHLY),
        QuotaTariff(name="window", usage_type=RUNNING_VM, effective_from=T0, effective_to=T0 - timedelta(days=1)),
        QuotaTariff(name="syntax", usage_type=RUNNING_VM, activation_rule="account.name ==="),
        QuotaTariff(name="variable", usage_type=RUNNING_VM, activation_rule="value.protectedSize > 0"),
    ])
    def test_create_rejects_invalid_tariffs(self, store, tariff):
        with pytest.raises(ValidationError):
            store.create_tariff(tariff)

    def test_create_rejects_duplicate_active_name(self, store):
        store.create_tariff(QuotaTariff(name="vm", usage_type=RUNNING_VM))
        with pytest.raises(ValidationError, match="already exists"):
            store.create_tariff(QuotaTariff(name="vm", usage_type=VOLUME))

    def test_supersede_keeps_history(self, store):
        old = store.create_tariff(QuotaTariff(name="vm", usage_type=RUNNING_VM, currency_value=Decimal("1")))
        switch = T0 + timedelta(days=10)

        new = store.supersede_tariff(old.id, old.new_version(effective_from=switch, currency_value=Decimal("2")))

        assert new.version == 2
        assert store.find_by_name("vm").id == new.id
        previous = store.get_tariff(old.id)
        assert previous.effective_to == switch
        assert previous.removed == T0
        assert len(store.list_tariffs(name="vm", include_removed=True)) == 2
        assert [t.id for t in store.list_tariffs(name="vm")] == [new.id]

    def test_supersede_keeps_an_earlier_end_date(self, store):
        """Superseding never reopens a window that already closed"""
        old = store.create_tariff(QuotaTariff(
            name="vm",
            usage_type=RUNNING_VM,
            effective_from=datetime(2024, 1, 1),
            effective_to=datetime(2024, 3, 1)
        ))

        store.supersede_tariff(old.id, old.new_version(effective_from=datetime(2024, 6, 1), effective_to=None))

        assert store.get_tariff(old.id).effective_to == datetime(2024, 3, 1)
        assert store.find_tariffs_for_type(RUNNING_VM, datetime(2024, 4, 15)) == []

    def test_supersede_rejects_usage_type_change(self, store):
        old = store.create_tariff(QuotaTariff(name="vm", usage_type=RUNNING_VM))
        with pytest.raises(ValidationError, match="usage type"):
            store.supersede_tariff(old.id, old.new_version(usage_type=VOLUME))

    def test_supersede_rejects_earlier_start(self, store):
        old = store.create_tariff(QuotaTariff(name="vm", usage_type=RUNNING_VM))
        with pytest.raises(ValidationError, match="cannot start before"):
            store.supersede_tariff(old.id, old.new_version(effective_from=T0 - timedelta(days=1)))

    def test_supersede_requires_active_version(self, store):
        old = store.create_tariff(QuotaTariff(name="vm", usage_type=RUNNING_VM))
        store.supersede_tariff(old.id, old.new_version(effective_from=T0 + timedelta(days=1)))
        with pytest.raises(ValidationError, match="no longer active"):
            store.supersede_tariff(old.id, old.new_version(effective_from=T0 + timedelta(days=2)))

    def test_find_tariffs_for_type_respects_effective_window(self, store):
        old = store.create_tariff(QuotaTariff(name="vm", usage_type=RUNNING_VM, currency_value=Decimal("1")))
        switch = T0 + timedelta(days=10)
        new = store.supersede_tariff(old.id, old.new_version(effective_from=switch))

        assert [t.id for t in store.find_tariffs_for_type(RUNNING_VM, T0 + timedelta(days=1))] == [old.id]
        assert [t.id for t in store.find_tariffs_for_type(RUNNING_VM, switch)] == [new.id]
        assert store.find_tariffs_for_type(RUNNING_VM, T0 - timedelta(days=1)) == []
        assert store.find_tariffs_for_type(999, T0) == []

    def test_map_tariffs_per_usage_type(self, store):
        store.create_tariff(QuotaTariff(name="vm", usage_type=RUNNING_VM))
        store.create_tariff(QuotaTariff(name="volume", usage_type=VOLUME, activation_rule="value.size > 0"))

        tariffs, has_rule = store.map_tariffs_per_usage_type(T0)

        assert sorted(tariffs) == [RUNNING_VM, VOLUME]
        assert has_rule is True

    def test_remove_tariff(self, store):
        tariff = store.create_tariff(QuotaTariff(name="vm", usage_type=RUNNING_VM))

        removed = store.remove_tariff(tariff.id, T0 + timedelta(days=1))

        assert removed.effective_to == T0 + timedelta(days=1)
        assert store.find_by_name("vm") is None
        with pytest.raises(ValidationError):
            store.remove_tariff(tariff.id)


class TestQuotaUsageWriter:
    """Test persistence of finalized periods."""

    def _period(self, quota_used="0.125"):
        period = AccountPeriod(1, T0, T0 + timedelta(days=1), ProcessingPeriod.BY_ENTRY)
        period.begin()
        usage = QuotaUsage(
            account_id=1,
            domain_id=2,
            usage_type=RUNNING_VM,
            quota_used=Decimal(quota_used),
            start_date=T0,
            end_date=T0 + timedelta(hours=1),
            processing_period=ProcessingPeriod.BY_ENTRY.value,
            usage_entry_id=11,
            details=(QuotaUsageDetail(tariff_id=4, tariff_value=Decimal("0.05"), quota_used=Decimal(quota_used)),)
        )
        period.usages.append(usage)
        period.processed_data.add_usage(2.5)
        period.processed_data.add_tariff(4, Decimal("0.05"), Decimal(quota_used))
        period.finalize()
        return period

    def test_write_and_list(self, db_path):
        writer = QuotaUsageWriter(db_path)

        assert writer.write_period(self._period()) == 1

        usages = writer.list_quota_usage(account_id=1)
        assert len(usages) == 1
        assert usages[0].quota_used == Decimal("0.125")
        assert usages[0].details[0].tariff_id == 4
        assert usages[0].usage_entry_id == 11
        assert writer.get_period_state(1, T0, T0 + timedelta(days=1), "BY_ENTRY") == "FINALIZED"

    def test_rewriting_a_period_replaces_it(self, db_path):
        writer = QuotaUsageWriter(db_path)
        writer.write_period(self._period("0.125"))
        writer.write_period(self._period("0.5"))

        usages = writer.list_quota_usage(account_id=1)
        assert [usage.quota_used for usage in usages] == [Decimal("0.5")]
        conn = get_connection(db_path)
        try:
            assert conn.execute("SELECT COUNT(*) FROM quota_usage_detail").fetchone()[0] == 1
        finally:
            conn.close()

    def test_period_summary(self, db_path):
        writer = QuotaUsageWriter(db_path)
        writer.write_period(self._period())

        summary = writer.get_period_summary(1)

        assert summary["total_quota_used"] == Decimal("0.125")
        assert summary["per_usage_type"] == {RUNNING_VM: Decimal("0.125")}
        assert summary["usage_lines"] == 1

    def test_unwritten_period_has_no_state(self, db_path):
        assert QuotaUsageWriter(db_path).get_period_state(1, T0, T0, "MONTHLY") is None


class TestInventoryRepository:
    """Test inventory lookups."""

    def test_round_trip(self, db_path):
        inventory = InventoryRepository(db_path)
        inventory.save_domain(Domain(2, "domain-uuid", "ROOT"))
        inventory.save_account(Account(1, "account-uuid", "admin", 2, role_name="Admin", role_type="Admin"))
        inventory.save_zone(Zone(3, "zone-uuid", "zone-1"))
        inventory.save_resource(Resource(7, RUNNING_VM, "vm-uuid", "vm-1", tags={"env": "prod"},
                                         offering_customized=True))

        assert inventory.get_domain(2).path == "/"
        assert inventory.get_account(1).role_name == "Admin"
        assert inventory.get_zone(3).name == "zone-1"
        resource = inventory.get_resource(7, RUNNING_VM)
        assert resource.tags == {"env": "prod"}
        assert resource.offering_customized is True

    def test_missing_rows(self, db_path):
        inventory = InventoryRepository(db_path)
        assert inventory.get_account(1) is None
        assert inventory.get_resource(7, VOLUME) is None

"""
Backup object usage parser.
"""

from datetime import datetime

from .base import UsageParser, format_usage_hours
from cloud_quota.core.quota_types import BACKUP_OBJECT
from cloud_quota.storage.models import UsageEntry, UsageRecord


class BackupObjectUsageParser(UsageParser):
    """Parses the storage usage of backup objects."""

    usage_type = BACKUP_OBJECT

    def build_entry(
        self,
        record: UsageRecord,
        start_date: datetime,
        end_date: datetime,
        interval_start: datetime,
        interval_end: datetime,
        hours: float
    ) -> UsageEntry:
        description = (
            f"Backup object usage for backup with ID: {record.resource_id}, "
            f"backup offering: {record.offering_id}, and VM: {record.vm_id}"
        )
        return UsageEntry(
            account_id=record.account_id,
            domain_id=record.domain_id,
            zone_id=record.zone_id,
            usage_type=BACKUP_OBJECT,
            description=description,
            usage_display=format_usage_hours(hours),
            raw_usage=hours,
            start_date=start_date,
            end_date=end_date,
            interval_start=interval_start,
            interval_end=interval_end,
            resource_id=record.resource_id,
            vm_id=record.vm_id,
            offering_id=record.offering_id,
            size=record.quantity,
            protected_size=record.protected_size
        )

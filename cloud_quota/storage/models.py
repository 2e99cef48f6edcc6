"""
Data models for storage layer.

Defines the raw usage intervals, the usage entries parsed from them, the
rated quota usage and the inventory rows used to describe resources.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional, Tuple


@dataclass(frozen=True)
class UsageRecord:
    """Raw usage interval of a resource, as fed by the metering side.

    ``removed_at`` is None while the resource is still active.
    """
    resource_id: int
    resource_type: int  # usage-type code
    account_id: int
    domain_id: int
    zone_id: int
    created_at: datetime
    removed_at: Optional[datetime] = None
    quantity: int = 0  # size in bytes
    protected_size: Optional[int] = None
    offering_id: Optional[int] = None
    vm_id: Optional[int] = None
    id: Optional[int] = None

    @property
    def duration_hours(self) -> Optional[float]:
        """Hours between creation and removal, None while still active."""
        if self.removed_at is None:
            return None
        return (self.removed_at - self.created_at).total_seconds() / 3600


@dataclass(frozen=True)
class UsageEntry:
    """Normalized billing line produced by a usage parser."""
    account_id: int
    domain_id: int
    zone_id: int
    usage_type: int
    description: str
    usage_display: str  # e.g. "1.000000 Hrs"
    raw_usage: float    # hours
    start_date: datetime  # parse window
    end_date: datetime
    interval_start: datetime  # clipped usage interval
    interval_end: datetime
    resource_id: Optional[int] = None
    vm_id: Optional[int] = None
    offering_id: Optional[int] = None
    size: Optional[int] = None
    protected_size: Optional[int] = None
    quota_calculated: bool = False
    id: Optional[int] = None


@dataclass(frozen=True)
class QuotaUsageDetail:
    """Contribution of one tariff to a quota usage line."""
    tariff_id: int
    tariff_value: Decimal
    quota_used: Decimal


@dataclass(frozen=True)
class QuotaUsage:
    """Rated usage of one usage entry (BY_ENTRY) or one usage type over a month (MONTHLY)."""
    account_id: int
    domain_id: int
    usage_type: int
    quota_used: Decimal
    start_date: datetime
    end_date: datetime
    processing_period: str
    usage_entry_id: Optional[int] = None
    details: Tuple[QuotaUsageDetail, ...] = ()
    id: Optional[int] = None


@dataclass(frozen=True)
class Account:
    id: int
    uuid: str
    name: str
    domain_id: int
    role_uuid: Optional[str] = None
    role_name: Optional[str] = None
    role_type: Optional[str] = None
    project_uuid: Optional[str] = None
    project_name: Optional[str] = None


@dataclass(frozen=True)
class Domain:
    id: int
    uuid: str
    name: str
    path: str = "/"


@dataclass(frozen=True)
class Zone:
    id: int
    uuid: str
    name: str


@dataclass(frozen=True)
class Resource:
    """Descriptive data of a metered resource, keyed by id and usage type."""
    id: int
    usage_type: int
    uuid: str
    name: str
    os_name: Optional[str] = None
    tags: Dict[str, str] = field(default_factory=dict)
    virtual_size: Optional[int] = None
    offering_uuid: Optional[str] = None
    offering_name: Optional[str] = None
    offering_customized: Optional[bool] = None
    cpu_number: Optional[int] = None
    cpu_speed: Optional[int] = None
    memory: Optional[int] = None

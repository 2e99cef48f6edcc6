"""
Quota tariff model.

A tariff prices one usage type. Tariffs are versioned: a new version of a
tariff supersedes the previous one but the history is kept.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Optional

from .quota_types import ProcessingPeriod, get_quota_type

MIN_EXECUTE_ON_DAY = 1
MAX_EXECUTE_ON_DAY = 28


@dataclass
class QuotaTariff:
    """A priced rule applied to one unit of metered usage."""
    name: str
    currency_value: Decimal = Decimal("0")
    usage_type: int = 0
    usage_name: Optional[str] = None
    usage_unit: Optional[str] = None
    usage_discriminator: Optional[str] = None
    activation_rule: Optional[str] = None
    processing_period: ProcessingPeriod = ProcessingPeriod.BY_ENTRY
    execute_on: Optional[int] = None
    effective_from: Optional[datetime] = None
    effective_to: Optional[datetime] = None  # exclusive
    version: int = 1
    position: int = 1
    description: Optional[str] = None
    id: Optional[int] = None
    removed: Optional[datetime] = None

    def set_usage_type_data(self, usage_type: int) -> bool:
        """Set the usage type and its name, unit and discriminator.

        The usage type cannot change once the tariff has been persisted.

        Returns:
            False (leaving the tariff untouched) if the code is unknown or the
            tariff already belongs to another usage type, True otherwise
        """
        quota_type = get_quota_type(usage_type)
        if quota_type is None:
            return False
        if self.id is not None and self.usage_type not in (0, usage_type):
            return False

        self.usage_type = quota_type.code
        self.usage_name = quota_type.name
        self.usage_unit = quota_type.unit.value
        self.usage_discriminator = quota_type.discriminator
        return True

    def set_execute_on(self, execute_on: Optional[int]) -> bool:
        """Set the day of the month on which a MONTHLY tariff is processed.

        Returns:
            False (leaving the tariff untouched) if the day does not fit the
            processing period, True otherwise
        """
        if self.processing_period == ProcessingPeriod.BY_ENTRY:
            if execute_on is not None:
                return False
        elif execute_on is None or not MIN_EXECUTE_ON_DAY <= execute_on <= MAX_EXECUTE_ON_DAY:
            return False

        self.execute_on = execute_on
        return True

    @property
    def has_activation_rule(self) -> bool:
        return bool(self.activation_rule and self.activation_rule.strip())

    def is_effective_at(self, moment: datetime) -> bool:
        """Whether the tariff is in force at the given moment."""
        if self.effective_from is None or self.effective_from > moment:
            return False
        return self.effective_to is None or moment < self.effective_to

    def new_version(self, **changes) -> "QuotaTariff":
        """Copy this tariff as the next version of the same lineage."""
        return replace(self, id=None, removed=None, version=self.version + 1, **changes)

    def __str__(self) -> str:
        return (
            f"QuotaTariff(id={self.id}, name={self.name!r}, version={self.version}, "
            f"usage_type={self.usage_name or self.usage_type}, value={self.currency_value}, "
            f"period={self.processing_period.value})"
        )

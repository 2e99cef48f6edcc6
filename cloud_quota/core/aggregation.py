"""
Quota aggregation.

Rates the usage entries of accounts with the quota tariffs and aggregates the
result per processing period. Each (account, period) moves through
PENDING -> ACCUMULATING -> FINALIZED; only finalized periods reach the writer.

Aggregation follows these rules:
1. The data of a period is fetched once, before any tariff is evaluated
2. BY_ENTRY tariffs rate every usage entry individually, in chronological order
3. MONTHLY tariffs rate the previous calendar month once, on their execute-on day
4. A failing activation rule skips its tariff, a broken entry skips the entry
5. Re-running a period replaces what was written for it
"""

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

import structlog

from .activation_rule import ActivationRuleEvaluator
from .errors import AggregationCancelled, DataGapError, QuotaError, RuleEvaluationError, ValidationError
from .preset_variables import PresetVariableBuilder, ProcessedData
from .quota_types import ProcessingPeriod, QuotaType, UsageUnit, get_quota_type
from .rating import RateBasis, billable_quantity, calculate_quota_used
from .tariff import QuotaTariff
from cloud_quota.storage.models import QuotaUsage, QuotaUsageDetail, UsageEntry

logger = structlog.get_logger(__name__)


class PeriodState(Enum):
    """Lifecycle of an account's processing period."""
    PENDING = "PENDING"
    ACCUMULATING = "ACCUMULATING"
    FINALIZED = "FINALIZED"


@dataclass
class AccountPeriod:
    """Rating state of one account over one processing period."""
    account_id: int
    start: datetime
    end: datetime
    processing_period: ProcessingPeriod
    state: PeriodState = PeriodState.PENDING
    processed_data: Optional[ProcessedData] = None
    usages: List[QuotaUsage] = field(default_factory=list)
    entry_ids: List[int] = field(default_factory=list)

    def __post_init__(self):
        if self.processed_data is None:
            self.processed_data = ProcessedData.for_period(self.start, self.end)

    def begin(self) -> None:
        self._transition(PeriodState.PENDING, PeriodState.ACCUMULATING)

    def finalize(self) -> None:
        """Close the period; its processed data becomes read-only."""
        self._transition(PeriodState.ACCUMULATING, PeriodState.FINALIZED)
        self.processed_data.freeze()

    def _transition(self, expected: PeriodState, target: PeriodState) -> None:
        if self.state != expected:
            raise QuotaError(
                f"Period [{self.start}, {self.end}) of account [{self.account_id}] "
                f"cannot move from {self.state.value} to {target.value}"
            )
        self.state = target

    @property
    def quota_used(self) -> Decimal:
        return self.processed_data.aggregated_tariffs_value or Decimal("0")


@dataclass
class AggregationReport:
    """Outcome of an aggregation run over several accounts."""
    periods: List[AccountPeriod] = field(default_factory=list)
    cancelled: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)

    @property
    def total_quota_used(self) -> Decimal:
        return sum((period.quota_used for period in self.periods), Decimal("0"))


def _month_start(moment: datetime) -> datetime:
    return moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def _previous_month(moment: datetime) -> Tuple[datetime, datetime]:
    """Boundaries [start, end) of the calendar month before ``moment``'s month."""
    end = _month_start(moment)
    return _month_start(end - timedelta(days=1)), end


def _execute_on_dates(day: int, start: datetime, end: datetime) -> Iterator[datetime]:
    """Every ``day`` of a month, at midnight, within [start, end)."""
    year, month = start.year, start.month
    while datetime(year, month, 1) < end:
        candidate = datetime(year, month, day)
        if start <= candidate < end:
            yield candidate
        year, month = (year + 1, 1) if month == 12 else (year, month + 1)


def _check_cancelled(cancel_event: Optional[threading.Event], account_id: int) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise AggregationCancelled(account_id)


def latest_tariff_versions(tariffs: Iterable[QuotaTariff], account_id: Optional[int] = None) -> List[QuotaTariff]:
    """Keep the highest version of each tariff lineage, ordered by position."""
    selected: Dict[str, QuotaTariff] = {}
    for tariff in sorted(tariffs, key=lambda t: (-t.version, t.position, t.id or 0)):
        applied = selected.get(tariff.name)
        if applied is not None:
            logger.warning(
                "quota_tariff_version_ignored",
                account_id=account_id,
                name=tariff.name,
                ignored_version=tariff.version,
                applied_version=applied.version
            )
            continue
        selected[tariff.name] = tariff
    return sorted(selected.values(), key=lambda t: (t.position, t.id or 0))


class QuotaAggregationEngine:
    """Rates usage entries with quota tariffs, one account at a time.

    Args:
        entry_store: Source of the usage entries
        tariff_store: Source of the quota tariffs
        writer: Receives every finalized period
        preset_builder: Builds the preset variables of activation rules
        evaluator: Evaluates activation rules
        rate_basis: What time-based tariff values are quoted per
        disabled_accounts: Accounts whose entries are never rated
    """

    def __init__(
        self,
        entry_store,
        tariff_store,
        writer,
        preset_builder: PresetVariableBuilder,
        evaluator: Optional[ActivationRuleEvaluator] = None,
        rate_basis: RateBasis = RateBasis.HOURLY,
        disabled_accounts: Iterable[int] = ()
    ):
        self._entry_store = entry_store
        self._tariff_store = tariff_store
        self._writer = writer
        self._preset_builder = preset_builder
        self._evaluator = evaluator or ActivationRuleEvaluator()
        self._rate_basis = rate_basis
        self._disabled_accounts = frozenset(disabled_accounts)

    def run(
        self,
        start: datetime,
        end: datetime,
        accounts: Optional[Iterable[int]] = None,
        workers: int = 1,
        cancel_event: Optional[threading.Event] = None
    ) -> AggregationReport:
        """Aggregate several accounts in parallel, one task per account.

        Args:
            start: Start of the window to aggregate
            end: End of the window (exclusive)
            accounts: Accounts to aggregate; defaults to every account with
                usage entries since the month before ``start``
            workers: Number of worker threads
            cancel_event: Set it to cancel the accounts still running

        Returns:
            AggregationReport with the finalized periods and the cancelled
            and skipped accounts
        """
        if end <= start:
            raise ValidationError(f"Aggregation window [{start}, {end}) is empty")
        if workers < 1:
            raise ValidationError("At least one aggregation worker is required")
        if accounts is None:
            accounts = self._entry_store.list_account_ids(_previous_month(start)[0], end)

        report = AggregationReport()
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="quota-aggregation") as executor:
            futures = {
                executor.submit(self.aggregate_account, account_id, start, end, cancel_event): account_id
                for account_id in accounts
            }
            for future in as_completed(futures):
                account_id = futures[future]
                try:
                    periods = future.result()
                except AggregationCancelled:
                    logger.warning("quota_aggregation_cancelled", account_id=account_id)
                    report.cancelled.append(account_id)
                    continue
                if account_id in self._disabled_accounts:
                    report.skipped.append(account_id)
                report.periods.extend(periods)

        report.periods.sort(key=lambda p: (p.account_id, p.start, p.processing_period.value))
        report.cancelled.sort()
        report.skipped.sort()
        logger.info(
            "quota_aggregation_completed",
            periods=len(report.periods),
            cancelled=len(report.cancelled),
            total_quota_used=str(report.total_quota_used)
        )
        return report

    def aggregate_account(
        self,
        account_id: int,
        start: datetime,
        end: datetime,
        cancel_event: Optional[threading.Event] = None
    ) -> List[AccountPeriod]:
        """Aggregate one account over [start, end).

        Returns:
            The finalized periods: the BY_ENTRY period of the window, then
            one MONTHLY period per month billed by a MONTHLY tariff

        Raises:
            AggregationCancelled: If ``cancel_event`` is set while running;
                the period being accumulated is not written
        """
        log = logger.bind(account_id=account_id)
        entries = self._entry_store.list_entries(account_id=account_id, start=start, end=end)

        if account_id in self._disabled_accounts:
            pending = [entry.id for entry in entries if not entry.quota_calculated]
            self._entry_store.mark_calculated(pending)
            log.info("quota_account_disabled", entries_skipped=len(pending))
            return []

        periods = [self._aggregate_by_entry(account_id, start, end, entries, cancel_event)]

        # MONTHLY tariffs are matched against whole months, not a single moment
        monthly_tariffs = self._tariff_store.list_tariffs(
            processing_period=ProcessingPeriod.MONTHLY, include_removed=True
        )
        periods.extend(self._aggregate_monthly(account_id, start, end, monthly_tariffs, cancel_event))
        return periods

    def _aggregate_by_entry(
        self,
        account_id: int,
        start: datetime,
        end: datetime,
        entries: List[UsageEntry],
        cancel_event: Optional[threading.Event]
    ) -> AccountPeriod:
        period = AccountPeriod(account_id, start, end, ProcessingPeriod.BY_ENTRY)
        period.begin()
        tariffs_in_force: Dict[Tuple[int, datetime], List[QuotaTariff]] = {}

        for entry in sorted(entries, key=lambda e: (e.interval_start, e.id or 0)):
            _check_cancelled(cancel_event, account_id)
            quota_type = get_quota_type(entry.usage_type)
            if quota_type is None:
                logger.warning("usage_entry_skipped", account_id=account_id, entry_id=entry.id,
                               reason=f"unknown usage type [{entry.usage_type}]")
                continue
            key = (entry.usage_type, entry.interval_start)
            if key not in tariffs_in_force:
                tariffs_in_force[key] = self._tariff_store.find_tariffs_for_type(
                    entry.usage_type, entry.interval_start, ProcessingPeriod.BY_ENTRY
                )
            try:
                usage = self._rate_entry(entry, quota_type, tariffs_in_force[key], period)
            except DataGapError as e:
                logger.warning("usage_entry_skipped", account_id=account_id, entry_id=entry.id, reason=str(e))
                continue

            period.entry_ids.append(entry.id)
            if usage is not None:
                period.usages.append(usage)

        self._finalize(period)
        self._entry_store.mark_calculated(period.entry_ids)
        return period

    def _rate_entry(
        self,
        entry: UsageEntry,
        quota_type: QuotaType,
        tariffs: List[QuotaTariff],
        period: AccountPeriod
    ) -> Optional[QuotaUsage]:
        quantity = self._billable_quantity(entry, quota_type)
        applicable = latest_tariff_versions(tariffs, entry.account_id)

        context = None
        details = []
        for tariff in applicable:
            if tariff.has_activation_rule and context is None:
                context = self._preset_builder.build(entry, period.processed_data)
            value = self._tariff_value(tariff, context, entry.account_id)
            if value is None or value == 0:
                continue
            cost = calculate_quota_used(quota_type.unit, quantity, value, self._rate_basis, entry.interval_start)
            details.append(QuotaUsageDetail(tariff_id=tariff.id, tariff_value=value, quota_used=cost))

        period.processed_data.add_usage(entry.raw_usage)
        for detail in details:
            period.processed_data.add_tariff(detail.tariff_id, detail.tariff_value, detail.quota_used)
        if not details:
            return None

        return QuotaUsage(
            account_id=entry.account_id,
            domain_id=entry.domain_id,
            usage_type=entry.usage_type,
            quota_used=sum((detail.quota_used for detail in details), Decimal("0")),
            start_date=entry.interval_start,
            end_date=entry.interval_end,
            processing_period=ProcessingPeriod.BY_ENTRY.value,
            usage_entry_id=entry.id,
            details=tuple(details)
        )

    def _aggregate_monthly(
        self,
        account_id: int,
        start: datetime,
        end: datetime,
        tariffs: List[QuotaTariff],
        cancel_event: Optional[threading.Event]
    ) -> List[AccountPeriod]:
        tariffs_per_month: Dict[Tuple[datetime, datetime], List[QuotaTariff]] = {}
        for tariff in tariffs:
            for execute_at in _execute_on_dates(tariff.execute_on, start, end):
                month_start, month_end = _previous_month(execute_at)
                overlaps = tariff.effective_from < month_end and (
                    tariff.effective_to is None or tariff.effective_to > month_start
                )
                if overlaps:
                    tariffs_per_month.setdefault((month_start, month_end), []).append(tariff)

        periods = []
        for (month_start, month_end), month_tariffs in sorted(tariffs_per_month.items()):
            _check_cancelled(cancel_event, account_id)
            period = AccountPeriod(account_id, month_start, month_end, ProcessingPeriod.MONTHLY)
            period.begin()
            entries = self._entry_store.list_entries(account_id=account_id, start=month_start, end=month_end)

            tariffs_per_type: Dict[int, List[QuotaTariff]] = {}
            for tariff in month_tariffs:
                tariffs_per_type.setdefault(tariff.usage_type, []).append(tariff)

            for usage_type, type_tariffs in sorted(tariffs_per_type.items()):
                _check_cancelled(cancel_event, account_id)
                type_entries = [entry for entry in entries if entry.usage_type == usage_type]
                usage = self._rate_month(period, usage_type, type_entries, type_tariffs)
                if usage is not None:
                    period.usages.append(usage)

            self._finalize(period)
            periods.append(period)
        return periods

    def _rate_month(
        self,
        period: AccountPeriod,
        usage_type: int,
        entries: List[UsageEntry],
        tariffs: List[QuotaTariff]
    ) -> Optional[QuotaUsage]:
        quota_type = get_quota_type(usage_type)
        if quota_type is None or not entries:
            return None

        quantity = Decimal("0")
        usage_value = 0.0
        for entry in entries:
            try:
                quantity += self._billable_quantity(entry, quota_type)
            except DataGapError as e:
                logger.warning("usage_entry_skipped", account_id=period.account_id, entry_id=entry.id, reason=str(e))
                continue
            usage_value += entry.raw_usage

        month_data = ProcessedData.for_period(period.start, period.end)
        month_data.add_usage(usage_value)
        context = None
        details = []
        for tariff in latest_tariff_versions(tariffs, period.account_id):
            if tariff.has_activation_rule and context is None:
                context = self._preset_builder.build_for_period(
                    period.account_id, entries[0].domain_id, usage_type, month_data
                )
            value = self._tariff_value(tariff, context, period.account_id)
            if value is None or value == 0:
                continue
            cost = calculate_quota_used(quota_type.unit, quantity, value, self._rate_basis, period.start)
            details.append(QuotaUsageDetail(tariff_id=tariff.id, tariff_value=value, quota_used=cost))

        period.processed_data.add_usage(usage_value)
        for detail in details:
            period.processed_data.add_tariff(detail.tariff_id, detail.tariff_value, detail.quota_used)
        if not details:
            return None

        return QuotaUsage(
            account_id=period.account_id,
            domain_id=entries[0].domain_id,
            usage_type=usage_type,
            quota_used=sum((detail.quota_used for detail in details), Decimal("0")),
            start_date=period.start,
            end_date=period.end,
            processing_period=ProcessingPeriod.MONTHLY.value,
            details=tuple(details)
        )

    def _tariff_value(self, tariff: QuotaTariff, context, account_id: int) -> Optional[Decimal]:
        try:
            return self._evaluator.tariff_value(tariff.activation_rule, context, tariff.currency_value)
        except RuleEvaluationError as e:
            logger.warning(
                "quota_tariff_rule_failed",
                account_id=account_id,
                tariff_id=tariff.id,
                name=tariff.name,
                reason=str(e)
            )
            return None

    @staticmethod
    def _billable_quantity(entry: UsageEntry, quota_type: QuotaType) -> Decimal:
        if entry.interval_end < entry.interval_start or entry.raw_usage < 0:
            raise DataGapError(f"Usage entry [{entry.id}] has an inconsistent interval")
        if quota_type.unit == UsageUnit.GB_MONTH and entry.size is None:
            raise DataGapError(f"Usage entry [{entry.id}] has no size")
        return billable_quantity(quota_type.unit, entry.raw_usage, entry.size)

    def _finalize(self, period: AccountPeriod) -> None:
        period.finalize()
        self._writer.write_period(period)
        logger.info(
            "quota_period_finalized",
            account_id=period.account_id,
            processing_period=period.processing_period.value,
            period_start=str(period.start),
            period_end=str(period.end),
            usages=len(period.usages),
            quota_used=str(period.quota_used)
        )

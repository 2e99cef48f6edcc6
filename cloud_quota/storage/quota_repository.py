"""
Rated quota usage persistence.

The writer is the output boundary of the aggregation engine: it receives a
finalized (account, period) and stores its quota usage lines. Writing a period
replaces whatever was stored for the same account, period and processing
period, so re-running an aggregation never double-counts.
"""

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Dict, List, Optional

import structlog

from .db import DEFAULT_DB_PATH, from_db_timestamp, get_connection, to_db_timestamp, utc_now
from .models import QuotaUsage, QuotaUsageDetail

if TYPE_CHECKING:
    from cloud_quota.core.aggregation import AccountPeriod

logger = structlog.get_logger(__name__)


class QuotaUsageWriter:
    """Store of rated quota usage and of the finalized periods."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def write_period(self, period: "AccountPeriod") -> int:
        """Atomically replace the stored quota usage of a finalized period.

        Args:
            period: The finalized account period

        Returns:
            Number of quota usage lines written
        """
        key = (
            period.account_id,
            to_db_timestamp(period.start),
            to_db_timestamp(period.end),
            period.processing_period.value
        )

        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            conn.execute("""
                DELETE FROM quota_usage
                WHERE account_id = ? AND period_start = ? AND period_end = ? AND processing_period = ?
            """, key)

            for usage in period.usages:
                cursor = conn.execute("""
                    INSERT INTO quota_usage
                    (account_id, domain_id, usage_type, usage_entry_id, processing_period,
                     period_start, period_end, start_date, end_date, quota_used)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    usage.account_id,
                    usage.domain_id,
                    usage.usage_type,
                    usage.usage_entry_id,
                    usage.processing_period,
                    key[1],
                    key[2],
                    to_db_timestamp(usage.start_date),
                    to_db_timestamp(usage.end_date),
                    str(usage.quota_used)
                ))
                for detail in usage.details:
                    conn.execute("""
                        INSERT INTO quota_usage_detail (quota_usage_id, tariff_id, tariff_value, quota_used)
                        VALUES (?, ?, ?, ?)
                    """, (cursor.lastrowid, detail.tariff_id, str(detail.tariff_value), str(detail.quota_used)))

            processed_data = period.processed_data
            conn.execute("""
                INSERT OR REPLACE INTO quota_period
                (account_id, period_start, period_end, processing_period, state,
                 usage_value, aggregated_value, processed_data, finalized_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, key + (
                period.state.value,
                processed_data.usage_value or 0.0,
                str(processed_data.aggregated_tariffs_value or Decimal("0")),
                str(processed_data),
                to_db_timestamp(utc_now())
            ))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

        logger.info(
            "quota_period_written",
            account_id=period.account_id,
            period_start=key[1],
            period_end=key[2],
            processing_period=key[3],
            usages=len(period.usages)
        )
        return len(period.usages)

    def list_quota_usage(
        self,
        account_id: Optional[int] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        usage_type: Optional[int] = None
    ) -> List[QuotaUsage]:
        """List quota usage lines whose start date falls within [start, end).

        Returns:
            Lines ordered by start date, each with its tariff details
        """
        conn = get_connection(self.db_path)
        try:
            query = """
                SELECT id, account_id, domain_id, usage_type, usage_entry_id, processing_period,
                       start_date, end_date, quota_used
                FROM quota_usage
            """
            params = []
            conditions = []

            if account_id is not None:
                conditions.append("account_id = ?")
                params.append(account_id)
            if start is not None:
                conditions.append("start_date >= ?")
                params.append(to_db_timestamp(start))
            if end is not None:
                conditions.append("start_date < ?")
                params.append(to_db_timestamp(end))
            if usage_type is not None:
                conditions.append("usage_type = ?")
                params.append(usage_type)

            if conditions:
                query += " WHERE " + " AND ".join(conditions)
            query += " ORDER BY start_date, id"

            usages = []
            for row in conn.execute(query, params).fetchall():
                details = tuple(
                    QuotaUsageDetail(tariff_id=d[0], tariff_value=Decimal(d[1]), quota_used=Decimal(d[2]))
                    for d in conn.execute(
                        "SELECT tariff_id, tariff_value, quota_used FROM quota_usage_detail "
                        "WHERE quota_usage_id = ? ORDER BY id",
                        (row[0],)
                    ).fetchall()
                )
                usages.append(QuotaUsage(
                    id=row[0],
                    account_id=row[1],
                    domain_id=row[2],
                    usage_type=row[3],
                    usage_entry_id=row[4],
                    processing_period=row[5],
                    start_date=from_db_timestamp(row[6]),
                    end_date=from_db_timestamp(row[7]),
                    quota_used=Decimal(row[8]),
                    details=details
                ))
            return usages
        finally:
            conn.close()

    def get_period_summary(
        self,
        account_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> Dict[str, object]:
        """Summarize the quota used by an account.

        Returns:
            Dictionary with the total quota used, the quota used per usage
            type and the number of quota usage lines
        """
        per_usage_type: Dict[int, Decimal] = {}
        usages = self.list_quota_usage(account_id=account_id, start=start, end=end)
        for usage in usages:
            per_usage_type[usage.usage_type] = per_usage_type.get(usage.usage_type, Decimal("0")) + usage.quota_used

        return {
            "account_id": account_id,
            "total_quota_used": sum(per_usage_type.values(), Decimal("0")),
            "per_usage_type": per_usage_type,
            "usage_lines": len(usages)
        }

    def get_period_state(
        self,
        account_id: int,
        start: datetime,
        end: datetime,
        processing_period: str
    ) -> Optional[str]:
        """State stored for a period, None if it was never written."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT state FROM quota_period
                WHERE account_id = ? AND period_start = ? AND period_end = ? AND processing_period = ?
            """, (account_id, to_db_timestamp(start), to_db_timestamp(end), processing_period)).fetchone()
            return row[0] if row else None
        finally:
            conn.close()

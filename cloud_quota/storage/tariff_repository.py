"""
Quota tariff persistence.

Tariffs are versioned: superseding a tariff closes the effective window of the
current version and appends a new version, so the full history stays
available to rate past usage.
"""

from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Tuple

import structlog

from .db import DEFAULT_DB_PATH, from_db_timestamp, get_connection, to_db_timestamp, utc_now
from cloud_quota.core.activation_rule import find_unknown_variables
from cloud_quota.core.errors import RuleEvaluationError, ValidationError
from cloud_quota.core.quota_types import ProcessingPeriod, get_quota_type
from cloud_quota.core.tariff import QuotaTariff

logger = structlog.get_logger(__name__)

_TARIFF_COLUMNS = (
    "id, name, usage_type, usage_name, usage_unit, usage_discriminator, currency_value, "
    "activation_rule, processing_period, execute_on, effective_from, effective_to, "
    "version, position, description, removed"
)


def _row_to_tariff(row: tuple) -> QuotaTariff:
    return QuotaTariff(
        id=row[0],
        name=row[1],
        usage_type=row[2],
        usage_name=row[3],
        usage_unit=row[4],
        usage_discriminator=row[5],
        currency_value=Decimal(row[6]),
        activation_rule=row[7],
        processing_period=ProcessingPeriod(row[8]),
        execute_on=row[9],
        effective_from=from_db_timestamp(row[10]),
        effective_to=from_db_timestamp(row[11]),
        version=row[12],
        position=row[13],
        description=row[14],
        removed=from_db_timestamp(row[15])
    )


class QuotaTariffStore:
    """Store of quota tariffs and their version history."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH, clock: Callable[[], datetime] = utc_now):
        self.db_path = db_path
        self._clock = clock

    def _validate(self, tariff: QuotaTariff) -> QuotaTariff:
        """Check a tariff before it is stored and fill in its usage type data."""
        if not tariff.name or not tariff.name.strip():
            raise ValidationError("Quota tariff name must not be empty.")

        candidate = replace(tariff)
        if not candidate.set_usage_type_data(tariff.usage_type):
            raise ValidationError(f"Usage type [{tariff.usage_type}] does not exist.")
        if not candidate.set_execute_on(tariff.execute_on):
            raise ValidationError(
                f"Invalid execute-on day [{tariff.execute_on}] for processing period "
                f"[{tariff.processing_period.value}]; MONTHLY tariffs require a day between 1 and 28 "
                f"and BY_ENTRY tariffs must not define one."
            )
        candidate.currency_value = Decimal(str(candidate.currency_value))
        if candidate.currency_value < 0:
            raise ValidationError("Quota tariff value must not be negative.")

        if candidate.effective_from is None:
            candidate.effective_from = self._clock()
        if candidate.effective_to is not None and candidate.effective_to < candidate.effective_from:
            raise ValidationError(
                f"The quota tariff's end date [{candidate.effective_to}] cannot be less than "
                f"the start date [{candidate.effective_from}]."
            )

        try:
            unknown = find_unknown_variables(candidate.activation_rule, candidate.usage_type)
        except RuleEvaluationError as e:
            raise ValidationError(f"Invalid activation rule: {e}") from e
        if unknown:
            raise ValidationError(
                f"Activation rule references unknown preset variables {unknown} "
                f"for usage type [{candidate.usage_name}]."
            )
        return candidate

    def create_tariff(self, tariff: QuotaTariff) -> QuotaTariff:
        """Validate and store a new tariff lineage.

        Returns:
            The stored tariff, with its id

        Raises:
            ValidationError: If the tariff is invalid or an active tariff
                already has its name
        """
        candidate = self._validate(tariff)
        if self.find_by_name(candidate.name) is not None:
            raise ValidationError(f"A quota tariff with name [{candidate.name}] already exists.")

        candidate = replace(candidate, id=None, removed=None, version=1)
        conn = get_connection(self.db_path)
        try:
            tariff_id = self._insert(conn, candidate)
            conn.commit()
        finally:
            conn.close()

        created = replace(candidate, id=tariff_id)
        logger.info("quota_tariff_created", tariff_id=tariff_id, name=created.name, usage_type=created.usage_type)
        return created

    def supersede_tariff(self, old_id: int, new: QuotaTariff) -> QuotaTariff:
        """Replace the current version of a tariff by a new version.

        The new version keeps the lineage's name and usage type. The old
        version's effective window is closed at the new version's start (unless it
        already ended earlier) and it is flagged as removed; it is never deleted.

        Raises:
            ValidationError: If the old version does not exist or was already
                superseded, or the new version is invalid
        """
        old = self.get_tariff(old_id)
        if old is None:
            raise ValidationError(f"Quota tariff [{old_id}] does not exist.")
        if old.removed is not None:
            raise ValidationError(f"Quota tariff [{old.name}] version {old.version} is no longer active.")
        if new.name and new.name != old.name:
            raise ValidationError(f"A new version of quota tariff [{old.name}] cannot be renamed to [{new.name}].")
        if new.usage_type not in (0, old.usage_type):
            raise ValidationError(f"The usage type of quota tariff [{old.name}] cannot be changed.")

        candidate = self._validate(replace(new, name=old.name, usage_type=old.usage_type))
        if candidate.effective_from < old.effective_from:
            raise ValidationError(
                f"The new version of quota tariff [{old.name}] cannot start before the current version."
            )
        candidate = replace(candidate, id=None, removed=None, version=old.version + 1)
        closed_at = candidate.effective_from
        if old.effective_to is not None:
            closed_at = min(old.effective_to, candidate.effective_from)

        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            conn.execute(
                "UPDATE quota_tariff SET effective_to = ?, removed = ? WHERE id = ?",
                (to_db_timestamp(closed_at), to_db_timestamp(self._clock()), old.id)
            )
            tariff_id = self._insert(conn, candidate)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

        superseding = replace(candidate, id=tariff_id)
        logger.info(
            "quota_tariff_superseded",
            name=superseding.name,
            old_tariff_id=old.id,
            tariff_id=tariff_id,
            version=superseding.version
        )
        return superseding

    def remove_tariff(self, tariff_id: int, removed_at: Optional[datetime] = None) -> QuotaTariff:
        """End an active tariff without a successor.

        Raises:
            ValidationError: If the tariff does not exist or is not active
        """
        tariff = self.get_tariff(tariff_id)
        if tariff is None or tariff.removed is not None:
            raise ValidationError(f"Quota tariff [{tariff_id}] does not exist or is not active.")

        removed_at = removed_at or self._clock()
        effective_to = tariff.effective_to
        if effective_to is None or effective_to > removed_at:
            effective_to = max(removed_at, tariff.effective_from)

        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "UPDATE quota_tariff SET effective_to = ?, removed = ? WHERE id = ?",
                (to_db_timestamp(effective_to), to_db_timestamp(removed_at), tariff_id)
            )
            conn.commit()
        finally:
            conn.close()

        logger.info("quota_tariff_removed", tariff_id=tariff_id, name=tariff.name)
        return replace(tariff, effective_to=effective_to, removed=removed_at)

    def _insert(self, conn, tariff: QuotaTariff) -> int:
        cursor = conn.execute("""
            INSERT INTO quota_tariff
            (name, usage_type, usage_name, usage_unit, usage_discriminator, currency_value,
             activation_rule, processing_period, execute_on, effective_from, effective_to,
             version, position, description, removed)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            tariff.name,
            tariff.usage_type,
            tariff.usage_name,
            tariff.usage_unit,
            tariff.usage_discriminator,
            str(tariff.currency_value),
            tariff.activation_rule,
            tariff.processing_period.value,
            tariff.execute_on,
            to_db_timestamp(tariff.effective_from),
            to_db_timestamp(tariff.effective_to),
            tariff.version,
            tariff.position,
            tariff.description,
            to_db_timestamp(tariff.removed)
        ))
        return cursor.lastrowid

    def _query(self, where: str = "", params: Tuple = (), order: str = "usage_type, name, version DESC") -> List[QuotaTariff]:
        conn = get_connection(self.db_path)
        try:
            query = f"SELECT {_TARIFF_COLUMNS} FROM quota_tariff"
            if where:
                query += f" WHERE {where}"
            query += f" ORDER BY {order}"
            cursor = conn.execute(query, params)
            return [_row_to_tariff(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def get_tariff(self, tariff_id: int) -> Optional[QuotaTariff]:
        tariffs = self._query("id = ?", (tariff_id,))
        return tariffs[0] if tariffs else None

    def find_by_name(self, name: str) -> Optional[QuotaTariff]:
        """Return the active version of the tariff lineage called ``name``."""
        tariffs = self._query("name = ? AND removed IS NULL", (name,))
        return tariffs[0] if tariffs else None

    def list_tariffs(
        self,
        usage_type: Optional[int] = None,
        processing_period: Optional[ProcessingPeriod] = None,
        name: Optional[str] = None,
        include_removed: bool = False
    ) -> List[QuotaTariff]:
        """List tariffs, by default only the active version of each lineage."""
        conditions = []
        params = []
        if usage_type is not None:
            conditions.append("usage_type = ?")
            params.append(usage_type)
        if processing_period is not None:
            conditions.append("processing_period = ?")
            params.append(processing_period.value)
        if name is not None:
            conditions.append("name = ?")
            params.append(name)
        if not include_removed:
            conditions.append("removed IS NULL")
        return self._query(" AND ".join(conditions), tuple(params))

    def find_tariffs_for_type(
        self,
        usage_type: int,
        as_of: datetime,
        processing_period: Optional[ProcessingPeriod] = None
    ) -> List[QuotaTariff]:
        """Tariffs of a usage type in force at ``as_of``.

        An unknown usage type simply has no tariffs.

        Returns:
            Tariffs ordered by version, newest first
        """
        if get_quota_type(usage_type) is None:
            return []

        moment = to_db_timestamp(as_of)
        where = "usage_type = ? AND effective_from <= ? AND (effective_to IS NULL OR effective_to > ?)"
        params = [usage_type, moment, moment]
        if processing_period is not None:
            where += " AND processing_period = ?"
            params.append(processing_period.value)
        return self._query(where, tuple(params), order="version DESC, position, id")

    def map_tariffs_per_usage_type(
        self,
        as_of: datetime,
        processing_period: Optional[ProcessingPeriod] = None
    ) -> Tuple[Dict[int, List[QuotaTariff]], bool]:
        """Group the tariffs in force at ``as_of`` by usage type.

        Returns:
            The tariffs per usage type, and whether any of them has an
            activation rule
        """
        moment = to_db_timestamp(as_of)
        where = "effective_from <= ? AND (effective_to IS NULL OR effective_to > ?)"
        params = [moment, moment]
        if processing_period is not None:
            where += " AND processing_period = ?"
            params.append(processing_period.value)

        tariffs_per_type: Dict[int, List[QuotaTariff]] = {}
        has_activation_rule = False
        for tariff in self._query(where, tuple(params), order="usage_type, version DESC, position, id"):
            tariffs_per_type.setdefault(tariff.usage_type, []).append(tariff)
            has_activation_rule = has_activation_rule or tariff.has_activation_rule
        return tariffs_per_type, has_activation_rule

"""
Resource quoting.

Estimates the quota a resource would consume before it exists, using the
tariffs in force now. The caller describes the resource with the same preset
variables activation rules see at rating time.
"""

import json
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional

import structlog

from .activation_rule import ActivationRuleEvaluator
from .aggregation import latest_tariff_versions
from .errors import RuleEvaluationError, ValidationError
from .preset_variables import PresetVariables
from .quota_types import get_quota_type_by_name
from .rating import RateBasis, calculate_quote
from cloud_quota.storage.db import utc_now

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ResourceToQuote:
    """A resource to quote and the volume of usage to estimate."""
    id: str
    usage_type: str
    volume_to_quote: float
    metadata: Optional[PresetVariables] = None


@dataclass(frozen=True)
class QuotingResult:
    id: str
    resource_type: str
    quote: Decimal


def load_resources_to_quote(json_text: str) -> List[ResourceToQuote]:
    """Parse the JSON list of resources to quote.

    Each element needs ``usageType`` and ``volumeToQuote``; ``id`` defaults
    to the element's index and ``metadata`` holds preset variables.

    Raises:
        ValidationError: On malformed JSON, an empty list, an unknown usage
            type or an unknown preset variable
    """
    try:
        data = json.loads(json_text)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Resources to quote are not valid JSON: {e}") from e

    if not isinstance(data, list) or not data:
        raise ValidationError("Resources to quote must be a non-empty JSON list.")

    resources = []
    for index, item in enumerate(data):
        if not isinstance(item, dict):
            raise ValidationError(f"Resource to quote at index [{index}] must be an object.")
        if not item.get("usageType"):
            raise ValidationError(f"Resource to quote at index [{index}] has no usageType.")
        usage_type = get_quota_type_by_name(item["usageType"]).name

        volume = item.get("volumeToQuote")
        if isinstance(volume, bool) or not isinstance(volume, (int, float)) or volume < 0:
            raise ValidationError(f"Resource to quote at index [{index}] needs a non-negative volumeToQuote.")

        metadata = None
        if item.get("metadata") is not None:
            metadata = PresetVariables.from_dict(item["metadata"])

        resource_id = item.get("id")
        resources.append(ResourceToQuote(
            id=str(index) if resource_id is None else str(resource_id),
            usage_type=usage_type,
            volume_to_quote=volume,
            metadata=metadata
        ))
    return resources


class ResourceQuoter:
    """Quotes resources with the tariffs in force now."""

    def __init__(
        self,
        tariff_store,
        evaluator: Optional[ActivationRuleEvaluator] = None,
        rate_basis: RateBasis = RateBasis.HOURLY,
        clock: Callable[[], datetime] = utc_now
    ):
        self._tariff_store = tariff_store
        self._evaluator = evaluator or ActivationRuleEvaluator()
        self._rate_basis = rate_basis
        self._clock = clock

    def quote_resources(self, resources: List[ResourceToQuote]) -> List[QuotingResult]:
        now = self._clock()
        tariffs_per_type, _ = self._tariff_store.map_tariffs_per_usage_type(now)
        return [self._quote(resource, tariffs_per_type, now) for resource in resources]

    def _quote(self, resource: ResourceToQuote, tariffs_per_type, now: datetime) -> QuotingResult:
        quota_type = get_quota_type_by_name(resource.usage_type)
        tariffs = latest_tariff_versions(tariffs_per_type.get(quota_type.code, []))
        if not tariffs or resource.volume_to_quote == 0:
            logger.debug("resource_quote_empty", resource_id=resource.id, usage_type=quota_type.name)
            return QuotingResult(resource.id, quota_type.name, Decimal("0"))

        context = resource.metadata.copy() if resource.metadata is not None else PresetVariables()
        if context.resource_type is None:
            context.resource_type = quota_type.name
        context.freeze()

        tariffs_value = Decimal("0")
        for tariff in tariffs:
            try:
                tariffs_value += self._evaluator.tariff_value(tariff.activation_rule, context, tariff.currency_value)
            except RuleEvaluationError as e:
                logger.warning("quota_tariff_rule_failed", tariff_id=tariff.id, name=tariff.name, reason=str(e))

        quote = calculate_quote(
            quota_type.unit, Decimal(str(resource.volume_to_quote)), tariffs_value, self._rate_basis, now
        )
        return QuotingResult(resource.id, quota_type.name, quote)

"""
Preset variables exposed to tariff activation rules.

Activation rules reference these objects by their camelCase names, e.g.
``account.name`` or ``processedData.usageValue``. Every preset variable keeps
an explicit, ordered record of the fields that were populated: only those are
rendered and only those are visible to rules. Fields can be set but never
unset, and a context is frozen before it reaches the evaluator.
"""

import json
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from types import MappingProxyType
from typing import Any, ClassVar, Dict, Iterable, List, Optional, Tuple, Type

from . import quota_types
from .errors import ValidationError


@dataclass(frozen=True)
class PresetField:
    """Declaration of one field of a preset variable."""
    alias: str        # name used inside activation rules
    attribute: str    # Python attribute name
    description: str
    nested: Optional[Type["GenericPresetVariable"]] = None
    many: bool = False     # list of nested variables
    mapping: bool = False  # free-form keys, e.g. resource tags


class GenericPresetVariable:
    """Base class of all preset variables."""

    FIELDS: ClassVar[Tuple[PresetField, ...]] = ()
    _by_attribute: ClassVar[Dict[str, PresetField]] = {}
    _by_alias: ClassVar[Dict[str, PresetField]] = {}

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        cls._by_attribute = {field.attribute: field for field in cls.FIELDS}
        cls._by_alias = {field.alias: field for field in cls.FIELDS}

    def __init__(self, **values: Any):
        object.__setattr__(self, "_populated", set())
        object.__setattr__(self, "_frozen", False)
        for field in self.FIELDS:
            object.__setattr__(self, field.attribute, None)
        for attribute, value in values.items():
            setattr(self, attribute, value)

    def __setattr__(self, attribute: str, value: Any) -> None:
        field = self._by_attribute.get(attribute)
        if field is None:
            raise AttributeError(f"{type(self).__name__} has no preset variable field [{attribute}]")
        if self._frozen:
            raise AttributeError(f"{type(self).__name__} is read-only")
        if value is None:
            if attribute in self._populated:
                raise ValueError(f"Field [{field.alias}] of {type(self).__name__} is already set and cannot be unset")
            return
        object.__setattr__(self, attribute, value)
        self._populated.add(attribute)

    def __eq__(self, other: object) -> bool:
        if type(self) is not type(other):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self})"

    def __str__(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @property
    def populated_fields(self) -> Tuple[str, ...]:
        """Aliases of the populated fields, in declaration order."""
        return tuple(field.alias for field in self.FIELDS if field.attribute in self._populated)

    @property
    def is_frozen(self) -> bool:
        return self._frozen

    def has_field(self, alias: str) -> bool:
        return alias in self._by_alias

    def resolve(self, alias: str) -> Any:
        """Return the value of the field named ``alias`` as seen by rules.

        Raises:
            KeyError: If this preset variable declares no such field
        """
        field = self._by_alias.get(alias)
        if field is None:
            raise KeyError(alias)
        return getattr(self, field.attribute)

    def freeze(self) -> "GenericPresetVariable":
        """Make this variable, and everything nested in it, read-only."""
        for field in self.FIELDS:
            value = getattr(self, field.attribute)
            if isinstance(value, GenericPresetVariable):
                value.freeze()
            elif field.many and value is not None:
                for item in value:
                    item.freeze()
                object.__setattr__(self, field.attribute, tuple(value))
            elif field.mapping and value is not None:
                object.__setattr__(self, field.attribute, MappingProxyType(dict(value)))
        object.__setattr__(self, "_frozen", True)
        return self

    def copy(self) -> "GenericPresetVariable":
        """Return an unfrozen deep copy holding the same populated fields."""
        values = {}
        for field in self.FIELDS:
            if field.attribute not in self._populated:
                continue
            value = getattr(self, field.attribute)
            if field.many:
                value = [item.copy() for item in value]
            elif isinstance(value, GenericPresetVariable):
                value = value.copy()
            elif field.mapping:
                value = dict(value)
            values[field.attribute] = value
        return type(self)(**values)

    def to_dict(self) -> Dict[str, Any]:
        """Populated fields keyed by alias, nested variables included."""
        result = {}
        for field in self.FIELDS:
            if field.attribute not in self._populated:
                continue
            value = getattr(self, field.attribute)
            if field.many:
                value = [item.to_dict() for item in value]
            elif isinstance(value, GenericPresetVariable):
                value = value.to_dict()
            elif field.mapping:
                value = dict(value)
            result[field.alias] = value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any], path: str = "") -> "GenericPresetVariable":
        """Build a preset variable from a dict keyed by alias.

        Raises:
            ValidationError: On unknown fields or wrongly shaped values
        """
        if not isinstance(data, dict):
            raise ValidationError(f"Preset variable [{path or cls.__name__}] must be an object")

        values = {}
        for alias, value in data.items():
            field = cls._by_alias.get(alias)
            if field is None:
                raise ValidationError(f"Unknown preset variable [{path}{alias}]")
            if value is None:
                continue
            if field.many:
                if not isinstance(value, list):
                    raise ValidationError(f"Preset variable [{path}{alias}] must be a list")
                value = [field.nested.from_dict(item, f"{path}{alias}.") for item in value]
            elif field.nested is not None:
                value = field.nested.from_dict(value, f"{path}{alias}.")
            elif field.mapping:
                if not isinstance(value, dict):
                    raise ValidationError(f"Preset variable [{path}{alias}] must be an object")
                value = dict(value)
            values[field.attribute] = value
        return cls(**values)

    @classmethod
    def schema(cls, prefix: str = "") -> List[Tuple[str, str]]:
        """List every dotted variable path of this class with its description."""
        entries = []
        for field in cls.FIELDS:
            path = f"{prefix}{field.alias}"
            entries.append((path, field.description))
            if field.nested is not None:
                entries.extend(field.nested.schema(f"{path}."))
        return entries

    @classmethod
    def mapping_paths(cls, prefix: str = "") -> List[str]:
        """Dotted paths of fields that accept arbitrary sub-keys."""
        paths = []
        for field in cls.FIELDS:
            path = f"{prefix}{field.alias}"
            if field.mapping:
                paths.append(path)
            if field.nested is not None:
                paths.extend(field.nested.mapping_paths(f"{path}."))
        return paths


class Role(GenericPresetVariable):
    FIELDS = (
        PresetField("id", "id", "ID of the account's role."),
        PresetField("name", "name", "Name of the account's role."),
        PresetField("type", "type", "Type of the account's role (Admin, DomainAdmin, User)."),
    )


class Account(GenericPresetVariable):
    FIELDS = (
        PresetField("id", "id", "ID of the account."),
        PresetField("name", "name", "Name of the account."),
        PresetField("role", "role", "Role of the account.", nested=Role),
    )


class Domain(GenericPresetVariable):
    FIELDS = (
        PresetField("id", "id", "ID of the domain."),
        PresetField("name", "name", "Name of the domain."),
        PresetField("path", "path", "Path of the domain."),
    )


class Project(GenericPresetVariable):
    FIELDS = (
        PresetField("id", "id", "ID of the project owning the resource."),
        PresetField("name", "name", "Name of the project owning the resource."),
    )


class Zone(GenericPresetVariable):
    FIELDS = (
        PresetField("id", "id", "ID of the zone."),
        PresetField("name", "name", "Name of the zone."),
    )


class ComputeOffering(GenericPresetVariable):
    FIELDS = (
        PresetField("id", "id", "ID of the compute offering."),
        PresetField("name", "name", "Name of the compute offering."),
        PresetField("customized", "customized", "Whether the compute offering is customized."),
    )


class ComputingResources(GenericPresetVariable):
    FIELDS = (
        PresetField("memory", "memory", "Amount of memory, in MiB."),
        PresetField("cpuNumber", "cpu_number", "Number of vCPUs."),
        PresetField("cpuSpeed", "cpu_speed", "Speed of each vCPU, in MHz."),
    )


class BackupOffering(GenericPresetVariable):
    FIELDS = (
        PresetField("id", "id", "ID of the backup offering."),
        PresetField("name", "name", "Name of the backup offering."),
    )


class Value(GenericPresetVariable):
    FIELDS = (
        PresetField("id", "id", "ID of the resource."),
        PresetField("name", "name", "Name of the resource."),
        PresetField("osName", "os_name", "Name of the resource's operating system."),
        PresetField("tags", "tags", "Tags of the resource, as key/value pairs.", mapping=True),
        PresetField("size", "size", "Size of the resource, in bytes."),
        PresetField("virtualSize", "virtual_size", "Virtual size of the resource, in bytes."),
        PresetField("protectedSize", "protected_size", "Protected size of the backup, in bytes."),
        PresetField("computeOffering", "compute_offering", "Compute offering of the resource.", nested=ComputeOffering),
        PresetField("computingResources", "computing_resources", "Computing resources of the resource.",
                    nested=ComputingResources),
        PresetField("backupOffering", "backup_offering", "Backup offering of the resource.", nested=BackupOffering),
    )


class UsageRecord(GenericPresetVariable):
    FIELDS = (
        PresetField("id", "id", "ID of the usage entry being rated."),
        PresetField("usageType", "usage_type", "Usage type of the usage entry."),
        PresetField("description", "description", "Description of the usage entry."),
        PresetField("usageValue", "usage_value", "Usage of the entry as displayed, e.g. \"1.000000 Hrs\"."),
        PresetField("rawUsage", "raw_usage", "Usage of the entry, in the unit of its usage type."),
        PresetField("size", "size", "Size of the metered resource, in bytes."),
        PresetField("protectedSize", "protected_size", "Protected size of the metered resource, in bytes."),
        PresetField("startDate", "start_date", "Start of the usage entry's interval."),
        PresetField("endDate", "end_date", "End of the usage entry's interval."),
    )


class Tariff(GenericPresetVariable):
    FIELDS = (
        PresetField("id", "id", "ID of the applied tariff."),
        PresetField("value", "value", "Value of the applied tariff."),
    )


class ProcessedData(GenericPresetVariable):
    FIELDS = (
        PresetField("startDate", "start_date", "The start date of the processed data."),
        PresetField("endDate", "end_date", "The end date of the processed data."),
        PresetField("usageValue", "usage_value", "The resource's usage during the period."),
        PresetField("aggregatedTariffsValue", "aggregated_tariffs_value",
                    "The aggregation of all Quota tariffs applied to the resource during the period."),
        PresetField("tariffs", "tariffs", "A list of objects containing the ID and value of the applied tariff.",
                    nested=Tariff, many=True),
    )

    @classmethod
    def for_period(cls, start_date: datetime, end_date: datetime) -> "ProcessedData":
        return cls(start_date=start_date, end_date=end_date, usage_value=0.0,
                   aggregated_tariffs_value=Decimal("0"), tariffs=[])

    def add_usage(self, usage_value: float) -> None:
        self.usage_value = (self.usage_value or 0.0) + usage_value

    def add_tariff(self, tariff_id: Any, tariff_value: Decimal, cost: Decimal) -> None:
        """Record a tariff applied during the period and add its cost."""
        self.tariffs = list(self.tariffs or []) + [Tariff(id=tariff_id, value=tariff_value)]
        self.aggregated_tariffs_value = (self.aggregated_tariffs_value or Decimal("0")) + cost


class PresetVariables(GenericPresetVariable):
    FIELDS = (
        PresetField("account", "account", "Account owning the resource.", nested=Account),
        PresetField("domain", "domain", "Domain of the account.", nested=Domain),
        PresetField("project", "project", "Project owning the resource, if any.", nested=Project),
        PresetField("resourceType", "resource_type", "Usage type name of the resource."),
        PresetField("value", "value", "The metered resource.", nested=Value),
        PresetField("zone", "zone", "Zone of the resource.", nested=Zone),
        PresetField("usageRecord", "usage_record", "The usage entry being rated.", nested=UsageRecord),
        PresetField("processedData", "processed_data", "Running totals of the current processing period.",
                    nested=ProcessedData),
    )


_VM_VALUE_FIELDS = {"id", "name", "osName", "tags", "computeOffering", "computingResources"}
_STORAGE_VALUE_FIELDS = {"id", "name", "tags", "size", "virtualSize"}
_BACKUP_VALUE_FIELDS = _STORAGE_VALUE_FIELDS | {"protectedSize", "backupOffering"}
_DEFAULT_VALUE_FIELDS = {"id", "name", "tags"}

VALUE_FIELDS_BY_USAGE_TYPE = {
    quota_types.RUNNING_VM: _VM_VALUE_FIELDS,
    quota_types.ALLOCATED_VM: _VM_VALUE_FIELDS,
    quota_types.VOLUME: _STORAGE_VALUE_FIELDS,
    quota_types.TEMPLATE: _STORAGE_VALUE_FIELDS,
    quota_types.ISO: _STORAGE_VALUE_FIELDS,
    quota_types.SNAPSHOT: _STORAGE_VALUE_FIELDS,
    quota_types.VM_SNAPSHOT: _STORAGE_VALUE_FIELDS,
    quota_types.VOLUME_SECONDARY: _STORAGE_VALUE_FIELDS,
    quota_types.VM_SNAPSHOT_ON_PRIMARY: _STORAGE_VALUE_FIELDS,
    quota_types.BACKUP: _BACKUP_VALUE_FIELDS,
    quota_types.BACKUP_OBJECT: _BACKUP_VALUE_FIELDS,
}


def list_preset_variables(usage_type: Optional[int] = None) -> List[Tuple[str, str]]:
    """List the variables available to activation rules of a usage type.

    Without a usage type every variable is listed.
    """
    entries = PresetVariables.schema()
    if usage_type is None:
        return entries

    allowed = VALUE_FIELDS_BY_USAGE_TYPE.get(usage_type, _DEFAULT_VALUE_FIELDS)
    return [(path, description) for path, description in entries if _value_field_allowed(path, allowed)]


def is_known_variable(path: str, usage_type: Optional[int] = None) -> bool:
    """Whether a dotted path names a variable rules of ``usage_type`` may use."""
    known = {entry_path for entry_path, _ in list_preset_variables(usage_type)}
    if path in known:
        return True
    return any(path.startswith(f"{mapping}.") for mapping in PresetVariables.mapping_paths() if mapping in known)


def _value_field_allowed(path: str, allowed: Iterable[str]) -> bool:
    segments = path.split(".")
    if segments[0] != "value" or len(segments) == 1:
        return True
    return segments[1] in allowed


class PresetVariableBuilder:
    """Builds the frozen preset variables describing a usage entry.

    Args:
        inventory: Lookup of accounts, domains, zones and resources, see
            ``cloud_quota.storage.inventory_repository.InventoryRepository``
    """

    def __init__(self, inventory):
        self._inventory = inventory

    def build(self, entry, processed_data: Optional[ProcessedData] = None) -> PresetVariables:
        """Describe a usage entry, with a snapshot of the running period data."""
        variables = self._build_base(entry.account_id, entry.domain_id, entry.zone_id, entry.usage_type)
        variables.value = self._build_value(entry)
        variables.usage_record = UsageRecord(
            id=entry.id,
            usage_type=entry.usage_type,
            description=entry.description,
            usage_value=entry.usage_display,
            raw_usage=entry.raw_usage,
            size=entry.size,
            protected_size=entry.protected_size,
            start_date=entry.interval_start,
            end_date=entry.interval_end
        )
        if processed_data is not None:
            variables.processed_data = processed_data.copy()
        return variables.freeze()

    def build_for_period(
        self,
        account_id: int,
        domain_id: int,
        usage_type: int,
        processed_data: ProcessedData
    ) -> PresetVariables:
        """Describe a whole processing period of an account and usage type."""
        variables = self._build_base(account_id, domain_id, None, usage_type)
        variables.processed_data = processed_data.copy()
        return variables.freeze()

    def _build_base(self, account_id: int, domain_id: int, zone_id: Optional[int], usage_type: int) -> PresetVariables:
        variables = PresetVariables()

        account = self._inventory.get_account(account_id)
        if account is not None:
            role = None
            if account.role_uuid or account.role_name:
                role = Role(id=account.role_uuid, name=account.role_name, type=account.role_type)
            variables.account = Account(id=account.uuid, name=account.name, role=role)
            if account.project_uuid:
                variables.project = Project(id=account.project_uuid, name=account.project_name)

        domain = self._inventory.get_domain(domain_id)
        if domain is not None:
            variables.domain = Domain(id=domain.uuid, name=domain.name, path=domain.path)

        if zone_id is not None:
            zone = self._inventory.get_zone(zone_id)
            if zone is not None:
                variables.zone = Zone(id=zone.uuid, name=zone.name)

        quota_type = quota_types.get_quota_type(usage_type)
        if quota_type is not None:
            variables.resource_type = quota_type.name
        return variables

    def _build_value(self, entry) -> Optional[Value]:
        resource = None
        if entry.resource_id is not None:
            resource = self._inventory.get_resource(entry.resource_id, entry.usage_type)

        candidates = {"size": entry.size, "protected_size": entry.protected_size}
        if resource is not None:
            candidates.update(
                id=resource.uuid,
                name=resource.name,
                os_name=resource.os_name,
                tags=dict(resource.tags),
                virtual_size=resource.virtual_size,
                compute_offering=ComputeOffering(
                    id=resource.offering_uuid,
                    name=resource.offering_name,
                    customized=resource.offering_customized
                ),
                computing_resources=ComputingResources(
                    memory=resource.memory,
                    cpu_number=resource.cpu_number,
                    cpu_speed=resource.cpu_speed
                ),
                backup_offering=BackupOffering(id=resource.offering_uuid, name=resource.offering_name)
            )

        allowed = VALUE_FIELDS_BY_USAGE_TYPE.get(entry.usage_type, _DEFAULT_VALUE_FIELDS)
        values = {
            attribute: value for attribute, value in candidates.items()
            if Value._by_attribute[attribute].alias in allowed
            and value is not None
            and not (isinstance(value, GenericPresetVariable) and not value.populated_fields)
        }
        return Value(**values) if values else None

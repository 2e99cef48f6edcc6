"""
Usage types known to the quota subsystem.

Each quota type ties a numeric usage-type code to the unit its tariffs are
charged in. Codes are fixed; tariffs store them and usage entries carry them.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from .errors import ValidationError


class UsageUnit(Enum):
    """Units in which usage is metered and tariffs are charged."""
    COMPUTE_MONTH = "Compute*Month"
    IP_MONTH = "IP*Month"
    GB = "GB"
    GB_MONTH = "GB*Month"
    POLICY_MONTH = "Policy*Month"
    IOPS = "IOPS"
    BYTES = "Bytes"

    @property
    def is_time_based(self) -> bool:
        """Whether usage in this unit is measured in hours."""
        return self in (
            UsageUnit.COMPUTE_MONTH,
            UsageUnit.IP_MONTH,
            UsageUnit.POLICY_MONTH,
            UsageUnit.GB_MONTH,
        )


class ProcessingPeriod(Enum):
    """How often a tariff is evaluated."""
    BY_ENTRY = "BY_ENTRY"  # every usage entry individually
    MONTHLY = "MONTHLY"    # once per month, on the tariff's execute-on day

    @classmethod
    def from_string(cls, period: str) -> "ProcessingPeriod":
        """Look up a processing period by name, case-insensitively.

        Raises:
            ValidationError: If the name matches no processing period
        """
        for candidate in cls:
            if candidate.value.lower() == (period or "").strip().lower():
                return candidate
        valid = [p.value for p in cls]
        raise ValidationError(f"Invalid value [{period}]; it must be one of the following values {valid}.")


@dataclass(frozen=True)
class QuotaType:
    """A metered usage type and the unit it is charged in."""
    code: int
    name: str
    unit: UsageUnit
    discriminator: str


RUNNING_VM = 1
ALLOCATED_VM = 2
IP_ADDRESS = 3
NETWORK_BYTES_SENT = 4
NETWORK_BYTES_RECEIVED = 5
VOLUME = 6
TEMPLATE = 7
ISO = 8
SNAPSHOT = 9
SECURITY_GROUP = 10
LOAD_BALANCER_POLICY = 11
PORT_FORWARDING_RULE = 12
NETWORK_OFFERING = 13
VPN_USERS = 14
VM_DISK_IO_READ = 21
VM_DISK_IO_WRITE = 22
VM_DISK_BYTES_READ = 23
VM_DISK_BYTES_WRITE = 24
VM_SNAPSHOT = 25
VOLUME_SECONDARY = 26
VM_SNAPSHOT_ON_PRIMARY = 27
BACKUP = 28
VPC = 29
NETWORK = 30
BACKUP_OBJECT = 31


QUOTA_TYPES: Dict[int, QuotaType] = {
    quota_type.code: quota_type for quota_type in (
        QuotaType(RUNNING_VM, "RUNNING_VM", UsageUnit.COMPUTE_MONTH, "Running Vm Usage"),
        QuotaType(ALLOCATED_VM, "ALLOCATED_VM", UsageUnit.COMPUTE_MONTH, "Allocated Vm Usage"),
        QuotaType(IP_ADDRESS, "IP_ADDRESS", UsageUnit.IP_MONTH, "IP Address Usage"),
        QuotaType(NETWORK_BYTES_SENT, "NETWORK_BYTES_SENT", UsageUnit.GB, "Network Usage (Bytes Sent)"),
        QuotaType(NETWORK_BYTES_RECEIVED, "NETWORK_BYTES_RECEIVED", UsageUnit.GB, "Network Usage (Bytes Received)"),
        QuotaType(VOLUME, "VOLUME", UsageUnit.GB_MONTH, "Volume Usage"),
        QuotaType(TEMPLATE, "TEMPLATE", UsageUnit.GB_MONTH, "Template Usage"),
        QuotaType(ISO, "ISO", UsageUnit.GB_MONTH, "ISO Usage"),
        QuotaType(SNAPSHOT, "SNAPSHOT", UsageUnit.GB_MONTH, "Snapshot Usage"),
        QuotaType(SECURITY_GROUP, "SECURITY_GROUP", UsageUnit.POLICY_MONTH, "Security Group Usage"),
        QuotaType(LOAD_BALANCER_POLICY, "LOAD_BALANCER_POLICY", UsageUnit.POLICY_MONTH, "Load Balancer Usage"),
        QuotaType(PORT_FORWARDING_RULE, "PORT_FORWARDING_RULE", UsageUnit.POLICY_MONTH, "Port Forwarding Usage"),
        QuotaType(NETWORK_OFFERING, "NETWORK_OFFERING", UsageUnit.POLICY_MONTH, "Network Offering Usage"),
        QuotaType(VPN_USERS, "VPN_USERS", UsageUnit.POLICY_MONTH, "VPN users usage"),
        QuotaType(VM_DISK_IO_READ, "VM_DISK_IO_READ", UsageUnit.IOPS, "VM Disk usage(I/O Read)"),
        QuotaType(VM_DISK_IO_WRITE, "VM_DISK_IO_WRITE", UsageUnit.IOPS, "VM Disk usage(I/O Write)"),
        QuotaType(VM_DISK_BYTES_READ, "VM_DISK_BYTES_READ", UsageUnit.BYTES, "VM Disk usage(Bytes Read)"),
        QuotaType(VM_DISK_BYTES_WRITE, "VM_DISK_BYTES_WRITE", UsageUnit.BYTES, "VM Disk usage(Bytes Write)"),
        QuotaType(VM_SNAPSHOT, "VM_SNAPSHOT", UsageUnit.GB_MONTH, "VM Snapshot storage usage"),
        QuotaType(VOLUME_SECONDARY, "VOLUME_SECONDARY", UsageUnit.GB_MONTH, "Volume on secondary storage usage"),
        QuotaType(VM_SNAPSHOT_ON_PRIMARY, "VM_SNAPSHOT_ON_PRIMARY", UsageUnit.GB_MONTH, "VM Snapshot on primary storage usage"),
        QuotaType(BACKUP, "BACKUP", UsageUnit.GB_MONTH, "Backup storage usage"),
        QuotaType(VPC, "VPC", UsageUnit.COMPUTE_MONTH, "VPC usage"),
        QuotaType(NETWORK, "NETWORK", UsageUnit.COMPUTE_MONTH, "Network usage"),
        QuotaType(BACKUP_OBJECT, "BACKUP_OBJECT", UsageUnit.GB_MONTH, "Backup object usage"),
    )
}


def get_quota_type(code: int) -> Optional[QuotaType]:
    """Return the quota type for a usage-type code, or None if unknown."""
    return QUOTA_TYPES.get(code)


def get_quota_type_by_name(name: str) -> QuotaType:
    """Return the quota type with the given name (case-insensitive).

    Raises:
        ValidationError: If no quota type has that name
    """
    wanted = (name or "").strip().upper()
    for quota_type in QUOTA_TYPES.values():
        if quota_type.name == wanted:
            return quota_type
    raise ValidationError(f"There is no usage type with name [{name}].")

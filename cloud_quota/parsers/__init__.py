"""
Usage parsers.

One parser per resource type turns raw usage intervals into usage entries.
"""

from typing import Dict, List, Type

from .backup_object import BackupObjectUsageParser
from .base import UsageParser, format_usage_hours, parse_all, usage_hours

PARSERS: Dict[int, Type[UsageParser]] = {
    parser.usage_type: parser for parser in (BackupObjectUsageParser,)
}


def create_parsers(record_store, entry_store, **kwargs) -> List[UsageParser]:
    """Instantiate every registered parser against the given stores."""
    return [parser(record_store, entry_store, **kwargs) for parser in PARSERS.values()]


__all__ = [
    "BackupObjectUsageParser",
    "PARSERS",
    "UsageParser",
    "create_parsers",
    "format_usage_hours",
    "parse_all",
    "usage_hours",
]

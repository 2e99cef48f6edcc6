"""
Configuration management and loading.

Handles the database location, the aggregation settings and logging.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, FrozenSet, Optional

import yaml

from cloud_quota.core.rating import RateBasis
from cloud_quota.storage.db import DEFAULT_DB_PATH

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class DatabaseConfig:
    """Location of the quota database."""
    path: str = DEFAULT_DB_PATH

    def __post_init__(self):
        if not self.path:
            raise ValueError("database path must not be empty")


@dataclass(frozen=True)
class AggregationConfig:
    """Settings of the quota aggregation engine."""
    workers: int = 4
    rate_basis: RateBasis = RateBasis.HOURLY
    disabled_accounts: FrozenSet[int] = field(default_factory=frozenset)

    def __post_init__(self):
        """Validate worker count."""
        if self.workers < 1:
            raise ValueError("workers must be >= 1")


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    json: bool = False

    def __post_init__(self):
        if self.level not in LOG_LEVELS:
            raise ValueError(f"logging level must be one of: {list(LOG_LEVELS)}")


@dataclass(frozen=True)
class QuotaConfig:
    """Complete cloud-quota configuration."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    aggregation: AggregationConfig = field(default_factory=AggregationConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> "QuotaConfig":
        """Configuration used when no file is given."""
        return cls()


def load_quota_config(path: Optional[str] = None) -> QuotaConfig:
    """Load and validate the configuration from a YAML file.

    Strict validation: unknown keys are rejected instead of ignored.

    Args:
        path: Path to YAML configuration file; None gives the defaults

    Returns:
        Validated QuotaConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        return QuotaConfig.default()

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Quota config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'database', 'aggregation', 'logging'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    return QuotaConfig(
        database=_parse_database(_section(raw_config, 'database', {'path'})),
        aggregation=_parse_aggregation(
            _section(raw_config, 'aggregation', {'workers', 'rate_basis', 'disabled_accounts'})
        ),
        logging=_parse_logging(_section(raw_config, 'logging', {'level', 'json'}))
    )


def _section(raw_config: Dict, name: str, allowed_keys: set) -> Dict:
    """Return a configuration section after checking its keys.

    Raises:
        ValueError: If the section is not a dictionary or has unknown keys
    """
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")

    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown {name} keys: {unknown_keys}")
    return data


def _parse_database(data: Dict) -> DatabaseConfig:
    db_path = data.get('path', DEFAULT_DB_PATH)
    if not isinstance(db_path, str):
        raise ValueError("'database.path' must be a string")
    return DatabaseConfig(path=db_path)


def _parse_aggregation(data: Dict) -> AggregationConfig:
    workers = data.get('workers', 4)
    if isinstance(workers, bool) or not isinstance(workers, int):
        raise ValueError("'aggregation.workers' must be an integer")

    rate_basis = data.get('rate_basis', RateBasis.HOURLY.value)
    if not isinstance(rate_basis, str):
        raise ValueError("'aggregation.rate_basis' must be a string")
    try:
        basis = RateBasis.from_string(rate_basis)
    except ValueError:
        valid_bases = [basis.value for basis in RateBasis]
        raise ValueError(f"'aggregation.rate_basis' must be one of: {valid_bases}")

    disabled_accounts = data.get('disabled_accounts', [])
    if not isinstance(disabled_accounts, list) or not all(
        isinstance(account_id, int) and not isinstance(account_id, bool) for account_id in disabled_accounts
    ):
        raise ValueError("'aggregation.disabled_accounts' must be a list of account ids")

    return AggregationConfig(
        workers=workers,
        rate_basis=basis,
        disabled_accounts=frozenset(disabled_accounts)
    )


def _parse_logging(data: Dict) -> LoggingConfig:
    level = data.get('level', 'INFO')
    if not isinstance(level, str):
        raise ValueError("'logging.level' must be a string")

    json_output = data.get('json', False)
    if not isinstance(json_output, bool):
        raise ValueError("'logging.json' must be a boolean")

    return LoggingConfig(level=level.upper(), json=json_output)

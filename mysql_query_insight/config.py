"""
Configuration loading.

Configuration lives in a JSON file with a ``database`` section, an optional
``aws`` section (enables CloudWatch collection) and an optional
``thresholds`` section::

    {
      "database": {"host": "...", "port": 3306, "user": "...", "password": "..."},
      "aws": {"region": "us-east-1", "db_instance_identifier": "prod-db"},
      "thresholds": {"full_scan_rows": 50000}
    }

When no file is available the same settings are read from the environment
(``DB_HOST``, ``DB_PORT``, ``DB_USER``, ``DB_PASSWORD``, ``DB_DATABASE``,
``AWS_REGION``, ``DB_INSTANCE_IDENTIFIER``), after loading a ``.env`` file.
"""

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from .errors import ConfigError

DEFAULT_CONFIG_FILE = 'config.json'


@dataclass
class DatabaseConfig:
    host: str
    user: str
    password: str
    port: int = 3306
    database: str = 'information_schema'
    connect_timeout: int = 10
    read_timeout: int = 30


@dataclass
class AWSConfig:
    region: str
    db_instance_identifier: str


@dataclass
class Thresholds:
    """Limits used when turning raw statistics into findings."""
    full_scan_rows: int = 10000
    rows_examined_ratio: float = 100.0
    tmp_disk_ratio: float = 0.25
    misestimate_factor: float = 10.0
    hotspot_share: float = 0.5
    buffer_pool_hit_rate_min: float = 99.0
    connection_utilization_max: float = 80.0
    cpu_utilization_max: float = 80.0
    read_latency_ms_max: float = 20.0
    top_n: int = 10


@dataclass
class Config:
    database: DatabaseConfig
    aws: Optional[AWSConfig] = None
    thresholds: Thresholds = field(default_factory=Thresholds)


def _database_from_dict(data: Dict[str, Any]) -> DatabaseConfig:
    missing = [name for name in ('host', 'user') if not data.get(name)]
    # An empty password is valid (passwordless accounts)
    if data.get('password') is None:
        missing.append('password')
    if missing:
        raise ConfigError(f"Missing database settings: {', '.join(missing)}")

    known = {f.name for f in fields(DatabaseConfig)}
    kwargs = {key: value for key, value in data.items() if key in known}
    for key in ('port', 'connect_timeout', 'read_timeout'):
        if key in kwargs:
            try:
                kwargs[key] = int(kwargs[key])
            except (TypeError, ValueError):
                raise ConfigError(f"Database setting '{key}' must be an integer, got {kwargs[key]!r}")
    return DatabaseConfig(**kwargs)


def _aws_from_dict(data: Optional[Dict[str, Any]]) -> Optional[AWSConfig]:
    if not data:
        return None
    missing = [name for name in ('region', 'db_instance_identifier') if not data.get(name)]
    if missing:
        raise ConfigError(f"Missing aws settings: {', '.join(missing)}")
    return AWSConfig(region=data['region'], db_instance_identifier=data['db_instance_identifier'])


def _thresholds_from_dict(data: Optional[Dict[str, Any]]) -> Thresholds:
    if not data:
        return Thresholds()
    defaults = Thresholds()
    known = {f.name: type(getattr(defaults, f.name)) for f in fields(Thresholds)}
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise ConfigError(f"Unknown thresholds: {', '.join(unknown)}")
    values = {}
    for key, value in data.items():
        try:
            values[key] = known[key](value)
        except (TypeError, ValueError):
            raise ConfigError(f"Threshold '{key}' has invalid value {value!r}")
    return Thresholds(**values)


def config_from_dict(data: Dict[str, Any]) -> Config:
    """Build a Config from the parsed JSON document."""
    if 'database' not in data:
        raise ConfigError("Configuration has no 'database' section")
    return Config(
        database=_database_from_dict(data['database']),
        aws=_aws_from_dict(data.get('aws')),
        thresholds=_thresholds_from_dict(data.get('thresholds')),
    )


def config_from_env() -> Config:
    """Build a Config from DB_* / AWS_* environment variables."""
    load_dotenv()

    database = {
        'host': os.getenv('DB_HOST'),
        'user': os.getenv('DB_USER'),
        'password': os.getenv('DB_PASSWORD'),
        'port': os.getenv('DB_PORT', '3306'),
    }
    if os.getenv('DB_DATABASE'):
        database['database'] = os.getenv('DB_DATABASE')

    aws = None
    if os.getenv('DB_INSTANCE_IDENTIFIER'):
        aws = {
            'region': os.getenv('AWS_REGION') or os.getenv('AWS_DEFAULT_REGION'),
            'db_instance_identifier': os.getenv('DB_INSTANCE_IDENTIFIER'),
        }

    return Config(
        database=_database_from_dict(database),
        aws=_aws_from_dict(aws),
    )


def load_config(path: Optional[str] = None) -> Config:
    """Load configuration from ``path``, ./config.json, or the environment."""
    if path is None and Path(DEFAULT_CONFIG_FILE).exists():
        path = DEFAULT_CONFIG_FILE

    if path is None:
        return config_from_env()

    config_path = Path(path)
    if not config_path.exists():
        raise ConfigError(f"Configuration file not found: {path}")

    try:
        with open(config_path, 'r') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Configuration file {path} is not valid JSON: {e}")

    return config_from_dict(data)

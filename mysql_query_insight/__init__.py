"""MySQL query performance analysis built on performance_schema, sys schema and EXPLAIN ANALYZE."""

from .config import Config, Thresholds, load_config
from .db import MySQLClient, is_read_only_sql
from .digest import fingerprint, normalize_sql
from .errors import (ConfigError, InstrumentationUnavailable, PlanParseError, QueryInsightError,
                     ReadOnlyViolation)
from .models import DigestStats, Finding, rank_statements

__version__ = '0.1.0'

__all__ = [
    'Config',
    'ConfigError',
    'DigestStats',
    'Finding',
    'InstrumentationUnavailable',
    'MySQLClient',
    'PlanParseError',
    'QueryInsightError',
    'ReadOnlyViolation',
    'Thresholds',
    'fingerprint',
    'is_read_only_sql',
    'load_config',
    'normalize_sql',
    'rank_statements',
]

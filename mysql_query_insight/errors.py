"""Exceptions raised by the analysis engine.

Errors coming back from the server itself are left as ``pymysql`` errors.
"""


class QueryInsightError(Exception):
    """Base class for all mysql-query-insight errors."""


class ConfigError(QueryInsightError):
    """Configuration file or environment is missing or invalid."""


class ReadOnlyViolation(QueryInsightError, ValueError):
    """Statement refused by the read-only guard."""


class InstrumentationUnavailable(QueryInsightError):
    """performance_schema / sys schema object is disabled, missing or unreadable."""


class PlanParseError(QueryInsightError, ValueError):
    """EXPLAIN output could not be parsed."""

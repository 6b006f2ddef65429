"""
Read-only MySQL access.

Every statement goes through ``is_read_only_sql`` before it reaches the
server; the engine only ever reads introspection data.
"""

import logging
import re
from typing import Any, Dict, List, Optional

import pymysql
from pymysql.cursors import DictCursor

from .config import DatabaseConfig
from .errors import ReadOnlyViolation

logger = logging.getLogger(__name__)

READ_ONLY_KEYWORDS = ('select', 'show', 'explain', 'describe', 'desc', 'with', 'table')
EXPLAIN_KEYWORDS = ('explain', 'describe', 'desc')
WRITE_KEYWORDS = ('insert', 'update', 'delete', 'replace', 'call', 'create', 'alter', 'drop',
                  'truncate', 'rename', 'load', 'set', 'do', 'handler', 'grant', 'revoke', 'lock')

_LEADING_COMMENT = re.compile(r'^\s*(?:/\*(?!\+).*?\*/|--[^\n]*(?:\n|$)|#[^\n]*(?:\n|$))', re.DOTALL)
_QUOTED = re.compile(r"'(?:[^'\\]|\\.|'')*'|\"(?:[^\"\\]|\\.|\"\")*\"|`[^`]*`", re.DOTALL)
_FORBIDDEN_CLAUSES = re.compile(
    r'\binto\s+(?:outfile|dumpfile)\b|\bfor\s+(?:update|share)\b|\block\s+in\s+share\s+mode\b',
    re.IGNORECASE,
)
_EXPLAIN_PREFIX = re.compile(
    r'^(?:explain|describe|desc)\b\s*(?:analyze\b\s*)?(?:format\s*=\s*[\'"]?\w+[\'"]?\s*)?',
    re.IGNORECASE,
)
_TOP_LEVEL_WRITE = re.compile(r'\b(?:insert|update|delete|replace)\b', re.IGNORECASE)


def strip_leading_comments(sql: str) -> str:
    """Remove comments that precede the first keyword."""
    previous = None
    while previous != sql:
        previous = sql
        sql = _LEADING_COMMENT.sub('', sql, count=1)
    return sql.strip()


def _outside_parentheses(text: str) -> str:
    """Text with every parenthesized group removed."""
    kept, depth = [], 0
    for char in text:
        if char == '(':
            depth += 1
        elif char == ')':
            depth = max(depth - 1, 0)
        elif depth == 0:
            kept.append(char)
    return ''.join(kept)


def is_read_only_sql(sql: str) -> bool:
    """
    Conservative read-only check.

    The first keyword must be a reading statement, only one statement may be
    present, and file-writing or locking clauses are refused. EXPLAIN and
    DESCRIBE are checked against the statement they explain (EXPLAIN ANALYZE
    executes it), and a WITH statement may not end in a data-changing
    statement.
    """
    body = strip_leading_comments(sql)
    if not body:
        return False

    match = re.match(r'([A-Za-z]+)', body)
    if not match or match.group(1).lower() not in READ_ONLY_KEYWORDS:
        return False
    keyword = match.group(1).lower()

    unquoted = _QUOTED.sub("''", body)
    statements = [part for part in unquoted.split(';') if part.strip()]
    if len(statements) > 1:
        return False

    if _FORBIDDEN_CLAUSES.search(unquoted):
        return False

    if keyword in EXPLAIN_KEYWORDS:
        explained = strip_leading_comments(_EXPLAIN_PREFIX.sub('', body, count=1))
        target = re.match(r'\(*\s*([A-Za-z]+)', explained)
        if not target:
            return explained.startswith('`')
        target_keyword = target.group(1).lower()
        if target_keyword in READ_ONLY_KEYWORDS or target_keyword in WRITE_KEYWORDS:
            return is_read_only_sql(explained.lstrip('( '))
        # DESCRIBE <table> and EXPLAIN FOR CONNECTION name no statement
        return True

    if keyword == 'with' and _TOP_LEVEL_WRITE.search(_outside_parentheses(unquoted)):
        return False

    return True


class MySQLClient:
    """Thin pymysql wrapper that refuses anything but reads."""

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self._conn = None

    def connect(self):
        """Establish database connection"""
        if self._conn is None:
            logger.debug("Connecting to %s:%s as %s", self.config.host, self.config.port, self.config.user)
            self._conn = pymysql.connect(
                host=self.config.host,
                port=self.config.port,
                user=self.config.user,
                password=self.config.password,
                database=self.config.database,
                cursorclass=DictCursor,
                connect_timeout=self.config.connect_timeout,
                read_timeout=self.config.read_timeout,
                autocommit=True,
            )
        return self._conn

    def close(self):
        if self._conn is not None:
            try:
                self._conn.close()
            finally:
                self._conn = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def query(self, sql: str, params: Optional[Any] = None, max_rows: Optional[int] = None) -> List[Dict[str, Any]]:
        """Run a read-only statement and return its rows as dicts."""
        if not is_read_only_sql(sql):
            raise ReadOnlyViolation(f"Refusing to execute non read-only SQL: {sql.strip()[:80]}")

        conn = self.connect()
        with conn.cursor() as cursor:
            cursor.execute(sql, params)
            if max_rows is not None:
                rows = cursor.fetchmany(max_rows)
            else:
                rows = cursor.fetchall()
        return list(rows)

    def query_one(self, sql: str, params: Optional[Any] = None) -> Optional[Dict[str, Any]]:
        rows = self.query(sql, params, max_rows=1)
        return rows[0] if rows else None

    def variable(self, name: str) -> Optional[str]:
        row = self.query_one("SHOW GLOBAL VARIABLES LIKE %s", (name,))
        return row['Value'] if row else None

    def status(self, name: str) -> Optional[str]:
        row = self.query_one("SHOW GLOBAL STATUS LIKE %s", (name,))
        return row['Value'] if row else None

    def server_version(self) -> str:
        return self.query_one("SELECT VERSION() AS version")['version']

    def performance_schema_enabled(self) -> bool:
        row = self.query_one("SELECT @@performance_schema AS enabled")
        return bool(row and int(row['enabled']))

    def sys_schema_available(self) -> bool:
        row = self.query_one(
            "SELECT COUNT(*) AS n FROM information_schema.SCHEMATA WHERE SCHEMA_NAME = 'sys'"
        )
        return bool(row and row['n'])

"""
MySQL slow query log file parsing and aggregation.

Handles the file format written by ``log_output=FILE``::

    # Time: 2024-05-01T10:00:00.123456Z
    # User@Host: app[app] @ web1 [10.0.0.5]  Id:    42
    # Query_time: 2.500000  Lock_time: 0.000100 Rows_sent: 10  Rows_examined: 500000
    use shop;
    SET timestamp=1714557600;
    SELECT * FROM orders WHERE status = 'open';
"""

import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from .digest import extract_tables, fingerprint, normalize_sql
from .models import DigestStats

_ENTRY_START = re.compile(r'^# (?:Time|User@Host): ', re.MULTILINE)
_TIME = re.compile(r'^# Time: (.+)$', re.MULTILINE)
_USER_HOST = re.compile(r'^# User@Host: (?P<user>[^\[]*)\[(?P<auth>[^\]]*)\] @ (?P<host>[^\[]*)\[(?P<ip>[^\]]*)\](?:\s+Id:\s+(?P<id>\d+))?', re.MULTILINE)
_THREAD_SCHEMA = re.compile(r'^# Thread_id: (?P<id>\d+)\s+Schema: (?P<schema>\S*)', re.MULTILINE)
_QUERY_TIME = re.compile(
    r'^# Query_time: (?P<query_time>[\d.]+)\s+Lock_time: (?P<lock_time>[\d.]+)\s+'
    r'Rows_sent: (?P<rows_sent>\d+)\s+Rows_examined: (?P<rows_examined>\d+)',
    re.MULTILINE,
)
_ROWS_AFFECTED = re.compile(r'Rows_affected: (\d+)')
_USE = re.compile(r'^use `?([^`;\s]+)`?;\s*$', re.MULTILINE | re.IGNORECASE)
_TIMESTAMP = re.compile(r'^SET timestamp=(\d+);\s*$', re.MULTILINE)
# Server startup banner lines written between entries
_BANNER = re.compile(r'^(?:\S+, Version: .*|Tcp port: .*|Time\s+Id\s+Command\s+Argument)$', re.MULTILINE)


@dataclass
class SlowLogEntry:
    query_time: float
    lock_time: float
    rows_sent: int
    rows_examined: int
    sql: str
    rows_affected: int = 0
    time: Optional[str] = None
    timestamp: Optional[int] = None
    user: Optional[str] = None
    host: Optional[str] = None
    thread_id: Optional[int] = None
    schema: Optional[str] = None
    tables_used: List[str] = field(default_factory=list)

    @property
    def seen_at(self) -> Optional[datetime]:
        if self.timestamp is None:
            return None
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc)


def _statement_text(block: str) -> str:
    lines = []
    for line in block.splitlines():
        if line.startswith('#') or _USE.match(line) or _TIMESTAMP.match(line) or _BANNER.match(line):
            continue
        lines.append(line)
    return '\n'.join(lines).strip()


def _parse_entry(block: str) -> Optional[SlowLogEntry]:
    metrics = _QUERY_TIME.search(block)
    if not metrics:
        return None

    sql = _statement_text(block)
    if not sql:
        return None

    entry = SlowLogEntry(
        query_time=float(metrics.group('query_time')),
        lock_time=float(metrics.group('lock_time')),
        rows_sent=int(metrics.group('rows_sent')),
        rows_examined=int(metrics.group('rows_examined')),
        sql=sql,
    )

    if m := _ROWS_AFFECTED.search(block):
        entry.rows_affected = int(m.group(1))
    if m := _TIME.search(block):
        entry.time = m.group(1).strip()
    if m := _USER_HOST.search(block):
        entry.user = m.group('user').strip() or m.group('auth').strip()
        entry.host = m.group('host').strip() or m.group('ip').strip()
        if m.group('id'):
            entry.thread_id = int(m.group('id'))
    if m := _THREAD_SCHEMA.search(block):
        entry.thread_id = int(m.group('id'))
        entry.schema = m.group('schema') or None
    if m := _USE.search(block):
        entry.schema = m.group(1)
    if m := _TIMESTAMP.search(block):
        entry.timestamp = int(m.group(1))

    entry.tables_used = extract_tables(sql)
    return entry


def _split_entries(content: str) -> List[str]:
    """Split the log into entry blocks at "# Time:" (or a "# User@Host:" without one)."""
    blocks: List[str] = []
    current: List[str] = []
    after_time = False
    for line in content.splitlines():
        is_time = line.startswith('# Time: ')
        if is_time or (line.startswith('# User@Host: ') and not after_time):
            if current:
                blocks.append('\n'.join(current))
            current = []
        current.append(line)
        after_time = is_time
    if current:
        blocks.append('\n'.join(current))
    return blocks


def parse_slow_log(content: str) -> List[SlowLogEntry]:
    """Parse slow query log text into entries; blocks without metrics are skipped."""
    entries = []
    for block in _split_entries(content):
        entry = _parse_entry(block)
        if entry:
            entries.append(entry)
    return entries


def aggregate_slow_log(entries: List[SlowLogEntry]) -> List[DigestStats]:
    """Group entries by fingerprint into DigestStats (source 'slow_log')."""
    groups: Dict[str, DigestStats] = {}
    for entry in entries:
        digest = fingerprint(entry.sql)
        stats = groups.get(digest)
        if stats is None:
            stats = DigestStats(
                digest=digest,
                digest_text=normalize_sql(entry.sql),
                sample_sql=entry.sql,
                source='slow_log',
            )
            groups[digest] = stats

        stats.exec_count += 1
        stats.total_latency_sec += entry.query_time
        stats.max_latency_sec = max(stats.max_latency_sec, entry.query_time)
        stats.lock_latency_sec += entry.lock_time
        stats.rows_sent += entry.rows_sent
        stats.rows_examined += entry.rows_examined
        stats.rows_affected += entry.rows_affected
        if stats.schema_name is None and entry.schema:
            stats.schema_name = entry.schema
        for table in entry.tables_used:
            if table not in stats.tables:
                stats.tables.append(table)

        seen = entry.seen_at
        if seen is not None:
            if stats.first_seen is None or seen < stats.first_seen:
                stats.first_seen = seen
            if stats.last_seen is None or seen > stats.last_seen:
                stats.last_seen = seen

    for stats in groups.values():
        stats.avg_latency_sec = stats.total_latency_sec / stats.exec_count
        stats.tables.sort()
    return list(groups.values())


def read_slow_log_tail(path: str, max_bytes: int = 1_000_000) -> str:
    """
    Read the last ``max_bytes`` of a slow log file.

    When the read starts mid-file the text before the first complete entry
    is dropped.
    """
    size = os.path.getsize(path)
    with open(path, 'rb') as f:
        if size > max_bytes:
            f.seek(size - max_bytes)
        data = f.read().decode('utf-8', errors='replace')

    if size > max_bytes:
        match = _ENTRY_START.search(data)
        data = data[match.start():] if match else ''
    return data

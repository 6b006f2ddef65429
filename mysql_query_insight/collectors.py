"""
Introspection collectors.

Each collector issues one or two read-only statements against
performance_schema, the sys schema or information_schema and converts the
rows into engine types. Collectors accept any client exposing
``query(sql, params=None)``.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

import pymysql

from .errors import InstrumentationUnavailable
from .indexes import IndexDefinition
from .models import PICOSECONDS_PER_SECOND, DigestStats

logger = logging.getLogger(__name__)

SYSTEM_SCHEMAS = ('mysql', 'performance_schema', 'information_schema', 'sys')
_SYSTEM_SCHEMA_LIST = "('mysql', 'performance_schema', 'information_schema', 'sys')"

# Server errors meaning "that instrumentation object is not there for you":
# no such table, table/column access denied, database access denied,
# missing privilege.
UNAVAILABLE_ERROR_CODES = {1044, 1142, 1143, 1146, 1227}

DIGEST_ORDER_COLUMNS = {
    'total_latency': 'SUM_TIMER_WAIT',
    'avg_latency': 'AVG_TIMER_WAIT',
    'exec_count': 'COUNT_STAR',
    'rows_examined': 'SUM_ROWS_EXAMINED',
    'lock_latency': 'SUM_LOCK_TIME',
    'tmp_disk_tables': 'SUM_CREATED_TMP_DISK_TABLES',
    'full_scans': 'SUM_NO_INDEX_USED',
}

DIGEST_COLUMNS = """
    DIGEST AS digest,
    DIGEST_TEXT AS digest_text,
    SCHEMA_NAME AS schema_name,
    COUNT_STAR AS exec_count,
    SUM_TIMER_WAIT AS sum_timer_wait,
    AVG_TIMER_WAIT AS avg_timer_wait,
    MAX_TIMER_WAIT AS max_timer_wait,
    SUM_LOCK_TIME AS sum_lock_time,
    SUM_ROWS_SENT AS rows_sent,
    SUM_ROWS_EXAMINED AS rows_examined,
    SUM_ROWS_AFFECTED AS rows_affected,
    SUM_CREATED_TMP_TABLES AS tmp_tables,
    SUM_CREATED_TMP_DISK_TABLES AS tmp_disk_tables,
    SUM_NO_INDEX_USED AS full_scans,
    SUM_NO_GOOD_INDEX_USED AS no_good_index_used,
    SUM_SORT_MERGE_PASSES AS sort_merge_passes,
    FIRST_SEEN AS first_seen,
    LAST_SEEN AS last_seen
"""


def _seconds(picoseconds: Any) -> float:
    return float(picoseconds or 0) / PICOSECONDS_PER_SECOND


def _int(value: Any) -> int:
    return int(value or 0)


def _instrumentation_query(client, sql: str, params: Optional[Any] = None) -> List[Dict[str, Any]]:
    """Run a query against an instrumentation object, translating absence errors."""
    try:
        return client.query(sql, params)
    except pymysql.MySQLError as e:
        code = e.args[0] if e.args else None
        if code in UNAVAILABLE_ERROR_CODES:
            raise InstrumentationUnavailable(str(e)) from e
        raise


def require_performance_schema(client):
    """Raise InstrumentationUnavailable unless performance_schema is on."""
    rows = client.query("SELECT @@performance_schema AS enabled")
    if not rows or not int(rows[0].get('enabled') or 0):
        raise InstrumentationUnavailable("performance_schema is disabled (performance_schema=OFF)")


def digest_from_row(row: Dict[str, Any]) -> DigestStats:
    """Convert an events_statements_summary_by_digest row."""
    return DigestStats(
        digest=row.get('digest') or '',
        digest_text=row.get('digest_text') or '',
        schema_name=row.get('schema_name'),
        exec_count=_int(row.get('exec_count')),
        total_latency_sec=_seconds(row.get('sum_timer_wait')),
        avg_latency_sec=_seconds(row.get('avg_timer_wait')),
        max_latency_sec=_seconds(row.get('max_timer_wait')),
        lock_latency_sec=_seconds(row.get('sum_lock_time')),
        rows_sent=_int(row.get('rows_sent')),
        rows_examined=_int(row.get('rows_examined')),
        rows_affected=_int(row.get('rows_affected')),
        tmp_tables=_int(row.get('tmp_tables')),
        tmp_disk_tables=_int(row.get('tmp_disk_tables')),
        full_scans=_int(row.get('full_scans')),
        no_good_index_used=_int(row.get('no_good_index_used')),
        sort_merge_passes=_int(row.get('sort_merge_passes')),
        first_seen=row.get('first_seen'),
        last_seen=row.get('last_seen'),
        source='performance_schema',
    )


def _digest_query(client, where: str, order_column: str, params: List[Any], limit: int) -> List[DigestStats]:
    require_performance_schema(client)
    sql = f"""
        SELECT {DIGEST_COLUMNS}
        FROM performance_schema.events_statements_summary_by_digest
        WHERE {where}
        ORDER BY {order_column} DESC
        LIMIT %s
    """
    rows = _instrumentation_query(client, sql, tuple(params) + (int(limit),))
    return [digest_from_row(row) for row in rows]


def top_statements(client, limit: int = 10, order_by: str = 'total_latency',
                   schema: Optional[str] = None) -> List[DigestStats]:
    """Most expensive normalized statements."""
    if order_by not in DIGEST_ORDER_COLUMNS:
        raise ValueError(f"Unknown ranking key '{order_by}', expected one of: {', '.join(DIGEST_ORDER_COLUMNS)}")

    where = "DIGEST_TEXT IS NOT NULL"
    params = []
    if schema:
        where += " AND SCHEMA_NAME = %s"
        params.append(schema)
    return _digest_query(client, where, DIGEST_ORDER_COLUMNS[order_by], params, limit)


def statements_with_full_table_scans(client, limit: int = 10) -> List[DigestStats]:
    """Statements that ran without a (good) index, as sys.statements_with_full_table_scans."""
    where = ("DIGEST_TEXT IS NOT NULL "
             "AND (SUM_NO_INDEX_USED > 0 OR SUM_NO_GOOD_INDEX_USED > 0) "
             f"AND (SCHEMA_NAME IS NULL OR SCHEMA_NAME NOT IN {_SYSTEM_SCHEMA_LIST})")
    return _digest_query(client, where, 'SUM_NO_INDEX_USED', [], limit)


def statements_with_temp_tables(client, limit: int = 10) -> List[DigestStats]:
    """Statements creating internal temporary tables, disk spills first."""
    where = "DIGEST_TEXT IS NOT NULL AND SUM_CREATED_TMP_TABLES > 0"
    return _digest_query(client, where, 'SUM_CREATED_TMP_DISK_TABLES', [], limit)


def statement_by_digest(client, digest: str) -> Optional[DigestStats]:
    stats = _digest_query(client, "DIGEST = %s", 'SUM_TIMER_WAIT', [digest], 1)
    return stats[0] if stats else None


def unused_indexes(client, schema: Optional[str] = None) -> List[Dict[str, Any]]:
    """
    Secondary indexes with no recorded I/O since the server (or the
    instrumentation) was last reset.
    """
    require_performance_schema(client)
    sql = f"""
        SELECT
            OBJECT_SCHEMA AS object_schema,
            OBJECT_NAME AS object_name,
            INDEX_NAME AS index_name
        FROM performance_schema.table_io_waits_summary_by_index_usage
        WHERE INDEX_NAME IS NOT NULL
          AND INDEX_NAME != 'PRIMARY'
          AND COUNT_STAR = 0
          AND OBJECT_SCHEMA NOT IN {_SYSTEM_SCHEMA_LIST}
    """
    params = None
    if schema:
        sql += " AND OBJECT_SCHEMA = %s"
        params = (schema,)
    sql += " ORDER BY OBJECT_SCHEMA, OBJECT_NAME, INDEX_NAME"
    return _instrumentation_query(client, sql, params)


def index_usage(client, schema: str, table: Optional[str] = None) -> List[Dict[str, Any]]:
    """Per-index read/write counters and latency for a schema (or one table)."""
    require_performance_schema(client)
    sql = """
        SELECT
            OBJECT_SCHEMA AS object_schema,
            OBJECT_NAME AS object_name,
            IFNULL(INDEX_NAME, '(no index)') AS index_name,
            COUNT_READ AS rows_read,
            COUNT_FETCH AS rows_fetched,
            COUNT_INSERT AS rows_inserted,
            COUNT_UPDATE AS rows_updated,
            COUNT_DELETE AS rows_deleted,
            SUM_TIMER_WAIT AS sum_timer_wait
        FROM performance_schema.table_io_waits_summary_by_index_usage
        WHERE OBJECT_SCHEMA = %s
    """
    params = [schema]
    if table:
        sql += " AND OBJECT_NAME = %s"
        params.append(table)
    sql += " ORDER BY SUM_TIMER_WAIT DESC"

    rows = _instrumentation_query(client, sql, tuple(params))
    for row in rows:
        row['latency_sec'] = _seconds(row.pop('sum_timer_wait', 0))
    return rows


def table_io_hotspots(client, limit: int = 10) -> List[Dict[str, Any]]:
    """Tables with the most I/O wait time."""
    require_performance_schema(client)
    sql = f"""
        SELECT
            OBJECT_SCHEMA AS object_schema,
            OBJECT_NAME AS object_name,
            COUNT_READ AS rows_read,
            COUNT_WRITE AS rows_written,
            SUM_TIMER_READ AS sum_timer_read,
            SUM_TIMER_WRITE AS sum_timer_write,
            SUM_TIMER_WAIT AS sum_timer_wait
        FROM performance_schema.table_io_waits_summary_by_table
        WHERE OBJECT_SCHEMA NOT IN {_SYSTEM_SCHEMA_LIST}
        ORDER BY SUM_TIMER_WAIT DESC
        LIMIT %s
    """
    rows = _instrumentation_query(client, sql, (int(limit),))
    for row in rows:
        row['read_latency_sec'] = _seconds(row.pop('sum_timer_read', 0))
        row['write_latency_sec'] = _seconds(row.pop('sum_timer_write', 0))
        row['total_latency_sec'] = _seconds(row.pop('sum_timer_wait', 0))
    return rows


def top_wait_events(client, limit: int = 10) -> List[Dict[str, Any]]:
    """Global wait events by total wait time, idle excluded."""
    require_performance_schema(client)
    sql = """
        SELECT
            EVENT_NAME AS event_name,
            COUNT_STAR AS total,
            SUM_TIMER_WAIT AS sum_timer_wait,
            AVG_TIMER_WAIT AS avg_timer_wait
        FROM performance_schema.events_waits_summary_global_by_event_name
        WHERE EVENT_NAME != 'idle'
          AND SUM_TIMER_WAIT > 0
        ORDER BY SUM_TIMER_WAIT DESC
        LIMIT %s
    """
    rows = _instrumentation_query(client, sql, (int(limit),))
    for row in rows:
        row['total_latency_sec'] = _seconds(row.pop('sum_timer_wait', 0))
        row['avg_latency_sec'] = _seconds(row.pop('avg_timer_wait', 0))
    return rows


def _global_values(client, kind: str, names: Iterable[str]) -> Dict[str, str]:
    names = list(names)
    placeholders = ', '.join(['%s'] * len(names))
    rows = client.query(f"SHOW GLOBAL {kind} WHERE Variable_name IN ({placeholders})", tuple(names))
    return {row['Variable_name']: row['Value'] for row in rows}


def slow_log_settings(client) -> Dict[str, Any]:
    """Slow query log configuration and the Slow_queries counter."""
    variables = _global_values(
        client, 'VARIABLES',
        ('slow_query_log', 'long_query_time', 'log_output', 'slow_query_log_file'),
    )
    status = _global_values(client, 'STATUS', ('Slow_queries',))

    enabled = str(variables.get('slow_query_log', 'OFF')).upper() in ('ON', '1')
    return {
        'enabled': enabled,
        'long_query_time': float(variables.get('long_query_time') or 0),
        'log_output': variables.get('log_output'),
        'slow_query_log_file': variables.get('slow_query_log_file'),
        'slow_queries': _int(status.get('Slow_queries')),
    }


def server_health(client) -> Dict[str, Any]:
    """Version, uptime, connection and buffer pool figures."""
    version = client.query("SELECT VERSION() AS version")[0]['version']
    status = _global_values(client, 'STATUS', (
        'Uptime', 'Threads_connected', 'Max_used_connections',
        'Innodb_buffer_pool_read_requests', 'Innodb_buffer_pool_reads',
        'Questions', 'Slow_queries',
    ))
    variables = _global_values(client, 'VARIABLES', ('max_connections',))

    uptime = _int(status.get('Uptime'))
    threads_connected = _int(status.get('Threads_connected'))
    max_connections = _int(variables.get('max_connections'))
    read_requests = _int(status.get('Innodb_buffer_pool_read_requests'))
    disk_reads = _int(status.get('Innodb_buffer_pool_reads'))
    questions = _int(status.get('Questions'))

    if read_requests > 0:
        hit_rate = ((read_requests - disk_reads) / read_requests) * 100
    else:
        hit_rate = 0.0

    return {
        'version': version,
        'uptime_hours': uptime / 3600,
        'connections': {
            'current': threads_connected,
            'max_used': _int(status.get('Max_used_connections')),
            'max_allowed': max_connections,
            'utilization_pct': (threads_connected / max_connections) * 100 if max_connections else 0.0,
        },
        'innodb_buffer_pool': {
            'read_requests': read_requests,
            'disk_reads': disk_reads,
            'hit_rate_pct': hit_rate,
        },
        'queries': {
            'total': questions,
            'per_second': questions / uptime if uptime > 0 else 0.0,
            'slow_queries': _int(status.get('Slow_queries')),
        },
    }


def index_definitions(client, schema: str) -> List[IndexDefinition]:
    """Index column lists for every table in ``schema``."""
    sql = """
        SELECT
            TABLE_SCHEMA AS table_schema,
            TABLE_NAME AS table_name,
            INDEX_NAME AS index_name,
            COLUMN_NAME AS column_name,
            NON_UNIQUE AS non_unique,
            INDEX_TYPE AS index_type
        FROM information_schema.STATISTICS
        WHERE TABLE_SCHEMA = %s
        ORDER BY TABLE_NAME, INDEX_NAME, SEQ_IN_INDEX
    """
    rows = client.query(sql, (schema,))

    definitions: Dict[tuple, IndexDefinition] = {}
    for row in rows:
        key = (row['table_schema'], row['table_name'], row['index_name'])
        definition = definitions.get(key)
        if definition is None:
            definition = IndexDefinition(
                schema=row['table_schema'],
                table=row['table_name'],
                name=row['index_name'],
                columns=[],
                unique=not _int(row['non_unique']),
                index_type=row.get('index_type') or 'BTREE',
            )
            definitions[key] = definition
        # Functional key parts have no column name
        if row['column_name'] is None:
            definition.functional = True
        definition.columns.append(row['column_name'] or '(expression)')
    return list(definitions.values())


def tables_without_primary_key(client, limit: int = 20) -> List[Dict[str, Any]]:
    sql = f"""
        SELECT t.table_schema AS table_schema, t.table_name AS table_name, t.table_rows AS table_rows
        FROM information_schema.tables t
        LEFT JOIN information_schema.table_constraints tc
          ON t.table_schema = tc.table_schema
          AND t.table_name = tc.table_name
          AND tc.constraint_type = 'PRIMARY KEY'
        WHERE tc.constraint_name IS NULL
          AND t.table_schema NOT IN {_SYSTEM_SCHEMA_LIST}
          AND t.table_type = 'BASE TABLE'
        ORDER BY t.table_rows DESC
        LIMIT %s
    """
    return client.query(sql, (int(limit),))


def largest_tables(client, limit: int = 20) -> List[Dict[str, Any]]:
    sql = f"""
        SELECT
            table_schema AS table_schema,
            table_name AS table_name,
            table_rows AS table_rows,
            ROUND((data_length + index_length) / 1024 / 1024, 2) AS size_mb,
            ROUND(data_length / 1024 / 1024, 2) AS data_size_mb,
            ROUND(index_length / 1024 / 1024, 2) AS index_size_mb
        FROM information_schema.tables
        WHERE table_schema NOT IN {_SYSTEM_SCHEMA_LIST}
          AND table_type = 'BASE TABLE'
        ORDER BY (data_length + index_length) DESC
        LIMIT %s
    """
    return client.query(sql, (int(limit),))

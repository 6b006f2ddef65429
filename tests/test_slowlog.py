"""Tests for slow query log parsing and aggregation"""

from datetime import datetime, timezone

import pytest

from conftest import SLOW_LOG
from mysql_query_insight.digest import fingerprint
from mysql_query_insight.models import rank_statements
from mysql_query_insight.slowlog import aggregate_slow_log, parse_slow_log, read_slow_log_tail


def test_parse_entries_and_skip_banner():
    entries = parse_slow_log(SLOW_LOG)
    assert len(entries) == 3

    first = entries[0]
    assert first.query_time == 2.5
    assert first.lock_time == pytest.approx(0.0001)
    assert first.rows_sent == 10
    assert first.rows_examined == 500000
    assert first.user == 'app'
    assert first.host == 'web1'
    assert first.thread_id == 42
    assert first.schema == 'shop'
    assert first.time == '2024-05-01T10:00:00.123456Z'
    assert first.timestamp == 1714557600
    assert first.seen_at == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
    assert first.sql == 'SELECT * FROM orders WHERE customer_id = 42;'
    assert first.tables_used == ['orders']


def test_multiline_statement_and_empty_host():
    entry = parse_slow_log(SLOW_LOG)[2]
    assert entry.sql == "SELECT COUNT(*) FROM order_items\nWHERE created_at > '2024-01-01';"
    assert entry.user == 'report'
    assert entry.host == 'localhost'
    assert entry.schema is None


def test_entry_without_time_header():
    text = """\
# User@Host: root[root] @ localhost []  Id:     8
# Query_time: 0.500000  Lock_time: 0.000000 Rows_sent: 0  Rows_examined: 0  Rows_affected: 3
SET timestamp=1714557600;
DELETE FROM sessions WHERE expires_at < NOW();
# User@Host: root[root] @  [10.1.1.1]  Id:     9
# Query_time: 0.700000  Lock_time: 0.000000 Rows_sent: 1  Rows_examined: 1
SELECT 1;
"""
    entries = parse_slow_log(text)
    assert len(entries) == 2
    assert entries[0].rows_affected == 3
    assert entries[0].time is None
    assert entries[1].host == '10.1.1.1'
    assert entries[1].timestamp is None
    assert entries[1].seen_at is None


def test_mariadb_thread_schema_header():
    text = """\
# Time: 240501 10:00:00
# User@Host: app[app] @ web1 [10.0.0.5]
# Thread_id: 77  Schema: billing  QC_hit: No
# Query_time: 1.000000  Lock_time: 0.000000  Rows_sent: 1  Rows_examined: 100
SELECT * FROM invoices WHERE id = 3;
"""
    entry = parse_slow_log(text)[0]
    assert entry.thread_id == 77
    assert entry.schema == 'billing'
    assert entry.time == '240501 10:00:00'


def test_blocks_without_metrics_are_skipped():
    assert parse_slow_log('') == []
    assert parse_slow_log('# Time: 2024-05-01T10:00:00Z\nSELECT 1;\n') == []


def test_aggregate_groups_by_fingerprint():
    stats = aggregate_slow_log(parse_slow_log(SLOW_LOG))
    assert len(stats) == 2

    orders = next(s for s in stats if s.tables == ['orders'])
    assert orders.digest == fingerprint('SELECT * FROM orders WHERE customer_id = 1')
    assert orders.digest_text == 'select * from orders where customer_id = ?'
    assert orders.source == 'slow_log'
    assert orders.exec_count == 2
    assert orders.total_latency_sec == pytest.approx(4.0)
    assert orders.avg_latency_sec == pytest.approx(2.0)
    assert orders.max_latency_sec == pytest.approx(2.5)
    assert orders.rows_examined == 900000
    assert orders.rows_sent == 22
    assert orders.schema_name == 'shop'
    assert orders.sample_sql == 'SELECT * FROM orders WHERE customer_id = 42;'
    assert orders.first_seen == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
    assert orders.last_seen == datetime(2024, 5, 1, 10, 5, tzinfo=timezone.utc)


def test_rank_aggregated_slow_log():
    ranked = rank_statements(aggregate_slow_log(parse_slow_log(SLOW_LOG)))
    assert ranked[0].tables == ['orders']
    assert ranked[0].share_of_total == pytest.approx(4.0 / 7.0)

    by_examined = rank_statements(aggregate_slow_log(parse_slow_log(SLOW_LOG)), order_by='rows_examined')
    assert by_examined[0].tables == ['order_items']


def test_read_slow_log_tail(tmp_path):
    path = tmp_path / 'slow.log'
    path.write_text(SLOW_LOG)

    assert read_slow_log_tail(str(path)) == SLOW_LOG

    start = SLOW_LOG.index('# Time: 2024-05-01T10:05')
    tail = read_slow_log_tail(str(path), max_bytes=len(SLOW_LOG) - start + 3)
    assert tail.startswith('# Time: 2024-05-01T10:05')
    assert len(parse_slow_log(tail)) == 2


def test_read_slow_log_tail_without_entry_start(tmp_path):
    path = tmp_path / 'slow.log'
    path.write_text('x' * 100)
    assert read_slow_log_tail(str(path), max_bytes=10) == ''

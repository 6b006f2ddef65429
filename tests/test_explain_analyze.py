"""Tests for EXPLAIN ANALYZE tree parsing and analysis"""

import pytest

from conftest import EXPLAIN_ANALYZE_JOIN, EXPLAIN_ANALYZE_SCAN, FakeClient
from mysql_query_insight.config import Thresholds
from mysql_query_insight.errors import PlanParseError, ReadOnlyViolation
from mysql_query_insight.explain_analyze import (analyze_plan, classify, explain_analyze, hotspots,
                                                 parse_explain_analyze)


def test_parse_builds_tree():
    root = parse_explain_analyze(EXPLAIN_ANALYZE_SCAN)

    assert root.kind == 'limit'
    sort = root.children[0]
    assert sort.kind == 'sort'
    filter_node = sort.children[0]
    assert filter_node.kind == 'filter'
    scan = filter_node.children[0]
    assert scan.kind == 'table_scan'
    assert scan.table == 'orders'
    assert scan.estimated_cost == 1025
    assert scan.estimated_rows == 10000
    assert scan.actual_first_ms == pytest.approx(0.07)
    assert scan.actual_last_ms == pytest.approx(30.5)
    assert scan.actual_rows == 100000
    assert scan.loops == 1
    assert scan.children == []


def test_times_and_self_time():
    root = parse_explain_analyze(EXPLAIN_ANALYZE_SCAN)
    filter_node = root.children[0].children[0]
    assert root.total_time_ms == pytest.approx(45.2)
    assert filter_node.self_time_ms == pytest.approx(9.6)
    assert root.self_time_ms == pytest.approx(0.0)
    assert hotspots(root, limit=1)[0].kind == 'table_scan'


def test_never_executed_and_index_lookup():
    root = parse_explain_analyze(EXPLAIN_ANALYZE_JOIN)
    customers, orders = root.children

    assert root.kind == 'join'
    assert customers.kind == 'index_lookup'
    assert customers.table == 'c'
    assert customers.index == 'PRIMARY'
    assert orders.never_executed
    assert not orders.executed
    assert orders.total_rows == 0
    assert orders.total_time_ms == 0
    assert orders.index == 'idx_customer'
    assert [n.table for n in root.walk(include_never_executed=False)] == [None, 'c']


def test_loops_multiply_rows_and_time():
    text = """\
-> Nested loop inner join  (cost=5000 rows=2000) (actual time=0.1..50 rows=2000 loops=1)
    -> Table scan on c  (cost=100 rows=1000) (actual time=0.05..2 rows=1000 loops=1)
    -> Index lookup on o using idx_customer (customer_id=c.id)  (cost=2 rows=2) (actual time=0.01..0.04 rows=2 loops=1000)
"""
    root = parse_explain_analyze(text)
    lookup = root.children[1]
    assert lookup.total_rows == 2000
    assert lookup.total_time_ms == pytest.approx(40.0)
    assert root.self_time_ms == pytest.approx(8.0)


def test_mysql_client_vertical_output_is_accepted():
    text = "*************************** 1. row ***************************\nEXPLAIN: " + EXPLAIN_ANALYZE_SCAN
    root = parse_explain_analyze(text)
    assert root.kind == 'limit'
    assert len(list(root.walk())) == 4


def test_table_bordered_output_is_accepted():
    lines = ['+------+', '| EXPLAIN |', '+------+']
    lines += [f'| {line} |' for line in EXPLAIN_ANALYZE_JOIN.splitlines()]
    lines.append('+------+')
    root = parse_explain_analyze('\n'.join(lines))
    assert root.kind == 'join'
    assert len(root.children) == 2


def test_several_roots_are_wrapped():
    text = """\
-> Table scan on a  (cost=1 rows=1) (actual time=0.01..0.02 rows=1 loops=1)
-> Table scan on b  (cost=1 rows=1) (actual time=0.01..0.03 rows=1 loops=1)
"""
    root = parse_explain_analyze(text)
    assert root.operation == 'Plan'
    assert [c.table for c in root.children] == ['a', 'b']
    assert root.total_time_ms == pytest.approx(0.05)


def test_tree_format_without_actuals():
    root = parse_explain_analyze('-> Table scan on t  (cost=10.5 rows=100)\n')
    assert root.estimated_rows == 100
    assert not root.executed
    assert root.misestimate is None


@pytest.mark.parametrize('text', ['', '   \n', 'EXPLAIN\nnothing here'])
def test_unparseable_output(text):
    with pytest.raises(PlanParseError):
        parse_explain_analyze(text)


@pytest.mark.parametrize('operation,kind', [
    ('Table scan on orders', 'table_scan'),
    ('Covering index scan on o using idx_status', 'index_scan'),
    ('Covering index lookup on o using idx_status (status=1)', 'covering_index'),
    ('Index range scan on o using idx_created over (created_at > 5)', 'index_range'),
    ('Single-row index lookup on c using PRIMARY (id=o.customer_id)', 'single_row'),
    ('Table scan on <temporary>', 'temporary'),
    ('Aggregate using temporary table', 'temporary'),
    ('Group aggregate: count(0)', 'aggregate'),
    ('Inner hash join (o.customer_id = c.id)', 'join'),
    ('Materialize  (cost=1 rows=1)', 'materialize'),
    ('Stream results', 'other'),
])
def test_classify(operation, kind):
    assert classify(operation) == kind


def test_analyze_scan_plan():
    analysis = analyze_plan(parse_explain_analyze(EXPLAIN_ANALYZE_SCAN))
    categories = [f.category for f in analysis.findings]

    assert analysis.severity == 'high'
    assert 'full_scan' in categories
    assert 'hotspot' in categories
    assert categories.count('misestimate') == 3
    full_scan = next(f for f in analysis.findings if f.category == 'full_scan')
    assert full_scan.severity == 'high'
    assert full_scan.subject == 'orders'


def test_small_table_scan_is_low():
    text = '-> Table scan on countries  (cost=25 rows=250) (actual time=0.02..0.2 rows=250 loops=1)\n'
    analysis = analyze_plan(parse_explain_analyze(text))
    assert analysis.severity == 'low'
    assert [f.category for f in analysis.findings] == ['full_scan']


def test_nested_loop_and_sort_findings():
    text = """\
-> Sort: o.total  (cost=9000 rows=20000) (actual time=60..62 rows=20000 loops=1)
    -> Nested loop inner join  (cost=5000 rows=20000) (actual time=0.1..50 rows=20000 loops=1)
        -> Index range scan on c using idx_region over (region = 'EU')  (cost=100 rows=10000) (actual time=0.05..2 rows=10000 loops=1)
        -> Index lookup on o using idx_customer (customer_id=c.id)  (cost=2 rows=2) (actual time=0.001..0.004 rows=2 loops=10000)
"""
    analysis = analyze_plan(parse_explain_analyze(text))
    categories = {f.category for f in analysis.findings}
    assert 'filesort' in categories
    assert 'nested_loop' in categories
    assert 'full_scan' not in categories


def test_thresholds_are_respected():
    analysis = analyze_plan(parse_explain_analyze(EXPLAIN_ANALYZE_SCAN),
                            Thresholds(full_scan_rows=1_000_000, misestimate_factor=10_000, hotspot_share=1.0))
    assert analysis.severity == 'low'
    assert [f.category for f in analysis.findings] == ['full_scan']


def test_explain_analyze_runs_select_only():
    client = FakeClient({'EXPLAIN ANALYZE': [{'EXPLAIN': EXPLAIN_ANALYZE_SCAN}]})
    assert explain_analyze(client, '/* q */ SELECT * FROM orders;') == EXPLAIN_ANALYZE_SCAN
    assert client.calls[0][0] == 'EXPLAIN ANALYZE SELECT * FROM orders'

    with pytest.raises(ReadOnlyViolation):
        explain_analyze(client, 'UPDATE orders SET status = 1')
    with pytest.raises(ReadOnlyViolation):
        explain_analyze(client, 'SHOW TABLES')


def test_explain_analyze_refuses_data_changing_cte():
    client = FakeClient({'EXPLAIN ANALYZE': [{'EXPLAIN': EXPLAIN_ANALYZE_SCAN}]})
    with pytest.raises(ReadOnlyViolation):
        explain_analyze(client, 'WITH c AS (SELECT 1) DELETE FROM orders WHERE id IN (SELECT * FROM c)')
    with pytest.raises(ReadOnlyViolation):
        explain_analyze(client, 'WITH c AS (SELECT id FROM s) UPDATE orders SET status = 1')
    assert client.calls == []


def test_explain_analyze_no_rows():
    with pytest.raises(PlanParseError):
        explain_analyze(FakeClient(), 'SELECT 1')

"""Tests for EXPLAIN (tabular and JSON) analysis"""

import json

import pytest

from conftest import FakeClient
from mysql_query_insight.config import Thresholds
from mysql_query_insight.errors import PlanParseError, ReadOnlyViolation
from mysql_query_insight.explain import PlanRow, analyze_explain, explain_query, flatten_json_plan

FULL_SCAN_ROW = {
    'id': 1, 'select_type': 'SIMPLE', 'table': 'orders', 'type': 'ALL', 'possible_keys': None,
    'key': None, 'rows': 50000, 'filtered': 10.0, 'Extra': 'Using where; Using filesort',
}

GOOD_ROW = {
    'id': 1, 'select_type': 'SIMPLE', 'table': 'orders', 'type': 'ref', 'possible_keys': 'idx_customer',
    'key': 'idx_customer', 'rows': 5, 'filtered': 100.0, 'Extra': None,
}

JSON_PLAN = {
    'query_block': {
        'select_id': 1,
        'ordering_operation': {
            'using_filesort': True,
            'nested_loop': [
                {'table': {'table_name': 'o', 'access_type': 'ALL', 'rows_examined_per_scan': 50000,
                           'filtered': '10.00', 'attached_condition': "(o.status = 'open')"}},
                {'table': {'table_name': 'c', 'access_type': 'eq_ref', 'possible_keys': ['PRIMARY'],
                           'key': 'PRIMARY', 'rows_examined_per_scan': 1, 'filtered': '100.00',
                           'using_index': True}},
            ],
        },
    },
}


def test_full_scan_plan_is_high_severity():
    analysis = analyze_explain([FULL_SCAN_ROW])
    categories = [f.category for f in analysis.findings]

    assert analysis.severity == 'high'
    assert categories == ['full_scan', 'filesort', 'row_examination', 'no_index']
    assert "Full table scan on table 'orders' (examining 50000 rows)" in analysis.issues
    assert analysis.explain_output == [FULL_SCAN_ROW]


def test_good_plan_has_no_issues():
    analysis = analyze_explain([GOOD_ROW])
    assert analysis.issues == []
    assert analysis.recommendations == []


def test_index_available_but_not_chosen():
    row = dict(FULL_SCAN_ROW, possible_keys='idx_status,idx_created', Extra='Using where', rows=100)
    analysis = analyze_explain([row])
    not_chosen = [f for f in analysis.findings if f.category == 'index_not_chosen']
    assert len(not_chosen) == 1
    assert 'idx_status, idx_created' in not_chosen[0].issue


def test_full_index_scan_temporary_and_join_buffer():
    row = dict(GOOD_ROW, type='index', Extra='Using index; Using temporary; Using join buffer (hash join)')
    analysis = analyze_explain([row])
    assert analysis.severity == 'medium'
    assert {f.category for f in analysis.findings} == {'full_index_scan', 'temporary_table', 'join_buffer'}


def test_row_threshold_is_configurable():
    row = dict(GOOD_ROW, rows=600)
    assert analyze_explain([row]).issues == []
    analysis = analyze_explain([row], Thresholds(full_scan_rows=500))
    assert [f.category for f in analysis.findings] == ['row_examination']


def test_const_tables_are_not_flagged():
    row = dict(GOOD_ROW, type='const', key=None, possible_keys=None, rows=1)
    assert analyze_explain([row]).issues == []


def test_recommendations_are_deduplicated():
    analysis = analyze_explain([FULL_SCAN_ROW, FULL_SCAN_ROW])
    assert len(analysis.recommendations) == len(set(analysis.recommendations))
    assert len(analysis.issues) == 8


def test_flatten_json_plan():
    rows = flatten_json_plan(JSON_PLAN)
    assert [r.table for r in rows] == ['o', 'c']
    assert rows[0] == PlanRow(table='o', access_type='ALL', possible_keys=[], key=None, rows=50000,
                              filtered=10.0, extra='Using filesort; Using where')
    assert rows[1].extra == 'Using filesort; Using index'
    assert rows[1].key == 'PRIMARY'


def test_json_plan_analysis():
    analysis = analyze_explain(flatten_json_plan(JSON_PLAN))
    assert analysis.severity == 'high'
    assert any(f.category == 'full_scan' and f.subject == 'o' for f in analysis.findings)


def test_flatten_json_plan_requires_query_block():
    with pytest.raises(PlanParseError):
        flatten_json_plan({'nothing': 1})


def test_explain_query_traditional():
    client = FakeClient({'EXPLAIN SELECT': [FULL_SCAN_ROW]})
    rows = explain_query(client, "SELECT * FROM orders WHERE status = 'open';")
    assert rows == [FULL_SCAN_ROW]
    assert client.calls[0][0] == "EXPLAIN SELECT * FROM orders WHERE status = 'open'"


def test_explain_query_json():
    client = FakeClient({'EXPLAIN FORMAT=JSON': [{'EXPLAIN': json.dumps(JSON_PLAN)}]})
    assert explain_query(client, 'SELECT 1', fmt='json') == JSON_PLAN


def test_explain_query_refuses_writes():
    client = FakeClient()
    with pytest.raises(ReadOnlyViolation):
        explain_query(client, 'DELETE FROM orders')
    assert client.calls == []


def test_explain_query_unknown_format():
    with pytest.raises(ValueError):
        explain_query(FakeClient(), 'SELECT 1', fmt='xml')

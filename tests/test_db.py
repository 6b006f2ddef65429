"""Tests for the read-only guard and client wrapper"""

import pytest

from mysql_query_insight import db
from mysql_query_insight.db import MySQLClient, is_read_only_sql, strip_leading_comments
from mysql_query_insight.errors import ReadOnlyViolation


@pytest.mark.parametrize('sql', [
    'SELECT 1',
    '  select * from t where a = 1;',
    '/* report */ SELECT * FROM t',
    '-- note\nSELECT 1',
    'SHOW GLOBAL STATUS LIKE %s',
    'EXPLAIN SELECT * FROM t',
    'WITH x AS (SELECT 1) SELECT * FROM x',
    "SELECT ';' AS semicolon",
    "SELECT 'for update' AS text",
    'EXPLAIN ANALYZE SELECT * FROM t',
    'EXPLAIN FORMAT=JSON SELECT * FROM t',
    'DESCRIBE orders',
    'DESC `orders`',
    'EXPLAIN FOR CONNECTION 12',
])
def test_read_only_statements_accepted(sql):
    assert is_read_only_sql(sql)


@pytest.mark.parametrize('sql', [
    '',
    '   ',
    'DELETE FROM t',
    'UPDATE t SET a = 1',
    'DROP TABLE t',
    '/* SELECT */ INSERT INTO t VALUES (1)',
    'SELECT 1; DROP TABLE t',
    "SELECT * FROM t INTO OUTFILE '/tmp/t.csv'",
    'SELECT * FROM t WHERE id = 1 FOR UPDATE',
    'SELECT * FROM t LOCK IN SHARE MODE',
    'EXPLAIN ANALYZE DELETE FROM orders',
    'EXPLAIN FORMAT=TREE UPDATE orders SET a = 1',
    'DESCRIBE ANALYZE UPDATE orders SET a = 1',
    'EXPLAIN INSERT INTO t SELECT * FROM s',
    'WITH c AS (SELECT 1) DELETE FROM orders',
    'WITH c AS (SELECT id FROM s) UPDATE orders SET a = 1 WHERE id IN (SELECT id FROM c)',
    'EXPLAIN ANALYZE WITH c AS (SELECT 1) DELETE FROM orders',
])
def test_writing_statements_rejected(sql):
    assert not is_read_only_sql(sql)


def test_strip_leading_comments_keeps_hints():
    assert strip_leading_comments('/* a */ -- b\n SELECT 1') == 'SELECT 1'
    assert strip_leading_comments('/*+ MAX_EXECUTION_TIME(10) */ SELECT 1').startswith('/*+')


def test_query_refuses_writes_before_connecting(config):
    client = MySQLClient(config.database)
    with pytest.raises(ReadOnlyViolation):
        client.query('DELETE FROM t')
    assert client._conn is None


def test_close_is_idempotent(config):
    client = MySQLClient(config.database)
    client.close()
    client.close()


class FakeCursor:
    def __init__(self, rows):
        self.rows = rows
        self.executed = []

    def execute(self, sql, params=None):
        self.executed.append((sql, params))

    def fetchall(self):
        return self.rows

    def fetchmany(self, size):
        return self.rows[:size]

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        pass


class FakeConnection:
    def __init__(self, rows):
        self.cursor_obj = FakeCursor(rows)
        self.closed = False

    def cursor(self):
        return self.cursor_obj

    def close(self):
        self.closed = True


@pytest.fixture
def connect(monkeypatch):
    connections = []

    def install(rows):
        def fake_connect(**kwargs):
            connection = FakeConnection(rows)
            connection.kwargs = kwargs
            connections.append(connection)
            return connection
        monkeypatch.setattr(db.pymysql, 'connect', fake_connect)
        return connections
    return install


def test_context_manager_connects_once_and_closes(config, connect):
    connections = connect([{'version': '8.0.36'}])
    with MySQLClient(config.database) as client:
        assert client.server_version() == '8.0.36'
        assert client.query('SELECT 1') == [{'version': '8.0.36'}]
    assert len(connections) == 1
    assert connections[0].closed
    assert connections[0].kwargs['autocommit'] is True
    assert connections[0].kwargs['host'] == 'db.example.com'


def test_variable_and_status(config, connect):
    connections = connect([{'Variable_name': 'long_query_time', 'Value': '1.000000'}])
    client = MySQLClient(config.database)
    assert client.variable('long_query_time') == '1.000000'
    assert client.status('long_query_time') == '1.000000'
    sql, params = connections[0].cursor_obj.executed[0]
    assert sql == 'SHOW GLOBAL VARIABLES LIKE %s'
    assert params == ('long_query_time',)


def test_variable_missing(config, connect):
    connect([])
    assert MySQLClient(config.database).variable('nope') is None


def test_instrumentation_checks(config, connect):
    connect([{'enabled': 1, 'n': 1}])
    client = MySQLClient(config.database)
    assert client.performance_schema_enabled()
    assert client.sys_schema_available()


def test_instrumentation_checks_disabled(config, connect):
    connect([{'enabled': 0, 'n': 0}])
    client = MySQLClient(config.database)
    assert not client.performance_schema_enabled()
    assert not client.sys_schema_available()


def test_query_one_limits_rows(config, connect):
    connect([{'a': 1}, {'a': 2}])
    assert MySQLClient(config.database).query_one('SELECT a FROM t') == {'a': 1}

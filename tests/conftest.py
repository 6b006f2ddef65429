"""Shared fixtures: a fake read-only client and captured server output."""

import pytest

from mysql_query_insight.config import Config, DatabaseConfig


class FakeClient:
    """Returns canned rows for the first registered SQL fragment found in a statement."""

    def __init__(self, responses=None, errors=None):
        self.responses = dict(responses or {})
        self.errors = dict(errors or {})
        self.calls = []
        self.closed = False

    def query(self, sql, params=None, max_rows=None):
        self.calls.append((sql, params))
        for fragment, error in self.errors.items():
            if fragment in sql:
                raise error
        for fragment, rows in self.responses.items():
            if fragment in sql:
                if callable(rows):
                    rows = rows(sql, params)
                return [dict(row) for row in rows]
        return []

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


def global_values(values):
    """Response for SHOW GLOBAL ... WHERE Variable_name IN (...) filtered by the requested names."""
    def respond(sql, params):
        return [{'Variable_name': name, 'Value': values[name]} for name in params if name in values]
    return respond


@pytest.fixture
def config():
    return Config(database=DatabaseConfig(host='db.example.com', user='monitor', password='secret'))


EXPLAIN_ANALYZE_SCAN = """\
-> Limit: 10 row(s)  (cost=1025 rows=10) (actual time=45.2..45.2 rows=10 loops=1)
    -> Sort: orders.created_at DESC, limit input to 10 row(s) per chunk  (cost=1025 rows=10000) (actual time=45.2..45.2 rows=10 loops=1)
        -> Filter: (orders.status = 'open')  (cost=1025 rows=1000) (actual time=0.08..40.1 rows=50000 loops=1)
            -> Table scan on orders  (cost=1025 rows=10000) (actual time=0.07..30.5 rows=100000 loops=1)
"""

EXPLAIN_ANALYZE_JOIN = """\
-> Nested loop inner join  (cost=2.1 rows=1) (actual time=0.05..0.05 rows=0 loops=1)
    -> Index lookup on c using PRIMARY (id=5)  (cost=1.1 rows=1) (actual time=0.04..0.04 rows=0 loops=1)
    -> Index lookup on o using idx_customer (customer_id=5)  (cost=1.0 rows=1) (never executed)
"""

SLOW_LOG = """\
/usr/sbin/mysqld, Version: 8.0.36 (MySQL Community Server - GPL). started with:
Tcp port: 3306  Unix socket: /var/run/mysqld/mysqld.sock
Time                 Id Command    Argument
# Time: 2024-05-01T10:00:00.123456Z
# User@Host: app[app] @ web1 [10.0.0.5]  Id:    42
# Query_time: 2.500000  Lock_time: 0.000100 Rows_sent: 10  Rows_examined: 500000
use shop;
SET timestamp=1714557600;
SELECT * FROM orders WHERE customer_id = 42;
# Time: 2024-05-01T10:05:00.000000Z
# User@Host: app[app] @ web1 [10.0.0.5]  Id:    43
# Query_time: 1.500000  Lock_time: 0.000200 Rows_sent: 12  Rows_examined: 400000
SET timestamp=1714557900;
SELECT * FROM orders WHERE customer_id = 7;
# Time: 2024-05-01T10:06:00.000000Z
# User@Host: report[report] @ localhost []  Id:    50
# Query_time: 3.000000  Lock_time: 0.000000 Rows_sent: 1  Rows_examined: 2000000
SET timestamp=1714557960;
SELECT COUNT(*) FROM order_items
WHERE created_at > '2024-01-01';
"""

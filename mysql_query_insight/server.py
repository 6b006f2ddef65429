"""MySQL Query Insight MCP Server

Exposes the query-performance analysis engine to MCP clients: statement
ranking from performance_schema, EXPLAIN / EXPLAIN ANALYZE analysis, index
advice, slow log aggregation and the slow query playbook.
"""

import os
from dataclasses import asdict
from pathlib import Path
from typing import Annotated, Literal, Optional

import anyio
from mcp.server.fastmcp import FastMCP
from pydantic import Field

from . import collectors
from .config import load_config
from .db import MySQLClient
from .digest import extract_tables, fingerprint, normalize_sql, statement_type
from .explain import analyze_explain, explain_query, flatten_json_plan
from .explain_analyze import analyze_plan, explain_analyze, parse_explain_analyze
from .indexes import find_redundant_indexes, suggest_covering_index
from .models import rank_statements
from .report import to_json
from .slowlog import aggregate_slow_log, parse_slow_log

CONFIG_ENV_VAR = 'MYSQL_QUERY_INSIGHT_CONFIG'

SERVER_INSTRUCTIONS = """MySQL query-performance analysis server

Reads MySQL's own instrumentation (performance_schema, sys schema,
information_schema, EXPLAIN, EXPLAIN ANALYZE, the slow query log) and turns
it into ranked statements, plan findings and index advice. Every statement it
sends to the server is read-only.

Available Tools:
--------------

1. top_statements
   Most expensive normalized statements from performance_schema, with each
   statement's share of total latency.

2. explain_query_plan
   Runs EXPLAIN (traditional or FORMAT=JSON) or EXPLAIN ANALYZE for a SELECT
   and returns findings and recommendations.

3. analyze_explain_analyze_output
   Analyzes EXPLAIN ANALYZE text pasted from a client; no database needed.

4. fingerprint_sql
   Normalizes a statement (literals replaced with ?) and returns its
   fingerprint, type and referenced tables.

5. index_review
   Redundant and unused indexes for a schema, with DROP statements.

6. suggest_index
   Proposes a (covering) composite index for a single-table SELECT.

7. analyze_slow_log_text
   Parses slow query log text and ranks statements by fingerprint.

8. slow_query_playbook / query_optimization_guidance
   Reference workflows and SQL for diagnosing slow queries by hand.

Usage Notes:
-----------
- Start with top_statements, then explain_query_plan on the worst offender
- EXPLAIN ANALYZE executes the statement; only SELECT/WITH/TABLE are accepted
- Index suggestions are DDL for review; nothing is applied
- Database tools read configuration from $MYSQL_QUERY_INSIGHT_CONFIG,
  ./config.json or DB_* environment variables
"""

# Initialize FastMCP server
app = FastMCP(
    "MySQL Query Insight MCP Server",
    instructions=SERVER_INSTRUCTIONS,
)


def _load_prompt(prompt_file: str) -> str:
    """Load prompt content from file."""
    prompt_path = Path(__file__).parent / 'prompts' / prompt_file
    if not prompt_path.exists():
        raise FileNotFoundError(f"Prompt file not found: {prompt_file}")
    return prompt_path.read_text(encoding='utf-8')


def _connect():
    """Load configuration and open a client; the caller closes it."""
    config = load_config(os.environ.get(CONFIG_ENV_VAR))
    return MySQLClient(config.database), config


def _with_client(work):
    client, config = _connect()
    try:
        return work(client, config)
    finally:
        client.close()


async def _run_database(work):
    """Run work(client, config) in a worker thread; pymysql blocks."""
    return await anyio.to_thread.run_sync(_with_client, work)


@app.tool()
async def top_statements(
    order_by: Annotated[
        Literal['total_latency', 'avg_latency', 'exec_count', 'rows_examined',
                'lock_latency', 'tmp_disk_tables', 'full_scans'],
        Field(description='Ranking key'),
    ] = 'total_latency',
    limit: Annotated[int, Field(description='Number of statements to return', ge=1, le=100)] = 10,
    schema: Annotated[Optional[str], Field(description='Only statements run against this schema')] = None,
) -> str:
    """Ranks normalized statements from performance_schema.events_statements_summary_by_digest.

    Each statement carries execution count, latencies (seconds), rows examined
    and sent, full scans, temporary tables and its share of total latency.

    Returns: JSON list of statement statistics.
    """
    stats = await _run_database(
        lambda client, _config: collectors.top_statements(client, limit=limit, order_by=order_by, schema=schema)
    )
    return to_json([s.to_dict() for s in rank_statements(stats, order_by=order_by)])


@app.tool()
async def explain_query_plan(
    query: Annotated[str, Field(description='SELECT statement to explain')],
    explain_format: Annotated[
        Literal['traditional', 'json'],
        Field(description='EXPLAIN output format'),
    ] = 'traditional',
    analyze: Annotated[
        bool,
        Field(description='Run EXPLAIN ANALYZE instead (executes the statement)'),
    ] = False,
) -> str:
    """Explains a statement against the configured server and analyzes the plan.

    Flags full table and index scans, filesorts, temporary tables, join
    buffers, indexes the optimizer ignored, and (with analyze=true) row
    misestimates and time hotspots from the executed plan.

    Returns: JSON with severity, issues, recommendations and the plan.
    """
    def explain(client, config):
        if analyze:
            return analyze_plan(parse_explain_analyze(explain_analyze(client, query)), config.thresholds)
        if explain_format == 'json':
            plan = flatten_json_plan(explain_query(client, query, fmt='json'))
            return analyze_explain(plan, config.thresholds)
        return analyze_explain(explain_query(client, query), config.thresholds)

    analysis = await _run_database(explain)
    return to_json(analysis.to_dict())


@app.tool()
async def analyze_explain_analyze_output(
    explain_output: Annotated[str, Field(description='EXPLAIN ANALYZE (or FORMAT=TREE) text')],
) -> str:
    """Analyzes EXPLAIN ANALYZE output captured elsewhere; no database connection is used.

    Returns: JSON with severity, issues, recommendations and the parsed plan tree.
    """
    analysis = analyze_plan(parse_explain_analyze(explain_output))
    return to_json(analysis.to_dict())


@app.tool()
async def fingerprint_sql(
    sql: Annotated[str, Field(description='SQL statement')],
) -> str:
    """Normalizes a statement and returns its fingerprint.

    Returns: JSON with fingerprint, normalized text, statement type and tables.
    """
    return to_json({
        'fingerprint': fingerprint(sql),
        'normalized': normalize_sql(sql),
        'statement_type': statement_type(sql),
        'tables': extract_tables(sql),
    })


@app.tool()
async def index_review(
    schema: Annotated[str, Field(description='Schema to review')],
) -> str:
    """Finds redundant indexes (leftmost prefix of another index) and unused indexes.

    Unused indexes come from performance_schema and only cover activity since
    the last restart.

    Returns: JSON with redundant (including DROP statements) and unused indexes.
    """
    def review(client, _config):
        redundant = find_redundant_indexes(collectors.index_definitions(client, schema))
        return redundant, collectors.unused_indexes(client, schema=schema)

    redundant, unused = await _run_database(review)
    return to_json({
        'schema': schema,
        'redundant_indexes': [dict(asdict(r), drop_statement=r.drop_statement) for r in redundant],
        'unused_indexes': unused,
    })


@app.tool()
async def suggest_index(
    sql: Annotated[str, Field(description='Single-table SELECT statement')],
) -> str:
    """Proposes a composite index: equality columns, then range or ORDER BY, then selected columns.

    Returns: JSON with the suggested columns and DDL, or a message when no
    suggestion applies (joins, subqueries, OR-ed predicates).
    """
    suggestion = suggest_covering_index(sql)
    if suggestion is None:
        return to_json({'suggestion': None,
                        'message': 'No index suggestion: only single-table SELECTs with indexable predicates are handled'})
    return to_json({
        'suggestion': suggestion,
        'index_name': suggestion.index_name,
        'ddl': suggestion.ddl,
    })


@app.tool()
async def analyze_slow_log_text(
    log_text: Annotated[str, Field(description='Slow query log content')],
    order_by: Annotated[
        Literal['total_latency', 'avg_latency', 'exec_count', 'rows_examined', 'lock_latency'],
        Field(description='Ranking key'),
    ] = 'total_latency',
    limit: Annotated[int, Field(description='Number of statements to return', ge=1, le=100)] = 10,
) -> str:
    """Parses slow query log text and ranks statements grouped by fingerprint.

    Returns: JSON list of aggregated statement statistics.
    """
    stats = aggregate_slow_log(parse_slow_log(log_text))
    return to_json([s.to_dict() for s in rank_statements(stats, order_by=order_by, limit=limit)])


@app.tool()
async def slow_query_playbook() -> str:
    """Retrieves the slow query playbook.

    The playbook walks through diagnosing slow queries by hand with
    copy-pasteable SQL:
    - Checking performance_schema and sys schema availability
    - Ranking statement digests by latency
    - Table and index I/O, unused and redundant indexes
    - Wait events
    - Reading EXPLAIN and EXPLAIN ANALYZE output
    - Slow query log configuration

    Returns: Playbook as markdown text.
    """
    return _load_prompt('slow_query_playbook.md')


@app.tool()
async def query_optimization_guidance() -> str:
    """Retrieves query optimization techniques.

    Covers EXPLAIN access types, composite index design, common
    anti-patterns and subquery/join optimization.

    Returns: Query optimization guidance as markdown text.
    """
    return _load_prompt('query_optimization.md')


def main():
    """Run the MCP server."""
    app.run()


if __name__ == '__main__':
    main()

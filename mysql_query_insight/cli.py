"""
Command line interface.

    mysql-query-insight top --order-by rows_examined --limit 5
    mysql-query-insight explain --query "SELECT ..." --analyze
    mysql-query-insight plan explain_analyze.txt
    mysql-query-insight slowlog /var/log/mysql/slow.log
    mysql-query-insight indexes --schema shop
    mysql-query-insight fingerprint "SELECT * FROM t WHERE id = 5"
    mysql-query-insight diagnose --output results.json --hours 3
    mysql-query-insight serve
"""

import argparse
import logging
import sys
from dataclasses import asdict
from datetime import datetime
from typing import List, Optional

import pymysql

from . import collectors
from .config import load_config
from .db import MySQLClient
from .diagnostic import PerformanceDiagnostic
from .digest import extract_tables, fingerprint, normalize_sql, statement_type
from .errors import QueryInsightError
from .explain import analyze_explain, explain_query, flatten_json_plan
from .explain_analyze import analyze_plan, explain_analyze, parse_explain_analyze
from .indexes import find_redundant_indexes, suggest_covering_index
from .models import RANK_KEYS, rank_statements
from .report import (format_diagnostic_summary, format_index_report, format_plan_analysis,
                     format_statements, to_json)
from .slowlog import aggregate_slow_log, parse_slow_log, read_slow_log_tail

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s - %(message)s'


def _read_text(path: str) -> str:
    if path == '-':
        return sys.stdin.read()
    with open(path, 'r') as f:
        return f.read()


def _emit(args, data, text: str):
    print(to_json(data) if args.json else text)


def cmd_top(args, config) -> int:
    with MySQLClient(config.database) as client:
        stats = collectors.top_statements(client, limit=args.limit, order_by=args.order_by, schema=args.schema)
    ranked = rank_statements(stats, order_by=args.order_by)
    _emit(args, [s.to_dict() for s in ranked], format_statements(ranked))
    return 0


def cmd_explain(args, config) -> int:
    if args.file:
        query = _read_text(args.file)
    else:
        query = args.query

    with MySQLClient(config.database) as client:
        if args.analyze:
            root = parse_explain_analyze(explain_analyze(client, query))
            analysis = analyze_plan(root, config.thresholds)
        elif args.format == 'json':
            plan = flatten_json_plan(explain_query(client, query, fmt='json'))
            analysis = analyze_explain(plan, config.thresholds)
        else:
            analysis = analyze_explain(explain_query(client, query), config.thresholds)

    title = "EXPLAIN ANALYZE" if args.analyze else "EXPLAIN ANALYSIS"
    _emit(args, analysis.to_dict(), f"\nAnalyzing query:\n{'-' * 60}\n{query.strip()}\n{'-' * 60}"
          + format_plan_analysis(analysis, title=title))
    return 0


def cmd_plan(args, config) -> int:
    root = parse_explain_analyze(_read_text(args.path))
    analysis = analyze_plan(root, config.thresholds if config else None)
    _emit(args, analysis.to_dict(), format_plan_analysis(analysis, title="EXPLAIN ANALYZE"))
    return 0


def cmd_slowlog(args, config) -> int:
    if args.path == '-':
        content = sys.stdin.read()
    else:
        content = read_slow_log_tail(args.path, max_bytes=args.max_bytes)

    entries = parse_slow_log(content)
    logger.info("Parsed %d slow log entries", len(entries))
    ranked = rank_statements(aggregate_slow_log(entries), order_by=args.order_by, limit=args.limit)
    _emit(args, [s.to_dict() for s in ranked],
          format_statements(ranked, title=f"SLOW LOG ({len(entries)} entries)"))
    return 0


def cmd_indexes(args, config) -> int:
    with MySQLClient(config.database) as client:
        redundant = find_redundant_indexes(collectors.index_definitions(client, args.schema))
        unused = collectors.unused_indexes(client, schema=args.schema)
    suggestion = suggest_covering_index(args.suggest) if args.suggest else None

    data = {
        'schema': args.schema,
        'redundant_indexes': [dict(asdict(r), drop_statement=r.drop_statement) for r in redundant],
        'unused_indexes': unused,
        'suggestion': dict(asdict(suggestion), ddl=suggestion.ddl) if suggestion else None,
    }
    _emit(args, data, format_index_report(redundant, unused, suggestion))
    return 0


def cmd_fingerprint(args, config) -> int:
    sql = _read_text(args.file) if args.file else args.sql
    data = {
        'fingerprint': fingerprint(sql),
        'normalized': normalize_sql(sql),
        'statement_type': statement_type(sql),
        'tables': extract_tables(sql),
    }
    text = '\n'.join(f"{key}: {', '.join(value) if isinstance(value, list) else value}"
                     for key, value in data.items())
    suggestion = suggest_covering_index(sql)
    if suggestion is not None:
        text += f"\nsuggested index: {suggestion.ddl}"
    _emit(args, data, text)
    return 0


def cmd_diagnose(args, config) -> int:
    diagnostic = PerformanceDiagnostic(config)
    results = diagnostic.run(args.output, cloudwatch_hours=args.hours)
    _emit(args, results, format_diagnostic_summary(results) + f"\nResults saved to: {args.output}")
    return 0


def cmd_serve(args, config) -> int:
    from .server import main as serve
    serve()
    return 0


# Subcommands that never touch the database
OFFLINE_COMMANDS = ('plan', 'slowlog', 'fingerprint', 'serve')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='mysql-query-insight',
        description='MySQL query performance analysis',
    )
    parser.add_argument(
        '--config',
        help='Configuration file path (default: config.json, then DB_* environment variables)'
    )
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable debug logging')
    parser.add_argument('--json', action='store_true', help='Print JSON instead of text')

    subparsers = parser.add_subparsers(dest='command', required=True)

    top = subparsers.add_parser('top', help='Most expensive statements from performance_schema')
    top.add_argument('--limit', type=int, default=10, help='Number of statements (default: 10)')
    top.add_argument('--order-by', choices=list(RANK_KEYS), default='total_latency',
                     help='Ranking key (default: total_latency)')
    top.add_argument('--schema', help='Only statements run against this schema')
    top.set_defaults(func=cmd_top)

    explain = subparsers.add_parser('explain', help='Analyze a query with EXPLAIN')
    source = explain.add_mutually_exclusive_group(required=True)
    source.add_argument('--query', help='SQL query to analyze')
    source.add_argument('--file', help='File containing SQL query')
    explain.add_argument('--analyze', action='store_true',
                         help='Use EXPLAIN ANALYZE (executes the query; SELECT only)')
    explain.add_argument('--format', choices=('traditional', 'json'), default='traditional',
                         help='EXPLAIN output format (default: traditional)')
    explain.set_defaults(func=cmd_explain)

    plan = subparsers.add_parser('plan', help='Analyze saved EXPLAIN ANALYZE output')
    plan.add_argument('path', help="File with EXPLAIN ANALYZE output ('-' for stdin)")
    plan.set_defaults(func=cmd_plan)

    slowlog = subparsers.add_parser('slowlog', help='Aggregate a slow query log file')
    slowlog.add_argument('path', help="Slow query log file ('-' for stdin)")
    slowlog.add_argument('--limit', type=int, default=10, help='Number of statements (default: 10)')
    slowlog.add_argument('--order-by', choices=('total_latency', 'avg_latency', 'exec_count',
                                                'rows_examined', 'lock_latency'),
                         default='total_latency', help='Ranking key (default: total_latency)')
    slowlog.add_argument('--max-bytes', type=int, default=1_000_000,
                         help='Read at most this many bytes from the end of the file (default: 1000000)')
    slowlog.set_defaults(func=cmd_slowlog)

    indexes = subparsers.add_parser('indexes', help='Redundant and unused indexes')
    indexes.add_argument('--schema', required=True, help='Schema to review')
    indexes.add_argument('--suggest', metavar='SQL', help='Also suggest an index for this SELECT')
    indexes.set_defaults(func=cmd_indexes)

    fp = subparsers.add_parser('fingerprint', help='Normalize and fingerprint a statement')
    fp.add_argument('sql', nargs='?', help='SQL statement')
    fp.add_argument('--file', help='File containing the statement')
    fp.set_defaults(func=cmd_fingerprint)

    diagnose = subparsers.add_parser('diagnose', help='Full instance diagnostic')
    diagnose.add_argument(
        '--output',
        default=f'diagnostic_results_{datetime.now().strftime("%Y%m%d_%H%M%S")}.json',
        help='Output file path'
    )
    diagnose.add_argument(
        '--hours',
        type=int,
        default=1,
        help='Hours of CloudWatch metrics to collect (default: 1)'
    )
    diagnose.set_defaults(func=cmd_diagnose)

    serve = subparsers.add_parser('serve', help='Run the MCP server (stdio)')
    serve.set_defaults(func=cmd_serve)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == 'fingerprint' and not (args.sql or args.file):
        parser.error("Either a SQL statement or --file must be provided")

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format=LOG_FORMAT,
    )

    try:
        if args.command in OFFLINE_COMMANDS and not args.config:
            config = None
        else:
            config = load_config(args.config)
        return args.func(args, config)
    except (QueryInsightError, pymysql.MySQLError, OSError) as e:
        logger.error("%s", e)
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())

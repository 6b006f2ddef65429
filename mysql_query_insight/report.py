"""
Text and JSON rendering of analysis results.

Every ``format_*`` function returns a string; printing is left to the caller.
"""

import dataclasses
import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .explain import PlanAnalysis, PlanRow
from .explain_analyze import PlanNode, hotspots
from .indexes import IndexSuggestion, RedundantIndex
from .models import DigestStats, Finding

RULE = "=" * 60
THIN_RULE = "-" * 60

SEVERITY_SYMBOLS = {'high': '🔴', 'medium': '🟡', 'low': '🟢'}


def severity_symbol(severity: str) -> str:
    return SEVERITY_SYMBOLS.get(severity, '⚪')


def _default(obj: Any) -> Any:
    if isinstance(obj, PlanNode):
        return plan_node_to_dict(obj)
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        to_dict = getattr(obj, 'to_dict', None)
        return to_dict() if to_dict else dataclasses.asdict(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, bytes):
        return obj.decode('utf-8', errors='replace')
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def to_json(obj: Any, indent: int = 2) -> str:
    """Serialize results (dataclasses, datetimes and Decimals included) to JSON."""
    return json.dumps(obj, indent=indent, default=_default)


def plan_node_to_dict(node: PlanNode) -> Dict[str, Any]:
    return {
        'operation': node.operation,
        'kind': node.kind,
        'table': node.table,
        'index': node.index,
        'estimated_cost': node.estimated_cost,
        'estimated_rows': node.estimated_rows,
        'actual_rows': node.actual_rows,
        'loops': node.loops,
        'never_executed': node.never_executed,
        'total_time_ms': round(node.total_time_ms, 3),
        'self_time_ms': round(node.self_time_ms, 3),
        'children': [plan_node_to_dict(child) for child in node.children],
    }


def _latency(seconds: float) -> str:
    if seconds >= 1:
        return f"{seconds:.2f} s"
    if seconds >= 0.001:
        return f"{seconds * 1000:.2f} ms"
    return f"{seconds * 1_000_000:.0f} us"


def format_statements(stats: List[DigestStats], title: str = "TOP STATEMENTS") -> str:
    lines = ["", RULE, title, RULE]
    if not stats:
        lines.append("\nNo statements recorded.")
        lines.append("\n" + RULE)
        return '\n'.join(lines)

    for i, s in enumerate(stats, 1):
        share = f" ({s.share_of_total:.1%} of total)" if s.share_of_total is not None else ""
        lines.append("")
        lines.append(f"{i}. {(s.digest_text or s.sample_sql or '')[:200]}")
        lines.append(f"   Digest: {s.digest}  Schema: {s.schema_name or 'N/A'}  Source: {s.source}")
        lines.append(f"   Executions: {s.exec_count:,}  Total: {_latency(s.total_latency_sec)}{share}"
                     f"  Avg: {_latency(s.avg_latency_sec)}  Max: {_latency(s.max_latency_sec)}")
        lines.append(f"   Rows examined: {s.rows_examined:,}  Rows sent: {s.rows_sent:,}"
                     f"  Examined/sent: {s.rows_examined_per_sent:,.1f}")
        if s.full_scans or s.tmp_tables:
            lines.append(f"   Full scans: {s.full_scans:,}  Tmp tables: {s.tmp_tables:,}"
                         f" (on disk: {s.tmp_disk_tables:,})")
    lines.append("\n" + RULE)
    return '\n'.join(lines)


def _plan_row_lines(row: Any) -> List[str]:
    if isinstance(row, PlanRow):
        row = {'table': row.table, 'type': row.access_type, 'key': row.key,
               'rows': row.rows, 'Extra': row.extra}
    return [
        f"Table: {row.get('table') or 'N/A'}",
        f"  Type: {row.get('type') or 'N/A'}",
        f"  Key: {row.get('key') or 'None'}",
        f"  Rows: {row.get('rows', 'N/A')}",
        f"  Extra: {row.get('Extra') or 'N/A'}",
        "",
    ]


def format_plan_analysis(analysis: PlanAnalysis, title: str = "EXPLAIN ANALYSIS") -> str:
    lines = ["", RULE, title, RULE]

    output = analysis.explain_output
    if isinstance(output, PlanNode):
        lines.append("\nExecuted plan:")
        lines.append(THIN_RULE)
        lines.append(format_plan_tree(output))
    elif output:
        lines.append("\nEXPLAIN Output:")
        lines.append(THIN_RULE)
        for row in output:
            lines.extend(_plan_row_lines(row))

    if analysis.issues:
        lines.append(f"\n{severity_symbol(analysis.severity)} Severity: {analysis.severity.upper()}")
        lines.append("\nIssues Found:")
        lines.append(THIN_RULE)
        for finding in analysis.findings:
            lines.append(f"  ❌ [{finding.severity.upper()}] {finding.issue}")
    else:
        lines.append("\n✅ No issues found - query looks good!")

    if analysis.recommendations:
        lines.append("\nRecommendations:")
        lines.append(THIN_RULE)
        for i, rec in enumerate(analysis.recommendations, 1):
            lines.append(f"  {i}. {rec}")

    lines.append("\n" + RULE)
    return '\n'.join(lines)


def _node_summary(node: PlanNode) -> str:
    if node.never_executed:
        return "never executed"
    if not node.executed:
        return ""
    parts = [f"rows={node.total_rows:,.0f}", f"loops={node.loops}", f"time={node.total_time_ms:.3f}ms"]
    if node.estimated_rows is not None:
        parts.insert(0, f"est={node.estimated_rows:,.0f}")
    return ' '.join(parts)


def format_plan_tree(root: PlanNode, indent: str = "  ") -> str:
    """Render the plan tree with totals (rows and time multiplied by loops)."""
    lines = []

    def render(node: PlanNode, depth: int):
        summary = _node_summary(node)
        text = f"{indent * depth}-> {node.operation}"
        lines.append(f"{text}  [{summary}]" if summary else text)
        for child in node.children:
            render(child, depth + 1)

    render(root, 0)

    top = [n for n in hotspots(root, limit=3) if n.self_time_ms > 0]
    if top:
        lines.append("")
        lines.append("Hotspots (self time):")
        for node in top:
            lines.append(f"  {node.self_time_ms:.3f} ms  {node.operation[:80]}")
    return '\n'.join(lines)


def format_findings(findings: List[Dict[str, Any]], title: str = "RECOMMENDATIONS") -> str:
    """Render findings (dicts or Finding objects) in the order given."""
    lines = ["", RULE, title, RULE]
    if not findings:
        lines.append("\n✅ No issues found")
    for finding in findings:
        if isinstance(finding, Finding):
            finding = finding.to_dict()
        lines.append(f"  {severity_symbol(finding['severity'])} [{finding['severity'].upper()}] {finding['issue']}")
        lines.append(f"     → {finding['recommendation']}")
    lines.append("\n" + RULE)
    return '\n'.join(lines)


def format_index_report(redundant: List[RedundantIndex], unused: List[Dict[str, Any]],
                        suggestion: Optional[IndexSuggestion] = None) -> str:
    lines = ["", RULE, "INDEX REVIEW", RULE]

    lines.append(f"\nRedundant indexes ({len(redundant)}):")
    lines.append(THIN_RULE)
    for r in redundant:
        lines.append(f"  {r.schema}.{r.table}: {r.redundant_index} ({', '.join(r.redundant_columns)})"
                     f" is covered by {r.dominant_index} ({', '.join(r.dominant_columns)})")
        lines.append(f"     {r.drop_statement};")

    lines.append(f"\nUnused indexes ({len(unused)}):")
    lines.append(THIN_RULE)
    for row in unused:
        lines.append(f"  {row['object_schema']}.{row['object_name']}: {row['index_name']}")

    if suggestion is not None:
        kind = "covering" if suggestion.covering else "non-covering"
        lines.append(f"\nSuggested {kind} index:")
        lines.append(THIN_RULE)
        lines.append(f"  {suggestion.ddl};")

    lines.append("\n" + RULE)
    return '\n'.join(lines)


def format_diagnostic_summary(results: Dict[str, Any]) -> str:
    lines = ["", RULE, f"MySQL Performance Diagnostic: {results.get('instance')}", RULE]

    stats = results.get('database_stats') or {}
    if stats:
        lines.append(f"  Version: {stats['version']}")
        lines.append(f"  Uptime: {stats['uptime_hours']:.1f} hours")
        conn = stats['connections']
        lines.append(f"  Connections: {conn['current']}/{conn['max_allowed']} ({conn['utilization_pct']:.1f}%)")
        lines.append(f"  Buffer pool hit rate: {stats['innodb_buffer_pool']['hit_rate_pct']:.2f}%")

    slow = results.get('slow_queries') or {}
    if slow:
        lines.append(f"  Slow query log: {'Enabled' if slow['enabled'] else 'Disabled'}"
                     f" (threshold {slow['long_query_time']}s, {slow['slow_queries']} slow queries)")

    for warning in results.get('warnings', []):
        lines.append(f"  Warning: {warning}")

    lines.append(format_findings(results.get('recommendations', [])))
    return '\n'.join(lines)

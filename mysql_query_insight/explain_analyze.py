"""
EXPLAIN ANALYZE tree parsing and analysis.

MySQL 8.0.18+ prints the executed plan as an indented tree::

    -> Limit: 10 row(s)  (cost=2.5 rows=10) (actual time=0.9..0.9 rows=10 loops=1)
        -> Sort: orders.created_at DESC  (cost=2.5 rows=1000) (actual time=0.9..0.9 rows=10 loops=1)
            -> Table scan on orders  (cost=101 rows=1000) (actual time=0.05..0.6 rows=1000 loops=1)

Times are milliseconds per loop and ``rows`` is the average per loop, so
totals are the per-loop value multiplied by ``loops``.
"""

import re
from dataclasses import dataclass, field
from typing import Iterator, List, Optional

from .config import Thresholds
from .db import is_read_only_sql, strip_leading_comments
from .errors import PlanParseError, ReadOnlyViolation
from .explain import PlanAnalysis, plan_analysis_from_findings
from .models import Finding

_NUMBER = r'[\d.]+(?:e[+-]?\d+)?'
_LINE = re.compile(
    rf"""
    ^(?P<indent>\s*)->\s(?P<operation>.*?)
    (?:\s+\(cost=(?P<cost>{_NUMBER})(?:\.\.(?P<cost_total>{_NUMBER}))?\s+rows=(?P<rows>{_NUMBER})\))?
    (?:\s+\((?:actual\stime=(?P<first>{_NUMBER})\.\.(?P<last>{_NUMBER})\s+rows=(?P<actual_rows>{_NUMBER})\s+loops=(?P<loops>\d+)
             |(?P<never>never\sexecuted))\))?
    \s*$
    """,
    re.VERBOSE | re.IGNORECASE,
)
_TARGET = re.compile(r'\bon\s+(?P<table>`?[\w$<>.#-]+`?)(?:\s+using\s+(?P<index>`?[\w$]+`?))?')
_ROW_HEADER = re.compile(r'^\*+\s*\d+\.\s*row\s*\*+$')

EXPLAIN_ANALYZE_STATEMENTS = ('select', 'with', 'table')


@dataclass
class PlanNode:
    operation: str
    estimated_cost: Optional[float] = None
    estimated_rows: Optional[float] = None
    actual_first_ms: Optional[float] = None
    actual_last_ms: Optional[float] = None
    actual_rows: Optional[float] = None
    loops: Optional[int] = None
    never_executed: bool = False
    children: List['PlanNode'] = field(default_factory=list)
    table: Optional[str] = None
    index: Optional[str] = None
    kind: str = 'other'

    @property
    def executed(self) -> bool:
        return not self.never_executed and self.loops is not None

    @property
    def total_rows(self) -> float:
        if not self.executed:
            return 0.0
        return (self.actual_rows or 0.0) * self.loops

    @property
    def total_time_ms(self) -> float:
        if self.never_executed:
            return 0.0
        if self.actual_last_ms is None or self.loops is None:
            return sum(child.total_time_ms for child in self.children)
        return self.actual_last_ms * self.loops

    @property
    def self_time_ms(self) -> float:
        if not self.executed:
            return 0.0
        return max(self.total_time_ms - sum(child.total_time_ms for child in self.children), 0.0)

    @property
    def misestimate(self) -> Optional[float]:
        """Factor (>= 1) between estimated and actual rows per loop."""
        if not self.executed or self.estimated_rows is None or self.actual_rows is None:
            return None
        ratio = max(self.actual_rows, 1.0) / max(self.estimated_rows, 1.0)
        return max(ratio, 1.0 / ratio)

    def walk(self, include_never_executed: bool = True) -> Iterator['PlanNode']:
        if self.never_executed and not include_never_executed:
            return
        yield self
        for child in self.children:
            yield from child.walk(include_never_executed)


def classify(operation: str) -> str:
    """Map an iterator description onto a coarse node kind."""
    op = operation.lower()
    target = _TARGET.search(operation)
    if target and target.group('table').strip('`').startswith('<'):
        # <temporary>, <derived2>, <subquery3>, <union1,2>
        return 'temporary'
    if op.startswith(('single-row', 'constant row', 'rows fetched before execution', 'zero rows')):
        return 'single_row'
    if op.startswith('covering index'):
        op = op[len('covering '):]
        if op.startswith('index lookup'):
            return 'covering_index'
    if op.startswith('table scan'):
        return 'table_scan'
    if op.startswith('index scan'):
        return 'index_scan'
    if op.startswith(('index range scan', 'index skip scan', 'group index skip scan')):
        return 'index_range'
    if op.startswith(('index lookup', 'multi-range index lookup', 'full-text index search', 'alternative plans')):
        return 'index_lookup'
    if op.startswith('filter'):
        return 'filter'
    if op.startswith('sort'):
        return 'sort'
    if op.startswith(('aggregate using temporary table', 'temporary table')):
        return 'temporary'
    if op.startswith(('aggregate', 'group aggregate', 'window aggregate')):
        return 'aggregate'
    if op.startswith('nested loop') or ' join' in op or 'semijoin' in op or 'antijoin' in op:
        return 'join'
    if op.startswith('materialize'):
        return 'materialize'
    if op.startswith('limit'):
        return 'limit'
    return 'other'


def _float(value: Optional[str]) -> Optional[float]:
    return float(value) if value is not None else None


def _node_from_match(match: 're.Match') -> PlanNode:
    operation = match.group('operation').strip()
    target = _TARGET.search(operation)
    node = PlanNode(
        operation=operation,
        estimated_cost=_float(match.group('cost_total') or match.group('cost')),
        estimated_rows=_float(match.group('rows')),
        actual_first_ms=_float(match.group('first')),
        actual_last_ms=_float(match.group('last')),
        actual_rows=_float(match.group('actual_rows')),
        loops=int(match.group('loops')) if match.group('loops') else None,
        never_executed=bool(match.group('never')),
        kind=classify(operation),
    )
    if target:
        node.table = target.group('table').strip('`')
        if target.group('index'):
            node.index = target.group('index').strip('`')
    return node


def _clean_lines(text: str) -> List[str]:
    """Strip mysql client decorations (\\G headers, table borders, EXPLAIN: prefix)."""
    lines = []
    for raw in text.splitlines():
        line = raw.rstrip()
        stripped = line.strip()
        if not stripped or _ROW_HEADER.match(stripped) or stripped.startswith('+-'):
            continue
        if stripped.startswith('|') and stripped.endswith('|'):
            line = stripped[1:-1].rstrip()
            stripped = line.strip()
        elif stripped.startswith('| '):
            line = stripped[2:]
            stripped = line.strip()
        elif stripped.endswith(' |'):
            line = line[:-2].rstrip()
            stripped = line.strip()
        if stripped.upper().startswith('EXPLAIN:'):
            line = stripped[len('EXPLAIN:'):].strip()
            stripped = line
        if stripped.startswith('->'):
            lines.append(line)
    return lines


def parse_explain_analyze(text: str) -> PlanNode:
    """
    Parse EXPLAIN ANALYZE (or EXPLAIN FORMAT=TREE) output into a tree.

    Several top-level iterators are wrapped in a synthetic ``Plan`` node.
    """
    if not text or not text.strip():
        raise PlanParseError("EXPLAIN ANALYZE output is empty")

    lines = _clean_lines(text)
    if not lines:
        raise PlanParseError("No plan lines ('-> ...') found in EXPLAIN ANALYZE output")

    roots: List[PlanNode] = []
    stack: List[tuple] = []
    for line in lines:
        match = _LINE.match(line)
        if not match:
            raise PlanParseError(f"Unrecognized plan line: {line.strip()[:120]}")
        depth = len(match.group('indent').expandtabs(4))
        node = _node_from_match(match)

        while stack and stack[-1][0] >= depth:
            stack.pop()
        if stack:
            stack[-1][1].children.append(node)
        else:
            roots.append(node)
        stack.append((depth, node))

    if len(roots) == 1:
        return roots[0]
    return PlanNode(operation='Plan', children=roots)


def explain_analyze(client, query: str) -> str:
    """
    Run EXPLAIN ANALYZE and return the tree text.

    EXPLAIN ANALYZE executes the statement, so only SELECT, WITH and TABLE
    statements are accepted.
    """
    query = strip_leading_comments(query).rstrip().rstrip(';')
    keyword = query.split(None, 1)[0].lower() if query else ''
    if keyword not in EXPLAIN_ANALYZE_STATEMENTS or not is_read_only_sql(query):
        raise ReadOnlyViolation(f"EXPLAIN ANALYZE executes the statement; refusing '{query[:80]}'")

    rows = client.query(f"EXPLAIN ANALYZE {query}")
    if not rows:
        raise PlanParseError("EXPLAIN ANALYZE returned no rows")
    return next(iter(rows[0].values()))


def hotspots(root: PlanNode, limit: int = 5) -> List[PlanNode]:
    """Executed nodes ordered by self time, largest first."""
    nodes = [n for n in root.walk(include_never_executed=False) if n.executed]
    return sorted(nodes, key=lambda n: n.self_time_ms, reverse=True)[:limit]


def _label(node: PlanNode) -> str:
    return node.table or node.operation[:60]


def analyze_plan(root: PlanNode, thresholds: Optional[Thresholds] = None) -> PlanAnalysis:
    """Turn an executed plan tree into findings."""
    thresholds = thresholds or Thresholds()
    findings: List[Finding] = []
    plan_time = root.total_time_ms
    # A lone iterator always owns all of the time
    check_hotspots = sum(1 for n in root.walk(include_never_executed=False) if n.executed) > 1

    for node in root.walk(include_never_executed=False):
        if not node.executed:
            continue
        label = _label(node)

        if node.kind == 'table_scan':
            if node.total_rows >= thresholds.full_scan_rows:
                findings.append(Finding(
                    'high', 'full_scan',
                    f"Full table scan on '{label}' read {node.total_rows:,.0f} rows over {node.loops} loop(s)",
                    f"Add an index on '{label}' covering the columns used to filter or join it",
                    subject=node.table,
                ))
            else:
                findings.append(Finding(
                    'low', 'full_scan',
                    f"Table scan on '{label}' ({node.total_rows:,.0f} rows)",
                    f"Acceptable for small tables; index '{label}' if it is expected to grow",
                    subject=node.table,
                ))

        factor = node.misestimate
        if factor is not None and factor >= thresholds.misestimate_factor:
            findings.append(Finding(
                'medium', 'misestimate',
                f"Row estimate off by {factor:.0f}x at '{node.operation[:80]}' "
                f"(estimated {node.estimated_rows:,.0f}, actual {node.actual_rows:,.0f} per loop)",
                "Refresh statistics with ANALYZE TABLE or add a histogram "
                "(ANALYZE TABLE ... UPDATE HISTOGRAM ON ...) on the filtered columns",
                subject=node.table,
            ))

        if check_hotspots and plan_time > 0 and node.self_time_ms / plan_time >= thresholds.hotspot_share:
            findings.append(Finding(
                'medium', 'hotspot',
                f"'{node.operation[:80]}' accounts for {node.self_time_ms / plan_time:.0%} "
                f"of execution time ({node.self_time_ms:.1f} ms)",
                f"Focus tuning on '{label}'",
                subject=node.table,
            ))

        if node.kind == 'sort' and node.total_rows >= thresholds.full_scan_rows:
            findings.append(Finding(
                'medium', 'filesort',
                f"Sort of {node.total_rows:,.0f} rows: {node.operation[:80]}",
                "Add an index matching the ORDER BY columns so rows are read in order",
            ))

        if node.kind in ('temporary', 'materialize'):
            findings.append(Finding(
                'low', 'temporary_table',
                f"Intermediate result materialized: {node.operation[:80]}",
                "Check GROUP BY / DISTINCT / derived tables for an index that avoids the temporary table",
                subject=node.table,
            ))

        if node.kind in ('index_lookup', 'covering_index', 'single_row') and (node.loops or 0) >= thresholds.full_scan_rows:
            findings.append(Finding(
                'medium', 'nested_loop',
                f"Index lookup on '{label}' repeated {node.loops:,} times in a nested loop",
                "Reduce the outer row count with a more selective filter, or consider a hash join",
                subject=node.table,
            ))

    return plan_analysis_from_findings(findings, explain_output=root)

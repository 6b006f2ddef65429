"""
EXPLAIN analysis.

Runs EXPLAIN (tabular or FORMAT=JSON) for a statement and turns the access
plan into findings and recommendations.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .config import Thresholds
from .db import is_read_only_sql
from .errors import PlanParseError, ReadOnlyViolation
from .models import Finding, max_severity

NO_TABLE_ACCESS_TYPES = ('system', 'const', 'NULL', None)


@dataclass
class PlanRow:
    table: Optional[str]
    access_type: Optional[str]
    possible_keys: List[str] = field(default_factory=list)
    key: Optional[str] = None
    rows: int = 0
    filtered: float = 100.0
    extra: str = ''
    select_type: str = 'SIMPLE'

    @classmethod
    def from_tabular(cls, row: Dict[str, Any]) -> 'PlanRow':
        possible = row.get('possible_keys') or ''
        return cls(
            table=row.get('table'),
            access_type=row.get('type'),
            possible_keys=[k for k in possible.split(',') if k],
            key=row.get('key'),
            rows=int(row.get('rows') or 0),
            filtered=float(row.get('filtered') or 100.0),
            extra=row.get('Extra') or '',
            select_type=row.get('select_type') or 'SIMPLE',
        )


@dataclass
class PlanAnalysis:
    severity: str
    issues: List[str]
    recommendations: List[str]
    findings: List[Finding]
    explain_output: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'severity': self.severity,
            'issues': self.issues,
            'recommendations': self.recommendations,
            'findings': [f.to_dict() for f in self.findings],
            'explain_output': self.explain_output,
        }


def plan_analysis_from_findings(findings: List[Finding], explain_output: Any = None) -> PlanAnalysis:
    recommendations = []
    for finding in findings:
        if finding.recommendation not in recommendations:
            recommendations.append(finding.recommendation)
    return PlanAnalysis(
        severity=max_severity(findings),
        issues=[f.issue for f in findings],
        recommendations=recommendations,
        findings=findings,
        explain_output=explain_output,
    )


def explain_query(client, query: str, fmt: str = 'traditional') -> Any:
    """Run EXPLAIN on query and return the rows (or the parsed JSON document)"""
    query = query.strip().rstrip(';')
    if not is_read_only_sql(query):
        raise ReadOnlyViolation(f"Refusing to EXPLAIN non read-only SQL: {query[:80]}")

    if fmt == 'json':
        rows = client.query(f"EXPLAIN FORMAT=JSON {query}")
        if not rows:
            raise PlanParseError("EXPLAIN FORMAT=JSON returned no rows")
        document = next(iter(rows[0].values()))
        return json.loads(document)
    if fmt == 'traditional':
        return client.query(f"EXPLAIN {query}")
    raise ValueError(f"Unknown EXPLAIN format: {fmt}")


def _json_table_row(table: Dict[str, Any], extras: List[str]) -> PlanRow:
    extra = list(extras)
    if table.get('using_index'):
        extra.append('Using index')
    if table.get('attached_condition'):
        extra.append('Using where')
    if table.get('using_join_buffer'):
        extra.append(f"Using join buffer ({table['using_join_buffer']})")

    filtered = table.get('filtered', 100.0)
    return PlanRow(
        table=table.get('table_name'),
        access_type=table.get('access_type'),
        possible_keys=list(table.get('possible_keys') or []),
        key=table.get('key'),
        rows=int(table.get('rows_examined_per_scan') or table.get('rows') or 0),
        filtered=float(filtered),
        extra='; '.join(extra),
    )


def _walk_json(node: Any, extras: List[str], rows: List[PlanRow]):
    if isinstance(node, list):
        for item in node:
            _walk_json(item, extras, rows)
        return
    if not isinstance(node, dict):
        return

    extras = list(extras)
    if node.get('using_filesort'):
        extras.append('Using filesort')
    if node.get('using_temporary_table'):
        extras.append('Using temporary')

    for key, value in node.items():
        if key == 'table' and isinstance(value, dict):
            rows.append(_json_table_row(value, extras))
            # Derived tables hang off the table that materializes them
            _walk_json(value.get('materialized_from_subquery'), [], rows)
            _walk_json(value.get('attached_subqueries'), [], rows)
        elif key in ('query_block', 'nested_loop', 'ordering_operation', 'grouping_operation',
                     'duplicates_removal', 'windowing', 'union_result', 'query_specifications',
                     'attached_subqueries', 'optimized_away_subqueries', 'materialized_from_subquery'):
            _walk_json(value, extras if key != 'attached_subqueries' else [], rows)


def flatten_json_plan(document: Dict[str, Any]) -> List[PlanRow]:
    """Flatten an EXPLAIN FORMAT=JSON document into one PlanRow per table access."""
    if not isinstance(document, dict) or 'query_block' not in document:
        raise PlanParseError("EXPLAIN JSON document has no query_block")
    rows: List[PlanRow] = []
    _walk_json(document, [], rows)
    return rows


def analyze_explain(explain_results: List[Any], thresholds: Optional[Thresholds] = None) -> PlanAnalysis:
    """Analyze EXPLAIN output and generate recommendations"""
    thresholds = thresholds or Thresholds()
    findings: List[Finding] = []
    plan_rows = [r if isinstance(r, PlanRow) else PlanRow.from_tabular(r) for r in explain_results]

    for row in plan_rows:
        table = row.table or 'unknown'
        extra = row.extra

        # Check for full table scan
        if row.access_type == 'ALL':
            findings.append(Finding(
                'high', 'full_scan',
                f"Full table scan on table '{table}' (examining {row.rows} rows)",
                f"Add index to table '{table}' on columns used in WHERE/JOIN",
                subject=table,
            ))
        elif row.access_type == 'index':
            findings.append(Finding(
                'medium', 'full_index_scan',
                f"Full index scan on table '{table}' using '{row.key}'",
                f"Add a predicate on the leading column of an index for table '{table}'",
                subject=table,
            ))

        # Check for filesort
        if 'Using filesort' in extra:
            findings.append(Finding(
                'medium', 'filesort',
                f"Filesort operation on table '{table}'",
                f"Add index on ORDER BY columns for table '{table}'",
                subject=table,
            ))

        # Check for temporary table
        if 'Using temporary' in extra:
            findings.append(Finding(
                'medium', 'temporary_table',
                f"Temporary table created for table '{table}'",
                f"Add index on GROUP BY columns for table '{table}'",
                subject=table,
            ))

        if 'Using join buffer' in extra:
            findings.append(Finding(
                'medium', 'join_buffer',
                f"Join buffer used for table '{table}' (no usable index for the join)",
                f"Index the join columns of table '{table}'",
                subject=table,
            ))

        # Check for high row examination
        if row.rows and row.rows > thresholds.full_scan_rows:
            findings.append(Finding(
                'medium', 'row_examination',
                f"High row examination on table '{table}' ({row.rows} rows)",
                f"Review WHERE clause selectivity for table '{table}'",
                subject=table,
            ))

        # Check if no index used
        if row.key is None and row.table and row.access_type not in NO_TABLE_ACCESS_TYPES:
            if row.possible_keys:
                findings.append(Finding(
                    'medium', 'index_not_chosen',
                    f"Index available on table '{table}' ({', '.join(row.possible_keys)}) but not chosen",
                    f"Run ANALYZE TABLE on '{table}' and check predicate sargability",
                    subject=table,
                ))
            else:
                findings.append(Finding(
                    'low', 'no_index',
                    f"No index used on table '{table}'",
                    f"Create appropriate index for table '{table}'",
                    subject=table,
                ))

    return plan_analysis_from_findings(findings, explain_output=explain_results)

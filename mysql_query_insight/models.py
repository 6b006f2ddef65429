"""Shared result types."""

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

SEVERITY_ORDER = {'high': 3, 'medium': 2, 'low': 1}

PICOSECONDS_PER_SECOND = 1_000_000_000_000


@dataclass
class Finding:
    severity: str
    category: str
    issue: str
    recommendation: str
    subject: Optional[str] = None

    def __post_init__(self):
        if self.severity not in SEVERITY_ORDER:
            raise ValueError(f"Unknown severity: {self.severity}")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def max_severity(findings: Iterable[Finding], default: str = 'low') -> str:
    """Highest severity among findings."""
    severities = [f.severity for f in findings]
    if not severities:
        return default
    return max(severities, key=SEVERITY_ORDER.__getitem__)


def sort_findings(findings: Iterable[Finding]) -> List[Finding]:
    """High first; order within a severity is preserved."""
    return sorted(findings, key=lambda f: -SEVERITY_ORDER[f.severity])


@dataclass
class DigestStats:
    """Aggregate statistics for one normalized statement."""
    digest: str
    digest_text: str
    schema_name: Optional[str] = None
    exec_count: int = 0
    total_latency_sec: float = 0.0
    avg_latency_sec: float = 0.0
    max_latency_sec: float = 0.0
    lock_latency_sec: float = 0.0
    rows_sent: int = 0
    rows_examined: int = 0
    rows_affected: int = 0
    tmp_tables: int = 0
    tmp_disk_tables: int = 0
    full_scans: int = 0
    no_good_index_used: int = 0
    sort_merge_passes: int = 0
    first_seen: Optional[datetime] = None
    last_seen: Optional[datetime] = None
    sample_sql: Optional[str] = None
    source: str = 'performance_schema'
    share_of_total: Optional[float] = None
    tables: List[str] = field(default_factory=list)

    @property
    def rows_examined_per_sent(self) -> float:
        return self.rows_examined / max(self.rows_sent, 1)

    @property
    def tmp_disk_ratio(self) -> float:
        if not self.tmp_tables:
            return 0.0
        return self.tmp_disk_tables / self.tmp_tables

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['rows_examined_per_sent'] = round(self.rows_examined_per_sent, 2)
        data['tmp_disk_ratio'] = round(self.tmp_disk_ratio, 4)
        return data


RANK_KEYS = {
    'total_latency': lambda s: s.total_latency_sec,
    'avg_latency': lambda s: s.avg_latency_sec,
    'exec_count': lambda s: s.exec_count,
    'rows_examined': lambda s: s.rows_examined,
    'lock_latency': lambda s: s.lock_latency_sec,
    'tmp_disk_tables': lambda s: s.tmp_disk_tables,
    'full_scans': lambda s: s.full_scans,
}


def rank_statements(stats: Iterable[DigestStats], order_by: str = 'total_latency',
                    limit: Optional[int] = None) -> List[DigestStats]:
    """
    Order statements by ``order_by`` (descending) and attach each one's share
    of total latency across every statement passed in.
    """
    if order_by not in RANK_KEYS:
        raise ValueError(f"Unknown ranking key '{order_by}', expected one of: {', '.join(RANK_KEYS)}")

    stats = list(stats)
    grand_total = sum(s.total_latency_sec for s in stats)
    ranked = []
    for s in sorted(stats, key=RANK_KEYS[order_by], reverse=True):
        share = s.total_latency_sec / grand_total if grand_total else 0.0
        ranked.append(replace(s, share_of_total=share))

    if limit is not None:
        ranked = ranked[:limit]
    return ranked

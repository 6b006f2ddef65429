"""
Performance diagnostic.

Collects a one-shot snapshot of a MySQL instance, including:
- CloudWatch metrics (RDS instances, when an ``aws`` section is configured)
- Server health counters
- Top statements from performance_schema with per-statement findings
- Schema and index information (missing primary keys, unused and redundant indexes)
- Slow query log configuration

and turns it into prioritized recommendations.
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import boto3

from . import collectors
from .config import Config, Thresholds
from .db import MySQLClient
from .errors import InstrumentationUnavailable
from .indexes import find_redundant_indexes
from .models import DigestStats, Finding, rank_statements, sort_findings

logger = logging.getLogger(__name__)

CLOUDWATCH_METRICS = (
    'CPUUtilization',
    'DatabaseConnections',
    'FreeableMemory',
    'ReadIOPS',
    'WriteIOPS',
    'ReadLatency',
    'WriteLatency',
    'DiskQueueDepth',
    'FreeStorageSpace',
)

# A statement at or above this share of total latency escalates a full-scan
# finding to high severity.
MAJOR_STATEMENT_SHARE = 0.10


def statement_findings(stats: List[DigestStats], thresholds: Thresholds) -> List[Finding]:
    """Per-statement findings for ranked digest statistics."""
    findings = []
    for s in stats:
        label = (s.digest_text or s.digest)[:100]
        share = s.share_of_total or 0.0

        if s.full_scans:
            findings.append(Finding(
                'high' if share >= MAJOR_STATEMENT_SHARE else 'medium',
                'full_scan',
                f"{s.full_scans} execution(s) without an index ({share:.0%} of statement latency): {label}",
                "Run EXPLAIN on this statement and index the columns in its WHERE/JOIN clauses",
                subject=s.digest,
            ))

        if s.rows_examined and s.rows_examined_per_sent >= thresholds.rows_examined_ratio:
            findings.append(Finding(
                'medium', 'row_examination',
                f"Examines {s.rows_examined_per_sent:,.0f} rows per row sent: {label}",
                "Make the filter sargable or add a more selective (covering) index",
                subject=s.digest,
            ))

        if s.tmp_tables and s.tmp_disk_ratio >= thresholds.tmp_disk_ratio:
            findings.append(Finding(
                'medium', 'temporary_table',
                f"{s.tmp_disk_ratio:.0%} of temporary tables spill to disk: {label}",
                "Index the GROUP BY/ORDER BY columns or raise tmp_table_size/max_heap_table_size",
                subject=s.digest,
            ))
    return findings


class PerformanceDiagnostic:
    def __init__(self, config: Config, client=None, cloudwatch=None):
        """Initialize diagnostic tool with configuration"""
        self.config = config
        self.thresholds = config.thresholds
        self.client = client if client is not None else MySQLClient(config.database)

        self.cloudwatch = cloudwatch
        if self.cloudwatch is None and config.aws is not None:
            self.cloudwatch = boto3.client('cloudwatch', region_name=config.aws.region)

        self.results: Dict[str, Any] = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'instance': config.aws.db_instance_identifier if config.aws else config.database.host,
            'cloudwatch_metrics': {},
            'database_stats': {},
            'statements': {'top': [], 'findings': []},
            'schema_info': {},
            'slow_queries': {},
            'recommendations': [],
            'warnings': [],
        }

    def _warn(self, message: str):
        logger.warning(message)
        self.results['warnings'].append(message)

    def collect_cloudwatch_metrics(self, hours: int = 1):
        """Collect CloudWatch metrics for specified time period"""
        if self.cloudwatch is None or self.config.aws is None:
            logger.info("No aws configuration; skipping CloudWatch metrics")
            return

        logger.info("Collecting CloudWatch metrics for last %s hour(s)", hours)
        end_time = datetime.now(timezone.utc)
        start_time = end_time - timedelta(hours=hours)

        for metric_name in CLOUDWATCH_METRICS:
            try:
                response = self.cloudwatch.get_metric_statistics(
                    Namespace='AWS/RDS',
                    MetricName=metric_name,
                    Dimensions=[{
                        'Name': 'DBInstanceIdentifier',
                        'Value': self.config.aws.db_instance_identifier,
                    }],
                    StartTime=start_time,
                    EndTime=end_time,
                    Period=300,
                    Statistics=['Average', 'Maximum', 'Minimum'],
                )
            except Exception as e:
                self._warn(f"Could not collect metric {metric_name}: {e}")
                continue

            if response['Datapoints']:
                datapoints = sorted(response['Datapoints'], key=lambda x: x['Timestamp'])
                latest = datapoints[-1]
                self.results['cloudwatch_metrics'][metric_name] = {
                    'latest_average': latest.get('Average', 0),
                    'latest_maximum': latest.get('Maximum', 0),
                    'period_average': sum(d['Average'] for d in datapoints) / len(datapoints),
                    'period_maximum': max(d.get('Maximum', 0) for d in datapoints),
                    'timestamp': latest['Timestamp'].isoformat(),
                }

        logger.info("Collected %d CloudWatch metrics", len(self.results['cloudwatch_metrics']))

    def collect_database_stats(self):
        """Collect MySQL server health statistics"""
        logger.info("Collecting database statistics")
        stats = collectors.server_health(self.client)
        self.results['database_stats'] = stats
        logger.info("Version %s, connections %d/%d, buffer pool hit rate %.2f%%",
                    stats['version'],
                    stats['connections']['current'], stats['connections']['max_allowed'],
                    stats['innodb_buffer_pool']['hit_rate_pct'])

    def collect_statement_stats(self):
        """Rank statements from performance_schema and attach per-statement findings"""
        logger.info("Collecting statement statistics")
        try:
            # Pull a wider window than top_n so shares are computed against a
            # meaningful total.
            stats = collectors.top_statements(self.client, limit=max(self.thresholds.top_n * 5, 50))
            waits = collectors.top_wait_events(self.client, limit=self.thresholds.top_n)
        except InstrumentationUnavailable as e:
            self._warn(f"Statement statistics unavailable: {e}")
            return

        ranked = rank_statements(stats, limit=self.thresholds.top_n)
        self.results['statements'] = {
            'top': [s.to_dict() for s in ranked],
            'findings': [f.to_dict() for f in statement_findings(ranked, self.thresholds)],
            'wait_events': waits,
        }

    def collect_schema_info(self):
        """Collect schema and index information"""
        logger.info("Analyzing schema and indexes")
        schema_info = self.results['schema_info']
        schema_info['tables_without_pk'] = collectors.tables_without_primary_key(self.client)
        schema_info['largest_tables'] = collectors.largest_tables(self.client)

        try:
            schema_info['unused_indexes'] = collectors.unused_indexes(self.client)
        except InstrumentationUnavailable as e:
            self._warn(f"Could not query performance_schema for unused indexes: {e}")
            schema_info['unused_indexes'] = []

        redundant = []
        schemas = sorted({row['table_schema'] for row in schema_info['largest_tables']})
        for schema in schemas:
            for r in find_redundant_indexes(collectors.index_definitions(self.client, schema)):
                redundant.append({
                    'table_schema': r.schema,
                    'table_name': r.table,
                    'redundant_index': r.redundant_index,
                    'dominant_index': r.dominant_index,
                    'drop_statement': r.drop_statement,
                })
        schema_info['redundant_indexes'] = redundant

        logger.info("Found %d tables without primary keys, %d unused and %d redundant indexes",
                    len(schema_info['tables_without_pk']),
                    len(schema_info['unused_indexes']),
                    len(redundant))

    def collect_slow_queries(self):
        """Check slow query log configuration"""
        logger.info("Checking slow query log configuration")
        self.results['slow_queries'] = collectors.slow_log_settings(self.client)

    def generate_recommendations(self) -> List[Dict[str, Any]]:
        """Generate performance recommendations based on collected data"""
        t = self.thresholds
        findings: List[Finding] = []
        cloudwatch = self.results['cloudwatch_metrics']
        db_stats = self.results['database_stats']
        schema_info = self.results['schema_info']

        if 'CPUUtilization' in cloudwatch:
            cpu = cloudwatch['CPUUtilization']['period_average']
            if cpu > t.cpu_utilization_max:
                findings.append(Finding(
                    'high', 'cpu',
                    f"High CPU utilization (avg: {cpu:.1f}%)",
                    "Review the top statements by total latency and optimize them before scaling the instance class.",
                ))

        if 'ReadLatency' in cloudwatch:
            # CloudWatch reports seconds
            latency_ms = cloudwatch['ReadLatency']['period_average'] * 1000
            if latency_ms > t.read_latency_ms_max:
                findings.append(Finding(
                    'high', 'storage',
                    f"High read latency (avg: {latency_ms:.1f}ms)",
                    "Storage I/O bottleneck detected. Check full table scans first, then storage IOPS provisioning.",
                ))

        if 'connections' in db_stats:
            conn_util = db_stats['connections']['utilization_pct']
            if conn_util > t.connection_utilization_max:
                findings.append(Finding(
                    'high', 'connections',
                    f"High connection utilization ({conn_util:.1f}%)",
                    "Implement connection pooling and review the application for connection leaks.",
                ))

        if 'innodb_buffer_pool' in db_stats:
            hit_rate = db_stats['innodb_buffer_pool']['hit_rate_pct']
            if db_stats['innodb_buffer_pool']['read_requests'] and hit_rate < t.buffer_pool_hit_rate_min:
                findings.append(Finding(
                    'medium', 'memory',
                    f"Low buffer pool hit rate ({hit_rate:.2f}%)",
                    "Consider increasing innodb_buffer_pool_size, or reduce scanned rows with better indexes.",
                ))

        if schema_info.get('tables_without_pk'):
            count = len(schema_info['tables_without_pk'])
            findings.append(Finding(
                'medium', 'schema',
                f"{count} table(s) without primary keys",
                "Add primary keys to all tables. This is critical for replication and query performance.",
            ))

        if schema_info.get('unused_indexes'):
            count = len(schema_info['unused_indexes'])
            findings.append(Finding(
                'low', 'indexes',
                f"{count} potentially unused index(es)",
                "Confirm over a full business cycle, then drop unused indexes to reduce write overhead.",
            ))

        if schema_info.get('redundant_indexes'):
            count = len(schema_info['redundant_indexes'])
            findings.append(Finding(
                'low', 'indexes',
                f"{count} redundant index(es) duplicated by a wider index",
                "Drop redundant indexes after checking no query hint references them.",
            ))

        slow = self.results['slow_queries']
        if slow and not slow.get('enabled'):
            findings.append(Finding(
                'medium', 'monitoring',
                "Slow query log is disabled",
                "Enable slow query log (slow_query_log=1) to identify problematic queries.",
            ))

        for data in self.results['statements'].get('findings', []):
            findings.append(Finding(**data))

        recommendations = [f.to_dict() for f in sort_findings(findings)]
        self.results['recommendations'] = recommendations
        logger.info("Generated %d recommendation(s)", len(recommendations))
        return recommendations

    def save_results(self, output_file: str):
        """Save diagnostic results to JSON file"""
        with open(output_file, 'w') as f:
            json.dump(self.results, f, indent=2, default=str)
        logger.info("Results saved to %s", output_file)

    def run(self, output_file: Optional[str] = None, cloudwatch_hours: int = 1) -> Dict[str, Any]:
        """Run full diagnostic"""
        try:
            self.collect_cloudwatch_metrics(hours=cloudwatch_hours)
            self.collect_database_stats()
            self.collect_statement_stats()
            self.collect_schema_info()
            self.collect_slow_queries()
            self.generate_recommendations()
            if output_file:
                self.save_results(output_file)
        finally:
            close = getattr(self.client, 'close', None)
            if close is not None:
                close()
        return self.results

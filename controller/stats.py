"""
Reconciliation statistics and Prometheus-compatible metrics
"""

import time
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Optional


@dataclass
class ReconciliationStats:
    """Statistics for a reconciliation cycle"""
    clusters_reconciled: int = 0
    secrets_written: int = 0
    secrets_deleted: int = 0
    sql_applied: int = 0
    sql_skipped: int = 0
    deferred: int = 0
    volumes_written: int = 0
    wal_volumes_deleted: int = 0
    wal_volumes_retained: int = 0
    errors: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    def duration_seconds(self) -> float:
        if self.start_time and self.end_time:
            return (self.end_time - self.start_time).total_seconds()
        return 0.0

    def to_dict(self) -> dict:
        return {
            **asdict(self),
            'start_time': self.start_time.isoformat() if self.start_time else None,
            'end_time': self.end_time.isoformat() if self.end_time else None,
            'duration_seconds': self.duration_seconds()
        }


class Metrics:
    """Simple in-memory metrics for Prometheus exposition"""

    def __init__(self):
        self.reconciliation_count = 0
        self.last_reconciliation_timestamp = 0
        self.clusters_managed = 0
        self.sql_applied_count = 0
        self.sql_skipped_count = 0
        self.deferred_count = 0
        self.wal_volumes_deleted_count = 0
        self.error_count = 0
        self.last_error_timestamp = 0

    def record_reconciliation(self, stats: ReconciliationStats):
        """Record metrics from a reconciliation cycle"""
        self.reconciliation_count += 1
        self.last_reconciliation_timestamp = time.time()
        self.clusters_managed = stats.clusters_reconciled
        self.sql_applied_count += stats.sql_applied
        self.sql_skipped_count += stats.sql_skipped
        self.deferred_count += stats.deferred
        self.wal_volumes_deleted_count += stats.wal_volumes_deleted
        self.error_count += stats.errors
        if stats.errors > 0:
            self.last_error_timestamp = time.time()

    def export_prometheus(self) -> str:
        """Export metrics in Prometheus text format"""
        return f"""# HELP postgrescluster_reconciliations_total Total number of reconciliation cycles
# TYPE postgrescluster_reconciliations_total counter
postgrescluster_reconciliations_total {self.reconciliation_count}

# HELP postgrescluster_last_reconciliation_timestamp Timestamp of last reconciliation
# TYPE postgrescluster_last_reconciliation_timestamp gauge
postgrescluster_last_reconciliation_timestamp {self.last_reconciliation_timestamp}

# HELP postgrescluster_clusters_managed Clusters reconciled in the last cycle
# TYPE postgrescluster_clusters_managed gauge
postgrescluster_clusters_managed {self.clusters_managed}

# HELP postgrescluster_sql_applied_total SQL revisions executed
# TYPE postgrescluster_sql_applied_total counter
postgrescluster_sql_applied_total {self.sql_applied_count}

# HELP postgrescluster_sql_skipped_total SQL revisions skipped because they were already applied
# TYPE postgrescluster_sql_skipped_total counter
postgrescluster_sql_skipped_total {self.sql_skipped_count}

# HELP postgrescluster_deferred_total Concerns deferred for lack of a live instance
# TYPE postgrescluster_deferred_total counter
postgrescluster_deferred_total {self.deferred_count}

# HELP postgrescluster_wal_volumes_deleted_total WAL volume claims deleted
# TYPE postgrescluster_wal_volumes_deleted_total counter
postgrescluster_wal_volumes_deleted_total {self.wal_volumes_deleted_count}

# HELP postgrescluster_errors_total Total errors encountered
# TYPE postgrescluster_errors_total counter
postgrescluster_errors_total {self.error_count}

# HELP postgrescluster_last_error_timestamp Timestamp of last error
# TYPE postgrescluster_last_error_timestamp gauge
postgrescluster_last_error_timestamp {self.last_error_timestamp}
"""

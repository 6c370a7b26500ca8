"""
Prometheus Metrics for DataSync

Metrics for compare and apply runs, result classification and table
census. Each SyncMetrics owns its registry so several sessions (and
tests) can coexist in one process.
"""

import logging
from typing import Dict, Iterable, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, push_to_gateway, start_http_server

from datasync.reconciliation.models import ResultSummary, TableCensus

logger = logging.getLogger(__name__)


class SyncMetrics:
    """Prometheus metrics for reconciliation runs."""

    def __init__(self, registry: Optional[CollectorRegistry] = None, namespace: str = "datasync"):
        """
        Initialize sync metrics.

        Args:
            registry: Registry to register with (a new one if not provided)
            namespace: Metric name prefix
        """
        self.registry = registry or CollectorRegistry()
        self.namespace = namespace

        self.compare_runs_total = Counter(
            f"{namespace}_compare_runs_total",
            "Total number of compare runs",
            ["table", "status"],
            registry=self.registry
        )

        self.apply_runs_total = Counter(
            f"{namespace}_apply_runs_total",
            "Total number of apply runs by outcome",
            ["table", "outcome"],
            registry=self.registry
        )

        self.comparison_rows = Gauge(
            f"{namespace}_comparison_rows",
            "Rows in the latest comparison by result type",
            ["table", "result_type"],
            registry=self.registry
        )

        self.operation_duration_seconds = Histogram(
            f"{namespace}_operation_duration_seconds",
            "Duration of compare and apply runs in seconds",
            ["table", "operation"],
            buckets=[1, 5, 10, 30, 60, 120, 300, 600, 1800, 3600],
            registry=self.registry
        )

        self.table_features = Gauge(
            f"{namespace}_table_features",
            "Feature count per side",
            ["table", "side"],
            registry=self.registry
        )

        self.blank_keys = Gauge(
            f"{namespace}_blank_keys",
            "Features with a blank key per side",
            ["table", "side"],
            registry=self.registry
        )

        self.duplicate_keys = Gauge(
            f"{namespace}_duplicate_keys",
            "Keys occurring more than once per side",
            ["table", "side"],
            registry=self.registry
        )

        self.cleanup_failures_total = Counter(
            f"{namespace}_cleanup_failures_total",
            "Total failed clean-ups of temporary tables",
            ["table"],
            registry=self.registry
        )

        self._result_types: Dict[str, set] = {}

        logger.debug("SyncMetrics initialized")

    def record_census(self, table: str, census: TableCensus) -> None:
        """Record a loaded census; failed loads are skipped."""
        if not census.loaded:
            return

        self.table_features.labels(table=table, side=census.side).set(census.feature_count)
        self.blank_keys.labels(table=table, side=census.side).set(census.blank_key_count)
        self.duplicate_keys.labels(table=table, side=census.side).set(census.duplicate_key_count)

    def record_compare(
        self,
        table: str,
        status: str,
        duration_seconds: float,
        summaries: Iterable[ResultSummary] = ()
    ) -> None:
        """
        Record a compare run.

        Args:
            table: Remote table name
            status: "identical", "differences" or "failed"
            duration_seconds: Duration in seconds
            summaries: Result summaries of the run
        """
        self.compare_runs_total.labels(table=table, status=status).inc()
        self.operation_duration_seconds.labels(table=table, operation="compare").observe(duration_seconds)

        totals: Dict[str, int] = {}
        for summary in summaries:
            totals[summary.result_type] = totals.get(summary.result_type, 0) + summary.count

        # Types absent from this run drop to zero rather than keeping stale values
        for result_type in self._result_types.get(table, set()) - set(totals):
            self.comparison_rows.labels(table=table, result_type=result_type).set(0)

        for result_type, count in totals.items():
            self.comparison_rows.labels(table=table, result_type=result_type).set(count)

        self._result_types.setdefault(table, set()).update(totals)

        logger.debug(f"Recorded compare metrics for {table}: status={status}, rows={totals}")

    def record_apply(self, table: str, outcome: str, duration_seconds: float) -> None:
        """Record an apply run."""
        self.apply_runs_total.labels(table=table, outcome=outcome).inc()
        self.operation_duration_seconds.labels(table=table, operation="apply").observe(duration_seconds)

    def record_cleanup_failure(self, table: str) -> None:
        self.cleanup_failures_total.labels(table=table).inc()

    def serve(self, port: int) -> None:
        """Expose the registry over HTTP for scraping."""
        start_http_server(port, registry=self.registry)
        logger.info(f"Metrics server started on port {port}")

    def push(self, gateway_url: str, job_name: str = "datasync") -> None:
        """
        Push metrics to a Prometheus Pushgateway.

        Raises:
            Exception: If the push fails
        """
        try:
            push_to_gateway(gateway_url, job=job_name, registry=self.registry)
            logger.info(f"Pushed metrics to gateway: {gateway_url}")
        except Exception as e:
            logger.error(f"Failed to push metrics to gateway: {e}")
            raise

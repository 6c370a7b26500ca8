"""
Monitoring Module for DataSync

Prometheus metrics for compare and apply runs.

Usage:
    from datasync.monitoring import SyncMetrics

    metrics = SyncMetrics()
    metrics.record_apply(table="GIS.Parcels", outcome="success", duration_seconds=42.0)
    metrics.serve(8000)
"""

from datasync.monitoring.metrics import SyncMetrics

__all__ = [
    "SyncMetrics",
]

__version__ = "1.0.0"

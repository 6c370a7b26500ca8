"""
Reconciliation Module for DataSync

This module provides the compare/apply workflow between a local layer and
a remote SQL Server table.

Main components:
- models: Result rows, summaries, census, run states and outcomes
- aggregator: Grouping of comparison rows into summaries
- staging: Temporary and results table management
- census: Feature counts and key statistics per side
- engine: The compare/apply state machine
- session: Per-profile entry point with target locking

Usage:
    from datasync.reconciliation import SyncSession
    from datasync.utils.config import SyncConfig

    session = SyncSession.from_config(SyncConfig.from_yaml("parcels.yaml"))
    session.load_tables()

    outcome = session.compare()
    if outcome and not outcome.identical:
        result = session.run(confirmed=True)
        print(result.message)
"""

from datasync.reconciliation.aggregator import ResultAggregator
from datasync.reconciliation.census import CensusLoader
from datasync.reconciliation.engine import ReconciliationEngine
from datasync.reconciliation.models import (
    ApplyOutcome,
    ComparisonRow,
    CompareOutcome,
    ErrorKind,
    LoadOutcome,
    ResultSummary,
    RunOutcome,
    SyncError,
    SyncRunState,
    TableCensus,
)
from datasync.reconciliation.session import SyncSession
from datasync.reconciliation.staging import StagingManager

__all__ = [
    "ApplyOutcome",
    "CensusLoader",
    "ComparisonRow",
    "CompareOutcome",
    "ErrorKind",
    "LoadOutcome",
    "ReconciliationEngine",
    "ResultAggregator",
    "ResultSummary",
    "RunOutcome",
    "StagingManager",
    "SyncError",
    "SyncRunState",
    "SyncSession",
    "TableCensus",
]

__version__ = "1.0.0"

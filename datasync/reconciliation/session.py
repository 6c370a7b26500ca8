"""
Sync Session for DataSync

Holds the profile for one local layer / remote table pair and exposes the
user-facing operations: load the tables, compare them, and run the sync.

Staging and results tables are shared by every session targeting the same
(schema, remote table), so sessions in one process share a non-blocking
lock per target. Nothing prevents two processes from colliding.
"""

import logging
import threading
from typing import Dict, List, Optional, Tuple

from datasync.reconciliation.engine import ReconciliationEngine, StateObserver
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
)
from datasync.reconciliation.workspace import SqlTableWorkspace, Workspace
from datasync.utils.config import SyncConfig
from datasync.utils.sql_gateway import RemoteProcedureGateway, SqlServerGateway
from datasync.utils.sync_log import SyncLog

logger = logging.getLogger(__name__)

_registry_lock = threading.Lock()
_target_locks: Dict[Tuple[str, str], threading.Lock] = {}


def target_lock(schema: str, remote_table: str) -> threading.Lock:
    """Get the process-wide lock for a remote target."""
    key = (schema.lower(), remote_table.lower())
    with _registry_lock:
        lock = _target_locks.get(key)
        if lock is None:
            lock = threading.Lock()
            _target_locks[key] = lock
        return lock


class SyncSession:
    """
    Entry point for one sync profile.

    Example:
        >>> session = SyncSession.from_config(SyncConfig.from_yaml("parcels.yaml"))
        >>> if session.load_tables() and session.compare():
        ...     outcome = session.run(confirmed=True)
    """

    def __init__(
        self,
        config: SyncConfig,
        gateway: RemoteProcedureGateway,
        workspace: Workspace,
        metrics=None,
        sync_log: Optional[SyncLog] = None,
        on_state_changed: Optional[StateObserver] = None
    ):
        """
        Initialize the session.

        Args:
            config: Sync profile
            gateway: Remote database gateway
            workspace: Client working view
            metrics: Optional SyncMetrics
            sync_log: Audit log (built from ``log_file_path`` if not provided)
            on_state_changed: Callback invoked with every new state
        """
        self.config = config
        self.gateway = gateway
        self.workspace = workspace
        self.sync_log = sync_log or SyncLog(config.log_file_path)
        self.engine = ReconciliationEngine(
            config,
            gateway,
            workspace,
            metrics=metrics,
            sync_log=self.sync_log,
            on_state_changed=on_state_changed,
        )
        self._lock = target_lock(config.database_schema, config.remote_table)

        logger.info(f"Sync session ready for {config.local_layer} -> {config.qualified_remote_table}")

    @classmethod
    def from_config(cls, config: SyncConfig, metrics=None, **kwargs) -> "SyncSession":
        """
        Build a session backed by SQL Server.

        The local layer is read from ``local_table`` in the same database
        (or from a table named like the layer when it is not set).
        """
        db = config.database
        connection_string = SqlServerGateway.build_connection_string(
            server=db.server,
            database=db.database,
            driver=db.driver,
            username=db.username,
            password=db.password,
            trusted_connection=db.trusted_connection,
            encrypt=db.encrypt,
        )
        gateway = SqlServerGateway(connection_string, timeout_seconds=db.timeout_seconds)
        workspace = SqlTableWorkspace(gateway, {config.local_layer: config.local_table or config.local_layer})
        return cls(config, gateway, workspace, metrics=metrics, **kwargs)

    @property
    def state(self) -> SyncRunState:
        return self.engine.state

    @property
    def summaries(self) -> List[ResultSummary]:
        return list(self.engine.summaries)

    @property
    def has_warnings(self) -> bool:
        return self.engine.has_warnings

    def _busy_error(self) -> SyncError:
        logger.warning(f"{self.config.qualified_remote_table} is busy in another session")
        return SyncError(
            ErrorKind.BUSY,
            f"Another operation on {self.config.qualified_remote_table} is in progress.",
        )

    def load_tables(self) -> LoadOutcome:
        """Load the census of both tables."""
        if not self._lock.acquire(blocking=False):
            return LoadOutcome(error=self._busy_error())
        try:
            return self.engine.load_tables()
        finally:
            self._lock.release()

    def compare(self) -> CompareOutcome:
        """Compare the local layer with the remote table."""
        if not self._lock.acquire(blocking=False):
            error = self._busy_error()
            return CompareOutcome(state=self.state, error=error, message=error.message)
        try:
            return self.engine.compare()
        finally:
            self._lock.release()

    def run(
        self,
        confirmed: bool = False,
        clear_log: Optional[bool] = None,
        open_log: Optional[bool] = None
    ) -> ApplyOutcome:
        """
        Apply the compared differences.

        Args:
            confirmed: User accepted the warning result types
            clear_log: Archive the previous log (profile default when None)
            open_log: Open the log afterwards (profile default when None)
        """
        if not self._lock.acquire(blocking=False):
            return ApplyOutcome(
                state=self.state,
                outcome=RunOutcome.ENDED_UNEXPECTEDLY,
                error=self._busy_error(),
            )
        try:
            return self.engine.run(confirmed=confirmed, archive_log=clear_log, open_log=open_log)
        finally:
            self._lock.release()

    def details_for(self, result_type: str, description: Optional[str] = None) -> List[ComparisonRow]:
        """Detail rows behind a summary entry of the last compare."""
        return self.engine.aggregator.details_for(self.engine.rows, result_type, description)

    def table_summary_text(self) -> str:
        """Local and remote feature counts from the last load."""
        outcome = self.engine.load_outcome
        return outcome.summary_text() if outcome is not None else ""

    def close(self) -> None:
        """Close the audit log and the database connection."""
        self.sync_log.close()
        close = getattr(self.gateway, "close", None)
        if close is not None:
            close()
        logger.debug("Sync session closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

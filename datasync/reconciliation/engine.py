"""
Reconciliation Engine for DataSync

Orchestrates one compare/apply cycle between a local layer and a remote
SQL Server table:

    load -> compare -> classify -> summarize -> (confirm) -> apply
         -> verify -> reload -> cleanup

The engine owns the run state machine. Its public operations never raise;
every failure comes back as a classified SyncError inside an outcome.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from datasync.reconciliation.aggregator import ResultAggregator
from datasync.reconciliation.census import CensusLoader
from datasync.reconciliation.models import (
    ApplyOutcome,
    ComparisonRow,
    CompareOutcome,
    ErrorKind,
    LoadOutcome,
    ResultSummary,
    RunOutcome,
    StepResult,
    SyncError,
    SyncRunState,
    check_transition,
)
from datasync.reconciliation.pipeline import Pipeline
from datasync.reconciliation.staging import StagingManager, results_table_name
from datasync.reconciliation.workspace import Workspace
from datasync.utils.config import SyncConfig
from datasync.utils.run_context import RunContext
from datasync.utils.sql_gateway import ProcedureError, ProcedureTimeout, RemoteProcedureGateway
from datasync.utils.sync_log import SyncLog, SyncLogError

logger = logging.getLogger(__name__)

StateObserver = Callable[[SyncRunState], None]


class ReconciliationEngine:
    """
    Compare/apply state machine for one local layer / remote table pair.

    Not safe for concurrent use; SyncSession serializes access per target.
    """

    def __init__(
        self,
        config: SyncConfig,
        gateway: RemoteProcedureGateway,
        workspace: Workspace,
        staging: Optional[StagingManager] = None,
        census: Optional[CensusLoader] = None,
        aggregator: Optional[ResultAggregator] = None,
        metrics=None,
        sync_log: Optional[SyncLog] = None,
        on_state_changed: Optional[StateObserver] = None
    ):
        """
        Initialize the engine.

        Args:
            config: Sync profile
            gateway: Remote database gateway
            workspace: Client working view
            staging: Staging manager (built from the profile if not provided)
            census: Census loader (built from the profile if not provided)
            aggregator: Result aggregator
            metrics: Optional SyncMetrics
            sync_log: Audit log written during apply
            on_state_changed: Callback invoked with every new state
        """
        self.config = config
        self.gateway = gateway
        self.workspace = workspace
        self.staging = staging or StagingManager(
            gateway, workspace, config.database_schema, config.clear_stored_procedure
        )
        self.census = census or CensusLoader(
            gateway, workspace, config.database_schema, config.key_column, config.spatial_column
        )
        self.aggregator = aggregator or ResultAggregator()
        self.metrics = metrics
        self.sync_log = sync_log
        self.on_state_changed = on_state_changed

        self.state = SyncRunState.IDLE
        self.load_outcome: Optional[LoadOutcome] = None
        self.rows: List[ComparisonRow] = []
        self.summaries: List[ResultSummary] = []
        self.has_warnings = False
        self.identical = False

        logger.debug(f"Initialized ReconciliationEngine for {config.qualified_remote_table}")

    @property
    def table_label(self) -> str:
        return self.config.qualified_remote_table

    @property
    def results_table(self) -> str:
        return f"{self.config.database_schema}.{results_table_name(self.config.remote_table)}"

    def _set_state(self, target: SyncRunState) -> None:
        self.state = check_transition(self.state, target)
        logger.debug(f"State -> {target.value}")

        if self.on_state_changed is not None:
            try:
                self.on_state_changed(target)
            except Exception as e:
                logger.error(f"State observer failed on {target.value}: {e}", exc_info=True)

    def _discard_results(self) -> None:
        self.rows = []
        self.summaries = []
        self.has_warnings = False
        self.identical = False

    def _busy(self) -> Optional[SyncError]:
        if self.state.is_busy:
            logger.warning(f"Rejected request while {self.state.value}")
            return SyncError(ErrorKind.BUSY, f"An operation is already in progress ({self.state.value}).")
        return None

    def _load_census(self) -> LoadOutcome:
        outcome = self.census.load(self.config.local_layer, self.config.remote_table)
        self.load_outcome = outcome

        if self.metrics is not None:
            for side in (outcome.local, outcome.remote):
                if side is not None:
                    self.metrics.record_census(self.table_label, side)

        return outcome

    # ------------------------------------------------------------------
    # Load
    # ------------------------------------------------------------------

    def load_tables(self) -> LoadOutcome:
        """
        Load the census of both sides.

        Any previous comparison is discarded. Warnings about blank or
        duplicate keys do not block compare; load errors do.

        Returns:
            LoadOutcome; BUSY if another operation is in flight
        """
        busy = self._busy()
        if busy:
            return LoadOutcome(error=busy)

        self._set_state(SyncRunState.TABLES_LOADING)
        self._discard_results()

        try:
            outcome = self._load_census()
        except Exception as e:
            logger.error(f"Unexpected error loading tables: {e}", exc_info=True)
            outcome = LoadOutcome(error=SyncError(ErrorKind.LOAD_ERROR, f"Error loading tables: {e}"))
            self.load_outcome = outcome

        self._set_state(SyncRunState.TABLES_LOADED if outcome else SyncRunState.IDLE)

        if outcome:
            logger.info(f"Tables loaded for {self.table_label}")
        else:
            logger.warning(f"Loading tables failed: {outcome.error.message}")
        return outcome

    # ------------------------------------------------------------------
    # Compare
    # ------------------------------------------------------------------

    def _compare_ready(self) -> Optional[SyncError]:
        if self.state is not SyncRunState.TABLES_LOADED and not self.state.is_compared:
            return SyncError(ErrorKind.NOT_READY, "Load the tables before running a comparison.")

        census = self.load_outcome
        if census is None or not census.ok or not census.local.loaded or not census.remote.loaded:
            return SyncError(ErrorKind.NOT_READY, "Both tables must load without errors before comparing.")
        return None

    def _invoke_compare(self) -> StepResult:
        config = self.config
        results_table = results_table_name(config.remote_table)

        try:
            self.gateway.execute(
                config.check_stored_procedure,
                config.database_schema,
                results_table,
                config.remote_table,
                config.key_column,
                config.spatial_column,
            )
        except ProcedureTimeout as e:
            logger.error(f"Compare procedure timed out: {e}")
            return StepResult.failure(ErrorKind.TIMED_OUT, f"Comparison timed out: {e}")
        except ProcedureError as e:
            logger.error(f"Compare procedure failed: {e}")
            return StepResult.failure(ErrorKind.COMPARISON_FAILED, f"Error running comparison: {e}")

        if not self.gateway.table_exists(self.results_table):
            logger.error(f"Results table {self.results_table} missing after compare")
            return StepResult.failure(
                ErrorKind.COMPARISON_FAILED, f"Comparison results table '{self.results_table}' not found."
            )

        count = self.gateway.row_count(self.results_table)
        if count < 0:
            return StepResult.failure(ErrorKind.COMPARISON_FAILED, "Error counting comparison results.")

        logger.info(f"Compare procedure returned {count} rows")
        return StepResult.success(count)

    def _to_row(self, record: Dict[str, Any]) -> ComparisonRow:
        columns = self.config.result_columns
        return ComparisonRow(
            result_type=_text(record.get(columns.type)) or "",
            description=_text(record.get(columns.description)) or "",
            new_key=_text(record.get(columns.new_key)),
            old_key=_text(record.get(columns.old_key)),
            new_area=_number(record.get(columns.new_area)),
            old_area=_number(record.get(columns.old_area)),
        )

    def _read_results(self, count: int) -> StepResult:
        if count == 0:
            return StepResult.success([])

        columns = self.config.result_columns
        try:
            records = self.gateway.fetch_rows(self.results_table, columns.select_list(), columns.order_by())
        except ProcedureError as e:
            logger.error(f"Failed to read comparison results: {e}")
            return StepResult.failure(ErrorKind.COMPARISON_FAILED, f"Error reading comparison results: {e}")

        return StepResult.success([self._to_row(record) for record in records])

    def compare(self) -> CompareOutcome:
        """
        Compare the local layer with the remote table.

        Requires loaded tables (or a previous compare) with both censuses
        loaded. Each call starts from scratch; rows from a previous compare
        are discarded.

        Returns:
            CompareOutcome. On failure the state returns to TABLES_LOADED.
        """
        error = self._busy() or self._compare_ready()
        if error:
            return CompareOutcome(state=self.state, error=error, message=error.message)

        config = self.config

        with RunContext("compare"):
            # A repeat compare starts again from the loaded tables
            if self.state.is_compared:
                self._set_state(SyncRunState.TABLES_LOADED)
            self._set_state(SyncRunState.COMPARING)
            self._discard_results()

            pipeline = (
                Pipeline("compare", ErrorKind.COMPARISON_FAILED)
                .step("clear_selection", lambda: self.workspace.clear_selection(config.local_layer))
                .step("stage", lambda: self.staging.prepare_for_compare(config.local_layer, config.remote_table))
                .step("show_remote", lambda: self.staging.ensure_remote_layer_visible(
                    config.remote_layer, config.remote_table, config.local_layer
                ))
                .step("invoke", self._invoke_compare)
                .step("read", lambda: self._read_results(pipeline.value("invoke")))
            )
            result = pipeline.run()

            if not result:
                self._set_state(SyncRunState.TABLES_LOADED)
                if self.metrics is not None:
                    self.metrics.record_compare(self.table_label, "failed", result.duration_seconds)
                return CompareOutcome(state=self.state, error=result.error, message=result.error.message)

            self.rows = result.value("read")

            if not self.rows:
                self.identical = True
                self._set_state(SyncRunState.COMPARED_IDENTICAL)
                message = "The local and remote tables are identical."
                logger.info(message)
            else:
                self.summaries = self.aggregator.aggregate(self.rows)
                self.has_warnings = self.aggregator.has_warning_types(self.summaries)
                self._set_state(SyncRunState.COMPARED_DIFFERENCES)
                message = f"{len(self.rows)} differences found."
                logger.info(f"{message} Warning types present: {self.has_warnings}")

            if self.metrics is not None:
                status = "identical" if self.identical else "differences"
                self.metrics.record_compare(self.table_label, status, result.duration_seconds, self.summaries)

        return CompareOutcome(
            state=self.state,
            identical=self.identical,
            rows=list(self.rows),
            summaries=list(self.summaries),
            has_warnings=self.has_warnings,
            message=message,
        )

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def _audit(self, line: str) -> None:
        if self.sync_log is not None:
            self.sync_log.write(line)

    def _run_update(self) -> StepResult:
        config = self.config
        self._audit(f"Running update procedure {config.update_stored_procedure}")

        try:
            self.gateway.execute(
                config.update_stored_procedure,
                config.database_schema,
                config.remote_table,
                config.key_column,
                config.spatial_column,
            )
        except ProcedureTimeout as e:
            logger.error(f"Update procedure timed out: {e}")
            self._audit(f"Update procedure timed out: {e}")
            return StepResult.failure(ErrorKind.TIMED_OUT, f"Update timed out: {e}")
        except ProcedureError as e:
            logger.error(f"Update procedure failed: {e}")
            self._audit(f"Error running update procedure: {e}")
            return StepResult.failure(ErrorKind.APPLY_FAILED, f"Error running update: {e}")

        self._audit("Update procedure complete")
        return StepResult.success()

    def _verify_remote(self) -> StepResult:
        qualified = self.config.qualified_remote_table

        if not self.gateway.table_exists(qualified):
            self._audit(f"Updated remote table '{qualified}' not found.")
            return StepResult.failure(ErrorKind.APPLY_FAILED, f"Updated remote table '{qualified}' not found.")

        count = self.gateway.row_count(qualified)
        if count < 0:
            self._audit("Error counting updated remote table.")
            return StepResult.failure(ErrorKind.APPLY_FAILED, "Error counting updated remote table.")
        if count == 0:
            self._audit("Updated remote table is empty.")
            return StepResult.failure(ErrorKind.APPLY_FAILED, "Updated remote table is empty.")

        self._audit(f"Updated remote table has {count} features")
        return StepResult.success(count)

    def _reload(self) -> StepResult:
        self._audit("Reloading table details")
        self._set_state(SyncRunState.TABLES_LOADING)

        outcome = self._load_census()
        if not outcome:
            self._audit(f"Error reloading table details: {outcome.error.message}")
            return StepResult(error=outcome.error)

        self._set_state(SyncRunState.TABLES_LOADED)
        self._audit(outcome.summary_text().replace("\n", ", "))
        return StepResult.success()

    def _cleanup(self) -> StepResult:
        self._set_state(SyncRunState.CLEANING_UP)
        self._audit("Clearing temporary tables")

        result = self.staging.cleanup(self.config.remote_table)
        if not result:
            self._audit(result.error.message)
            if self.metrics is not None:
                self.metrics.record_cleanup_failure(self.table_label)

        self.workspace.clear_selection(self.config.local_layer)
        return result

    def _write_preamble(self) -> None:
        census = self.load_outcome
        self._audit(f"Synchronising '{self.config.local_layer}' to '{self.config.qualified_remote_table}'")

        if census is not None and census.local is not None and census.remote is not None:
            self._audit(census.local.count_text())
            self._audit(census.remote.count_text())

        self._audit("Comparison results:")
        for line in self.aggregator.breakdown_lines(self.summaries):
            self._audit(line)

    def _refuse(self, kind: ErrorKind, message: str) -> ApplyOutcome:
        logger.warning(message)
        return ApplyOutcome(
            state=self.state,
            outcome=RunOutcome.ENDED_UNEXPECTEDLY,
            error=SyncError(kind, message),
        )

    def run(
        self,
        confirmed: bool = False,
        archive_log: Optional[bool] = None,
        open_log: Optional[bool] = None
    ) -> ApplyOutcome:
        """
        Apply the reviewed differences to the remote table.

        Rows typed empty, error or orphan are skipped by the update
        procedure, so their presence requires ``confirmed=True``. Once the
        update starts, the census reload and the temporary table cleanup
        run whatever happens.

        Args:
            confirmed: User accepted the warning types
            archive_log: Archive the previous audit log (profile default
                when None)
            open_log: Open the audit log afterwards (profile default when
                None); it is always opened after errors

        Returns:
            ApplyOutcome with the terminal state and the user-facing outcome
        """
        busy = self._busy()
        if busy:
            return ApplyOutcome(state=self.state, outcome=RunOutcome.ENDED_UNEXPECTEDLY, error=busy)

        if self.state is not SyncRunState.COMPARED_DIFFERENCES:
            return self._refuse(ErrorKind.NOT_READY, "Run a comparison with differences before applying.")

        if self.has_warnings and not confirmed:
            return self._refuse(
                ErrorKind.NOT_CONFIRMED,
                "Empty, error or orphan results will not be applied; confirmation is required.",
            )

        if archive_log is None:
            archive_log = self.config.default_clear_log_file
        if open_log is None:
            open_log = self.config.default_open_log_file

        with RunContext("apply"):
            if self.sync_log is not None:
                try:
                    self.sync_log.open(archive_previous=archive_log)
                except SyncLogError as e:
                    logger.error(f"Cannot prepare the log file: {e}")
                    return self._refuse(ErrorKind.LOG_ERROR, str(e))

            self._write_preamble()
            self._set_state(SyncRunState.APPLYING)

            result = (
                Pipeline("apply", ErrorKind.APPLY_FAILED)
                .step("update", self._run_update)
                .step("verify", self._verify_remote)
                .always("reload", self._reload)
                .always("cleanup", self._cleanup)
                .run()
            )

            if result:
                outcome = RunOutcome.SUCCESS
                self._set_state(SyncRunState.APPLIED_SUCCESS)
            else:
                outcome = RunOutcome.ENDED_WITH_ERRORS
                self._set_state(SyncRunState.APPLIED_FAILURE)

            logger.info(f"Apply finished: {outcome.value}")

            log_opened = False
            if self.sync_log is not None:
                self.sync_log.banner(outcome.value)
                self.sync_log.close()
                if open_log or not result:
                    log_opened = self.sync_log.show()

            if self.metrics is not None:
                self.metrics.record_apply(self.table_label, outcome.name.lower(), result.duration_seconds)

        remote_count = result.value("verify")
        return ApplyOutcome(
            state=self.state,
            outcome=outcome,
            error=result.error,
            cleanup_error=result.finalizers["cleanup"].error,
            remote_count=remote_count if remote_count is not None else -1,
            log_opened=log_opened,
        )


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def _number(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None

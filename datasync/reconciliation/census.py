"""
Table Census for DataSync Reconciliation

Loads feature counts and key statistics for the local layer and the
remote table. Both sides are loaded concurrently and both results are
inspected once both have finished.
"""

import concurrent.futures
import logging
from typing import List, Optional

from datasync.reconciliation.models import ErrorKind, LoadOutcome, SyncError, TableCensus
from datasync.reconciliation.workspace import Workspace, count_key_problems
from datasync.utils.sql_gateway import ProcedureError, RemoteProcedureGateway

logger = logging.getLogger(__name__)


class CensusLoader:
    """Builds a TableCensus for each side of the sync."""

    def __init__(
        self,
        gateway: RemoteProcedureGateway,
        workspace: Workspace,
        schema: str,
        key_column: str,
        spatial_column: str
    ):
        self.gateway = gateway
        self.workspace = workspace
        self.schema = schema
        self.key_column = key_column
        self.spatial_column = spatial_column

    def load_local(self, local_layer: str) -> TableCensus:
        """
        Check and count the local layer.

        Args:
            local_layer: Layer name in the workspace

        Returns:
            TableCensus; ``error`` names the first missing layer or field
        """
        if not self.workspace.has_layer(local_layer):
            return TableCensus("local", local_layer, error=f"Local layer '{local_layer}' not found.")

        for column, label in ((self.key_column, "Key"), (self.spatial_column, "Spatial")):
            if not self.workspace.field_exists(local_layer, column):
                return TableCensus(
                    "local", local_layer,
                    error=f"{label} column '{column}' not found in local layer '{local_layer}'"
                )

        count = self.workspace.count_features(local_layer)
        blank, duplicates = count_key_problems(self.workspace.key_values(local_layer, self.key_column))

        logger.info(f"Local layer '{local_layer}': {count} features, {blank} blank keys, {duplicates} duplicate keys")
        return TableCensus("local", local_layer, count, blank, duplicates)

    def load_remote(self, remote_table: str) -> TableCensus:
        """
        Check and count the remote table.

        Args:
            remote_table: Remote base table name (unqualified)

        Returns:
            TableCensus; ``error`` names the first missing table or field
        """
        qualified = f"{self.schema}.{remote_table}"

        if not self.gateway.table_exists(qualified):
            return TableCensus("remote", remote_table, error=f"Remote table '{remote_table}' not found.")

        for column, label in ((self.key_column, "Key"), (self.spatial_column, "Spatial")):
            if not self.gateway.column_exists(qualified, column):
                return TableCensus(
                    "remote", remote_table,
                    error=f"{label} column '{column}' not found in remote table '{remote_table}'"
                )

        count = self.gateway.row_count(qualified)

        try:
            blank, duplicates = self.gateway.key_statistics(qualified, self.key_column)
        except ProcedureError as e:
            logger.error(f"Failed to read key statistics for {qualified}: {e}")
            return TableCensus("remote", remote_table, count, error=f"Error reading keys of remote table '{remote_table}'")

        logger.info(f"Remote table '{qualified}': {count} features, {blank} blank keys, {duplicates} duplicate keys")
        return TableCensus("remote", remote_table, count, blank, duplicates)

    def _safe(self, side: str, name: str, loader) -> TableCensus:
        """Run a loader, converting unexpected errors into a census error."""
        try:
            return loader(name)
        except Exception as e:
            logger.error(f"Unexpected error loading {side} table '{name}': {e}", exc_info=True)
            return TableCensus(side, name, error=f"Error loading {side} table '{name}': {e}")

    def load(self, local_layer: str, remote_table: str) -> LoadOutcome:
        """
        Load both sides concurrently.

        A failure on one side does not cancel the other. Load errors are
        reported local first; key warnings never block compare.

        Args:
            local_layer: Local layer name
            remote_table: Remote base table name

        Returns:
            LoadOutcome with both censuses, the first error and all warnings
        """
        with concurrent.futures.ThreadPoolExecutor(max_workers=2) as executor:
            local_future = executor.submit(self._safe, "local", local_layer, self.load_local)
            remote_future = executor.submit(self._safe, "remote", remote_table, self.load_remote)
            concurrent.futures.wait([local_future, remote_future])

        local = local_future.result()
        remote = remote_future.result()

        error: Optional[SyncError] = None
        for census in (local, remote):
            if not census.loaded:
                error = SyncError(ErrorKind.LOAD_ERROR, census.error)
                logger.warning(census.error)
                break

        warnings: List[str] = []
        if error is None:
            warnings = local.warnings + remote.warnings
            for message in warnings:
                logger.warning(message)

        return LoadOutcome(local=local, remote=remote, error=error, warnings=warnings)

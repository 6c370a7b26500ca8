"""
Staging Manager for DataSync Reconciliation

Manages the ephemeral server-side artifacts of a compare/apply cycle: the
results table left by a previous compare, the uploaded snapshot of the
local layer, the remote layer in the client's view, and the temporary
tables removed once an apply finishes.
"""

import logging

from datasync.reconciliation.models import ErrorKind, StepResult
from datasync.reconciliation.workspace import Workspace
from datasync.utils.sql_gateway import ProcedureError, ProcedureTimeout, RemoteProcedureGateway

logger = logging.getLogger(__name__)

STAGING_SUFFIX = "_TEMP"
RESULTS_SUFFIX = "_SYNC"


def staging_table_name(schema: str, remote_table: str) -> str:
    return f"{schema}.{remote_table}{STAGING_SUFFIX}"


def results_table_name(remote_table: str) -> str:
    return f"{remote_table}{RESULTS_SUFFIX}"


class StagingManager:
    """
    Prepares and removes the staging tables for one remote target.

    Staging and results tables are scoped to (schema, remote table) only,
    so two runs against the same target must not overlap.
    """

    def __init__(
        self,
        gateway: RemoteProcedureGateway,
        workspace: Workspace,
        schema: str,
        clear_procedure: str
    ):
        """
        Initialize the staging manager.

        Args:
            gateway: Remote database gateway
            workspace: Client working view
            schema: Remote schema
            clear_procedure: Procedure that drops the temporary tables
        """
        self.gateway = gateway
        self.workspace = workspace
        self.schema = schema
        self.clear_procedure = clear_procedure
        logger.debug(f"Initialized StagingManager for schema {schema}")

    def prepare_for_compare(self, local_layer: str, remote_table: str) -> StepResult:
        """
        Remove old results and upload the local snapshot.

        Args:
            local_layer: Local layer to upload
            remote_table: Remote base table name

        Returns:
            StepResult; STAGING_ERROR if the results table cannot be
            removed or the upload fails
        """
        results_table = f"{self.schema}.{results_table_name(remote_table)}"

        if self.gateway.table_exists(results_table):
            try:
                self.gateway.delete_table(results_table)
            except ProcedureError as e:
                logger.error(f"Failed to delete results table {results_table}: {e}")
                return StepResult.failure(ErrorKind.STAGING_ERROR, f"Cannot delete previous results table: {e}")
            logger.info(f"Deleted previous results table {results_table}")

        target = staging_table_name(self.schema, remote_table)
        logger.info(f"Uploading local layer '{local_layer}' to {target}")

        if not self.workspace.copy_features(local_layer, target):
            logger.error(f"Upload of local layer '{local_layer}' failed")
            return StepResult.failure(ErrorKind.STAGING_ERROR, "Error uploading local layer.")

        logger.info("Upload to server complete")
        return StepResult.success(target)

    def ensure_remote_layer_visible(self, remote_layer: str, remote_table: str, local_layer: str) -> StepResult:
        """
        Add the remote layer to the view just after the local layer.

        Args:
            remote_layer: Display name of the remote layer
            remote_table: Remote base table name
            local_layer: Layer the remote one is placed after

        Returns:
            StepResult whose value is True when the layer was added, False
            when it was already present; STAGING_ERROR on failure
        """
        if self.workspace.has_layer(remote_layer):
            return StepResult.success(False)

        logger.info(f"Adding remote layer '{remote_layer}' to the view")
        index = self.workspace.layer_index(local_layer) + 1

        if not self.workspace.add_layer(f"{self.schema}.{remote_table}", index, remote_layer):
            logger.error(f"Failed to add remote layer '{remote_layer}'")
            return StepResult.failure(ErrorKind.STAGING_ERROR, "Error adding remote layer to map.")

        return StepResult.success(True)

    def cleanup(self, remote_table: str) -> StepResult:
        """
        Remove the temporary tables for a target.

        Failures are returned for logging only; they never change the
        outcome of the run that preceded them.

        Args:
            remote_table: Remote base table name

        Returns:
            StepResult; CLEANUP_FAILED (or TIMED_OUT) on failure
        """
        try:
            self.gateway.execute(self.clear_procedure, self.schema, remote_table)
        except ProcedureTimeout as e:
            logger.warning(f"Clearing temporary tables timed out: {e}")
            return StepResult.failure(ErrorKind.TIMED_OUT, f"Error deleting the SQL temporary tables: {e}")
        except ProcedureError as e:
            logger.warning(f"Failed to clear temporary tables: {e}")
            return StepResult.failure(ErrorKind.CLEANUP_FAILED, f"Error deleting the SQL temporary tables: {e}")

        logger.info(f"Cleared temporary tables for {self.schema}.{remote_table}")
        return StepResult.success()

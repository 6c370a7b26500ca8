"""
Workspace collaborator for DataSync

The workspace is the client's working view: the local layer being edited,
the remote layer shown alongside it, selections, and the upload of the
local snapshot to the server. A desktop GIS supplies its own Workspace;
SqlTableWorkspace serves headless runs where the local layer is itself a
table in the same database.
"""

import logging
from abc import ABC, abstractmethod
from collections import Counter
from typing import Iterable, List, Optional, Tuple

from datasync.utils.sql_gateway import ProcedureError, RemoteProcedureGateway

logger = logging.getLogger(__name__)


def count_key_problems(keys: Iterable[Optional[str]]) -> Tuple[int, int]:
    """
    Count blank and duplicate keys.

    Args:
        keys: Key values, None for missing

    Returns:
        (blank key count, number of distinct keys occurring more than once)
    """
    blank = 0
    counts: Counter = Counter()

    for key in keys:
        if key is None or str(key).strip() == "":
            blank += 1
        else:
            counts[str(key).strip()] += 1

    duplicates = sum(1 for count in counts.values() if count > 1)
    return blank, duplicates


class Workspace(ABC):
    """Contract for the client's working view."""

    @abstractmethod
    def has_layer(self, layer_name: str) -> bool:
        """Check whether a layer is loaded in the view."""

    @abstractmethod
    def layer_index(self, layer_name: str) -> int:
        """Position of a layer in the view, -1 if absent."""

    @abstractmethod
    def add_layer(self, table_path: str, index: int, layer_name: str) -> bool:
        """Add a table to the view as a layer at a position."""

    @abstractmethod
    def field_exists(self, layer_name: str, field_name: str) -> bool:
        """Check whether a layer has a field."""

    @abstractmethod
    def count_features(self, layer_name: str) -> int:
        """Count features in a layer, -1 on error."""

    @abstractmethod
    def key_values(self, layer_name: str, key_column: str) -> List[Optional[str]]:
        """Read all key values of a layer."""

    @abstractmethod
    def clear_selection(self, layer_name: str) -> None:
        """Clear any selection/highlight on a layer."""

    @abstractmethod
    def copy_features(self, layer_name: str, target_table: str) -> bool:
        """Upload a layer's features to a remote table, replacing any existing one."""


class SqlTableWorkspace(Workspace):
    """
    Workspace whose local layer is a table in the remote database.

    Layer order is kept in memory; selections do not exist and clearing
    them is a no-op.
    """

    def __init__(self, gateway: RemoteProcedureGateway, local_tables: Optional[dict] = None):
        """
        Initialize the workspace.

        Args:
            gateway: Gateway to the database holding the tables
            local_tables: Mapping of layer name to qualified table name
        """
        self.gateway = gateway
        self.layers: List[Tuple[str, str]] = list((local_tables or {}).items())
        logger.debug(f"Initialized SqlTableWorkspace with {len(self.layers)} layers")

    def _table(self, layer_name: str) -> Optional[str]:
        for name, table in self.layers:
            if name == layer_name:
                return table
        return None

    def has_layer(self, layer_name: str) -> bool:
        return self._table(layer_name) is not None

    def layer_index(self, layer_name: str) -> int:
        for i, (name, _) in enumerate(self.layers):
            if name == layer_name:
                return i
        return -1

    def add_layer(self, table_path: str, index: int, layer_name: str) -> bool:
        if not self.gateway.table_exists(table_path):
            logger.error(f"Cannot add layer '{layer_name}': table {table_path} not found")
            return False

        index = max(0, min(index, len(self.layers)))
        self.layers.insert(index, (layer_name, table_path))
        logger.info(f"Added layer '{layer_name}' at position {index}")
        return True

    def field_exists(self, layer_name: str, field_name: str) -> bool:
        table = self._table(layer_name)
        return table is not None and self.gateway.column_exists(table, field_name)

    def count_features(self, layer_name: str) -> int:
        table = self._table(layer_name)
        if table is None:
            return -1
        return self.gateway.row_count(table)

    def key_values(self, layer_name: str, key_column: str) -> List[Optional[str]]:
        table = self._table(layer_name)
        if table is None:
            return []
        rows = self.gateway.fetch_rows(table, [key_column], [])
        return [row[key_column] for row in rows]

    def clear_selection(self, layer_name: str) -> None:
        logger.debug(f"No selection to clear on '{layer_name}'")

    def copy_features(self, layer_name: str, target_table: str) -> bool:
        table = self._table(layer_name)
        if table is None:
            logger.error(f"Cannot upload layer '{layer_name}': not in workspace")
            return False

        try:
            self.gateway.delete_table(target_table)
            self.gateway.copy_table(table, target_table)
        except ProcedureError as e:
            logger.error(f"Failed to upload layer '{layer_name}': {e}")
            return False

        return True

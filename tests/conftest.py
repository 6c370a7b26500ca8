"""
Pytest configuration and shared fixtures for DataSync tests.

Provides an in-memory gateway that records every call, a profile for a
"Parcels" layer / GIS.Parcels table pair, and an audit log under tmp_path.
"""

import pytest
from typing import Any, Callable, Dict, List, Optional, Sequence
from unittest.mock import patch

from datasync.reconciliation.workspace import SqlTableWorkspace, count_key_problems
from datasync.utils.config import SyncConfig
from datasync.utils.sql_gateway import ProcedureError, RemoteProcedureGateway
from datasync.utils.sync_log import SyncLog

SCHEMA = "GIS"
LOCAL_LAYER = "Parcels Local"
LOCAL_TABLE = "GIS.Parcels_Local"
REMOTE_TABLE = "Parcels"
REMOTE_LAYER = "Parcels Remote"
QUALIFIED_REMOTE = "GIS.Parcels"
RESULTS_TABLE = "GIS.Parcels_SYNC"
STAGING_TABLE = "GIS.Parcels_TEMP"

CHECK_PROC = "usp_CheckParcels"
UPDATE_PROC = "usp_UpdateParcels"
CLEAR_PROC = "usp_ClearParcels"


def result_row(result_type: str, description: str, ref: Optional[str] = None, ref_old: Optional[str] = None,
               area: Optional[float] = None, area_old: Optional[float] = None) -> Dict[str, Any]:
    """Row of the results table, using the default column names."""
    return {
        "Type": result_type,
        "Description": description,
        "Ref": ref,
        "RefOld": ref_old,
        "Area": area,
        "AreaOld": area_old,
    }


class FakeGateway(RemoteProcedureGateway):
    """
    In-memory RemoteProcedureGateway.

    Tables are lists of row dictionaries. Procedures are plain callables
    registered by name; ``failures`` maps a procedure name to the exception
    it raises. Every call is appended to ``calls`` as (method, args).
    """

    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.columns: Dict[str, set] = {}
        self.procedures: Dict[str, Callable] = {}
        self.failures: Dict[str, Exception] = {}
        self.count_errors: set = set()
        self.calls: List[tuple] = []

    def add_table(self, name: str, rows: List[Dict[str, Any]], columns: Optional[Sequence[str]] = None):
        self.tables[name] = [dict(row) for row in rows]
        self.columns[name] = set(columns) if columns is not None else {c for row in rows for c in row}

    def calls_to(self, method: str) -> List[tuple]:
        return [args for name, args in self.calls if name == method]

    def fetched(self, table: str) -> List[tuple]:
        return [args for args in self.calls_to("fetch_rows") if args[0] == table]

    def executed(self, procedure_name: str) -> List[tuple]:
        return [args[1:] for args in self.calls_to("execute") if args[0] == procedure_name]

    def execute(self, procedure_name: str, schema: str, *args: str) -> None:
        self.calls.append(("execute", (procedure_name, schema) + args))

        if procedure_name in self.failures:
            raise self.failures[procedure_name]

        procedure = self.procedures.get(procedure_name)
        if procedure is not None:
            procedure(self, schema, *args)

    def table_exists(self, name: str) -> bool:
        self.calls.append(("table_exists", (name,)))
        return name in self.tables

    def row_count(self, name: str) -> int:
        self.calls.append(("row_count", (name,)))
        if name not in self.tables or name in self.count_errors:
            return -1
        return len(self.tables[name])

    def delete_table(self, name: str) -> None:
        self.calls.append(("delete_table", (name,)))
        self.tables.pop(name, None)
        self.columns.pop(name, None)

    def column_exists(self, table: str, column: str) -> bool:
        self.calls.append(("column_exists", (table, column)))
        return column in self.columns.get(table, set())

    def key_statistics(self, table: str, key_column: str):
        self.calls.append(("key_statistics", (table, key_column)))
        return count_key_problems(row.get(key_column) for row in self.tables[table])

    def copy_table(self, source: str, target: str) -> None:
        self.calls.append(("copy_table", (source, target)))
        if target in self.tables:
            raise ProcedureError(f"There is already an object named '{target}' in the database")
        self.add_table(target, self.tables[source], self.columns[source])

    def fetch_rows(self, table: str, columns: Sequence[str], order_by: Sequence[str]) -> List[Dict[str, Any]]:
        self.calls.append(("fetch_rows", (table, tuple(columns), tuple(order_by))))
        return [{c: row.get(c) for c in columns} for row in self.tables[table]]


def install_procedures(gateway: FakeGateway, results: List[Dict[str, Any]]) -> None:
    """
    Register compare, update and clear procedures that behave like the
    server-side ones: compare writes ``results``, clear drops the staging
    table.
    """

    def check(gw, schema, results_table, remote_table, key_column, spatial_column):
        gw.add_table(f"{schema}.{results_table}", results, ["Type", "Description", "Ref", "RefOld", "Area", "AreaOld"])

    def update(gw, schema, remote_table, key_column, spatial_column):
        staged = gw.tables.get(f"{schema}.{remote_table}_TEMP", [])
        gw.add_table(f"{schema}.{remote_table}", staged, gw.columns.get(f"{schema}.{remote_table}"))

    def clear(gw, schema, remote_table):
        gw.tables.pop(f"{schema}.{remote_table}_TEMP", None)

    gateway.procedures[CHECK_PROC] = check
    gateway.procedures[UPDATE_PROC] = update
    gateway.procedures[CLEAR_PROC] = clear


@pytest.fixture
def profile(tmp_path) -> Dict[str, Any]:
    """Profile contents for the Parcels pair."""
    return {
        "log_file_path": str(tmp_path / "logs"),
        "database_schema": SCHEMA,
        "check_stored_procedure": CHECK_PROC,
        "update_stored_procedure": UPDATE_PROC,
        "clear_stored_procedure": CLEAR_PROC,
        "local_layer": LOCAL_LAYER,
        "local_table": LOCAL_TABLE,
        "remote_table": REMOTE_TABLE,
        "remote_layer": REMOTE_LAYER,
        "key_column": "Ref",
        "spatial_column": "Shape",
        "database": {"server": "sql01", "database": "gisdb", "username": "sync", "password": "secret"},
    }


@pytest.fixture
def config(profile) -> SyncConfig:
    return SyncConfig.from_dict(profile, apply_env=False)


@pytest.fixture
def gateway() -> FakeGateway:
    """Gateway holding a clean local and remote table and one difference."""
    gw = FakeGateway()
    gw.add_table(LOCAL_TABLE, [
        {"Ref": "K1", "Shape": "POLYGON 1"},
        {"Ref": "K2", "Shape": "POLYGON 2"},
        {"Ref": "K3", "Shape": "POLYGON 3"},
    ])
    gw.add_table(QUALIFIED_REMOTE, [
        {"Ref": "K1", "Shape": "POLYGON 1"},
        {"Ref": "K2", "Shape": "POLYGON 2"},
    ])
    install_procedures(gw, [result_row("Added", "new feature", "K3", area=12.5)])
    return gw


@pytest.fixture
def workspace(gateway) -> SqlTableWorkspace:
    return SqlTableWorkspace(gateway, {LOCAL_LAYER: LOCAL_TABLE})


@pytest.fixture
def sync_log(tmp_path) -> SyncLog:
    return SyncLog(str(tmp_path / "logs"), user_id="tester")


@pytest.fixture(autouse=True)
def no_browser():
    """Never launch a viewer for the audit log."""
    with patch("datasync.utils.sync_log.webbrowser.open", return_value=True) as mock_open:
        yield mock_open

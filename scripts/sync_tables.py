#!/usr/bin/env python3
"""
DataSync Command-Line Tool

Compares a local layer with its remote SQL Server table and applies the
differences, with support for:
- Table census with blank/duplicate key warnings
- Summary of classified differences before any change
- Confirmation when empty, error or orphan results are present
- Audit log archiving and opening
- Prometheus metrics via HTTP or Pushgateway

Usage:
    ./scripts/sync_tables.py --config parcels.yaml check
    ./scripts/sync_tables.py --config parcels.yaml sync
    ./scripts/sync_tables.py --config parcels.yaml sync --yes --clear-log
    ./scripts/sync_tables.py --config parcels.yaml --pushgateway localhost:9091 sync
"""

import sys
import os
import argparse
import logging
import json
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional
from pathlib import Path

# Add the project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from hvac.exceptions import VaultError

from datasync.monitoring import SyncMetrics
from datasync.reconciliation import SyncSession
from datasync.utils.config import ConfigError, SyncConfig
from datasync.utils.run_context import get_run_id, setup_run_logging


class StructuredJSONFormatter(logging.Formatter):
    """JSON formatter carrying the run id of the current compare or apply."""

    def format(self, record):
        log_data = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'run_id': getattr(record, 'run_id', None) or get_run_id(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        # Add extra fields
        if hasattr(record, 'table'):
            log_data['table'] = record.table
        if hasattr(record, 'operation') and record.operation != 'N/A':
            log_data['operation'] = record.operation
        if hasattr(record, 'duration'):
            log_data['duration_seconds'] = record.duration

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data)


# Human-readable handler for console
console_handler = logging.StreamHandler()
console_handler.setFormatter(logging.Formatter(
    '[%(asctime)s] %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
))

logger = logging.getLogger(__name__)
package_logger = logging.getLogger("datasync")

for _logger in (logger, package_logger):
    _logger.setLevel(logging.INFO)
    _logger.propagate = False

# JSON_LOGGING swaps the console output for structured records
if os.getenv('JSON_LOGGING', 'false').lower() == 'true':
    json_handler = logging.StreamHandler()
    json_handler.setFormatter(StructuredJSONFormatter())
    setup_run_logging(json_handler)
    logger.addHandler(json_handler)
    package_logger.addHandler(json_handler)
else:
    logger.addHandler(console_handler)
    package_logger.addHandler(console_handler)


def prompt_confirmation(summaries) -> bool:
    """Ask the user to accept results the update will skip."""
    print("\nThe following results will NOT be applied:")
    for summary in summaries:
        print(f"  {summary.count} {summary.result_type} - {summary.description}")

    answer = input("Continue with the sync? [y/N] ")
    return answer.strip().lower() in ("y", "yes")


class SyncTool:
    """Runs the check and sync commands for one profile."""

    def __init__(self, session: SyncSession):
        self.session = session

    def _load(self) -> Dict[str, Any]:
        outcome = self.session.load_tables()
        report = {
            "table": self.session.config.qualified_remote_table,
            "loaded": outcome.ok,
            "census": [c.to_dict() for c in (outcome.local, outcome.remote) if c is not None],
            "warnings": list(outcome.warnings),
        }
        if not outcome.ok:
            report["error"] = outcome.error.message
        return report

    def check(self) -> Dict[str, Any]:
        """
        Load both tables and compare them.

        Returns:
            Report with census, summaries and the identical flag
        """
        report = self._load()
        if not report["loaded"]:
            return report

        outcome = self.session.compare()
        report.update({
            "compared": outcome.ok,
            "identical": outcome.identical,
            "has_warnings": outcome.has_warnings,
            "summaries": [s.to_dict() for s in outcome.summaries],
            "message": outcome.message,
        })
        return report

    def sync(
        self,
        assume_yes: bool = False,
        clear_log: Optional[bool] = None,
        open_log: Optional[bool] = None,
        confirm: Callable = prompt_confirmation
    ) -> Dict[str, Any]:
        """
        Check the tables and apply the differences.

        Args:
            assume_yes: Skip the confirmation prompt
            clear_log: Archive the previous audit log
            open_log: Open the audit log afterwards
            confirm: Callback asked when warning results are present

        Returns:
            Report including the apply outcome
        """
        report = self.check()
        if not report.get("compared") or report.get("identical"):
            return report

        confirmed = assume_yes
        if self.session.has_warnings and not assume_yes:
            warnings = [s for s in self.session.summaries if s.is_warning]
            confirmed = confirm(warnings)

        outcome = self.session.run(confirmed=confirmed, clear_log=clear_log, open_log=open_log)
        report["apply"] = {
            "outcome": outcome.message,
            "severity": outcome.severity,
            "state": outcome.state.value,
            "remote_count": outcome.remote_count,
            "error": outcome.error.message if outcome.error else None,
            "cleanup_error": outcome.cleanup_error.message if outcome.cleanup_error else None,
            "log_file": str(self.session.sync_log.path),
        }
        return report


def succeeded(report: Dict[str, Any]) -> bool:
    """True when every attempted stage of the report succeeded."""
    if not report.get("loaded") or not report.get("compared", False):
        return False
    apply = report.get("apply")
    return apply is None or apply["severity"] == "success"


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="DataSync - reconcile a local layer with a remote SQL Server table",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    # Check command
    subparsers.add_parser("check", help="Load and compare the tables")

    # Sync command
    sync_parser = subparsers.add_parser("sync", help="Compare and apply the differences")
    sync_parser.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")
    sync_parser.add_argument("--clear-log", action="store_true", default=None, help="Archive the previous log")
    sync_parser.add_argument("--open-log", action="store_true", default=None, help="Open the log afterwards")

    # Global options
    parser.add_argument("--config", "-c", required=True, help="YAML profile")
    parser.add_argument("--metrics-port", type=int, help="Expose Prometheus metrics on this port")
    parser.add_argument("--pushgateway", help="Push metrics to this Pushgateway when done")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")

    args = parser.parse_args()

    if args.verbose:
        logger.setLevel(logging.DEBUG)
        package_logger.setLevel(logging.DEBUG)

    if not args.command:
        parser.print_help()
        return 1

    try:
        config = SyncConfig.from_yaml(args.config)
        config.resolve_credentials()
    except (ConfigError, ValueError, VaultError) as e:
        logger.error(f"Configuration error: {e}")
        return 1

    metrics = SyncMetrics()
    if args.metrics_port:
        metrics.serve(args.metrics_port)

    try:
        with SyncSession.from_config(config, metrics=metrics) as session:
            tool = SyncTool(session)

            if args.command == "check":
                report = tool.check()
            else:
                report = tool.sync(
                    assume_yes=args.yes,
                    clear_log=args.clear_log,
                    open_log=args.open_log
                )

        print(json.dumps(report, indent=2))

        if args.pushgateway:
            metrics.push(args.pushgateway)

        return 0 if succeeded(report) else 1

    except Exception as e:
        logger.error(f"Error: {e}", exc_info=args.verbose)
        return 1


if __name__ == "__main__":
    sys.exit(main())

"""
Audit Log Artifact for DataSync

Append-only text log of each compare/apply cycle, one timestamped line per
event, kept per OS user. The previous log can be archived under a
timestamp suffix before a new run.
"""

import getpass
import logging
import os
import webbrowser
from datetime import datetime
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

ILLEGAL_FILENAME_CHARS = ["\\", "%", "$", ":", "*", "/", "?", "<", ">", "|", "~", "£", "."]
FALLBACK_USER = "Temp"
SEPARATOR = "-" * 75


class SyncLogError(Exception):
    """Raised when the log file cannot be created or archived."""
    pass


def strip_illegals(value: str, replacement: str = "_") -> str:
    """Replace characters that are not allowed in file names."""
    for char in ILLEGAL_FILENAME_CHARS:
        value = value.replace(char, replacement)
    return value


def current_user_id() -> str:
    """OS user name made safe for a file name, or '' if unknown."""
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        return ""
    return strip_illegals(user or "")


class SyncLog:
    """
    Per-user audit log written through its own file handler.

    The log lives at ``{log_dir}/DataSync_{user}.log``.
    """

    def __init__(self, log_dir: str, user_id: Optional[str] = None):
        """
        Initialize the audit log.

        Args:
            log_dir: Directory holding the log files
            user_id: User identifier (defaults to the OS user)
        """
        self.log_dir = Path(log_dir)
        user = current_user_id() if user_id is None else strip_illegals(user_id)
        self.user_missing = not user
        self.user_id = user or FALLBACK_USER
        self.path = self.log_dir / f"DataSync_{self.user_id}.log"

        self._record_name = f"datasync.audit.{self.user_id}"
        self._handler: Optional[logging.FileHandler] = None

    def open(self, archive_previous: bool = False) -> None:
        """
        Prepare the log file for a run.

        Args:
            archive_previous: Rename an existing log before starting

        Raises:
            SyncLogError: If the directory cannot be created, the previous
                log cannot be archived or the log file cannot be opened
        """
        self.close()

        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise SyncLogError(f"Cannot create directory {self.log_dir}. System error: {e}") from e

        if archive_previous and self.path.exists():
            self.archive()

        try:
            handler = logging.FileHandler(self.path, mode="a", encoding="utf-8")
        except OSError as e:
            raise SyncLogError(f"Cannot open log file {self.path}. System error: {e}") from e

        handler.setFormatter(logging.Formatter("%(asctime)s : %(message)s", datefmt="%d/%m/%Y %H:%M:%S"))
        self._handler = handler

        if self.user_missing:
            self.write(f"User ID not found. User ID used will be '{FALLBACK_USER}'.")

        logger.debug(f"Audit log opened: {self.path}")

    def archive(self) -> Path:
        """
        Rename the current log using its last modification time.

        Returns:
            Path of the archived file

        Raises:
            SyncLogError: If the file cannot be renamed
        """
        try:
            modified = datetime.fromtimestamp(self.path.stat().st_mtime)
            archive_path = self.log_dir / f"DataSync_{self.user_id}_{modified:%Y%m%d_%H%M%S}.log"
            os.replace(self.path, archive_path)
        except OSError as e:
            raise SyncLogError(
                "Cannot rename log file. Please make sure it is not open in another window."
            ) from e

        logger.info(f"Archived log file to {archive_path}")
        return archive_path

    def write(self, line: str) -> None:
        """Append one timestamped line."""
        if self._handler is None:
            logger.debug(f"Audit log not open, dropping line: {line}")
            return
        # Handled directly so instances sharing a file never duplicate lines
        record = logging.LogRecord(self._record_name, logging.INFO, str(self.path), 0, line, None, None)
        self._handler.handle(record)

    def separator(self) -> None:
        self.write(SEPARATOR)

    def banner(self, message: str) -> None:
        """Write a message framed by separator lines."""
        self.separator()
        self.write(message)
        self.separator()

    def show(self) -> bool:
        """Open the log file in the system viewer."""
        if not self.path.exists():
            return False
        return webbrowser.open(self.path.resolve().as_uri())

    def close(self) -> None:
        """Flush and detach the file handler."""
        if self._handler is not None:
            self._handler.close()
            self._handler = None

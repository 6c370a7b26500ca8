"""
Run Context for DataSync

Tags every log record emitted during a compare or apply with the id of
the run it belongs to, so the diagnostic log of one cycle can be followed
across modules.
"""

import contextvars
import logging
import uuid
from typing import Optional

logger = logging.getLogger(__name__)

_run_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("run_id", default=None)
_operation: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("operation", default=None)


def generate_run_id() -> str:
    """Generate a new run id (UUID4 string)."""
    return str(uuid.uuid4())


def get_run_id() -> Optional[str]:
    """Current run id, or None outside a run."""
    return _run_id.get()


def get_operation() -> Optional[str]:
    """Name of the current operation, or None outside a run."""
    return _operation.get()


class RunContext:
    """
    Context manager scoping a run id and operation name.

    Nested contexts restore the outer values on exit.
    """

    def __init__(self, operation: str, run_id: Optional[str] = None):
        """
        Initialize the run context.

        Args:
            operation: Operation name, e.g. "compare" or "apply"
            run_id: Run id to use; generated when omitted
        """
        if not operation:
            raise ValueError("Operation name must be a non-empty string")

        self.operation = operation
        self.run_id = run_id or generate_run_id()
        self._tokens = None

    def __enter__(self) -> str:
        self._tokens = (_run_id.set(self.run_id), _operation.set(self.operation))
        logger.debug(f"Started {self.operation} run {self.run_id}")
        return self.run_id

    def __exit__(self, exc_type, exc_val, exc_tb):
        run_token, operation_token = self._tokens
        _operation.reset(operation_token)
        _run_id.reset(run_token)
        logger.debug(f"Finished {self.operation} run {self.run_id}")


def run_id_filter(record: logging.LogRecord) -> bool:
    """
    Logging filter adding ``run_id`` and ``operation`` to records.

    Always lets the record through.
    """
    record.run_id = get_run_id() or "N/A"
    record.operation = get_operation() or "N/A"
    return True


def setup_run_logging(handler: logging.Handler) -> None:
    """Attach the run id filter to a handler."""
    handler.addFilter(run_id_filter)

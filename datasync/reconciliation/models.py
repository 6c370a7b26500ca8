"""
Data Model for DataSync Reconciliation

Result rows produced by the remote compare procedure, their grouped
summaries, per-side table census, the run state machine and the typed
outcomes returned by every reconciliation step.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

logger = logging.getLogger(__name__)


# Result types that are skipped by the remote update procedure and
# require explicit confirmation before an apply.
WARNING_RESULT_TYPES: FrozenSet[str] = frozenset({"empty", "error", "orphan"})


class ResultType:
    """Well-known result type names written by the compare procedure."""
    EMPTY = "Empty"
    DELETED = "Deleted"
    ADDED = "Added"
    ERROR = "Error"
    ORPHAN = "Orphan"


class SyncRunState(Enum):
    """States of a compare/apply cycle."""
    IDLE = "idle"
    TABLES_LOADING = "tables_loading"
    TABLES_LOADED = "tables_loaded"
    COMPARING = "comparing"
    COMPARED_IDENTICAL = "compared_identical"
    COMPARED_DIFFERENCES = "compared_differences"
    APPLYING = "applying"
    CLEANING_UP = "cleaning_up"
    APPLIED_SUCCESS = "applied_success"
    APPLIED_FAILURE = "applied_failure"

    @property
    def is_busy(self) -> bool:
        return self in _BUSY_STATES

    @property
    def is_compared(self) -> bool:
        return self in (SyncRunState.COMPARED_IDENTICAL, SyncRunState.COMPARED_DIFFERENCES)


_BUSY_STATES = frozenset({
    SyncRunState.TABLES_LOADING,
    SyncRunState.COMPARING,
    SyncRunState.APPLYING,
    SyncRunState.CLEANING_UP,
})

_RESTING_STATES = frozenset({
    SyncRunState.IDLE,
    SyncRunState.TABLES_LOADED,
    SyncRunState.COMPARED_IDENTICAL,
    SyncRunState.COMPARED_DIFFERENCES,
    SyncRunState.APPLIED_SUCCESS,
    SyncRunState.APPLIED_FAILURE,
})

ALLOWED_TRANSITIONS: Dict[SyncRunState, FrozenSet[SyncRunState]] = {
    SyncRunState.IDLE: frozenset({SyncRunState.TABLES_LOADING}),
    # CLEANING_UP is only reached from the loading states inside an apply,
    # after the census reload.
    SyncRunState.TABLES_LOADING: frozenset({
        SyncRunState.TABLES_LOADED,
        SyncRunState.IDLE,
        SyncRunState.CLEANING_UP,
    }),
    SyncRunState.TABLES_LOADED: frozenset({
        SyncRunState.COMPARING,
        SyncRunState.TABLES_LOADING,
        SyncRunState.CLEANING_UP,
        SyncRunState.IDLE,
    }),
    SyncRunState.COMPARING: frozenset({
        SyncRunState.COMPARED_IDENTICAL,
        SyncRunState.COMPARED_DIFFERENCES,
        SyncRunState.TABLES_LOADED,
    }),
    # Back to TABLES_LOADED only to start a repeat compare.
    SyncRunState.COMPARED_IDENTICAL: frozenset({
        SyncRunState.TABLES_LOADED,
        SyncRunState.TABLES_LOADING,
        SyncRunState.IDLE,
    }),
    SyncRunState.COMPARED_DIFFERENCES: frozenset({
        SyncRunState.TABLES_LOADED,
        SyncRunState.APPLYING,
        SyncRunState.TABLES_LOADING,
        SyncRunState.IDLE,
    }),
    SyncRunState.APPLYING: frozenset({SyncRunState.TABLES_LOADING, SyncRunState.CLEANING_UP}),
    SyncRunState.CLEANING_UP: frozenset({SyncRunState.APPLIED_SUCCESS, SyncRunState.APPLIED_FAILURE}),
    SyncRunState.APPLIED_SUCCESS: frozenset({SyncRunState.TABLES_LOADING, SyncRunState.IDLE}),
    SyncRunState.APPLIED_FAILURE: frozenset({SyncRunState.TABLES_LOADING, SyncRunState.IDLE}),
}


class InvalidTransition(Exception):
    """Raised when a state change is not in the transition table."""
    pass


def check_transition(current: SyncRunState, target: SyncRunState) -> SyncRunState:
    """
    Validate a state change and return the new state.

    Args:
        current: State the run is in
        target: State to move to

    Returns:
        The target state

    Raises:
        InvalidTransition: If the transition is not allowed
    """
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(f"Cannot move from {current.value} to {target.value}")
    return target


def is_resting(state: SyncRunState) -> bool:
    """True for states a public operation may start from."""
    return state in _RESTING_STATES


class ErrorKind(Enum):
    """Classification of reconciliation failures."""
    LOAD_ERROR = "load_error"
    STAGING_ERROR = "staging_error"
    COMPARISON_FAILED = "comparison_failed"
    APPLY_FAILED = "apply_failed"
    CLEANUP_FAILED = "cleanup_failed"
    BUSY = "busy"
    TIMED_OUT = "timed_out"
    NOT_READY = "not_ready"
    NOT_CONFIRMED = "not_confirmed"
    LOG_ERROR = "log_error"


class RunOutcome(Enum):
    """User-visible outcome of an apply."""
    SUCCESS = "Process complete!"
    ENDED_WITH_ERRORS = "Process ended with errors!"
    ENDED_UNEXPECTEDLY = "Process ended unexpectedly!"

    @property
    def severity(self) -> str:
        return "success" if self is RunOutcome.SUCCESS else "error"


@dataclass(frozen=True)
class SyncError:
    """A classified failure with a human-readable message."""

    kind: ErrorKind
    message: str

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


@dataclass(frozen=True)
class StepResult:
    """
    Outcome of one fallible step.

    Attributes:
        error: The failure, or None when the step succeeded
        value: Optional payload produced by a successful step
    """

    error: Optional[SyncError] = None
    value: object = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def __bool__(self) -> bool:
        return self.ok

    @classmethod
    def success(cls, value: object = None) -> "StepResult":
        return cls(error=None, value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str) -> "StepResult":
        return cls(error=SyncError(kind, message))


@dataclass(frozen=True)
class ComparisonRow:
    """
    One row of the comparison results table.

    Attributes:
        result_type: Classification written by the compare procedure
        description: Reason for the classification
        new_key: Key in the local representation
        old_key: Key in the remote representation
        new_area: Local area, display only
        old_area: Remote area, display only
    """

    result_type: str
    description: str = ""
    new_key: Optional[str] = None
    old_key: Optional[str] = None
    new_area: Optional[float] = None
    old_area: Optional[float] = None

    @property
    def is_warning(self) -> bool:
        return (self.result_type or "").lower() in WARNING_RESULT_TYPES

    @staticmethod
    def display_area(value: Optional[float]) -> str:
        """Render an area for display, blank when missing or zero."""
        if value is None or value == 0:
            return ""
        return f"{value:g}"

    def navigation_key(self) -> Tuple[str, Optional[str]]:
        """
        Side and key to locate this feature on.

        Deleted features only exist remotely; everything else is found
        on the local layer.
        """
        if self.result_type == ResultType.DELETED:
            return "remote", self.old_key.strip() if self.old_key is not None else None
        return "local", self.new_key.strip() if self.new_key is not None else None


@dataclass(frozen=True)
class ResultSummary:
    """Count of rows sharing a (result type, description) pair."""

    result_type: str
    description: str
    count: int

    @property
    def is_warning(self) -> bool:
        return self.result_type.lower() in WARNING_RESULT_TYPES

    def to_dict(self) -> Dict[str, object]:
        return {"type": self.result_type, "description": self.description, "count": self.count}


@dataclass(frozen=True)
class TableCensus:
    """
    Load-time statistics for one side of the sync.

    A census with an ``error`` is a hard load failure and blocks compare.
    Blank or duplicate keys only produce warnings.
    """

    side: str
    name: str
    feature_count: int = -1
    blank_key_count: int = 0
    duplicate_key_count: int = 0
    error: Optional[str] = None

    @property
    def loaded(self) -> bool:
        return self.error is None

    @property
    def warnings(self) -> List[str]:
        messages = []
        if self.blank_key_count > 0:
            messages.append(f"{self.blank_key_count} blank keys in {self.side} table '{self.name}'")
        if self.duplicate_key_count > 0:
            messages.append(f"{self.duplicate_key_count} duplicate keys in {self.side} table '{self.name}'")
        return messages

    def count_text(self) -> str:
        if self.feature_count < 0:
            return f"Error counting {self.side} features"
        return f"{self.feature_count} {self.side} features"

    def to_dict(self) -> Dict[str, object]:
        return {
            "side": self.side,
            "name": self.name,
            "feature_count": self.feature_count,
            "blank_key_count": self.blank_key_count,
            "duplicate_key_count": self.duplicate_key_count,
            "error": self.error,
        }


@dataclass(frozen=True)
class LoadOutcome:
    """Result of loading both table censuses."""

    local: Optional[TableCensus] = None
    remote: Optional[TableCensus] = None
    error: Optional[SyncError] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    def __bool__(self) -> bool:
        return self.ok

    def summary_text(self) -> str:
        if self.local is None or self.remote is None or not self.ok:
            return ""
        return f"{self.local.count_text()}\n{self.remote.count_text()}"


@dataclass(frozen=True)
class CompareOutcome:
    """Result of a compare run."""

    state: SyncRunState
    identical: bool = False
    rows: List[ComparisonRow] = field(default_factory=list)
    summaries: List[ResultSummary] = field(default_factory=list)
    has_warnings: bool = False
    error: Optional[SyncError] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None

    def __bool__(self) -> bool:
        return self.ok


@dataclass(frozen=True)
class ApplyOutcome:
    """Result of an apply run."""

    state: SyncRunState
    outcome: RunOutcome
    error: Optional[SyncError] = None
    cleanup_error: Optional[SyncError] = None
    remote_count: int = -1
    log_opened: bool = False

    @property
    def ok(self) -> bool:
        return self.outcome is RunOutcome.SUCCESS

    def __bool__(self) -> bool:
        return self.ok

    @property
    def message(self) -> str:
        return self.outcome.value

    @property
    def severity(self) -> str:
        return self.outcome.severity

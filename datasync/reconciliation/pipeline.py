"""
Step Pipeline for DataSync Reconciliation

Runs an ordered list of fallible steps, stopping at the first failure,
then runs every finalizer regardless of how the steps ended.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from datasync.reconciliation.models import ErrorKind, StepResult, SyncError

logger = logging.getLogger(__name__)

Action = Callable[[], StepResult]


@dataclass
class PipelineResult:
    """
    Outcome of a pipeline run.

    Attributes:
        results: StepResult per executed step, in order
        failed_step: Name of the step that failed, if any
        finalizers: StepResult per finalizer, in order
        duration_seconds: Wall-clock time of the whole run
    """

    results: Dict[str, StepResult] = field(default_factory=dict)
    failed_step: Optional[str] = None
    finalizers: Dict[str, StepResult] = field(default_factory=dict)
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.failed_step is None

    def __bool__(self) -> bool:
        return self.ok

    @property
    def error(self) -> Optional[SyncError]:
        if self.failed_step is None:
            return None
        return self.results[self.failed_step].error

    def value(self, step_name: str) -> object:
        result = self.results.get(step_name)
        return result.value if result is not None else None


class Pipeline:
    """
    Ordered fallible steps with unconditional finalizers.

    Exceptions raised by a step are caught and recorded as a failure of
    ``failure_kind``; nothing escapes ``run``.
    """

    def __init__(self, name: str, failure_kind: ErrorKind):
        """
        Initialize the pipeline.

        Args:
            name: Name used in log messages
            failure_kind: Error kind recorded for unexpected exceptions
        """
        self.name = name
        self.failure_kind = failure_kind
        self._steps: List[Tuple[str, Action]] = []
        self._finalizers: List[Tuple[str, Action]] = []
        self._current: Optional[PipelineResult] = None

    def step(self, name: str, action: Action) -> "Pipeline":
        """Append a step; later steps only run if this one succeeds."""
        self._steps.append((name, action))
        return self

    def always(self, name: str, action: Action) -> "Pipeline":
        """Append a finalizer that runs after the steps, whatever happened."""
        self._finalizers.append((name, action))
        return self

    def value(self, step_name: str) -> object:
        """Value of a step that already ran in the current run, else None."""
        if self._current is None:
            return None
        return self._current.value(step_name)

    def _invoke(self, name: str, action: Action) -> StepResult:
        try:
            result = action()
        except Exception as e:
            logger.error(f"{self.name}: step '{name}' raised: {e}", exc_info=True)
            return StepResult.failure(self.failure_kind, f"Unexpected error in {name}: {e}")

        if result is None:
            return StepResult.success()
        return result

    def run(self) -> PipelineResult:
        """Execute the steps, then the finalizers."""
        outcome = PipelineResult()
        self._current = outcome
        start_time = time.monotonic()

        for name, action in self._steps:
            logger.debug(f"{self.name}: running step '{name}'")
            result = self._invoke(name, action)
            outcome.results[name] = result

            if not result:
                outcome.failed_step = name
                logger.error(f"{self.name}: step '{name}' failed: {result.error}")
                break

        for name, action in self._finalizers:
            logger.debug(f"{self.name}: running finalizer '{name}'")
            outcome.finalizers[name] = self._invoke(name, action)

        outcome.duration_seconds = time.monotonic() - start_time
        logger.info(
            f"{self.name} finished in {outcome.duration_seconds:.2f}s "
            f"({'ok' if outcome.ok else 'failed at ' + outcome.failed_step})"
        )
        return outcome

"""
Unit tests for the step pipeline.
"""

from unittest.mock import Mock

from datasync.reconciliation.models import ErrorKind, StepResult
from datasync.reconciliation.pipeline import Pipeline


class TestPipeline:
    """Test ordered steps with finalizers."""

    def test_all_steps_succeed(self):
        """Test that values are kept per step."""
        result = (
            Pipeline("test", ErrorKind.APPLY_FAILED)
            .step("first", lambda: StepResult.success(1))
            .step("second", lambda: StepResult.success(2))
            .run()
        )

        assert result
        assert result.error is None
        assert result.value("first") == 1
        assert result.value("second") == 2
        assert result.duration_seconds >= 0

    def test_none_counts_as_success(self):
        """Test that a step returning None succeeds."""
        result = Pipeline("test", ErrorKind.APPLY_FAILED).step("noop", lambda: None).run()

        assert result
        assert result.value("noop") is None

    def test_stops_at_first_failure(self):
        """Test that later steps are skipped after a failure."""
        later = Mock()

        result = (
            Pipeline("test", ErrorKind.APPLY_FAILED)
            .step("fails", lambda: StepResult.failure(ErrorKind.STAGING_ERROR, "upload failed"))
            .step("later", later)
            .run()
        )

        assert not result
        assert result.failed_step == "fails"
        assert result.error.kind is ErrorKind.STAGING_ERROR
        later.assert_not_called()
        assert "later" not in result.results

    def test_finalizers_run_after_success_and_failure(self):
        """Test that finalizers always run exactly once."""
        for step in (lambda: StepResult.success(), lambda: StepResult.failure(ErrorKind.APPLY_FAILED, "x")):
            cleanup = Mock(return_value=StepResult.success())

            Pipeline("test", ErrorKind.APPLY_FAILED).step("work", step).always("cleanup", cleanup).run()

            cleanup.assert_called_once()

    def test_exception_becomes_failure(self):
        """Test that a raising step is recorded with the pipeline's kind."""
        def explode():
            raise RuntimeError("boom")

        cleanup = Mock(return_value=None)
        result = (
            Pipeline("test", ErrorKind.COMPARISON_FAILED)
            .step("explode", explode)
            .always("cleanup", cleanup)
            .run()
        )

        assert result.error.kind is ErrorKind.COMPARISON_FAILED
        assert "boom" in result.error.message
        cleanup.assert_called_once()

    def test_finalizer_failure_does_not_fail_run(self):
        """Test that finalizer results are kept apart from the outcome."""
        result = (
            Pipeline("test", ErrorKind.APPLY_FAILED)
            .step("work", lambda: StepResult.success())
            .always("cleanup", lambda: StepResult.failure(ErrorKind.CLEANUP_FAILED, "locked"))
            .run()
        )

        assert result
        assert result.finalizers["cleanup"].error.kind is ErrorKind.CLEANUP_FAILED

    def test_finalizers_run_in_order(self):
        """Test finalizer ordering."""
        order = []

        (
            Pipeline("test", ErrorKind.APPLY_FAILED)
            .always("reload", lambda: order.append("reload"))
            .always("cleanup", lambda: order.append("cleanup"))
            .run()
        )

        assert order == ["reload", "cleanup"]

    def test_later_step_reads_earlier_value(self):
        """Test that a step can use the value of a step that already ran."""
        pipeline = Pipeline("test", ErrorKind.COMPARISON_FAILED)
        pipeline.step("count", lambda: StepResult.success(4))
        pipeline.step("read", lambda: StepResult.success(pipeline.value("count") * 2))

        result = pipeline.run()

        assert result
        assert result.value("read") == 8

    def test_value_before_run(self):
        pipeline = Pipeline("test", ErrorKind.APPLY_FAILED).step("first", lambda: StepResult.success(1))

        assert pipeline.value("first") is None

"""
Unit tests for run context tagging.
"""

import logging
import uuid

import pytest

from datasync.utils.run_context import (
    RunContext,
    generate_run_id,
    get_operation,
    get_run_id,
    run_id_filter,
    setup_run_logging,
)


class TestRunContext:
    """Test run id scoping."""

    def test_generate_run_id(self):
        run_id = generate_run_id()

        assert str(uuid.UUID(run_id)) == run_id
        assert generate_run_id() != run_id

    def test_outside_run(self):
        assert get_run_id() is None
        assert get_operation() is None

    def test_context_sets_and_restores(self):
        with RunContext("compare") as run_id:
            assert get_run_id() == run_id
            assert get_operation() == "compare"

        assert get_run_id() is None
        assert get_operation() is None

    def test_explicit_run_id(self):
        with RunContext("apply", run_id="run-1") as run_id:
            assert run_id == "run-1"

    def test_nested_contexts(self):
        """Test that leaving an inner run restores the outer one."""
        with RunContext("apply", run_id="outer"):
            with RunContext("reload", run_id="inner"):
                assert get_run_id() == "inner"
                assert get_operation() == "reload"

            assert get_run_id() == "outer"
            assert get_operation() == "apply"

    def test_restored_after_exception(self):
        with pytest.raises(RuntimeError):
            with RunContext("compare"):
                raise RuntimeError("boom")

        assert get_run_id() is None

    def test_empty_operation(self):
        with pytest.raises(ValueError, match="non-empty"):
            RunContext("")


class TestRunIdFilter:
    """Test the logging filter."""

    def make_record(self):
        return logging.LogRecord("datasync", logging.INFO, __file__, 1, "message", None, None)

    def test_filter_outside_run(self):
        record = self.make_record()

        assert run_id_filter(record)
        assert record.run_id == "N/A"
        assert record.operation == "N/A"

    def test_filter_inside_run(self):
        record = self.make_record()

        with RunContext("apply", run_id="run-7"):
            run_id_filter(record)

        assert record.run_id == "run-7"
        assert record.operation == "apply"

    def test_setup_run_logging(self):
        """Test that handler output carries the run id."""
        records = []

        class ListHandler(logging.Handler):
            def emit(self, record):
                records.append(record)

        handler = ListHandler()
        setup_run_logging(handler)
        test_logger = logging.getLogger("datasync.test_run_context")
        test_logger.addHandler(handler)
        test_logger.setLevel(logging.INFO)
        try:
            with RunContext("compare", run_id="run-3"):
                test_logger.info("comparing")
        finally:
            test_logger.removeHandler(handler)

        assert records[0].run_id == "run-3"

"""
Tests for common module (error types, decorators, logging, concurrency).
"""

import json
import logging
import threading
import time
from pathlib import Path

import pytest

import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


class TestExceptions:
    """Tests for exception hierarchy."""

    def test_center_error_basic(self):
        """Test basic CenterError."""
        from common.exceptions import CenterError

        error = CenterError("Something failed")
        assert str(error) == "[CenterError] Something failed"
        assert error.recoverable is True

    def test_center_error_with_details(self):
        from common.exceptions import CenterError

        error = CenterError(
            "Operation failed",
            code="OP_FAILED",
            details={"field": "value"},
            recoverable=False,
        )

        assert error.code == "OP_FAILED"
        assert error.details == {"field": "value"}
        assert error.recoverable is False
        assert "details:" in str(error)

    def test_center_error_to_dict(self):
        """Test JSON serialization."""
        from common.exceptions import CenterError

        error = CenterError("Test", code="TEST", details={"key": 1})
        d = error.to_dict()

        assert d["error"] == "TEST"
        assert d["message"] == "Test"
        assert d["details"]["key"] == 1

    def test_invalid_filter_lists_unknown_keys(self):
        from common.exceptions import CatalogError, InvalidFilterError

        error = InvalidFilterError(["color"], ["category", "installed"])
        assert isinstance(error, CatalogError)
        assert error.details["unknown"] == ["color"]
        assert error.code == "INVALID_FILTER"

    def test_backend_failure_carries_code(self):
        from common.exceptions import BackendFailureError, TransactionError

        error = BackendFailureError("network", "download failed", raw_output="curl: (6)")
        assert isinstance(error, TransactionError)
        assert error.failure_code == "network"
        assert error.raw_output == "curl: (6)"
        assert error.to_dict()["details"]["failure_code"] == "network"

    def test_not_cancellable(self):
        from common.exceptions import NotCancellableError

        error = NotCancellableError(3, "running")
        assert "running" in error.message
        assert error.details["transaction_id"] == 3


class TestDecorators:
    """Tests for error handling decorators."""

    def test_handle_errors_skips_bad_input(self, caplog):
        """A failing item is logged and replaced by the default."""
        from common.decorators import handle_errors

        @handle_errors(ValueError, OSError, default=None, log_level=logging.WARNING,
                       message="Skipping unreadable collection")
        def parse(text):
            return int(text)

        with caplog.at_level(logging.WARNING):
            assert [parse(t) for t in ("1", "x", "3")] == [1, None, 3]

        assert "Skipping unreadable collection" in caplog.text
        assert caplog.records[0].exc_info is None

    def test_handle_errors_ignores_other_types(self):
        from common.decorators import handle_errors

        @handle_errors(OSError, default=[])
        def broken():
            raise KeyError("missing")

        with pytest.raises(KeyError):
            broken()

    def test_handle_errors_reraise(self, caplog):
        """Test @handle_errors can log and reraise."""
        from common.decorators import handle_errors

        @handle_errors(ValueError, reraise=True)
        def failing_func():
            raise ValueError("test")

        with pytest.raises(ValueError):
            failing_func()
        assert "failing_func failed: test" in caplog.text

    def test_timed_decorator(self, caplog):
        """Test @timed logs execution time."""
        from common.decorators import timed

        @timed
        def rebuild():
            time.sleep(0.01)
            return "done"

        with caplog.at_level(logging.DEBUG):
            result = rebuild()

        assert result == "done"
        assert "rebuild took" in caplog.text
        assert rebuild.__name__ == "rebuild"


class TestLogging:
    """Tests for logging configuration."""

    def test_setup_logging_creates_handlers(self):
        """Test setup_logging configures handlers."""
        from common.logging_config import setup_logging

        setup_logging(level=logging.DEBUG)

        root = logging.getLogger()
        assert len(root.handlers) >= 1

    def test_log_dir_adds_file_handler(self, tmp_path):
        from common.logging_config import JSONFormatter, setup_logging

        setup_logging(level=logging.INFO, log_dir=tmp_path, json_logs=True)
        root = logging.getLogger()
        file_handlers = [h for h in root.handlers if isinstance(h, logging.FileHandler)]
        try:
            assert len(file_handlers) == 1
            assert isinstance(file_handlers[0].formatter, JSONFormatter)
            assert Path(file_handlers[0].baseFilename) == tmp_path / "software-center.log"
        finally:
            for handler in file_handlers:
                root.removeHandler(handler)
                handler.close()

    def test_log_context_tags_records(self):
        from common.logging_config import JSONFormatter, LogContext

        records = []

        class Collector(logging.Handler):
            def emit(self, record):
                records.append(record)

        logger = logging.getLogger("test.context")
        handler = Collector()
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
        try:
            with LogContext(transaction_id=7):
                logger.info("inside")
            logger.info("outside")
        finally:
            logger.removeHandler(handler)

        inside, outside = records
        assert json.loads(JSONFormatter().format(inside))["data"] == {"transaction_id": 7}
        assert not hasattr(outside, "extra_data")

    def test_console_format_shows_context(self):
        from common.logging_config import ColoredFormatter

        record = logging.LogRecord("transactions.engine", logging.INFO, "", 0, "Starting", None, None)
        record.extra_data = {"transaction_id": 4}

        plain = ColoredFormatter(color=False).format(record)
        assert plain == "INFO transactions.engine: Starting [transaction_id=4]"
        assert ColoredFormatter(color=True).format(record).startswith("\033[32mINFO\033[0m")

    def test_log_context_ignores_other_threads(self):
        from common.logging_config import LogContext

        seen = []

        def emit():
            seen.append(logging.getLogRecordFactory()("x", logging.INFO, "", 0, "m", None, None))

        with LogContext(transaction_id=1):
            worker = threading.Thread(target=emit)
            worker.start()
            worker.join()

        assert not hasattr(seen[0], "extra_data")


class TestConcurrency:
    """Tests for snapshot and counter helpers."""

    def test_snapshot_swap(self):
        from common.concurrency import SnapshotRef

        ref = SnapshotRef()
        assert ref.get() is None

        assert ref.swap("a") is None
        assert ref.swap("b") == "a"
        assert ref.get() == "b"
        assert ref.generation == 2

    def test_atomic_counter(self):
        """Test AtomicCounter thread-safe operations."""
        from common.concurrency import AtomicCounter

        counter = AtomicCounter(0)
        threads = [
            threading.Thread(target=lambda: [counter.increment() for _ in range(100)])
            for _ in range(4)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert counter.value == 400
        counter.reset()
        assert counter.value == 0


class TestAtomicWrite:

    def test_atomic_write_json(self, tmp_path):
        from utils.atomic_write import atomic_write_json

        path = tmp_path / "nested" / "config.json"
        atomic_write_json(path, {"b": 1, "a": 2})

        assert json.loads(path.read_text()) == {"a": 2, "b": 1}
        assert list(path.parent.glob(".config.json.*")) == []

    def test_failed_write_leaves_target(self, tmp_path):
        from utils.atomic_write import atomic_write_text, replacing

        path = tmp_path / "software-center.nix"
        atomic_write_text(path, "old\n")

        with pytest.raises(RuntimeError):
            with replacing(path) as f:
                f.write("half")
                raise RuntimeError("interrupted")

        assert path.read_text() == "old\n"
        assert [p.name for p in tmp_path.iterdir()] == ["software-center.nix"]

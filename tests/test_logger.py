"""
Tests for logger functionality.
"""

import pytest
import threading

from trustid.logger import StructuredLogger, get_logger, reset_logger


class TestStructuredLogger:
    """Test structured logging functionality."""

    def test_logger_creation(self, tmp_path):
        """Logger should be created with zeroed metrics."""
        logger = StructuredLogger(
            name="test",
            level="INFO",
            log_dir=tmp_path,
            enable_console=False,
        )

        assert logger.logger.name == "test"
        assert logger.metrics["resolutions"] == 0
        assert logger.metrics["gate_decisions"] == {"allowed": 0, "denied": 0, "fail_open": 0}

    def test_log_methods(self, tmp_path):
        """All log level methods should work."""
        logger = StructuredLogger(name="test", log_dir=tmp_path, enable_console=False)

        logger.debug("Debug message")
        logger.info("Info message")
        logger.warning("Warning message")
        logger.error("Error message")
        logger.critical("Critical message")

    def test_context_rendered_as_json(self, tmp_path):
        """Keyword context is appended as JSON, non-JSON values via str()."""
        logger = StructuredLogger(name="test-context", log_dir=tmp_path, enable_console=False)

        logger.info("Identity matched", identity_id="CID-20260101-ABCDEF", path=tmp_path)

        content = next(tmp_path.glob("*.log")).read_text()
        assert 'Identity matched | Context: {"identity_id": "CID-20260101-ABCDEF"' in content
        assert str(tmp_path) in content

    def test_resolution_metrics(self, tmp_path):
        """Created and matched resolutions are counted separately."""
        logger = StructuredLogger(name="test", log_dir=tmp_path, enable_console=False)

        logger.record_resolution(created=True)
        logger.record_resolution(created=False)
        logger.record_resolution(created=False)
        logger.record_conflict_retry()
        logger.record_risk_assessment()

        metrics = logger.get_metrics()

        assert metrics["resolutions"] == 3
        assert metrics["identities_created"] == 1
        assert metrics["identities_matched"] == 2
        assert metrics["conflicts_retried"] == 1
        assert metrics["risk_assessments"] == 1
        assert metrics["match_rate"] == pytest.approx(0.667, rel=0.01)

    def test_match_rate_absent_without_resolutions(self, tmp_path):
        """No match rate is reported before any resolve."""
        logger = StructuredLogger(name="test", log_dir=tmp_path, enable_console=False)
        assert "match_rate" not in logger.get_metrics()

    def test_gate_metrics(self, tmp_path):
        """Fail-open decisions count as allowed and as fail_open."""
        logger = StructuredLogger(name="test", log_dir=tmp_path, enable_console=False)

        logger.record_gate_decision(True)
        logger.record_gate_decision(False)
        logger.record_gate_decision(True, fail_open=True)
        logger.record_error("InfrastructureError")

        metrics = logger.get_metrics()
        assert metrics["gate_decisions"] == {"allowed": 2, "denied": 1, "fail_open": 1}
        assert metrics["errors_by_type"]["InfrastructureError"] == 1

    def test_concurrent_metrics_are_exact(self, tmp_path):
        """Counters updated from many threads lose no increments."""
        logger = StructuredLogger(name="test", log_dir=tmp_path, enable_console=False, enable_file=False)
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            for _ in range(500):
                logger.record_resolution(created=False)
                logger.record_gate_decision(True, fail_open=True)
                logger.record_error("ConflictError")

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        metrics = logger.get_metrics()
        assert metrics["resolutions"] == 4000
        assert metrics["identities_matched"] == 4000
        assert metrics["gate_decisions"] == {"allowed": 4000, "denied": 0, "fail_open": 4000}
        assert metrics["errors_by_type"] == {"ConflictError": 4000}

    def test_metrics_snapshot_is_detached(self, tmp_path):
        """Later updates do not change a snapshot already taken."""
        logger = StructuredLogger(name="test", log_dir=tmp_path, enable_console=False, enable_file=False)
        snapshot = logger.get_metrics()

        logger.record_gate_decision(False)

        assert snapshot["gate_decisions"]["denied"] == 0

    def test_metrics_summary(self, tmp_path):
        """The summary logs every metric group."""
        logger = StructuredLogger(name="test-summary", log_dir=tmp_path, enable_console=False)
        logger.record_resolution(created=True)
        logger.record_error("ConflictError")

        logger.log_metrics_summary()

        content = next(tmp_path.glob("*.log")).read_text()
        assert "Resolutions: 1 (created=1, matched=0)" in content
        assert "ConflictError: 1" in content

    def test_log_file_creation(self, tmp_path):
        """Log file should be created in specified directory."""
        logger = StructuredLogger(name="test", log_dir=tmp_path, enable_console=False)

        logger.info("Test message")

        log_files = list(tmp_path.glob("trustid_*.log"))
        assert len(log_files) == 1
        assert "Test message" in log_files[0].read_text()

    def test_file_output_disabled(self, tmp_path):
        """No log file is written when file output is off."""
        logger = StructuredLogger(name="test", log_dir=tmp_path, enable_file=False, enable_console=False)
        logger.info("Nowhere")
        assert list(tmp_path.glob("*.log")) == []


class TestGlobalLogger:
    """Test global logger singleton."""

    def test_get_logger_singleton(self, tmp_path):
        """get_logger should return same instance."""
        reset_logger()

        logger1 = get_logger(log_dir=tmp_path, enable_console=False)
        logger2 = get_logger()

        assert logger1 is logger2

    def test_no_file_without_log_dir(self, tmp_path, monkeypatch):
        """Without a log directory the global logger writes no file."""
        reset_logger()
        monkeypatch.chdir(tmp_path)

        get_logger(enable_console=False).info("console only")

        assert not (tmp_path / "logs").exists()

    def test_reset_logger(self, tmp_path):
        """reset_logger should create new instance."""
        reset_logger()

        logger1 = get_logger(log_dir=tmp_path, enable_console=False)
        logger1.record_resolution(created=True)

        reset_logger()

        logger2 = get_logger(log_dir=tmp_path, enable_console=False)
        assert logger2 is not logger1
        assert logger2.metrics["resolutions"] == 0

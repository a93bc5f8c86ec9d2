"""Unit tests for logging configuration and the sampled logger."""

import json
import logging

import pytest

from clinport.infrastructure.logging_config import SampledLogger, StructuredFormatter, setup_logging


class TestSampledLogger:
    """Test per-key rate limiting."""

    def test_burst_then_every_nth(self, caplog):
        """Test burst=2, every=3 emits occurrences 1, 2, 5 and 8."""
        sampled = SampledLogger(logging.getLogger("tests.sampled"), burst=2, every=3)

        with caplog.at_level(logging.INFO, logger="tests.sampled"):
            emitted = [sampled.info("k", f"message {i}") for i in range(1, 9)]

        assert emitted == [True, True, False, False, True, False, False, True]
        assert len(caplog.records) == 4
        assert sampled.count("k") == 8
        assert sampled.suppressed("k") == 4
        assert "[occurrence 5 of 'k']" in caplog.records[2].getMessage()

    def test_keys_are_independent(self):
        sampled = SampledLogger(logging.getLogger("tests.sampled"), burst=1, every=100)

        assert sampled.warning("a", "first a")
        assert sampled.warning("b", "first b")
        assert not sampled.warning("a", "second a")
        assert sampled.suppressed() == 1

    def test_flush_summary(self, caplog):
        sampled = SampledLogger(logging.getLogger("tests.sampled"), burst=2, every=3)
        for i in range(8):
            sampled.debug("k", f"message {i}")

        with caplog.at_level(logging.INFO, logger="tests.sampled"):
            sampled.flush_summary()

        assert [r.getMessage() for r in caplog.records] == ["Suppressed 4 of 8 'k' messages"]
        assert sampled.suppressed() == 0

    def test_invalid_interval(self):
        with pytest.raises(ValueError):
            SampledLogger(every=0)

    def test_emitted_records_carry_sample_fields(self, caplog):
        sampled = SampledLogger(logging.getLogger("tests.sampled"))

        with caplog.at_level(logging.INFO, logger="tests.sampled"):
            sampled.info("row_error", "bad row")

        assert caplog.records[0].extra_fields == {"sample_key": "row_error", "occurrence": 1}


class TestStructuredFormatter:
    """Test JSON log formatting."""

    def test_formats_json_with_extra_fields(self):
        record = logging.LogRecord("clinport.test", logging.WARNING, __file__, 10, "hello %s", ("world",), None)
        record.extra_fields = {"sample_key": "k"}

        data = json.loads(StructuredFormatter().format(record))

        assert data["level"] == "WARNING"
        assert data["logger"] == "clinport.test"
        assert data["message"] == "hello world"
        assert data["sample_key"] == "k"
        assert data["timestamp"].endswith("Z")


class TestSetupLogging:
    """Test root logger configuration."""

    def test_json_handler(self):
        root = logging.getLogger()
        saved_handlers, saved_level = list(root.handlers), root.level
        try:
            setup_logging(use_json=True, log_level="debug")
            assert root.level == logging.DEBUG
            assert isinstance(root.handlers[0].formatter, StructuredFormatter)
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)

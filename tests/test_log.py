"""Tests for step-scoped loggers and logging configuration."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest
from research_flow.log import (
    ROOT_LOGGER_NAME,
    StepLoggerAdapter,
    configure_logging,
    get_step_logger,
)

from tests.conftest import make_config


@pytest.mark.unit
class TestStepLogger:
    """Messages are prefixed with the step name."""

    def test_prefix_and_step_attribute(self, caplog: pytest.LogCaptureFixture) -> None:
        """Records carry ``[step]`` in the message and a ``step`` attribute."""
        step_logger = get_step_logger("Search")
        with caplog.at_level(logging.INFO, logger=ROOT_LOGGER_NAME):
            step_logger.info("found %d hits", 3)
        record = caplog.records[-1]
        assert record.getMessage() == "[Search] found 3 hits"
        assert record.step == "Search"  # type: ignore[attr-defined]
        assert record.name == ROOT_LOGGER_NAME

    def test_default_base_is_root_logger(self) -> None:
        """Without a base the adapter wraps the ``research_flow`` logger."""
        assert get_step_logger("x").logger is logging.getLogger(ROOT_LOGGER_NAME)

    def test_adapter_base_is_unwrapped(self) -> None:
        """Nesting adapters does not stack prefixes."""
        base = logging.getLogger("research_flow.custom")
        outer = get_step_logger("Track", base)
        inner = get_step_logger("Step", outer)
        assert isinstance(inner, StepLoggerAdapter)
        assert inner.logger is base
        assert inner.step == "Step"

    def test_explicit_extra_is_kept(self, caplog: pytest.LogCaptureFixture) -> None:
        """Caller-supplied extra fields survive alongside ``step``."""
        with caplog.at_level(logging.INFO, logger=ROOT_LOGGER_NAME):
            get_step_logger("A").info("hello", extra={"attempt": 2})
        record = caplog.records[-1]
        assert record.attempt == 2  # type: ignore[attr-defined]
        assert record.step == "A"  # type: ignore[attr-defined]


@pytest.mark.unit
class TestConfigureLogging:
    """``configure_logging`` sets levels and installs handlers once."""

    def test_sets_level(self) -> None:
        """The configured level is applied to the package logger."""
        configure_logging(make_config(log_level="debug"))
        assert logging.getLogger(ROOT_LOGGER_NAME).level == logging.DEBUG

    def test_unknown_level_falls_back_to_info(self) -> None:
        """Unrecognized level names resolve to INFO."""
        configure_logging(make_config(log_level="chatty"))
        assert logging.getLogger(ROOT_LOGGER_NAME).level == logging.INFO

    def test_idempotent_console_handler(self) -> None:
        """Repeated calls keep a single console handler."""
        configure_logging(make_config())
        configure_logging(make_config())
        root = logging.getLogger(ROOT_LOGGER_NAME)
        consoles = [h for h in root.handlers if type(h) is logging.StreamHandler]
        assert len(consoles) == 1

    def test_file_handler(self, tmp_path: Path) -> None:
        """A log file gets exactly one file handler and receives records."""
        log_file = tmp_path / "run.log"
        config = make_config(log_file=str(log_file))
        configure_logging(config)
        configure_logging(config)
        root = logging.getLogger(ROOT_LOGGER_NAME)
        file_handlers = [h for h in root.handlers if isinstance(h, logging.FileHandler)]
        assert len(file_handlers) == 1

        get_step_logger("Writer").warning("persisted")
        file_handlers[0].flush()
        assert "[Writer] persisted" in log_file.read_text()

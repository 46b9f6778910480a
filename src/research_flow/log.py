"""Logging helpers: step-scoped logger capability and logging configuration.

Instead of a process-wide mutable "current step", every step, track and
driver receives a :class:`StepLoggerAdapter` bound to its own name. The
adapter prefixes each message with ``[name]`` and exposes the name as the
``step`` attribute of emitted records.
"""

from __future__ import annotations

from collections.abc import MutableMapping
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from research_flow.models import PipelineConfig

ROOT_LOGGER_NAME = "research_flow"

_LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s - %(message)s"


class StepLoggerAdapter(logging.LoggerAdapter):  # type: ignore[type-arg]
    """Logger adapter carrying the name of the step it reports for."""

    def __init__(self, logger: logging.Logger, step: str) -> None:
        super().__init__(logger, {"step": step})
        self.step = step

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        extra.setdefault("step", self.step)
        kwargs["extra"] = extra
        return f"[{self.step}] {msg}", kwargs


def get_step_logger(
    step: str,
    base: logging.Logger | StepLoggerAdapter | None = None,
) -> StepLoggerAdapter:
    """Build a logger capability scoped to *step*.

    Args:
        step: Step, track or driver name used as the message prefix.
        base: Underlying logger; an adapter is unwrapped to its logger.
            Defaults to the ``research_flow`` root logger.

    Returns:
        A ``StepLoggerAdapter`` bound to *step*.
    """
    if isinstance(base, StepLoggerAdapter):
        base = base.logger
    return StepLoggerAdapter(base or logging.getLogger(ROOT_LOGGER_NAME), step)


def configure_logging(config: PipelineConfig) -> None:
    """Configure the ``research_flow`` logger from a pipeline config.

    Sets the level from ``config.log_level`` (unknown names fall back to
    INFO), installs one console handler and, when ``config.log_file`` is
    set, one file handler. Repeated calls do not duplicate handlers.

    Args:
        config: Pipeline configuration providing ``log_level`` and
            optional ``log_file``.
    """
    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))

    if not any(
        type(h) is logging.StreamHandler for h in root.handlers  # noqa: E721
    ):
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(_LOG_FORMAT))
        root.addHandler(console)

    if config.log_file is not None:
        target = str(Path(config.log_file).resolve())
        has_file = any(
            isinstance(h, logging.FileHandler)
            and getattr(h, "baseFilename", None) == target
            for h in root.handlers
        )
        if not has_file:
            file_handler = logging.FileHandler(config.log_file)
            file_handler.setFormatter(logging.Formatter(_LOG_FORMAT))
            root.addHandler(file_handler)

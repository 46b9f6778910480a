"""Sequential pipeline driver.

Runs a flat, ordered list of steps under one global cooperative timeout and
one error-handling policy (``stop``, ``continue`` or ``rollback``). Each step
goes through :func:`execute_step_with_error_handling`, which appends a
:class:`~research_flow.models.StepExecutionRecord` to the state's history
and, on failure, the normalized error to ``state.errors``.

The timeout only stops the driver from *waiting*: an in-flight step is never
cancelled. Its task is kept referenced until it finishes and its outcome is
logged at DEBUG.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
import logging
import os
import time
from typing import Any

from research_flow.errors import (
    ExecutionTimeoutError,
    PipelineError,
    ResearchError,
    ValidationError,
    error_message,
)
from research_flow.log import StepLoggerAdapter, configure_logging, get_step_logger
from research_flow.models import (
    ErrorHandling,
    PipelineConfig,
    ResearchState,
    StateMetadata,
    StepExecutionRecord,
    utc_now,
)
from research_flow.retry import execute_with_retry
from research_flow.steps import Step, normalize_step_error

logger = logging.getLogger(__name__)

_BACKGROUND_TASKS: set[asyncio.Task[Any]] = set()
"""Abandoned step tasks kept alive until they finish."""


# ---------------------------------------------------------------------------
# State construction
# ---------------------------------------------------------------------------


def create_initial_state(query: str, output_schema: Any = None) -> ResearchState:
    """Create the initial state for a research run.

    Args:
        query: The research query.
        output_schema: Type the final result must satisfy, or None.

    Returns:
        A fresh ``ResearchState`` with empty data, results and errors.
    """
    return ResearchState(
        query=query,
        output_schema=output_schema,
        metadata=StateMetadata(start_time=utc_now()),
    )


def _append_record(state: ResearchState, record: StepExecutionRecord) -> ResearchState:
    return state.with_metadata(step_history=[*state.metadata.step_history, record])


# ---------------------------------------------------------------------------
# Per-step execution
# ---------------------------------------------------------------------------


async def execute_step_with_error_handling(
    step: Step,
    state: ResearchState,
    *,
    max_retries: int = 0,
    retry_delay: float = 1.0,
    backoff_factor: float = 2.0,
    logger: logging.Logger | StepLoggerAdapter | None = None,
) -> tuple[ResearchState, ResearchError | None]:
    """Run one step and record its outcome.

    Retries run in a single layer. A step that carries its own retry layer
    (``step.attempt``) is retried with its ``retry_options``; any other step
    marked ``retryable`` is retried with *max_retries*. Exactly one
    ``StepExecutionRecord`` is appended to the history, whatever the outcome.

    Args:
        step: The step to run.
        state: The state handed to the step.
        max_retries: Retries for retryable steps (0 disables retry).
        retry_delay: Initial retry delay in seconds.
        backoff_factor: Multiplier applied to the delay on each retry.
        logger: Base logger for the step's log lines.

    Returns:
        A ``(new_state, error)`` pair. On success *error* is None; on failure
        *new_state* is a copy of *state* carrying the failure record and the
        normalized error.
    """
    step_logger = get_step_logger(step.name, logger)
    start_time = utc_now()
    started = time.monotonic()
    retries = 0

    def on_retry(attempt: int, error: BaseException, delay: float) -> None:
        nonlocal retries
        retries = attempt
        step_logger.warning(
            "Retry attempt %d after error: %s. Retrying in %.3fs...",
            attempt,
            error_message(error),
            delay,
        )

    run_step = step.execute
    retry_limit = max_retries if step.retryable else 0
    if step.attempt is not None and step.retry_options is not None:
        run_step = step.attempt
        retry_limit = step.retry_options.max_retries
        retry_delay = step.retry_options.retry_delay
        backoff_factor = step.retry_options.backoff_factor

    async def run_once() -> ResearchState:
        result = await run_step(state)
        if not isinstance(result, ResearchState):
            msg = f"Step {step.name!r} returned {type(result).__name__}, expected ResearchState"
            raise ValidationError(msg, step=step.name)
        return result

    try:
        if retry_limit > 0:
            new_state = await execute_with_retry(
                run_once,
                max_retries=retry_limit,
                retry_delay=retry_delay,
                backoff_factor=backoff_factor,
                on_retry=on_retry,
            )
        else:
            new_state = await run_once()
    except Exception as exc:
        error = normalize_step_error(exc, step.name)
        record = StepExecutionRecord(
            step_name=step.name,
            start_time=start_time,
            end_time=utc_now(),
            success=False,
            error=error,
            duration_seconds=time.monotonic() - started,
            retry_attempts=retries,
            skipped=step.optional,
        )
        failed = _append_record(state, record)
        return failed.evolve(errors=[*failed.errors, error]), error

    record = StepExecutionRecord(
        step_name=step.name,
        start_time=start_time,
        end_time=utc_now(),
        success=True,
        duration_seconds=time.monotonic() - started,
        retry_attempts=retries,
    )
    return _append_record(new_state, record), None


# ---------------------------------------------------------------------------
# Pipeline driver
# ---------------------------------------------------------------------------


async def _rollback(
    step: Step,
    before: ResearchState,
    failed: ResearchState,
    error: ResearchError,
    pipeline_logger: StepLoggerAdapter,
) -> ResearchState:
    """Invoke *step*'s rollback on the pre-failure state.

    The failure record and *error* are carried onto the rolled-back state. A
    rollback that itself fails adds a second error next to the original.
    """
    if step.rollback is None:
        pipeline_logger.warning("Step %s has no rollback; nothing to undo", step.name)
        return failed

    pipeline_logger.info("Rolling back step %s", step.name)
    try:
        rolled = await step.rollback(before)
    except Exception as exc:
        if isinstance(exc, ResearchError):
            rollback_error: ResearchError = exc
        else:
            rollback_error = PipelineError(
                f"Rollback failed for step {step.name}: {exc}",
                step=step.name,
                details={"original_error": exc},
            )
            rollback_error.__cause__ = exc
        pipeline_logger.error(
            "Rollback of step %s failed: %s", step.name, error_message(exc)
        )
        return failed.evolve(errors=[*failed.errors, rollback_error])

    failure_record = failed.metadata.step_history[-1]
    rolled = _append_record(rolled, failure_record)
    return rolled.evolve(errors=[*rolled.errors, error])


async def _execute_steps(
    state: ResearchState,
    steps: Sequence[Step],
    config: PipelineConfig,
    progress: list[ResearchState],
    pipeline_logger: StepLoggerAdapter,
) -> ResearchState:
    """Run *steps* in order, publishing each intermediate state to *progress*."""
    for index, step in enumerate(steps, start=1):
        pipeline_logger.debug("Executing step %d/%d: %s", index, len(steps), step.name)
        before = state
        state, error = await execute_step_with_error_handling(
            step,
            before,
            max_retries=config.max_retries,
            retry_delay=config.retry_delay,
            backoff_factor=config.backoff_factor,
            logger=pipeline_logger,
        )
        progress[0] = state
        if error is None:
            continue

        if step.optional:
            pipeline_logger.warning(
                "Optional step %s failed and was skipped: %s",
                step.name,
                error_message(error),
            )
            continue

        if config.error_handling is ErrorHandling.ROLLBACK:
            state = await _rollback(step, before, state, error, pipeline_logger)
            progress[0] = state
            if config.continue_on_error:
                continue
            pipeline_logger.error("Halting pipeline after rollback of step %s", step.name)
            break

        if config.error_handling is ErrorHandling.CONTINUE or config.continue_on_error:
            pipeline_logger.warning(
                "Step %s failed, continuing: %s", step.name, error_message(error)
            )
            continue

        pipeline_logger.error("Stopping pipeline after failure in step %s", step.name)
        break

    return state


def abandon_task(task: asyncio.Task[Any], label: str) -> None:
    """Stop waiting for *task* without cancelling it.

    The task is kept referenced until it finishes so it is not garbage
    collected mid-flight; its outcome is then logged at DEBUG.

    Args:
        task: The in-flight task.
        label: Description used in the log line.
    """
    _BACKGROUND_TASKS.add(task)

    def _on_done(finished: asyncio.Task[Any]) -> None:
        _BACKGROUND_TASKS.discard(finished)
        if finished.cancelled():
            logger.debug("Abandoned %s was cancelled", label)
        elif finished.exception() is not None:
            logger.debug(
                "Abandoned %s failed: %s", label, error_message(finished.exception())
            )
        else:
            logger.debug("Abandoned %s finished after timeout", label)

    task.add_done_callback(_on_done)


def expire_deadline(deadline: asyncio.Future[None]) -> None:
    """Timer callback resolving *deadline* unless it is already settled."""
    if not deadline.done():
        deadline.set_result(None)


async def execute_pipeline(
    initial_state: ResearchState,
    steps: Sequence[Step],
    config: PipelineConfig | None = None,
) -> ResearchState:
    """Execute *steps* sequentially under one policy and one global timeout.

    Args:
        initial_state: State handed to the first step.
        steps: Ordered steps to execute.
        config: Pipeline configuration; defaults to ``PipelineConfig()``.

    Returns:
        The final state. Failures handled by the active policy, and a global
        timeout, are reported in ``state.errors`` rather than raised.
    """
    config = config or PipelineConfig()
    configure_logging(config)
    pipeline_logger = get_step_logger("Pipeline")

    state = initial_state.with_metadata(
        start_time=utc_now(),
        extra={
            **initial_state.metadata.extra,
            "pipeline_config": config.model_dump(mode="json"),
        },
    )
    progress = [state]
    pipeline_logger.info(
        "Starting pipeline with %d step(s) (error_handling=%s, timeout=%.1fs)",
        len(steps),
        config.error_handling,
        config.timeout,
    )

    loop = asyncio.get_running_loop()
    runner = asyncio.create_task(
        _execute_steps(state, steps, config, progress, pipeline_logger)
    )
    deadline: asyncio.Future[None] = loop.create_future()
    timer = loop.call_later(config.timeout, expire_deadline, deadline)
    try:
        await asyncio.wait({runner, deadline}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        timer.cancel()
        if not deadline.done():
            deadline.cancel()
        if not runner.done():
            abandon_task(runner, "pipeline task")

    if runner.done():
        final = runner.result()
    else:
        timeout_error = ExecutionTimeoutError(
            f"Pipeline execution timed out after {config.timeout}s",
            details={"timeout": config.timeout},
        )
        pipeline_logger.error(timeout_error.message)
        partial = progress[0]
        final = partial.evolve(errors=[*partial.errors, timeout_error])

    final = final.with_metadata(end_time=utc_now())
    pipeline_logger.info(
        "Pipeline finished: %d step(s) recorded, %d error(s)",
        len(final.metadata.step_history),
        len(final.errors),
    )
    return final


# ---------------------------------------------------------------------------
# Environment overrides
# ---------------------------------------------------------------------------

_ENV_FIELD_MAP: dict[str, str] = {
    "RESEARCH_FLOW_LOG_LEVEL": "log_level",
    "RESEARCH_FLOW_TIMEOUT": "timeout",
    "RESEARCH_FLOW_MAX_RETRIES": "max_retries",
}
"""Maps environment variable names to PipelineConfig field names."""


def apply_env_overrides(config: PipelineConfig) -> PipelineConfig:
    """Apply ``RESEARCH_FLOW_*`` environment overrides to *config*.

    Environment variables override fields still at their default value; a
    field whose value differs from the default counts as explicitly set and
    is left alone. Unparseable or out-of-range values are ignored.

    Args:
        config: The pipeline configuration to apply overrides to.

    Returns:
        A new ``PipelineConfig`` with overrides applied, or *config* itself
        when nothing changed.
    """
    defaults = PipelineConfig()
    overrides: dict[str, Any] = {}

    for env_var, field_name in _ENV_FIELD_MAP.items():
        env_value = os.environ.get(env_var)
        if env_value is None:
            continue
        if getattr(config, field_name) != getattr(defaults, field_name):
            continue
        parsed = _parse_env_value(field_name, env_value)
        if parsed is not None:
            overrides[field_name] = parsed

    if not overrides:
        return config
    return config.model_copy(update=overrides)


def _parse_env_value(field_name: str, raw: str) -> Any:
    """Parse *raw* for *field_name*, returning None when it is invalid."""
    if field_name == "log_level":
        return raw.upper() if raw.strip() else None

    if field_name == "timeout":
        try:
            seconds = float(raw)
        except ValueError:
            return None
        return seconds if seconds > 0 else None

    if field_name == "max_retries":
        try:
            retries = int(raw)
        except ValueError:
            return None
        return retries if retries >= 0 else None

    return None

"""Step contract and the step factory.

A :class:`Step` is the unit of composition: a name plus an async
``execute(state) -> state`` and an optional async ``rollback``. Steps built
by :func:`create_step` (or upgraded by :func:`wrap_step_with_error_handling`)
share uniform behavior:

* ``metadata.current_step`` is stamped on a copy of the incoming state;
* start, success and failure are logged with durations;
* untyped exceptions are normalized to ``ResearchError`` with code
  ``step_execution_error``, chained to the original exception;
* retryable steps are wrapped in :func:`research_flow.retry.execute_with_retry`.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
import logging
import time
import traceback
from typing import Any

from pydantic import BaseModel, ConfigDict

from research_flow.errors import ErrorCode, ResearchError, error_message
from research_flow.log import StepLoggerAdapter, get_step_logger
from research_flow.models import ResearchState, StepCreationOptions
from research_flow.retry import execute_with_retry

StepFn = Callable[[ResearchState], Awaitable[ResearchState]]
StepExecutor = Callable[[ResearchState, Any], Awaitable[ResearchState]]


class Step(BaseModel):
    """A named pipeline step.

    Attributes:
        name: Stable label used in logs, history and retry attribution.
        execute: Async function from state to a new state.
        rollback: Optional compensating action invoked under the
            ``rollback`` error-handling policy.
        retryable: Whether drivers may retry the step on retryable errors.
        optional: Whether a failure may be skipped without halting.
        options: The options object the step was built from.
        attempt: A single normalized run without the step's own retry
            layer. Set by the factory on steps that retry internally so
            drivers can run one retry loop and count its attempts.
        retry_options: The retry settings of that internal layer.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    execute: StepFn
    rollback: StepFn | None = None
    retryable: bool = False
    optional: bool = False
    options: Any = None
    attempt: StepFn | None = None
    retry_options: StepCreationOptions | None = None


def normalize_step_error(error: BaseException, step_name: str) -> ResearchError:
    """Convert *error* into a typed ``ResearchError``.

    Typed errors pass through unchanged. Anything else becomes a
    ``ResearchError`` with code ``step_execution_error`` whose details hold
    the original exception and its formatted traceback; the original is
    also chained as ``__cause__``.

    Args:
        error: The exception raised by a step.
        step_name: Name of the step that raised it.

    Returns:
        The typed error.
    """
    if isinstance(error, ResearchError):
        return error
    normalized = ResearchError(
        str(error) or type(error).__name__,
        code=ErrorCode.STEP_EXECUTION_ERROR,
        step=step_name,
        details={
            "original_error": error,
            "stack": "".join(traceback.format_exception(error)),
        },
    )
    normalized.__cause__ = error
    return normalized


def _single_attempt(name: str, invoke: StepFn, step_logger: StepLoggerAdapter) -> StepFn:
    """Build one normalized, logged, non-retrying run of a step."""

    async def attempt(state: ResearchState) -> ResearchState:
        start = time.monotonic()
        step_logger.info("Starting execution")
        try:
            result = await invoke(state.with_metadata(current_step=name))
        except Exception as exc:
            error = normalize_step_error(exc, name)
            step_logger.error(
                "Execution failed in %.3fs: %s",
                time.monotonic() - start,
                error.formatted_message(),
            )
            if error is exc:
                raise
            raise error from exc
        step_logger.info(
            "Execution completed successfully in %.3fs", time.monotonic() - start
        )
        return result

    return attempt


def _retrying_execute(
    attempt: StepFn,
    creation_options: StepCreationOptions,
    step_logger: StepLoggerAdapter,
) -> StepFn:
    """Wrap *attempt* in the factory's retry layer."""

    def on_retry(attempt_no: int, error: BaseException, delay: float) -> None:
        step_logger.warning(
            "Retry attempt %d after error: %s. Retrying in %.3fs...",
            attempt_no,
            error_message(error),
            delay,
        )

    async def execute(state: ResearchState) -> ResearchState:
        return await execute_with_retry(
            lambda: attempt(state),
            max_retries=creation_options.max_retries,
            retry_delay=creation_options.retry_delay,
            backoff_factor=creation_options.backoff_factor,
            on_retry=on_retry,
        )

    return execute


def _guarded_step(
    step_name: str,
    invoke: StepFn,
    creation_options: StepCreationOptions,
    step_logger: StepLoggerAdapter,
    *,
    retryable: bool,
    **fields: Any,
) -> Step:
    """Assemble a factory-built step, exposing its single attempt when it retries."""
    attempt = _single_attempt(step_name, invoke, step_logger)
    if not retryable:
        return Step(name=step_name, execute=attempt, **fields)
    return Step(
        name=step_name,
        execute=_retrying_execute(attempt, creation_options, step_logger),
        retryable=True,
        attempt=attempt,
        retry_options=creation_options,
        **fields,
    )


def create_step(
    name: str,
    executor: StepExecutor,
    options: Any = None,
    creation_options: StepCreationOptions | None = None,
    *,
    logger: logging.Logger | StepLoggerAdapter | None = None,
) -> Step:
    """Create a step with standardized error handling.

    Args:
        name: Name of the step.
        executor: ``executor(state, options) -> state`` implementing the
            step's logic.
        options: Options object handed to *executor* on every call.
        creation_options: Retry and optionality settings.
        logger: Base logger for the step's log lines.

    Returns:
        A ``Step`` whose ``execute`` normalizes errors and optionally retries.
    """
    opts = creation_options or StepCreationOptions()
    step_logger = get_step_logger(name, logger)

    async def invoke(state: ResearchState) -> ResearchState:
        return await executor(state, options)

    return _guarded_step(
        name,
        invoke,
        opts,
        step_logger,
        retryable=opts.retryable,
        optional=opts.optional,
        options=options,
    )


def wrap_step_with_error_handling(
    step: Step,
    creation_options: StepCreationOptions | None = None,
    *,
    logger: logging.Logger | StepLoggerAdapter | None = None,
) -> Step:
    """Apply the factory's normalization and retry behavior to an existing step.

    ``retryable`` and ``optional`` default to the wrapped step's values
    unless set explicitly on *creation_options*. The step's ``rollback`` is
    forwarded as-is: it is logged, never retried, and its errors propagate
    unmodified.

    Args:
        step: The step to wrap.
        creation_options: Retry and optionality settings.
        logger: Base logger for the wrapper's log lines.

    Returns:
        A new ``Step`` wrapping *step*.
    """
    opts = creation_options or StepCreationOptions()
    explicit = opts.model_fields_set
    retryable = opts.retryable if "retryable" in explicit else step.retryable
    optional = opts.optional if "optional" in explicit else step.optional
    step_logger = get_step_logger(step.name, logger)

    rollback: StepFn | None = None
    original_rollback = step.rollback
    if original_rollback is not None:

        async def rollback(state: ResearchState) -> ResearchState:
            step_logger.info("Rolling back step")
            try:
                return await original_rollback(state)
            except Exception as exc:
                step_logger.error("Rollback failed: %s", error_message(exc))
                raise

    # A step that already retries is re-wrapped around its single attempt.
    return _guarded_step(
        step.name,
        step.attempt or step.execute,
        opts,
        step_logger,
        rollback=rollback,
        retryable=retryable,
        optional=optional,
        options=step.options,
    )

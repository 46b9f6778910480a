"""Flow control: evaluation steps and the bounded ``repeat_until`` loop.

``evaluate`` turns a boolean predicate over the state into an
:class:`~research_flow.models.EvaluationResult` stored under
``data["evaluations"]``. ``repeat_until`` is a bounded do-while loop: each
iteration runs a condition step (usually an ``evaluate`` step) and, while the
most recent evaluation has not passed, runs the repeated steps in sequence.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping, Sequence
import inspect
import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from research_flow.errors import (
    MaxIterationsError,
    ProcessingError,
    ResearchError,
    ValidationError,
    error_message,
)
from research_flow.log import get_step_logger
from research_flow.models import (
    EVALUATIONS_KEY,
    ITERATIONS_KEY,
    EvaluationResult,
    ResearchState,
    RetryConfig,
    StepCreationOptions,
    utc_now,
)
from research_flow.steps import Step, create_step, normalize_step_error

logger = logging.getLogger(__name__)

CriteriaFn = Callable[[ResearchState], bool | Awaitable[bool]]


def _creation_options(retry: RetryConfig | None) -> StepCreationOptions:
    retry = retry or RetryConfig()
    return StepCreationOptions(
        retryable=retry.max_retries > 0,
        max_retries=retry.max_retries,
        retry_delay=retry.base_delay,
        backoff_factor=2.0,
    )


# ---------------------------------------------------------------------------
# evaluate
# ---------------------------------------------------------------------------


class EvaluateOptions(BaseModel):
    """Options for :func:`evaluate`.

    Attributes:
        criteria_fn: Sync or async predicate over the state.
        criteria_name: Slot name under ``data["evaluations"]``.
        confidence_threshold: Sensitivity in [0, 1] mapped onto the score.
        store_result: Record the outcome in the state.
        retry: Retry settings for the evaluation step.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    criteria_fn: CriteriaFn
    criteria_name: str = "CustomEvaluation"
    confidence_threshold: float = 0.7
    store_result: bool = True
    retry: RetryConfig | None = None


def confidence_score(passed: bool, threshold: float) -> float:
    """Map an outcome and a sensitivity onto a [0, 1] confidence signal."""
    return 0.5 + threshold * 0.5 if passed else 0.5 - threshold * 0.5


async def _execute_evaluate(state: ResearchState, options: EvaluateOptions) -> ResearchState:
    name = options.criteria_name
    eval_logger = get_step_logger("Evaluate", logger)
    eval_logger.info("Evaluating criteria: %s", name)

    try:
        outcome = options.criteria_fn(state)
        if inspect.isawaitable(outcome):
            outcome = await outcome
    except Exception as exc:
        eval_logger.error("Error executing criteria function: %s", error_message(exc))
        raise ProcessingError(
            f'Failed to execute evaluation criteria "{name}": {error_message(exc)}',
            step="Evaluate",
            details={"criteria_name": name, "error": exc},
            retry=True,
            suggestions=["Check the criteria function for errors"],
        ) from exc

    if not isinstance(outcome, bool):
        msg = f"Criteria function must return a boolean value, got {type(outcome).__name__}"
        raise ValidationError(
            msg,
            step="Evaluate",
            details={"return_value": outcome, "return_type": type(outcome).__name__},
            suggestions=["Convert non-boolean results with bool(value)"],
        )

    score = confidence_score(outcome, options.confidence_threshold)
    eval_logger.info(
        "Evaluation %r %s with confidence %.2f",
        name,
        "passed" if outcome else "failed",
        score,
    )

    if not options.store_result:
        return state.evolve()

    evaluations = {
        key: value
        for key, value in (state.data.get(EVALUATIONS_KEY) or {}).items()
        if key != name
    }
    evaluations[name] = EvaluationResult(
        passed=outcome,
        confidence_score=score,
        timestamp=utc_now(),
        criteria=name,
    )
    return state.evolve(data={**state.data, EVALUATIONS_KEY: evaluations}).with_metadata(
        last_evaluation=name,
        confidence_score=max(state.metadata.confidence_score, score),
    )


def evaluate(options: EvaluateOptions) -> Step:
    """Create an evaluation step named ``Evaluate``.

    Args:
        options: Evaluation configuration.

    Returns:
        A ``Step`` recording the predicate's outcome.

    Raises:
        ValidationError: If the criteria function is not callable or the
            threshold lies outside [0, 1].
    """
    if not callable(options.criteria_fn):
        msg = "No criteria function provided for evaluation"
        raise ValidationError(msg, step="Evaluate")
    if not 0.0 <= options.confidence_threshold <= 1.0:
        msg = (
            f"Invalid confidence threshold: {options.confidence_threshold}. "
            "Must be between 0 and 1."
        )
        raise ValidationError(
            msg,
            step="Evaluate",
            details={"confidence_threshold": options.confidence_threshold},
        )
    return create_step(
        "Evaluate",
        _execute_evaluate,
        options,
        _creation_options(options.retry),
        logger=logger,
    )


# ---------------------------------------------------------------------------
# repeat_until
# ---------------------------------------------------------------------------


class RepeatUntilOptions(BaseModel):
    """Options for :func:`repeat_until`.

    Attributes:
        max_iterations: Upper bound on loop iterations.
        throw_on_max_iterations: Raise ``MaxIterationsError`` when the bound
            is hit without the condition passing.
        continue_on_error: Keep looping after a failing step.
        retry: Retry settings for the loop step as a whole.
    """

    model_config = ConfigDict(frozen=True)

    max_iterations: int = 5
    throw_on_max_iterations: bool = False
    continue_on_error: bool = False
    retry: RetryConfig | None = Field(
        default_factory=lambda: RetryConfig(max_retries=1, base_delay=1.0)
    )


def condition_passed(state: ResearchState) -> bool:
    """Return whether the most recent evaluation in *state* passed.

    The evaluation named by ``metadata.last_evaluation`` is consulted first;
    otherwise the last entry of ``data["evaluations"]``.
    """
    evaluations: Mapping[str, Any] = state.data.get(EVALUATIONS_KEY) or {}
    if not evaluations:
        return False
    key = state.metadata.last_evaluation
    if key not in evaluations:
        key = list(evaluations)[-1]
    evaluation = evaluations[key]
    if isinstance(evaluation, EvaluationResult):
        return evaluation.passed
    if isinstance(evaluation, Mapping):
        return evaluation.get("passed") is True
    return False


def _validate_repeat_until(
    condition_step: Any, steps_to_repeat: Sequence[Any], options: RepeatUntilOptions
) -> None:
    if not isinstance(condition_step, Step):
        msg = "Invalid condition step provided to repeat_until"
        raise ValidationError(
            msg,
            step="RepeatUntil",
            suggestions=["Build the condition with evaluate() or another step factory"],
        )
    if not steps_to_repeat:
        msg = "No steps to repeat provided to repeat_until"
        raise ValidationError(msg, step="RepeatUntil")
    if any(not isinstance(s, Step) for s in steps_to_repeat):
        msg = "Every repeated step must be a Step"
        raise ValidationError(msg, step="RepeatUntil")
    if options.max_iterations <= 0:
        msg = f"Invalid max_iterations value: {options.max_iterations}. Must be greater than 0."
        raise ValidationError(
            msg, step="RepeatUntil", details={"max_iterations": options.max_iterations}
        )


def repeat_until(
    condition_step: Step,
    steps_to_repeat: Sequence[Step],
    options: RepeatUntilOptions | None = None,
) -> Step:
    """Create a bounded do-while loop step named ``RepeatUntil``.

    Each iteration runs *condition_step*; if its most recent evaluation
    passed the loop exits, otherwise *steps_to_repeat* run in sequence, each
    receiving the previous step's output. Errors raised inside the loop are
    collected into ``state.errors`` even when ``continue_on_error`` lets the
    loop proceed past them.

    Args:
        condition_step: Step recording an evaluation (usually ``evaluate``).
        steps_to_repeat: Steps run while the condition has not passed.
        options: Loop configuration.

    Returns:
        A ``Step`` implementing the loop.

    Raises:
        ValidationError: If the condition step or repeated steps are invalid,
            or ``max_iterations`` is not positive.
    """
    options = options or RepeatUntilOptions()
    repeated = list(steps_to_repeat)
    _validate_repeat_until(condition_step, repeated, options)

    async def execute_loop(state: ResearchState, opts: RepeatUntilOptions) -> ResearchState:
        loop_logger = get_step_logger("RepeatUntil", logger)
        current = state
        iterations = 0
        condition_met = False
        iteration_errors: list[ResearchError] = []
        loop_logger.info(
            "Starting repeat_until loop with max %d iterations", opts.max_iterations
        )

        def record_failure(step: Step, exc: Exception) -> None:
            error = normalize_step_error(exc, step.name)
            iteration_errors.append(error)
            loop_logger.error(
                "Error in step %s during iteration %d: %s",
                step.name,
                iterations,
                error.message,
            )
            if not opts.continue_on_error:
                raise ProcessingError(
                    f"Step {step.name} failed during iteration {iterations}: {error.message}",
                    step="RepeatUntil",
                    details={
                        "iteration": iterations,
                        "step": step.name,
                        "original_error": error,
                    },
                    suggestions=["Set continue_on_error=True to keep looping"],
                ) from exc
            loop_logger.warning("Continuing after error due to continue_on_error=True")

        while iterations < opts.max_iterations:
            iterations += 1
            loop_logger.info("Executing iteration %d/%d", iterations, opts.max_iterations)

            try:
                current = await condition_step.execute(current)
            except Exception as exc:
                record_failure(condition_step, exc)
                continue

            if condition_passed(current):
                condition_met = True
                loop_logger.info("Condition met in iteration %d, exiting loop", iterations)
                break

            loop_logger.debug(
                "Condition not met, executing %d step(s) in iteration %d",
                len(repeated),
                iterations,
            )
            for step in repeated:
                try:
                    current = await step.execute(current)
                except Exception as exc:
                    record_failure(step, exc)

        loop_data = dict(current.data.get(ITERATIONS_KEY) or {})
        loop_data[condition_step.name] = {
            "completed": iterations,
            "condition_met": condition_met,
            "max_reached": iterations >= opts.max_iterations,
            "iteration_errors": bool(iteration_errors),
            "error_count": len(iteration_errors),
        }
        final = current.evolve(
            data={**current.data, ITERATIONS_KEY: loop_data},
            errors=[*current.errors, *iteration_errors],
        ).with_extra(
            repeat_until_complete=True,
            repeat_until_condition_met=condition_met,
            repeat_until_iterations=iterations,
        )

        if not condition_met:
            msg = f"Maximum iterations ({opts.max_iterations}) reached without meeting condition"
            loop_logger.warning(msg)
            if opts.throw_on_max_iterations:
                raise MaxIterationsError(
                    msg,
                    step="RepeatUntil",
                    details={
                        "max_iterations": opts.max_iterations,
                        "completed_iterations": iterations,
                        "condition_step_name": condition_step.name,
                    },
                    suggestions=[
                        "Increase max_iterations",
                        "Set throw_on_max_iterations=False to return the last state",
                    ],
                    state=final,
                )

        loop_logger.info(
            "RepeatUntil complete after %d iterations, condition met: %s",
            iterations,
            condition_met,
        )
        return final

    return create_step(
        "RepeatUntil",
        execute_loop,
        options,
        _creation_options(options.retry),
        logger=logger,
    )

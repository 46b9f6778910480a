"""Parallel runner: concurrent fan-out of tracks with a shared timeout.

Every track (or bare step) is dispatched as its own task against the same
input snapshot. The runner waits for all of them, racing a single
``loop.call_later`` deadline that is cancelled exactly once on every exit
path. Timed-out tracks are abandoned, not cancelled: finished tracks keep
their results and the rest are simply no longer waited for.

After settlement the runner records every track in the ``{name: TrackResult}``
map. Only fulfilled tracks feed the rest: their data is unioned into the
parent, their result fragments are concatenated and they alone are handed to
the merge function, whose output is appended as one more fragment.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
import inspect
import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from research_flow.errors import (
    ExecutionTimeoutError,
    ParallelError,
    ValidationError,
    error_message,
    to_error_record,
)
from research_flow.log import StepLoggerAdapter, get_step_logger
from research_flow.models import (
    PARALLEL_MERGED_KEY,
    TRACKS_KEY,
    ResearchState,
    RetryConfig,
    StepCreationOptions,
    TrackResult,
    utc_now,
)
from research_flow.pipeline import abandon_task, expire_deadline
from research_flow.steps import Step, create_step, normalize_step_error

logger = logging.getLogger(__name__)

MergeOutput = Mapping[str, Any]
MergeFunction = Callable[
    [dict[str, TrackResult], ResearchState],
    MergeOutput | Awaitable[MergeOutput],
]


class ParallelOptions(BaseModel):
    """Options for :func:`parallel`.

    Attributes:
        tracks: Tracks or bare steps to run concurrently.
        continue_on_error: Turn a failing track into a failed TrackResult
            instead of failing the whole fan-out.
        timeout: Shared timeout in seconds.
        merge_function: ``(tracks, state) -> {"data", "results", "metadata"}``,
            sync or async. Defaults to :func:`default_merge_function`.
        include_in_results: Append the merge output as a result fragment.
        retry: Retry settings for the parallel step as a whole.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    tracks: list[Any] = Field(default_factory=list)
    continue_on_error: bool = True
    timeout: float = 300.0
    merge_function: Any = None
    include_in_results: bool = True
    retry: RetryConfig | None = Field(
        default_factory=lambda: RetryConfig(max_retries=1, base_delay=2.0)
    )

    @field_validator("merge_function")
    @classmethod
    def _merge_function_callable(cls, v: Any) -> Any:
        """Validate that merge_function is callable when given."""
        if v is not None and not callable(v):
            msg = "merge_function must be callable"
            raise ValueError(msg)
        return v


def default_merge_function(
    tracks: dict[str, TrackResult], state: ResearchState | None = None
) -> dict[str, Any]:
    """Group track results and errors by track name.

    Args:
        tracks: Track results keyed by name.
        state: Parent state (unused).

    Returns:
        A merge output whose ``results`` hold a ``by_track`` mapping: the
        result fragments of completed tracks and the errors of failed ones.
    """
    by_track: dict[str, dict[str, Any]] = {}
    for name, result in tracks.items():
        if result.completed:
            by_track[name] = {"results": list(result.results), "completed": True}
        else:
            by_track[name] = {
                "errors": [e.model_dump() for e in result.errors],
                "completed": False,
            }
    return {
        "data": {},
        "results": {"by_track": by_track},
        "metadata": {
            "merge_strategy": "by_track",
            "tracks_count": len(tracks),
            "merged_at": utc_now().isoformat(),
        },
    }


def _validate_parallel_options(options: ParallelOptions) -> None:
    if not options.tracks:
        msg = "At least one track is required"
        raise ValidationError(
            msg,
            step="Parallel",
            suggestions=["Provide at least one track built with track()"],
        )
    invalid = [item for item in options.tracks if not isinstance(item, Step)]
    if invalid:
        msg = f"Found {len(invalid)} invalid track(s) in parallel step"
        raise ValidationError(
            msg, step="Parallel", details={"invalid_tracks": [repr(i) for i in invalid]}
        )
    names = [item.name for item in options.tracks]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        msg = f"Track names must be unique, duplicated: {', '.join(duplicates)}"
        raise ValidationError(msg, step="Parallel", details={"duplicates": duplicates})
    if options.timeout <= 0:
        msg = f"Invalid timeout value: {options.timeout}. Must be greater than 0."
        raise ValidationError(msg, step="Parallel", details={"timeout": options.timeout})


# ---------------------------------------------------------------------------
# Slot outcomes
# ---------------------------------------------------------------------------


class _SlotOutcome(BaseModel):
    """What one settled track contributes to the aggregate state."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    result: TrackResult
    data: dict[str, Any] = Field(default_factory=dict)
    errors: list[Exception] = Field(default_factory=list)


def _resolved_outcome(
    step: Step, snapshot: ResearchState, returned: ResearchState
) -> _SlotOutcome:
    new_errors = list(returned.errors[len(snapshot.errors) :])
    data = {k: v for k, v in returned.data.items() if k != TRACKS_KEY}
    result = returned.tracks.get(step.name)
    if not isinstance(result, TrackResult):
        records = [to_error_record(e, default_step=step.name) for e in new_errors]
        result = TrackResult(
            name=step.name,
            results=list(returned.results[len(snapshot.results) :]),
            data=data,
            metadata={
                "completed_at": utc_now().isoformat(),
                "error_count": len(records),
            },
            errors=records,
            completed=not records,
        )
    return _SlotOutcome(result=result, data=data, errors=new_errors)


def _rejected_outcome(step: Step, error: BaseException) -> _SlotOutcome:
    normalized = normalize_step_error(error, step.name)
    attached = normalized.state.tracks.get(step.name) if normalized.state else None
    if isinstance(attached, TrackResult):
        result = attached
    else:
        result = TrackResult(
            name=step.name,
            metadata={
                "failed_at": utc_now().isoformat(),
                "error": normalized.message,
                "error_count": 1,
            },
            errors=[to_error_record(normalized, default_step=step.name)],
            completed=False,
        )
    return _SlotOutcome(result=result, errors=[normalized])


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


def _task_failure(task: asyncio.Future[Any]) -> BaseException | None:
    """Return the failure of a finished track task, or None if it succeeded.

    A task cancelled from outside counts as a failed track.
    """
    if task.cancelled():
        name = task.get_name() if isinstance(task, asyncio.Task) else repr(task)
        return ParallelError(f"Track task {name!r} was cancelled", step="Parallel")
    return task.exception()


async def _await_tracks(
    tasks: dict[str, asyncio.Task[ResearchState]],
    options: ParallelOptions,
    parallel_logger: StepLoggerAdapter,
) -> bool:
    """Wait for *tasks* under the shared deadline.

    Returns:
        True if the deadline fired before every task settled.

    Raises:
        Exception: The first track failure when ``continue_on_error`` is off.
    """
    loop = asyncio.get_running_loop()
    deadline: asyncio.Future[None] = loop.create_future()
    timer = loop.call_later(options.timeout, expire_deadline, deadline)
    pending: set[asyncio.Future[Any]] = set(tasks.values())
    try:
        while pending:
            done, pending = await asyncio.wait(
                pending | {deadline}, return_when=asyncio.FIRST_COMPLETED
            )
            pending.discard(deadline)
            if not options.continue_on_error:
                for task in done:
                    failure = None if task is deadline else _task_failure(task)
                    if failure is not None:
                        raise failure
            if deadline in done:
                return bool(pending)
        return False
    finally:
        timer.cancel()
        if not deadline.done():
            deadline.cancel()
        for name, task in tasks.items():
            if not task.done():
                parallel_logger.warning("Track %r abandoned while still running", name)
                abandon_task(task, f"parallel track {name!r}")


async def _merge(
    merge_function: MergeFunction,
    tracks: dict[str, TrackResult],
    snapshot: ResearchState,
) -> MergeOutput:
    merged = merge_function(tracks, snapshot)
    if inspect.isawaitable(merged):
        merged = await merged
    if not isinstance(merged, Mapping):
        msg = f"Merge function returned {type(merged).__name__}, expected a mapping"
        raise TypeError(msg)
    return merged


async def _execute_parallel(state: ResearchState, options: ParallelOptions) -> ResearchState:
    parallel_logger = get_step_logger("Parallel", logger)
    steps: list[Step] = list(options.tracks)
    parallel_logger.info(
        "Starting parallel execution of %d track(s) with timeout %.1fs",
        len(steps),
        options.timeout,
    )
    parallel_logger.debug(
        "Parallel configuration: continue_on_error=%s, include_in_results=%s",
        options.continue_on_error,
        options.include_in_results,
    )

    snapshot = state
    tasks = {
        step.name: asyncio.create_task(step.execute(snapshot), name=f"track:{step.name}")
        for step in steps
    }

    try:
        timed_out = await _await_tracks(tasks, options, parallel_logger)
    except Exception as exc:
        parallel_logger.error("Error in parallel execution: %s", error_message(exc))
        raise

    outcomes: list[_SlotOutcome] = []
    resolved: list[_SlotOutcome] = []
    for step in steps:
        task = tasks[step.name]
        if not task.done():
            continue
        error = _task_failure(task)
        if error is not None:
            parallel_logger.error(
                "Error in track %r: %s", step.name, error_message(error)
            )
            outcomes.append(_rejected_outcome(step, error))  # type: ignore[arg-type]
        else:
            outcome = _resolved_outcome(step, snapshot, task.result())
            outcomes.append(outcome)
            resolved.append(outcome)

    errors: list[Exception] = list(snapshot.errors)
    for outcome in outcomes:
        errors.extend(outcome.errors)

    if timed_out:
        unfinished = [name for name, task in tasks.items() if not task.done()]
        timeout_error = ExecutionTimeoutError(
            f"Parallel execution timed out after {options.timeout}s",
            step="Parallel",
            details={
                "timeout": options.timeout,
                "track_names": list(tasks),
                "unfinished_tracks": unfinished,
            },
            retry=True,
            suggestions=["Increase the timeout value", "Reduce the work done per track"],
        )
        parallel_logger.error(timeout_error.message)
        if not options.continue_on_error:
            raise timeout_error
        errors.append(timeout_error)
    else:
        parallel_logger.info("All %d tracks completed execution", len(steps))

    # Rejected tracks are recorded under data["tracks"] but contribute nothing
    # else: no data, no result fragments and no input to the merge function.
    track_results = {o.result.name: o.result for o in outcomes}
    fulfilled = {o.result.name: o.result for o in resolved}
    data = dict(snapshot.data)
    results = list(snapshot.results)
    for outcome in resolved:
        data.update(outcome.data)
        results.extend(outcome.result.results)

    merge_function: MergeFunction = options.merge_function or default_merge_function
    merged: MergeOutput | None = None
    try:
        parallel_logger.debug(
            "Applying merge function to %d fulfilled track result(s)", len(fulfilled)
        )
        merged = await _merge(merge_function, fulfilled, snapshot)
    except Exception as exc:
        parallel_logger.error("Error in parallel merge function: %s", error_message(exc))
        merge_error = ParallelError(
            f"Failed to merge parallel results: {error_message(exc)}",
            step="ParallelMerge",
            details={"error": exc, "track_count": len(fulfilled)},
            suggestions=["Check the merge function implementation"],
        )
        merge_error.__cause__ = exc
        errors.append(merge_error)
    else:
        parallel_logger.info("Successfully merged parallel track results")
        data.update(merged.get("data") or {})
        if options.include_in_results:
            results.append(
                {"parallel": {"tracks": list(fulfilled), **(merged.get("results") or {})}}
            )

    data[TRACKS_KEY] = {**snapshot.tracks, **track_results}
    data[PARALLEL_MERGED_KEY] = dict(merged) if merged is not None else None

    count = len(track_results)
    completed = sum(1 for r in track_results.values() if r.completed)
    success_rate = completed / count if count else 0.0
    parallel_logger.info(
        "Parallel execution complete: %d/%d tracks successful (%.1f%%)",
        completed,
        count,
        success_rate * 100,
    )

    return snapshot.evolve(data=data, results=results, errors=errors).with_extra(
        parallel_tracks={
            "count": count,
            "completed": completed,
            "failed": count - completed,
            "success_rate": success_rate,
        },
        parallel_completed_at=utc_now().isoformat(),
    )


def parallel(options: ParallelOptions) -> Step:
    """Create a step that runs several tracks concurrently and merges them.

    Args:
        options: Parallel configuration.

    Returns:
        A ``Step`` named ``Parallel``.

    Raises:
        ValidationError: If no tracks are given, an item is not a ``Step``,
            two tracks share a name, or the timeout is not positive.
    """
    _validate_parallel_options(options)
    retry = options.retry or RetryConfig()
    return create_step(
        "Parallel",
        _execute_parallel,
        options,
        StepCreationOptions(
            retryable=retry.max_retries > 0,
            max_retries=retry.max_retries,
            retry_delay=retry.base_delay,
            backoff_factor=2.0,
        ),
        logger=logger,
    )



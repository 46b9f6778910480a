"""Track runner: a named, optionally data-isolated sub-sequence of steps.

A track runs its steps sequentially under the same per-step contract as the
pipeline (one history record per step, normalized errors) but without the
pipeline's global timeout. It emits exactly one immutable
:class:`~research_flow.models.TrackResult`, stored under the reserved
``data["tracks"][name]`` key of the parent state.

Isolated tracks start from an empty data bag and never leak data into the
parent. Non-isolated tracks start from a shallow copy of the parent's data
and surface their final data back into the parent when they finish.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from research_flow.errors import (
    ConfigurationError,
    ProcessingError,
    ValidationError,
    error_message,
    to_error_record,
)
from research_flow.log import get_step_logger
from research_flow.models import (
    TRACKS_KEY,
    ResearchState,
    RetryConfig,
    StepCreationOptions,
    TrackResult,
    utc_now,
)
from research_flow.pipeline import execute_step_with_error_handling
from research_flow.steps import Step, create_step

logger = logging.getLogger(__name__)


class TrackOptions(BaseModel):
    """Options for :func:`track`.

    Attributes:
        name: Track name; also the name of the returned step.
        steps: Steps executed in order.
        isolate: Start from an empty data bag and keep data out of the parent.
        include_in_results: Append ``{"track": TrackResult}`` to parent results.
        description: Optional human-readable purpose of the track.
        metadata: User metadata copied into the TrackResult; a numeric
            ``confidence`` entry sets the track's confidence.
        continue_on_error: Keep running the remaining steps after a failure.
        retry: Retry settings for the whole track.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    steps: list[Any] = Field(default_factory=list)
    isolate: bool = False
    include_in_results: bool = True
    description: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    continue_on_error: bool = False
    retry: RetryConfig | None = None


def _validate_track_options(options: TrackOptions) -> None:
    if not options.name.strip():
        msg = "Track name is required"
        raise ValidationError(
            msg,
            step="Track",
            suggestions=["Provide a unique name for each track"],
        )
    if not options.steps:
        msg = f"Track {options.name!r} requires at least one step"
        raise ValidationError(msg, step=options.name)
    for index, item in enumerate(options.steps):
        if not isinstance(item, Step):
            msg = f"Invalid step at position {index} in track {options.name!r}"
            raise ConfigurationError(
                msg,
                step=options.name,
                details={"invalid_step": repr(item)},
                suggestions=["Build steps with create_step() or a step factory"],
            )


def _track_confidence(options: TrackOptions, final: ResearchState) -> float | None:
    explicit = options.metadata.get("confidence")
    if isinstance(explicit, (int, float)) and not isinstance(explicit, bool):
        return float(explicit)
    if final.metadata.confidence_score > 0:
        return final.metadata.confidence_score
    return None


def _build_track_result(
    options: TrackOptions,
    final: ResearchState,
    *,
    failed_step: str | None = None,
) -> TrackResult:
    """Snapshot the track's final state into a ``TrackResult``."""
    errors = [to_error_record(e, default_step=failed_step) for e in final.errors]
    metadata: dict[str, Any] = {
        **options.metadata,
        "description": options.description,
        "error_count": len(errors),
    }
    if failed_step is None:
        metadata["completed_at"] = utc_now().isoformat()
    else:
        metadata["failed_at"] = utc_now().isoformat()
        metadata["failed_step"] = failed_step
    confidence = _track_confidence(options, final)
    if confidence is not None:
        metadata["confidence"] = confidence

    return TrackResult(
        name=options.name,
        results=list(final.results),
        data={k: v for k, v in final.data.items() if k != TRACKS_KEY},
        metadata=metadata,
        errors=errors,
        completed=not errors,
    )


def _attach_track(
    parent: ResearchState,
    result: TrackResult,
    options: TrackOptions,
    *,
    surface_data: bool,
) -> ResearchState:
    """Return a copy of *parent* carrying *result* under ``data["tracks"]``."""
    data = dict(parent.data)
    if surface_data:
        data.update(result.data)
    data[TRACKS_KEY] = {**parent.tracks, result.name: result}
    results = list(parent.results)
    if options.include_in_results:
        results.append({"track": result})
    return parent.evolve(data=data, results=results)


async def _execute_track(state: ResearchState, options: TrackOptions) -> ResearchState:
    name = options.name
    track_logger = get_step_logger(name, logger)
    description = f" ({options.description})" if options.description else ""
    track_logger.info("Starting research track: %s%s", name, description)
    track_logger.debug(
        "Track configuration: isolate=%s, continue_on_error=%s, steps=%d",
        options.isolate,
        options.continue_on_error,
        len(options.steps),
    )

    current = state.evolve(
        data={} if options.isolate else dict(state.data),
        results=[],
        errors=[],
    ).with_metadata(current_track=name, track_description=options.description)

    failure = None
    failed_step = None
    for step in options.steps:
        track_logger.debug("Executing step %r in track %r", step.name, name)
        current, error = await execute_step_with_error_handling(
            step, current, logger=logger
        )
        if error is None:
            continue
        track_logger.error(
            "Error in step %r of track %r: %s", step.name, name, error_message(error)
        )
        if not options.continue_on_error:
            failure = error
            failed_step = step.name
            break
        track_logger.warning(
            "Continuing track %r after error in step %r", name, step.name
        )

    if failure is None:
        result = _build_track_result(options, current)
        if result.errors:
            track_logger.info(
                "Track %r completed with %d error(s)", name, len(result.errors)
            )
        else:
            track_logger.info("Track %r completed successfully", name)
        return _attach_track(state, result, options, surface_data=not options.isolate)

    result = _build_track_result(options, current, failed_step=failed_step)
    track_logger.error("Track %r failed: %s", name, error_message(failure))
    partial = _attach_track(state, result, options, surface_data=False)
    retry_enabled = bool(options.retry and options.retry.max_retries > 0)
    raise ProcessingError(
        f'Track "{name}" failed at step "{failed_step}": {error_message(failure)}',
        step=name,
        details={
            "track_name": name,
            "failed_step": failed_step,
            "original_error": failure,
        },
        retry=retry_enabled,
        suggestions=[
            "Set continue_on_error=True to let the track finish despite failures",
            "Inspect the failed track result for partial data",
        ],
        state=partial,
    ) from failure


def track(options: TrackOptions) -> Step:
    """Create a step that runs a research track.

    Args:
        options: Track configuration.

    Returns:
        A ``Step`` named after the track.

    Raises:
        ValidationError: If the name is empty or no steps are given.
        ConfigurationError: If an item of ``steps`` is not a ``Step``.
    """
    _validate_track_options(options)
    retry = options.retry or RetryConfig()
    return create_step(
        options.name,
        _execute_track,
        options,
        StepCreationOptions(
            retryable=retry.max_retries > 0,
            max_retries=retry.max_retries,
            retry_delay=retry.base_delay,
            backoff_factor=2.0,
        ),
        logger=logger,
    )

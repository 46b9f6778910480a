"""Core data models for the research pipeline engine.

Defines the state object threaded through every step, the audit records
appended while a pipeline runs, the immutable per-track result consumed by
the merger, and the configuration models shared by the pipeline, track,
parallel and flow-control drivers.

State is never mutated in place: every engine operation derives a new
``ResearchState`` through :meth:`ResearchState.evolve`, which also copies the
mutable containers so no returned state aliases the one it was derived from.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# ---------------------------------------------------------------------------
# Known keys of ``ResearchState.data``
# ---------------------------------------------------------------------------

TRACKS_KEY = "tracks"
"""Reserved key holding ``dict[str, TrackResult]``; never ordinary track data."""

EVALUATIONS_KEY = "evaluations"
"""Evaluation outcomes keyed by criteria name."""

ITERATIONS_KEY = "iterations"
"""Loop bookkeeping keyed by condition step name."""

PARALLEL_MERGED_KEY = "parallel_merged"
"""Output of the most recent parallel merge function."""

KNOWN_DATA_KEYS: frozenset[str] = frozenset(
    {TRACKS_KEY, EVALUATIONS_KEY, ITERATIONS_KEY, PARALLEL_MERGED_KEY}
)


def utc_now() -> datetime:
    """Return the current UTC time."""
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ErrorHandling(StrEnum):
    """Pipeline policy applied when a step fails."""

    STOP = "stop"
    CONTINUE = "continue"
    ROLLBACK = "rollback"


class MergeStrategy(StrEnum):
    """Conflict resolution strategy used by the merger."""

    FIRST = "first"
    LAST = "last"
    MOST_CONFIDENT = "mostConfident"
    MAJORITY = "majority"
    WEIGHTED = "weighted"
    CUSTOM = "custom"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class StepExecutionRecord(BaseModel):
    """Audit entry appended to ``metadata.step_history`` after each step.

    Attributes:
        step_name: Name of the executed step.
        start_time: When execution began.
        end_time: When execution finished (including retries).
        success: Whether the step produced a new state.
        error: The normalized error if the step failed.
        duration_seconds: Wall-clock duration in seconds.
        retry_attempts: Number of retries performed (initial call excluded).
        skipped: True when an optional step failed and was skipped.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    step_name: str
    start_time: datetime
    end_time: datetime
    success: bool
    error: Exception | None = None
    duration_seconds: float = 0.0
    retry_attempts: int = 0
    skipped: bool = False


class ErrorRecord(BaseModel):
    """Serialisable summary of an error, stored on track results."""

    model_config = ConfigDict(frozen=True)

    message: str
    step: str | None = None
    code: str | None = None


class TrackResult(BaseModel):
    """Immutable outcome of one track run, consumed by the merger.

    Attributes:
        name: Track name.
        results: Result fragments produced by the track.
        data: The track's data bag at the end of the run.
        metadata: ``confidence`` (when known), ``completed_at`` or
            ``failed_at``, ``description``, ``error_count`` and user metadata.
        errors: Errors raised inside the track.
        completed: True exactly when ``errors`` is empty.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    results: list[dict[str, Any]] = Field(default_factory=list)
    data: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    errors: list[ErrorRecord] = Field(default_factory=list)
    completed: bool = True

    @model_validator(mode="after")
    def _completed_matches_errors(self) -> TrackResult:
        """Validate that ``completed`` is strictly ``len(errors) == 0``."""
        if self.completed != (len(self.errors) == 0):
            msg = (
                f"TrackResult {self.name!r}: completed={self.completed} "
                f"contradicts {len(self.errors)} error(s)"
            )
            raise ValueError(msg)
        return self

    @property
    def confidence(self) -> float | None:
        """Confidence recorded in metadata, or None when unknown."""
        value = self.metadata.get("confidence")
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
        return None


class EvaluationResult(BaseModel):
    """Outcome of an ``evaluate`` step stored under ``data["evaluations"]``."""

    model_config = ConfigDict(frozen=True)

    passed: bool
    confidence_score: float
    timestamp: datetime = Field(default_factory=utc_now)
    criteria: str


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


class StateMetadata(BaseModel):
    """Bookkeeping carried alongside the research state.

    Attributes:
        start_time: When the run (or pipeline) started.
        end_time: Stamped once when a pipeline finishes.
        step_history: Append-only audit trail of step executions.
        current_step: Name of the step currently executing.
        current_track: Name of the track currently executing.
        track_description: Description of the current track.
        confidence_score: Highest evaluation confidence observed so far.
        last_evaluation: Criteria name of the most recent evaluation.
        warnings: Non-fatal warnings accumulated during the run.
        extra: Escape hatch for step-contributed metadata.
    """

    model_config = ConfigDict(frozen=True)

    start_time: datetime = Field(default_factory=utc_now)
    end_time: datetime | None = None
    step_history: list[StepExecutionRecord] = Field(default_factory=list)
    current_step: str | None = None
    current_track: str | None = None
    track_description: str | None = None
    confidence_score: float = 0.0
    last_evaluation: str | None = None
    warnings: list[str] = Field(default_factory=list)
    extra: dict[str, Any] = Field(default_factory=dict)


class ResearchState(BaseModel):
    """The single value threaded through every step.

    Attributes:
        query: The research query.
        output_schema: Pydantic model (or any ``TypeAdapter``-compatible
            type) the final result must satisfy; None to skip validation.
        data: Shared data bag; last writer wins per key.
        results: Ordered result fragments.
        errors: Ordered list of errors collected during the run.
        metadata: Run bookkeeping.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    query: str
    output_schema: Any = None
    data: dict[str, Any] = Field(default_factory=dict)
    results: list[dict[str, Any]] = Field(default_factory=list)
    errors: list[Exception] = Field(default_factory=list)
    metadata: StateMetadata = Field(default_factory=StateMetadata)

    def evolve(self, **changes: Any) -> ResearchState:
        """Return a new state with fresh containers and *changes* applied.

        ``data``, ``results``, ``errors`` and ``metadata`` are shallow-copied
        before *changes* are applied, so the returned state never shares a
        container with ``self``.

        Args:
            **changes: Field values to replace.

        Returns:
            A new ``ResearchState``.
        """
        fresh: dict[str, Any] = {
            "data": dict(self.data),
            "results": list(self.results),
            "errors": list(self.errors),
            "metadata": self.metadata.model_copy(
                update={
                    "step_history": list(self.metadata.step_history),
                    "warnings": list(self.metadata.warnings),
                    "extra": dict(self.metadata.extra),
                }
            ),
        }
        fresh.update(changes)
        return self.model_copy(update=fresh)

    def with_metadata(self, **changes: Any) -> ResearchState:
        """Return a new state whose metadata has *changes* applied."""
        fresh = self.evolve()
        return fresh.model_copy(
            update={"metadata": fresh.metadata.model_copy(update=changes)}
        )

    def with_extra(self, **changes: Any) -> ResearchState:
        """Return a new state with *changes* merged into ``metadata.extra``."""
        return self.with_metadata(extra={**self.metadata.extra, **changes})

    @property
    def tracks(self) -> dict[str, TrackResult]:
        """Track results recorded under the reserved ``tracks`` key."""
        return dict(self.data.get(TRACKS_KEY) or {})


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class RetryConfig(BaseModel):
    """Retry settings attached to a composite step.

    Attributes:
        max_retries: Retries after the initial attempt (0 disables retry).
        base_delay: Initial delay in seconds; doubled on each retry.
    """

    model_config = ConfigDict(frozen=True)

    max_retries: int = 0
    base_delay: float = 1.0

    @field_validator("max_retries")
    @classmethod
    def _non_negative_retries(cls, v: int) -> int:
        """Validate that max_retries is >= 0."""
        if v < 0:
            msg = "max_retries must be >= 0"
            raise ValueError(msg)
        return v


class StepCreationOptions(BaseModel):
    """Error handling and retry settings applied by the step factory."""

    model_config = ConfigDict(frozen=True)

    retryable: bool = False
    optional: bool = False
    max_retries: int = 3
    retry_delay: float = 1.0
    backoff_factor: float = 2.0


class PipelineConfig(BaseModel):
    """Configuration for :func:`research_flow.pipeline.execute_pipeline`.

    Attributes:
        error_handling: Policy applied when a step fails.
        max_retries: Retries for steps marked ``retryable``.
        retry_delay: Initial retry delay in seconds.
        backoff_factor: Multiplier applied to the delay on each retry.
        continue_on_error: Proceed past failures under any policy.
        timeout: Global cooperative timeout in seconds.
        log_level: Minimum level for the ``research_flow`` logger.
        log_file: Optional log file path.
    """

    model_config = ConfigDict(frozen=True)

    error_handling: ErrorHandling = ErrorHandling.STOP
    max_retries: int = 3
    retry_delay: float = 1.0
    backoff_factor: float = 2.0
    continue_on_error: bool = False
    timeout: float = 300.0
    log_level: str = "INFO"
    log_file: str | None = None

    @field_validator("timeout")
    @classmethod
    def _timeout_must_be_positive(cls, v: float) -> float:
        """Validate that the timeout is > 0."""
        if v <= 0:
            msg = "timeout must be > 0"
            raise ValueError(msg)
        return v

    @field_validator("max_retries")
    @classmethod
    def _retries_non_negative(cls, v: int) -> int:
        """Validate that max_retries is >= 0."""
        if v < 0:
            msg = "max_retries must be >= 0"
            raise ValueError(msg)
        return v

    @field_validator("retry_delay")
    @classmethod
    def _delay_non_negative(cls, v: float) -> float:
        """Validate that retry_delay is >= 0."""
        if v < 0:
            msg = "retry_delay must be >= 0"
            raise ValueError(msg)
        return v

    @field_validator("backoff_factor")
    @classmethod
    def _backoff_at_least_one(cls, v: float) -> float:
        """Validate that backoff_factor is >= 1."""
        if v < 1:
            msg = "backoff_factor must be >= 1"
            raise ValueError(msg)
        return v

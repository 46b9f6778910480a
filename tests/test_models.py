"""Tests for the state, record and configuration models in ``research_flow.models``."""

from __future__ import annotations

from hypothesis import given, settings, strategies as st
import pydantic
import pytest
from research_flow.models import (
    TRACKS_KEY,
    ErrorHandling,
    ErrorRecord,
    MergeStrategy,
    PipelineConfig,
    ResearchState,
    RetryConfig,
    StateMetadata,
    TrackResult,
)

from tests.conftest import make_state, make_track_result

# ===========================================================================
# ResearchState
# ===========================================================================


@pytest.mark.unit
class TestResearchStateEvolve:
    """``evolve`` derives new states without sharing containers."""

    def test_returns_new_object(self, state: ResearchState) -> None:
        """The derived state is a distinct object."""
        assert state.evolve() is not state

    def test_containers_are_not_aliased(self) -> None:
        """Data, results, errors and metadata lists are fresh copies."""
        original = make_state(
            data={"a": 1},
            results=[{"r": 1}],
            errors=[RuntimeError("x")],
        )
        derived = original.evolve()
        assert derived.data == original.data
        assert derived.data is not original.data
        assert derived.results is not original.results
        assert derived.errors is not original.errors
        assert derived.metadata is not original.metadata
        assert derived.metadata.step_history is not original.metadata.step_history
        assert derived.metadata.extra is not original.metadata.extra

    def test_mutating_derived_data_leaves_original_intact(self) -> None:
        """Writes through the derived containers do not leak back."""
        original = make_state(data={"a": 1})
        derived = original.evolve()
        derived.data["b"] = 2
        derived.results.append({"x": 1})
        assert original.data == {"a": 1}
        assert original.results == []

    def test_changes_applied(self, state: ResearchState) -> None:
        """Explicit changes replace the copied fields."""
        derived = state.evolve(data={"k": "v"})
        assert derived.data == {"k": "v"}
        assert state.data == {}

    def test_with_metadata_updates_only_metadata(self, state: ResearchState) -> None:
        """``with_metadata`` sets metadata fields on a new state."""
        derived = state.with_metadata(current_step="Search")
        assert derived.metadata.current_step == "Search"
        assert state.metadata.current_step is None
        assert derived.query == state.query

    def test_with_extra_merges(self) -> None:
        """``with_extra`` merges into the existing extra mapping."""
        original = make_state(metadata=StateMetadata(extra={"a": 1}))
        derived = original.with_extra(b=2)
        assert derived.metadata.extra == {"a": 1, "b": 2}
        assert original.metadata.extra == {"a": 1}

    def test_state_is_frozen(self, state: ResearchState) -> None:
        """Assigning to a field raises."""
        with pytest.raises(pydantic.ValidationError):
            state.query = "other"  # type: ignore[misc]

    def test_tracks_property(self) -> None:
        """``tracks`` exposes the reserved key as a copy."""
        track = make_track_result("A")
        s = make_state(data={TRACKS_KEY: {"A": track}})
        tracks = s.tracks
        assert tracks == {"A": track}
        tracks["B"] = track
        assert "B" not in s.data[TRACKS_KEY]

    def test_tracks_property_empty(self, state: ResearchState) -> None:
        """No tracks key yields an empty mapping."""
        assert state.tracks == {}


# ===========================================================================
# TrackResult
# ===========================================================================


@pytest.mark.unit
class TestTrackResult:
    """``completed`` is tied to the absence of errors."""

    def test_completed_without_errors(self) -> None:
        """A track with no errors is completed."""
        assert make_track_result().completed is True

    def test_failed_with_errors(self) -> None:
        """A track with errors must not be completed."""
        result = make_track_result(errors=[ErrorRecord(message="x")], completed=False)
        assert result.completed is False

    def test_completed_with_errors_rejected(self) -> None:
        """Contradicting ``completed`` and ``errors`` is a validation error."""
        with pytest.raises(pydantic.ValidationError, match="contradicts"):
            make_track_result(errors=[ErrorRecord(message="x")], completed=True)

    def test_not_completed_without_errors_rejected(self) -> None:
        """A failed track must carry at least one error."""
        with pytest.raises(pydantic.ValidationError):
            make_track_result(completed=False)

    @pytest.mark.parametrize(
        ("metadata", "expected"),
        [
            ({"confidence": 0.8}, 0.8),
            ({"confidence": 1}, 1.0),
            ({"confidence": "high"}, None),
            ({"confidence": True}, None),
            ({}, None),
        ],
    )
    def test_confidence(self, metadata: dict[str, object], expected: float | None) -> None:
        """Only numeric confidences are reported."""
        assert make_track_result(metadata=metadata).confidence == expected


# ===========================================================================
# Configuration
# ===========================================================================


@pytest.mark.unit
class TestPipelineConfig:
    """Defaults and validation of ``PipelineConfig``."""

    def test_defaults(self) -> None:
        """Defaults match the documented values."""
        config = PipelineConfig()
        assert config.error_handling is ErrorHandling.STOP
        assert config.max_retries == 3
        assert config.retry_delay == 1.0
        assert config.backoff_factor == 2.0
        assert config.continue_on_error is False
        assert config.timeout == 300.0
        assert config.log_level == "INFO"
        assert config.log_file is None

    def test_policy_from_string(self) -> None:
        """Policies are accepted by value."""
        assert PipelineConfig(error_handling="rollback").error_handling is ErrorHandling.ROLLBACK

    @pytest.mark.parametrize(
        "overrides",
        [
            {"timeout": 0},
            {"timeout": -1.0},
            {"max_retries": -1},
            {"retry_delay": -0.5},
            {"backoff_factor": 0.5},
            {"error_handling": "ignore"},
        ],
    )
    def test_invalid_values_rejected(self, overrides: dict[str, object]) -> None:
        """Out-of-range values raise pydantic validation errors."""
        with pytest.raises(pydantic.ValidationError):
            PipelineConfig(**overrides)

    @given(timeout=st.floats(min_value=0.001, max_value=1e6))
    @settings(max_examples=50)
    def test_positive_timeouts_accepted(self, timeout: float) -> None:
        """Property: every positive timeout is accepted unchanged."""
        assert PipelineConfig(timeout=timeout).timeout == timeout


@pytest.mark.unit
class TestRetryConfig:
    """Validation of ``RetryConfig``."""

    def test_defaults(self) -> None:
        """Retry is disabled by default."""
        config = RetryConfig()
        assert config.max_retries == 0
        assert config.base_delay == 1.0

    def test_negative_retries_rejected(self) -> None:
        """Negative retry counts are invalid."""
        with pytest.raises(pydantic.ValidationError):
            RetryConfig(max_retries=-1)


@pytest.mark.unit
class TestMergeStrategy:
    """Merge strategy values."""

    def test_most_confident_value(self) -> None:
        """The camel-case value is preserved."""
        assert MergeStrategy("mostConfident") is MergeStrategy.MOST_CONFIDENT

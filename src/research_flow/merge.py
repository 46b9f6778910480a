"""Conflict resolution between divergent track results.

Tracks running in parallel may write different values for the same data key
or produce competing result fragments. The functions here combine those
values with one of six strategies:

* ``first`` / ``last``: first- or last-seen value in track iteration order.
* ``mostConfident``: value of the track with the highest confidence; a
  missing confidence counts as 0 and ties keep first-seen order.
* ``majority``: most frequent value by structural equality; ties keep
  first-seen order.
* ``weighted``: weighted mean for numeric values, otherwise the value of the
  highest-weighted track. Requires explicit weights.
* ``custom``: a user-supplied resolver. Requires the resolver.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from research_flow.errors import ConfigurationError
from research_flow.models import (
    TRACKS_KEY,
    MergeStrategy,
    ResearchState,
    TrackResult,
    utc_now,
)

ConfidenceExtractor = Callable[[TrackResult], float]


class ValueMetadata(BaseModel):
    """Provenance of one candidate value.

    Attributes:
        track_name: Track that produced the value.
        confidence: Owning track's confidence (0.0 when unknown).
        timestamp: Completion (or failure) time of the owning track.
        track: The owning track result, for extractors and resolvers.
    """

    model_config = ConfigDict(frozen=True)

    track_name: str
    confidence: float = 0.0
    timestamp: str | None = None
    track: TrackResult | None = None


CustomResolver = Callable[[list[Any], list[ValueMetadata]], Any]


class ConflictResolutionOptions(BaseModel):
    """How competing values are resolved.

    Attributes:
        strategy: The resolution strategy.
        weights: ``{track_name: weight}`` for the ``weighted`` strategy;
            tracks missing from the map weigh 1.
        custom_resolver: ``(values, metadata) -> value`` for ``custom``.
        confidence_extractor: ``(track_result) -> float`` overriding the
            track's recorded confidence under ``mostConfident``.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    strategy: MergeStrategy = MergeStrategy.MOST_CONFIDENT
    weights: dict[str, float] | None = None
    custom_resolver: CustomResolver | None = None
    confidence_extractor: ConfidenceExtractor | None = None


def _value_metadata(name: str, track: TrackResult) -> ValueMetadata:
    timestamp = track.metadata.get("completed_at") or track.metadata.get("failed_at")
    return ValueMetadata(
        track_name=name,
        confidence=track.confidence or 0.0,
        timestamp=str(timestamp) if timestamp is not None else None,
        track=track,
    )


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


def _most_confident(
    values: Sequence[Any],
    metadata: Sequence[ValueMetadata],
    extractor: ConfidenceExtractor | None,
) -> Any:
    best_index = 0
    best_score = float("-inf")
    for index, meta in enumerate(metadata):
        if extractor is not None and meta.track is not None:
            score = extractor(meta.track)
        else:
            score = meta.confidence
        # Strict comparison keeps the first-seen value on ties.
        if score > best_score:
            best_index, best_score = index, score
    return values[best_index]


def _majority(values: Sequence[Any]) -> Any:
    counts: dict[str, list[Any]] = {}
    for value in values:
        key = _canonical(value)
        if key in counts:
            counts[key][0] += 1
        else:
            counts[key] = [1, value]
    best_count, best_value = 0, None
    for count, value in counts.values():
        if count > best_count:
            best_count, best_value = count, value
    return best_value


def _weighted(
    values: Sequence[Any],
    metadata: Sequence[ValueMetadata],
    weights: dict[str, float] | None,
) -> Any:
    if weights is None:
        msg = "Weights required for weighted conflict resolution strategy"
        raise ConfigurationError(
            msg, suggestions=["Pass weights={track_name: weight} in the options"]
        )
    track_weights = [weights.get(m.track_name, 1.0) for m in metadata]

    if _is_number(values[0]):
        numeric = [(v, w) for v, w in zip(values, track_weights) if _is_number(v)]
        total_weight = sum(w for _, w in numeric)
        if total_weight == 0:
            msg = "Weights of the competing tracks sum to zero"
            raise ConfigurationError(msg, details={"weights": weights})
        return sum(v * w for v, w in numeric) / total_weight

    best_index = 0
    best_weight = float("-inf")
    for index, weight in enumerate(track_weights):
        if weight > best_weight:
            best_index, best_weight = index, weight
    return values[best_index]


def resolve_conflict(
    values: Sequence[Any],
    metadata: Sequence[ValueMetadata],
    options: ConflictResolutionOptions,
) -> Any:
    """Resolve competing *values* into one according to *options*.

    Args:
        values: Candidate values in track iteration order.
        metadata: Provenance of each value, aligned with *values*.
        options: Resolution strategy and its parameters.

    Returns:
        The resolved value, or None when *values* is empty.

    Raises:
        ConfigurationError: If ``weighted`` has no weights or ``custom`` has
            no resolver.
    """
    if not values:
        return None
    if len(values) == 1:
        return values[0]

    match options.strategy:
        case MergeStrategy.FIRST:
            return values[0]
        case MergeStrategy.LAST:
            return values[-1]
        case MergeStrategy.MOST_CONFIDENT:
            return _most_confident(values, metadata, options.confidence_extractor)
        case MergeStrategy.MAJORITY:
            return _majority(values)
        case MergeStrategy.WEIGHTED:
            return _weighted(values, metadata, options.weights)
        case MergeStrategy.CUSTOM:
            if options.custom_resolver is None:
                msg = "Custom resolver required for custom conflict resolution strategy"
                raise ConfigurationError(msg)
            return options.custom_resolver(list(values), list(metadata))
    return values[-1]


# ---------------------------------------------------------------------------
# Merging
# ---------------------------------------------------------------------------


def merge_track_data(
    tracks: dict[str, TrackResult],
    options: ConflictResolutionOptions | None = None,
) -> dict[str, Any]:
    """Merge the ``data`` of several tracks key by key.

    The reserved ``tracks`` key is skipped. A key defined by a single track
    passes through unchanged.

    Args:
        tracks: Track results keyed by name, in iteration order.
        options: Resolution options; defaults to the ``last`` strategy.

    Returns:
        The merged data mapping.
    """
    options = options or ConflictResolutionOptions(strategy=MergeStrategy.LAST)
    candidates: dict[str, tuple[list[Any], list[ValueMetadata]]] = {}
    for name, track in tracks.items():
        meta = _value_metadata(name, track)
        for key, value in track.data.items():
            if key == TRACKS_KEY:
                continue
            values, metadata = candidates.setdefault(key, ([], []))
            values.append(value)
            metadata.append(meta)

    return {
        key: resolve_conflict(values, metadata, options)
        for key, (values, metadata) in candidates.items()
    }


def merge_track_results(
    tracks: dict[str, TrackResult],
    state: ResearchState | None = None,
    options: ConflictResolutionOptions | None = None,
) -> dict[str, Any]:
    """Merge result fragments of several tracks, grouped by fragment type.

    A fragment's type is its (first) top-level key, so ``{"summary": ...}``
    fragments from every track compete with each other. A type produced by
    a single fragment is taken as-is without consulting the strategy.

    Args:
        tracks: Track results keyed by name, in iteration order.
        state: Parent state; accepted for merge-hook compatibility.
        options: Resolution options; defaults to ``mostConfident``.

    Returns:
        ``{fragment_type: resolved_value}``.
    """
    options = options or ConflictResolutionOptions()
    groups: dict[str, tuple[list[Any], list[ValueMetadata]]] = {}
    for name, track in tracks.items():
        meta = _value_metadata(name, track)
        for fragment in track.results:
            if not fragment:
                continue
            fragment_type = next(iter(fragment))
            values, metadata = groups.setdefault(fragment_type, ([], []))
            values.append(fragment[fragment_type])
            metadata.append(meta)

    merged: dict[str, Any] = {}
    for fragment_type, (values, metadata) in groups.items():
        if len(values) == 1:
            merged[fragment_type] = values[0]
        else:
            merged[fragment_type] = resolve_conflict(values, metadata, options)
    return merged


def create_merge_function(
    options: ConflictResolutionOptions | None = None,
) -> Callable[[dict[str, TrackResult], ResearchState], dict[str, Any]]:
    """Build a merge hook for :class:`~research_flow.parallel.ParallelOptions`.

    Args:
        options: Resolution options used for both data and results;
            defaults to ``mostConfident``.

    Returns:
        A pure ``(tracks, state) -> {"data", "results", "metadata"}`` function.
    """
    options = options or ConflictResolutionOptions()

    def merge(tracks: dict[str, TrackResult], state: ResearchState) -> dict[str, Any]:
        return {
            "data": merge_track_data(tracks, options),
            "results": merge_track_results(tracks, state, options),
            "metadata": {
                "merge_strategy": str(options.strategy),
                "tracks_count": len(tracks),
                "merged_at": utc_now().isoformat(),
            },
        }

    return merge

"""Shared factories and fixtures for the research_flow test suite."""

from __future__ import annotations

from collections.abc import Callable
import logging
from typing import Any

import pytest
from research_flow.models import (
    PipelineConfig,
    ResearchState,
    StateMetadata,
    TrackResult,
)
from research_flow.steps import Step, StepFn

# ---------------------------------------------------------------------------
# Factory functions (plain functions, importable from conftest)
# ---------------------------------------------------------------------------


def make_state(**overrides: Any) -> ResearchState:
    """Build a valid ResearchState with sensible defaults.

    Args:
        **overrides: Field values to override.

    Returns:
        A fully constructed ResearchState instance.
    """
    defaults: dict[str, Any] = {
        "query": "What is the boiling point of water on Everest?",
        "metadata": StateMetadata(),
    }
    defaults.update(overrides)
    return ResearchState(**defaults)


def make_config(**overrides: Any) -> PipelineConfig:
    """Build a PipelineConfig with fast retry defaults for tests.

    Args:
        **overrides: Field values to override.

    Returns:
        A fully constructed PipelineConfig instance.
    """
    defaults: dict[str, Any] = {"retry_delay": 0.0, "timeout": 5.0}
    defaults.update(overrides)
    return PipelineConfig(**defaults)


def make_track_result(name: str = "track", **overrides: Any) -> TrackResult:
    """Build a completed TrackResult with sensible defaults.

    Args:
        name: Track name.
        **overrides: Field values to override.

    Returns:
        A fully constructed TrackResult instance.
    """
    defaults: dict[str, Any] = {
        "name": name,
        "results": [],
        "data": {},
        "metadata": {"completed_at": "2026-01-01T00:00:00+00:00"},
    }
    defaults.update(overrides)
    return TrackResult(**defaults)


def make_step(
    name: str = "step",
    *,
    data: dict[str, Any] | None = None,
    result: dict[str, Any] | None = None,
    error: Exception | None = None,
    rollback: StepFn | None = None,
    retryable: bool = False,
    optional: bool = False,
    calls: list[ResearchState] | None = None,
) -> Step:
    """Build a bare Step that writes *data*, appends *result* or raises *error*.

    Args:
        name: Step name.
        data: Keys merged into ``state.data``.
        result: Result fragment appended to ``state.results``.
        error: Exception raised instead of returning a state.
        rollback: Optional rollback function.
        retryable: Whether the step is retryable.
        optional: Whether the step is optional.
        calls: When given, every state the step receives is appended to it.

    Returns:
        A Step instance.
    """

    async def execute(state: ResearchState) -> ResearchState:
        if calls is not None:
            calls.append(state)
        if error is not None:
            raise error
        results = [*state.results, result] if result is not None else list(state.results)
        return state.evolve(data={**state.data, **(data or {})}, results=results)

    return Step(
        name=name,
        execute=execute,
        rollback=rollback,
        retryable=retryable,
        optional=optional,
    )


def make_flaky_step(
    name: str,
    failures: list[Exception],
    *,
    retryable: bool = True,
) -> tuple[Step, list[int]]:
    """Build a Step that raises each error of *failures* once, then succeeds.

    Returns:
        The step and a single-element list holding the call count.
    """
    counter = [0]
    pending = list(failures)

    async def execute(state: ResearchState) -> ResearchState:
        counter[0] += 1
        if pending:
            raise pending.pop(0)
        return state.evolve(data={**state.data, name: counter[0]})

    return Step(name=name, execute=execute, retryable=retryable), counter


def data_writer(**values: Any) -> Callable[[ResearchState, Any], Any]:
    """Return an executor for ``create_step`` that merges *values* into data."""

    async def executor(state: ResearchState, options: Any) -> ResearchState:
        return state.evolve(data={**state.data, **values})

    return executor


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def state() -> ResearchState:
    """Return a fresh ResearchState with no data, results or errors."""
    return make_state()


@pytest.fixture(autouse=True)
def _reset_research_flow_logger() -> Any:
    """Restore the ``research_flow`` logger after tests that configure it."""
    root = logging.getLogger("research_flow")
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)

"""Top-level research entry point.

:func:`research` builds the initial state, runs the pipeline, surfaces the
first failure as an exception and validates the final result fragment
against the caller's output schema.
"""

from __future__ import annotations

from collections.abc import Sequence
import logging
from typing import Any

import pydantic

from research_flow.errors import (
    ConfigurationError,
    ErrorCode,
    ResearchError,
    ValidationError,
)
from research_flow.models import PipelineConfig
from research_flow.pipeline import (
    apply_env_overrides,
    create_initial_state,
    execute_pipeline,
)
from research_flow.steps import Step

logger = logging.getLogger(__name__)


def validate_output(result: Any, output_schema: Any) -> Any:
    """Validate *result* against *output_schema* with a pydantic ``TypeAdapter``.

    Args:
        result: The final result fragment.
        output_schema: A pydantic model or any type ``TypeAdapter`` accepts;
            None skips validation.

    Returns:
        The validated (and possibly coerced) result.

    Raises:
        ValidationError: If *result* does not match *output_schema*.
    """
    if output_schema is None:
        return result
    try:
        return pydantic.TypeAdapter(output_schema).validate_python(result)
    except pydantic.ValidationError as exc:
        logger.error("Output validation failed: %d error(s)", exc.error_count())
        raise ValidationError(
            "Research results do not match the expected schema",
            code=ErrorCode.SCHEMA_VALIDATION_ERROR,
            details={"errors": exc.errors(include_url=False), "result": result},
            suggestions=[
                "Check that the output schema matches the structure of the results",
                "Make the final step produce the expected fragment",
            ],
        ) from exc


async def _run_research(
    query: Any,
    output_schema: Any,
    steps: Sequence[Step],
    config: PipelineConfig | None,
) -> Any:
    if not isinstance(query, str) or not query.strip():
        msg = "Invalid query: expected a non-empty string"
        raise ValidationError(
            msg,
            details={"provided_query": repr(query)},
            suggestions=["Pass the research question as a string"],
        )
    if not steps:
        msg = "No steps provided for research"
        raise ConfigurationError(
            msg,
            suggestions=["Provide at least one step that adds to results"],
        )

    effective = apply_env_overrides(config or PipelineConfig())
    logger.debug("Starting research for query %r", query)
    final = await execute_pipeline(
        create_initial_state(query, output_schema), list(steps), effective
    )

    if final.errors:
        critical = next(
            (e for e in final.errors if isinstance(e, ResearchError)), final.errors[0]
        )
        logger.error(
            "Research pipeline failed with %d error(s); first: %s",
            len(final.errors),
            critical,
        )
        raise critical

    if not final.results:
        msg = "Research completed but produced no results"
        raise ValidationError(
            msg,
            suggestions=["Check that at least one step adds to the results list"],
        )

    validated = validate_output(final.results[-1], output_schema)
    logger.info("Research completed successfully")
    return validated


async def research(
    query: str,
    output_schema: Any,
    steps: Sequence[Step],
    config: PipelineConfig | None = None,
) -> Any:
    """Run a research pipeline and return its validated final result.

    Args:
        query: The research query.
        output_schema: Type the last result fragment must satisfy, or None.
        steps: Steps making up the pipeline.
        config: Pipeline configuration; ``RESEARCH_FLOW_*`` environment
            variables fill in fields left at their defaults.

    Returns:
        The last result fragment, validated against *output_schema*.

    Raises:
        ResearchError: The first typed error of a failed run, a
            ``ValidationError`` for bad input or output, or an
            ``unknown_error`` wrapping any other exception.
    """
    try:
        return await _run_research(query, output_schema, steps, config)
    except ResearchError:
        raise
    except Exception as exc:
        raise ResearchError(
            str(exc) or "An unknown error occurred during research",
            code=ErrorCode.UNKNOWN_ERROR,
            details={"original_error": exc},
        ) from exc

"""Typed error taxonomy for the research pipeline engine.

Every failure that crosses a step boundary is represented by a
``ResearchError`` (or one of its subclasses). Each subclass carries a
closed ``ErrorKind`` discriminant, a machine-readable ``ErrorCode``, and a
``retry`` flag which is the single source of truth consulted by the retry
executor.

Leaf collaborators raise these errors; the step factory normalizes any
untyped exception into a ``ResearchError`` with code
``step_execution_error`` while chaining the original exception so its
traceback is preserved.
"""

from __future__ import annotations

from enum import StrEnum
from typing import TYPE_CHECKING, Any, ClassVar

from research_flow.models import ErrorRecord

if TYPE_CHECKING:
    from research_flow.models import ResearchState


class ErrorCode(StrEnum):
    """Machine-readable error codes used throughout the engine."""

    # Configuration errors
    CONFIGURATION_ERROR = "configuration_error"
    INVALID_OPTIONS = "invalid_options"
    MISSING_REQUIRED_OPTION = "missing_required_option"
    INVALID_PROVIDER = "invalid_provider"

    # Validation errors
    VALIDATION_ERROR = "validation_error"
    SCHEMA_VALIDATION_ERROR = "schema_validation_error"
    INVALID_OUTPUT_FORMAT = "invalid_output_format"

    # Network errors
    NETWORK_ERROR = "network_error"
    REQUEST_TIMEOUT = "request_timeout"
    CONNECTION_ERROR = "connection_error"

    # API errors
    API_ERROR = "api_error"
    RATE_LIMITED = "rate_limited"
    AUTHENTICATION_ERROR = "authentication_error"
    QUOTA_EXCEEDED = "quota_exceeded"

    # LLM errors
    LLM_ERROR = "llm_error"
    PROMPT_TOO_LARGE = "prompt_too_large"
    CONTEXT_LIMIT_EXCEEDED = "context_limit_exceeded"
    CONTENT_POLICY_VIOLATION = "content_policy_violation"

    # Search errors
    SEARCH_ERROR = "search_error"
    NO_RESULTS_FOUND = "no_results_found"
    INVALID_SEARCH_QUERY = "invalid_search_query"

    # Content extraction errors
    EXTRACTION_ERROR = "extraction_error"
    SELECTOR_NOT_FOUND = "selector_not_found"
    INVALID_CONTENT_FORMAT = "invalid_content_format"

    # Processing errors
    PROCESSING_ERROR = "processing_error"
    TIMEOUT_ERROR = "timeout_error"
    MAX_ITERATIONS_ERROR = "max_iterations_error"

    # Pipeline execution errors
    PIPELINE_ERROR = "pipeline_error"
    STEP_EXECUTION_ERROR = "step_execution_error"
    PARALLEL_EXECUTION_ERROR = "parallel_execution_error"
    STEP_TIMEOUT = "step_timeout"

    # Generic errors
    UNKNOWN_ERROR = "unknown_error"
    NOT_IMPLEMENTED = "not_implemented"


ERROR_CODE_DESCRIPTIONS: dict[ErrorCode, str] = {
    ErrorCode.CONFIGURATION_ERROR: "There was an error in the configuration of the research pipeline",
    ErrorCode.INVALID_OPTIONS: "The options provided are invalid or contain incorrect values",
    ErrorCode.MISSING_REQUIRED_OPTION: "A required option is missing from the configuration",
    ErrorCode.INVALID_PROVIDER: "The provider specified is invalid or not properly configured",
    ErrorCode.VALIDATION_ERROR: "Validation failed for the input or output data",
    ErrorCode.SCHEMA_VALIDATION_ERROR: "The data does not conform to the expected schema",
    ErrorCode.INVALID_OUTPUT_FORMAT: "The output format of the data is invalid",
    ErrorCode.NETWORK_ERROR: "A network operation failed",
    ErrorCode.REQUEST_TIMEOUT: "The request timed out",
    ErrorCode.CONNECTION_ERROR: "Failed to establish a connection",
    ErrorCode.API_ERROR: "An API operation failed",
    ErrorCode.RATE_LIMITED: "The request was rate limited by the API provider",
    ErrorCode.AUTHENTICATION_ERROR: "Authentication failed for the API request",
    ErrorCode.QUOTA_EXCEEDED: "The API quota has been exceeded",
    ErrorCode.LLM_ERROR: "An error occurred while processing the LLM request",
    ErrorCode.PROMPT_TOO_LARGE: "The prompt size exceeds the LLM model's maximum limit",
    ErrorCode.CONTEXT_LIMIT_EXCEEDED: "The context size exceeds the LLM model's maximum limit",
    ErrorCode.CONTENT_POLICY_VIOLATION: "The content violates the LLM provider's content policy",
    ErrorCode.SEARCH_ERROR: "An error occurred during the search operation",
    ErrorCode.NO_RESULTS_FOUND: "No search results were found for the query",
    ErrorCode.INVALID_SEARCH_QUERY: "The search query is invalid or unsupported",
    ErrorCode.EXTRACTION_ERROR: "Failed to extract content from the source",
    ErrorCode.SELECTOR_NOT_FOUND: "The specified selector was not found in the document",
    ErrorCode.INVALID_CONTENT_FORMAT: "The content format is invalid or unsupported",
    ErrorCode.PROCESSING_ERROR: "An error occurred during processing",
    ErrorCode.TIMEOUT_ERROR: "The operation timed out",
    ErrorCode.MAX_ITERATIONS_ERROR: "The maximum number of iterations was exceeded",
    ErrorCode.PIPELINE_ERROR: "An error occurred during pipeline execution",
    ErrorCode.STEP_EXECUTION_ERROR: "An error occurred during the execution of a pipeline step",
    ErrorCode.PARALLEL_EXECUTION_ERROR: "An error occurred in parallel execution",
    ErrorCode.STEP_TIMEOUT: "A pipeline step timed out",
    ErrorCode.UNKNOWN_ERROR: "An unknown error occurred",
    ErrorCode.NOT_IMPLEMENTED: "This feature is not implemented yet",
}


class ErrorKind(StrEnum):
    """Closed set of error kinds; the discriminant of ``ResearchError``."""

    CONFIGURATION = "configuration"
    VALIDATION = "validation"
    NETWORK = "network"
    API = "api"
    LLM = "llm"
    SEARCH = "search"
    EXTRACTION = "extraction"
    PROCESSING = "processing"
    PIPELINE = "pipeline"
    TIMEOUT = "timeout"
    MAX_ITERATIONS = "max_iterations"
    GENERIC = "generic"


class ResearchError(Exception):
    """Base class for every typed error raised by the engine.

    Attributes:
        message: Human-readable description.
        code: Machine-readable error code.
        step: Name of the step where the error occurred, if known.
        details: Structured context for debugging.
        retry: Whether the retry executor may retry the failed operation.
        suggestions: Hints for fixing or working around the error.
        state: Best-effort partial state attached by composite steps
            (track runner) so callers can inspect what was produced.
    """

    kind: ClassVar[ErrorKind] = ErrorKind.GENERIC
    default_code: ClassVar[ErrorCode] = ErrorCode.UNKNOWN_ERROR
    default_retry: ClassVar[bool] = False

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode | str | None = None,
        step: str | None = None,
        details: dict[str, Any] | None = None,
        retry: bool | None = None,
        suggestions: list[str] | None = None,
        state: ResearchState | None = None,
    ) -> None:
        """Initialize with a message and optional structured context.

        Args:
            message: Human-readable error description.
            code: Error code; defaults to the subclass's ``default_code``.
            step: Step in which the error occurred.
            details: Structured debugging context.
            retry: Retryability; defaults to the subclass's ``default_retry``.
            suggestions: Hints for the caller.
            state: Optional partial state to carry with the error.
        """
        super().__init__(message)
        self.message = message
        self.code = ErrorCode(code) if code is not None else self.default_code
        self.step = step
        self.details: dict[str, Any] = dict(details or {})
        self.retry = self.default_retry if retry is None else retry
        self.suggestions: list[str] = list(suggestions or [])
        self.state = state

    def formatted_message(self) -> str:
        """Render the error with its code, step and suggestions for logging."""
        message = f"[{self.code}] {self.message}"
        if self.step:
            message = f"[Step: {self.step}] {message}"
        if self.suggestions:
            lines = "\n".join(f"- {s}" for s in self.suggestions)
            message += f"\nSuggestions:\n{lines}"
        return message

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(message={self.message!r}, code={str(self.code)!r}, "
            f"step={self.step!r}, retry={self.retry})"
        )


class ConfigurationError(ResearchError):
    """The pipeline or one of its steps is misconfigured."""

    kind = ErrorKind.CONFIGURATION
    default_code = ErrorCode.CONFIGURATION_ERROR


class ValidationError(ResearchError):
    """Input or output validation failed."""

    kind = ErrorKind.VALIDATION
    default_code = ErrorCode.VALIDATION_ERROR


class NetworkError(ResearchError):
    """A network operation failed; retryable by default."""

    kind = ErrorKind.NETWORK
    default_code = ErrorCode.NETWORK_ERROR
    default_retry = True


class ApiError(ResearchError):
    """An external API call failed."""

    kind = ErrorKind.API
    default_code = ErrorCode.API_ERROR

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        **kwargs: Any,
    ) -> None:
        """Initialize and record the HTTP status code in ``details``."""
        super().__init__(message, **kwargs)
        self.status_code = status_code
        self.details["status_code"] = status_code


class LLMError(ResearchError):
    """A language model call failed; retryable by default."""

    kind = ErrorKind.LLM
    default_code = ErrorCode.LLM_ERROR
    default_retry = True


class SearchError(ResearchError):
    """A search operation failed; retryable by default."""

    kind = ErrorKind.SEARCH
    default_code = ErrorCode.SEARCH_ERROR
    default_retry = True


class ExtractionError(ResearchError):
    """Content extraction failed."""

    kind = ErrorKind.EXTRACTION
    default_code = ErrorCode.EXTRACTION_ERROR


class ProcessingError(ResearchError):
    """A processing step (track, loop, evaluation) failed."""

    kind = ErrorKind.PROCESSING
    default_code = ErrorCode.PROCESSING_ERROR


class PipelineError(ResearchError):
    """Pipeline-level failure (e.g. a rollback that itself failed)."""

    kind = ErrorKind.PIPELINE
    default_code = ErrorCode.PIPELINE_ERROR


class ExecutionTimeoutError(ResearchError):
    """A pipeline or parallel fan-out exceeded its cooperative timeout."""

    kind = ErrorKind.TIMEOUT
    default_code = ErrorCode.TIMEOUT_ERROR


class MaxIterationsError(ResearchError):
    """A bounded loop exhausted its iterations without meeting its condition."""

    kind = ErrorKind.MAX_ITERATIONS
    default_code = ErrorCode.MAX_ITERATIONS_ERROR


class ParallelError(ProcessingError):
    """Failure inside the parallel runner (including merge failures)."""

    default_code = ErrorCode.PARALLEL_EXECUTION_ERROR


def is_research_error(error: object) -> bool:
    """Return True if *error* is a typed ``ResearchError``."""
    return isinstance(error, ResearchError)


def is_retryable_error(error: object) -> bool:
    """Default retry predicate: typed errors whose ``retry`` flag is True."""
    return isinstance(error, ResearchError) and error.retry is True


def error_message(error: object) -> str:
    """Return the message of *error*, falling back to ``str()``."""
    if isinstance(error, ResearchError):
        return error.message
    return str(error)


def to_error_record(error: BaseException, default_step: str | None = None) -> ErrorRecord:
    """Summarize an exception as a serialisable ``ErrorRecord``.

    Args:
        error: The exception to summarize.
        default_step: Step name used when the error does not carry one.

    Returns:
        An ``ErrorRecord`` with message, step and code.
    """
    if isinstance(error, ResearchError):
        return ErrorRecord(
            message=error.message,
            step=error.step or default_step,
            code=str(error.code),
        )
    return ErrorRecord(
        message=str(error),
        step=default_step,
        code=str(ErrorCode.UNKNOWN_ERROR),
    )

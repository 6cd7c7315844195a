"""
Structured error types for the Spindle workflow engine.

Every failure the engine can surface is a SpindleError subclass carrying a
category, a retryable flag, structured context, and an optional chained
cause. The scheduler decides retry behaviour from these flags, and the
template and definition layers attach validation results so callers get the
full ``{errors, warnings}`` list instead of a bare message.

Architecture:
    ::

        ┌────────────────────────────────────────────────────────────────┐
        │                        SpindleError                            │
        │        (category, retryable, context, cause)                   │
        ├────────────────────────────────────────────────────────────────┤
        │                                                                │
        │  DefinitionError        NodeExecutionError   StateStoreError   │
        │  (DEFINITION)           (EXECUTION, retry)   (STORAGE)         │
        │     │                       │                   │              │
        │  DefinitionParseError   NodeTimeoutError     StateNotFound     │
        │                                                                │
        │  ConditionEvaluationError   ExecutionStateError                │
        │  (CONDITION, never fatal)   (EXECUTION)                        │
        │                                                                │
        │  TemplateError ── TemplateNotFoundError                        │
        │  (TEMPLATE)    ── TemplateValidationError (result)             │
        │                ── TemplateImportError                          │
        │                ── TemplatePermissionError                      │
        │                                                                │
        │  WorkflowNotFoundError                                         │
        └────────────────────────────────────────────────────────────────┘

Examples:
    >>> error = NodeExecutionError("upstream 503", node_id="load")
    >>> error.retryable
    True
    >>> error.to_dict()["context"]["node_id"]
    'load'

Guardrails:
    ❌ DON'T: Raise bare Exception from executors or stores
    ✅ DO: Raise the SpindleError subclass matching the failure domain

    ❌ DON'T: Let ConditionEvaluationError escape the evaluator
    ✅ DO: Treat it as ``False`` and log it

Tags:
    error-handling, exception-hierarchy, retry-logic, spindle-core

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from spindle.orchestration.validator import ValidationResult


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    DEFINITION = "DEFINITION"        # Invalid or unparseable workflow graph
    EXECUTION = "EXECUTION"          # Node invocation failures
    TIMEOUT = "TIMEOUT"              # Watchdog or workflow deadline expiry
    CONDITION = "CONDITION"          # Condition expression failures
    STORAGE = "STORAGE"              # State / record persistence
    TEMPLATE = "TEMPLATE"            # Template extraction / instantiation
    CONFIG = "CONFIG"                # Missing or invalid settings
    INTERNAL = "INTERNAL"            # Bugs, unexpected state
    UNKNOWN = "UNKNOWN"


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Attributes:
        workflow_id: Definition the error relates to
        execution_id: Execution the error occurred in
        node_id: Node being dispatched or validated
        template_id: Template being processed
        metadata: Additional key-value pairs
    """

    workflow_id: str | None = None
    execution_id: str | None = None
    node_id: str | None = None
    template_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result: dict[str, Any] = {}
        for key in ("workflow_id", "execution_id", "node_id", "template_id"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        result.update(self.metadata)
        return result


class SpindleError(Exception):
    """
    Base class for all Spindle errors.

    Subclasses set ``default_category`` and ``default_retryable``; both can be
    overridden per instance.

    Example:
        >>> try:
        ...     raise KeyError("endpoint")
        ... except KeyError as e:
        ...     error = SpindleError("Executor misconfigured", cause=e)
        >>> error.cause
        KeyError('endpoint')
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> SpindleError:
        """
        Add context to this error (fluent API).

        Usage:
            raise StateStoreError("write failed").with_context(execution_id=eid)
        """
        for key, value in kwargs.items():
            if key != "metadata" and hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# DEFINITION ERRORS
# =============================================================================


class DefinitionError(SpindleError):
    """A workflow definition is structurally invalid and cannot execute.

    Carries the full :class:`ValidationResult` when raised by the catalog or
    template instantiation, so callers can render every problem at once.
    """

    default_category = ErrorCategory.DEFINITION
    default_retryable = False

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        result: ValidationResult | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.code = code
        self.result = result

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.code:
            result["code"] = self.code
        if self.result is not None:
            result["validation"] = self.result.to_dict()
        return result


class DefinitionParseError(DefinitionError):
    """The workflow document could not be parsed (bad JSON/YAML or schema)."""

    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("code", "PARSE_ERROR")
        super().__init__(message, **kwargs)


class WorkflowNotFoundError(SpindleError):
    """No definition with the requested id exists in the catalog."""

    default_category = ErrorCategory.DEFINITION

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(
            f"Workflow definition not found: {workflow_id}",
            context=ErrorContext(workflow_id=workflow_id),
        )


# =============================================================================
# EXECUTION ERRORS
# =============================================================================


class NodeExecutionError(SpindleError):
    """A node's action executor failed.

    Retryable by default: the engine re-invokes the node per its retry policy.
    """

    default_category = ErrorCategory.EXECUTION
    default_retryable = True

    def __init__(self, message: str, *, node_id: str | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.node_id = node_id
        if node_id is not None:
            self.context.node_id = node_id


class NodeTimeoutError(NodeExecutionError):
    """A node attempt exceeded its configured watchdog duration."""

    default_category = ErrorCategory.TIMEOUT

    def __init__(self, node_id: str, timeout_seconds: float, **kwargs: Any):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Node '{node_id}' timed out after {timeout_seconds}s",
            node_id=node_id,
            **kwargs,
        )


class ExecutionStateError(SpindleError):
    """An execution control operation is not valid in the current status."""

    default_category = ErrorCategory.EXECUTION


class ConditionEvaluationError(SpindleError):
    """A condition expression failed to parse or evaluate.

    Never fatal to a workflow: evaluators treat it as ``False``.
    """

    default_category = ErrorCategory.CONDITION

    def __init__(self, message: str, *, expression: str | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.expression = expression


# =============================================================================
# STATE STORE ERRORS
# =============================================================================


class StateStoreError(SpindleError):
    """Persisting or loading execution state failed."""

    default_category = ErrorCategory.STORAGE


class StateNotFoundError(StateStoreError):
    """No state (or no matching snapshot version) exists for an execution."""


# =============================================================================
# TEMPLATE ERRORS
# =============================================================================


class TemplateError(SpindleError):
    """Base for template service failures."""

    default_category = ErrorCategory.TEMPLATE


class TemplateNotFoundError(TemplateError):
    """No template with the requested id exists."""

    def __init__(self, template_id: str):
        self.template_id = template_id
        super().__init__(
            f"Template not found: {template_id}",
            context=ErrorContext(template_id=template_id),
        )


class TemplateValidationError(TemplateError):
    """Parameter bindings failed validation; ``result`` holds every issue."""

    def __init__(self, message: str, result: ValidationResult, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.result = result

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["validation"] = self.result.to_dict()
        return result


class TemplateImportError(TemplateError):
    """An exported template payload is malformed or embeds an invalid definition."""


class TemplatePermissionError(TemplateError):
    """The caller does not own the template it tried to modify."""


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: BaseException) -> bool:
    """Check if an error should be retried by the node retry loop.

    SpindleErrors answer for themselves; any other exception raised by an
    action executor is treated as a transient node failure.
    """
    if isinstance(error, SpindleError):
        return error.retryable
    return isinstance(error, Exception)


def categorize_error(error: BaseException) -> ErrorCategory:
    """Get the category of an error."""
    if isinstance(error, SpindleError):
        return error.category
    if isinstance(error, TimeoutError):
        return ErrorCategory.TIMEOUT
    if isinstance(error, (KeyError, ValueError, TypeError)):
        return ErrorCategory.EXECUTION
    return ErrorCategory.UNKNOWN


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "SpindleError",
    "DefinitionError",
    "DefinitionParseError",
    "WorkflowNotFoundError",
    "NodeExecutionError",
    "NodeTimeoutError",
    "ExecutionStateError",
    "ConditionEvaluationError",
    "StateStoreError",
    "StateNotFoundError",
    "TemplateError",
    "TemplateNotFoundError",
    "TemplateValidationError",
    "TemplateImportError",
    "TemplatePermissionError",
    "is_retryable",
    "categorize_error",
]

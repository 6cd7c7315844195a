"""Spindle Core -- ambient primitives shared by every other module.

Architecture::

    errors.py       Structured error hierarchy (SpindleError and friends)
    logging.py      structlog configuration + get_logger
    settings.py     SpindleSettings (pydantic-settings, SPINDLE_ prefix)
    cache.py        Bounded LRU cache with optional TTL
    timestamps.py   ULID generation + UTC helpers (stdlib-only)
    values.py       Tagged-union Value type + coercion functions
"""

from spindle.core.errors import (
    ConditionEvaluationError,
    DefinitionError,
    DefinitionParseError,
    ErrorCategory,
    ErrorContext,
    ExecutionStateError,
    NodeExecutionError,
    NodeTimeoutError,
    SpindleError,
    StateNotFoundError,
    StateStoreError,
    TemplateError,
    TemplateImportError,
    TemplateNotFoundError,
    TemplatePermissionError,
    TemplateValidationError,
    WorkflowNotFoundError,
)
from spindle.core.logging import LogContext, configure_logging, get_logger
from spindle.core.values import NULL, Value, ValueKind

__all__ = [
    "ConditionEvaluationError",
    "DefinitionError",
    "DefinitionParseError",
    "ErrorCategory",
    "ErrorContext",
    "ExecutionStateError",
    "LogContext",
    "NULL",
    "NodeExecutionError",
    "NodeTimeoutError",
    "SpindleError",
    "StateNotFoundError",
    "StateStoreError",
    "TemplateError",
    "TemplateImportError",
    "TemplateNotFoundError",
    "TemplatePermissionError",
    "TemplateValidationError",
    "Value",
    "ValueKind",
    "WorkflowNotFoundError",
    "configure_logging",
    "get_logger",
]

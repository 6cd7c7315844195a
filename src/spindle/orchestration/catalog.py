"""Workflow catalog — validated definitions, looked up by id.

The catalog is the only way a definition becomes executable by id: ``create``
runs :func:`validate_definition` and refuses anything with errors. Lookups
are read-mostly and guarded by a lock so the engine, the template service and
CLI commands can share one instance across threads.

Example::

    catalog = WorkflowCatalog()
    workflow_id = catalog.create(definition).id
    definition = catalog.get(workflow_id)
    names = [d.name for d in catalog.list()]
"""

from __future__ import annotations

import threading

from spindle.core.errors import DefinitionError, WorkflowNotFoundError
from spindle.core.logging import get_logger
from spindle.orchestration.graph import WorkflowDefinition
from spindle.orchestration.validator import ValidationResult, validate_definition

logger = get_logger(__name__)


class WorkflowCatalog:
    """Thread-safe store of validated workflow definitions."""

    def __init__(self) -> None:
        self._definitions: dict[str, WorkflowDefinition] = {}
        self._lock = threading.Lock()

    def create(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Validate and store a definition.

        Raises:
            DefinitionError: If validation reports errors (``error.result``
                carries the full :class:`ValidationResult`), or the id is taken.
        """
        result = validate_definition(definition)
        if not result.is_valid:
            first = result.errors[0]
            raise DefinitionError(
                f"Workflow '{definition.name}' is invalid: {result.summary()} ({first})",
                code=first.code,
                result=result,
            ).with_context(workflow_id=definition.id)

        with self._lock:
            if definition.id in self._definitions:
                raise DefinitionError(
                    f"Workflow id '{definition.id}' already exists",
                    code="DUPLICATE_WORKFLOW_ID",
                ).with_context(workflow_id=definition.id)
            self._definitions[definition.id] = definition

        logger.info(
            "definition.created",
            workflow=definition.name,
            workflow_id=definition.id,
            node_count=len(definition.nodes),
            warnings=len(result.warnings),
        )
        return definition

    def validate(self, definition: WorkflowDefinition) -> ValidationResult:
        return validate_definition(definition)

    def get(self, workflow_id: str) -> WorkflowDefinition:
        """Raises :class:`WorkflowNotFoundError` for unknown ids."""
        with self._lock:
            definition = self._definitions.get(workflow_id)
        if definition is None:
            raise WorkflowNotFoundError(workflow_id)
        return definition

    def exists(self, workflow_id: str) -> bool:
        with self._lock:
            return workflow_id in self._definitions

    def list(self, name: str | None = None) -> list[WorkflowDefinition]:
        """All definitions (optionally only those named ``name``), oldest first."""
        with self._lock:
            definitions = list(self._definitions.values())
        if name is not None:
            definitions = [d for d in definitions if d.name == name]
        return definitions

    def remove(self, workflow_id: str) -> bool:
        with self._lock:
            removed = self._definitions.pop(workflow_id, None)
        if removed is not None:
            logger.info("definition.removed", workflow=removed.name, workflow_id=workflow_id)
        return removed is not None

    def clear(self) -> None:
        with self._lock:
            self._definitions.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._definitions)

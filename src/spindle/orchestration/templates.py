"""Workflow templates — parameterized, reusable workflow definitions.

A template is a workflow document whose configuration values have been
replaced by ``{{placeholder}}`` strings, plus the parameter declarations that
fill them. Templates are extracted from an existing definition (or the
definition behind an execution), instantiated into new catalogued
definitions, searched, and moved between installations as JSON.

ARCHITECTURE
────────────
::

    TemplateService(templates: TemplateRepository, catalog: WorkflowCatalog)
      create_template_from_workflow(definition | execution) → template id
      validate_template_parameters(id, bindings)           → ValidationResult
      create_workflow_from_template(id, name, bindings)    → workflow id
      search / get_by_category / get_popular
      get_template / update_template / delete_template / get_usage_stats
      export_template(id) → bytes     import_template(bytes) → template id

Substitution works on the parsed document tree: a string that is exactly
``{{name}}`` is replaced by the bound value (keeping its JSON type), in a
single pass. A bound value that itself contains ``{{...}}`` is never
expanded again.

Example::

    service = TemplateService(InMemoryTemplateRepository(), catalog)
    template_id = service.create_template_from_workflow(definition, name="nightly-load")
    workflow_id = service.create_workflow_from_template(
        template_id, "orders.eu", {"load_table": "orders_eu"}
    )
"""

from __future__ import annotations

import copy
import json
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from spindle.core.errors import (
    DefinitionParseError,
    TemplateImportError,
    TemplateNotFoundError,
    TemplatePermissionError,
    TemplateValidationError,
)
from spindle.core.logging import get_logger
from spindle.core.timestamps import from_iso8601, generate_id, to_iso8601, utc_now
from spindle.core.values import Value, ValueKind, coerce, infer_type_name
from spindle.orchestration.catalog import WorkflowCatalog
from spindle.orchestration.dsl import definition_to_dict, parse_definition
from spindle.orchestration.graph import WorkflowDefinition
from spindle.orchestration.models import Execution
from spindle.orchestration.persistence import TemplateRepository
from spindle.orchestration.references import PARAMETERS_ROOT, pure_reference, split_path
from spindle.orchestration.validator import ValidationResult, validate_definition

logger = get_logger(__name__)

EXPORT_FORMAT_VERSION = "1.0"
NAME_PLACEHOLDER = "name"
PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][\w.-]*)\s*\}\}")

_TYPE_KINDS = {
    "integer": ValueKind.INT,
    "number": ValueKind.FLOAT,
    "boolean": ValueKind.BOOL,
}


def placeholder(name: str) -> str:
    return "{{" + name + "}}"


@dataclass
class ParameterDefinition:
    """A template parameter; ``default`` is a JSON-compatible value."""

    name: str
    type: str = "string"
    description: str = ""
    required: bool = False
    default: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "description": self.description,
            "required": self.required,
            "default": self.default,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ParameterDefinition:
        return cls(
            name=str(data["name"]),
            type=str(data.get("type", "string")),
            description=str(data.get("description", "")),
            required=bool(data.get("required", False)),
            default=data.get("default"),
        )


@dataclass
class Template:
    id: str
    name: str
    description: str = ""
    category: str = "General"
    template_definition: dict[str, Any] = field(default_factory=dict)
    parameters: list[ParameterDefinition] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    usage_count: int = 0
    is_public: bool = False
    created_by: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def parameter(self, name: str) -> ParameterDefinition | None:
        for param in self.parameters:
            if param.name == name:
                return param
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "template_definition": copy.deepcopy(self.template_definition),
            "parameters": [p.to_dict() for p in self.parameters],
            "tags": list(self.tags),
            "usage_count": self.usage_count,
            "is_public": self.is_public,
            "created_by": self.created_by,
            "created_at": to_iso8601(self.created_at),
            "updated_at": to_iso8601(self.updated_at),
        }


@dataclass(frozen=True)
class TemplatePage:
    """One page of search results (``page`` is 1-based)."""

    items: list[Template]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.page_size - 1) // self.page_size if self.page_size else 0

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages


# ---------------------------------------------------------------------------
# Document-tree helpers
# ---------------------------------------------------------------------------

def substitute_placeholders(document: Any, values: Mapping[str, Any]) -> Any:
    """Replace every string that is exactly ``{{name}}`` with ``values[name]``.

    Unknown placeholders are left as they are.
    """
    if isinstance(document, str):
        match = PLACEHOLDER_PATTERN.fullmatch(document.strip())
        if match and match.group(1) in values:
            return copy.deepcopy(values[match.group(1)])
        return document
    if isinstance(document, Mapping):
        return {key: substitute_placeholders(item, values) for key, item in document.items()}
    if isinstance(document, list):
        return [substitute_placeholders(item, values) for item in document]
    return document


def check_parameter_type(declared: str, value: Any) -> bool:
    """Whether ``value`` is acceptable for a parameter of type ``declared``.

    Unrecognized declared types accept anything.
    """
    if declared == "string":
        return isinstance(value, str)
    if declared == "integer":
        if isinstance(value, bool):
            return False
        if isinstance(value, int):
            return True
        if isinstance(value, str):
            try:
                int(value.strip())
            except ValueError:
                return False
            return True
        return False
    if declared == "number":
        if isinstance(value, bool):
            return False
        if isinstance(value, (int, float)):
            return True
        if isinstance(value, str):
            try:
                float(value.strip())
            except ValueError:
                return False
            return True
        return False
    if declared == "boolean":
        return isinstance(value, bool) or (
            isinstance(value, str) and value.strip().lower() in ("true", "false")
        )
    if declared == "datetime":
        if isinstance(value, datetime):
            return True
        if isinstance(value, str):
            try:
                return from_iso8601(value.strip()) is not None
            except ValueError:
                return False
        return False
    return True


def _binding_json(param: ParameterDefinition | None, raw: Any) -> Any:
    """JSON value for a binding, converted to the parameter's declared type."""
    value = Value.of(raw)
    kind = _TYPE_KINDS.get(param.type) if param is not None else None
    if kind is not None:
        converted = coerce(value, kind)
        if converted is not None:
            return Value.of(converted).to_json()
    return value.to_json()


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class TemplateService:
    """Template lifecycle over a :class:`TemplateRepository` and a catalog."""

    def __init__(self, templates: TemplateRepository, catalog: WorkflowCatalog):
        self.templates = templates
        self.catalog = catalog

    # -- creation ----------------------------------------------------------

    def create_template_from_workflow(
        self,
        source: WorkflowDefinition | Execution,
        name: str,
        description: str = "",
        category: str = "General",
        tags: Iterable[str] = (),
        is_public: bool = False,
        created_by: str | None = None,
    ) -> str:
        """Extract a template from a definition (or an execution's definition)."""
        definition = self.catalog.get(source.workflow_id) if isinstance(source, Execution) else source
        template_definition, parameters = self.extract(definition)

        template = Template(
            id=generate_id(),
            name=name,
            description=description or definition.description,
            category=category,
            template_definition=template_definition,
            parameters=parameters,
            tags=list(tags),
            is_public=is_public,
            created_by=created_by,
        )
        self.templates.save(template)
        logger.info(
            "template.created",
            template_id=template.id,
            template=name,
            source_workflow=definition.id,
            parameters=len(parameters),
        )
        return template.id

    @staticmethod
    def extract(definition: WorkflowDefinition) -> tuple[dict[str, Any], list[ParameterDefinition]]:
        """Template body and parameters for ``definition``.

        Declared parameters are kept. Every configuration value that is not
        a pure ``${parameters.x}`` reference becomes an implicit parameter
        ``{nodeId}_{key}`` and is replaced by its placeholder.
        """
        document = definition_to_dict(definition, include_id=False)
        document["name"] = placeholder(NAME_PLACEHOLDER)

        parameters: dict[str, ParameterDefinition] = {}
        for spec in definition.parameters.values():
            parameters[spec.name] = ParameterDefinition(
                name=spec.name,
                type=spec.type,
                description=spec.description or f"Parameter {spec.name}",
                required=spec.required,
                default=spec.default.to_json(),
            )

        for node, node_document in zip(definition.nodes, document["nodes"]):
            for key, value in node.configuration.items():
                path = pure_reference(value)
                if path is not None and split_path(path)[0] == PARAMETERS_ROOT:
                    continue
                param_name = f"{node.id}_{key}"
                if param_name not in parameters:
                    parameters[param_name] = ParameterDefinition(
                        name=param_name,
                        type=infer_type_name(value),
                        description=f"Configuration parameter for {node.name}",
                        required=False,
                        default=value.to_json(),
                    )
                node_document["configuration"][key] = placeholder(param_name)

        return document, list(parameters.values())

    # -- validation --------------------------------------------------------

    def validate_template_parameters(
        self,
        template_id: str,
        bindings: Mapping[str, Any],
    ) -> ValidationResult:
        result = ValidationResult()
        template = self.templates.get(template_id)
        if template is None:
            result.error("TEMPLATE_NOT_FOUND", f"Template {template_id} not found")
            return result

        for param in template.parameters:
            if param.required and param.name not in bindings:
                result.error(
                    "MISSING_REQUIRED_PARAMETER",
                    f"Required parameter '{param.name}' is missing",
                )
        for key, value in bindings.items():
            param = template.parameter(key)
            if param is None:
                result.warning("UNKNOWN_PARAMETER", f"Parameter '{key}' is not defined in template")
            elif not check_parameter_type(param.type, value):
                result.error(
                    "INVALID_PARAMETER_VALUE",
                    f"Invalid value for parameter '{key}': expected {param.type}",
                )
        return result

    def render(
        self,
        template: Template,
        name: str,
        bindings: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Concrete workflow document for ``template`` (no validation)."""
        bindings = dict(bindings or {})
        values: dict[str, Any] = {}
        for param in template.parameters:
            if param.name in bindings:
                values[param.name] = _binding_json(param, bindings[param.name])
            else:
                values[param.name] = copy.deepcopy(param.default)
        for key, raw in bindings.items():
            values.setdefault(key, _binding_json(None, raw))
        values[NAME_PLACEHOLDER] = name

        document = substitute_placeholders(template.template_definition, values)
        for declared in document.get("parameters") or []:
            if isinstance(declared, dict) and declared.get("name") in bindings:
                declared["default"] = values[declared["name"]]
        document["description"] = f"Workflow created from template: {template.name}"
        return document

    # -- instantiation -----------------------------------------------------

    def create_workflow_from_template(
        self,
        template_id: str,
        name: str,
        bindings: Mapping[str, Any] | None = None,
        created_by: str | None = None,
    ) -> str:
        """Instantiate, validate and catalog a definition; returns its id.

        Raises:
            TemplateNotFoundError: Unknown template.
            TemplateValidationError: Bindings failed validation.
            DefinitionError: The rendered definition is invalid.
        """
        template = self.get_template(template_id)
        bindings = dict(bindings or {})
        result = self.validate_template_parameters(template_id, bindings)
        if not result.is_valid:
            raise TemplateValidationError(
                f"Invalid parameters for template '{template.name}': "
                + ", ".join(i.message for i in result.errors),
                result,
            ).with_context(template_id=template_id)

        document = self.render(template, name, bindings)
        document["metadata"] = {
            **(document.get("metadata") or {}),
            "templateId": template.id,
            "createdBy": created_by,
        }
        definition = self.catalog.create(parse_definition(document))
        usage = self.templates.increment_usage(template_id)

        logger.info(
            "template.instantiated",
            template_id=template_id,
            workflow_id=definition.id,
            workflow=name,
            usage_count=usage,
        )
        return definition.id

    # -- lookup ------------------------------------------------------------

    def get_template(self, template_id: str) -> Template:
        template = self.templates.get(template_id)
        if template is None:
            raise TemplateNotFoundError(template_id)
        return template

    def search(
        self,
        query: str | None = None,
        category: str | None = None,
        tags: Iterable[str] | None = None,
        include_public: bool = True,
        owner: str | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> TemplatePage:
        """Filter templates; most used first, then by name.

        ``query`` matches name, description or tags (case-insensitive); any
        of ``tags`` must be present. With ``owner`` set only that owner's
        templates (plus public ones when ``include_public``) are visible.
        """
        if page < 1 or page_size < 1:
            raise ValueError("page and page_size must be >= 1")
        needle = query.strip().lower() if query else None
        wanted_tags = {t.lower() for t in tags or ()}

        def visible(t: Template) -> bool:
            if owner is None:
                return include_public or not t.is_public
            return t.created_by == owner or (include_public and t.is_public)

        def matches(t: Template) -> bool:
            if category is not None and t.category.lower() != category.lower():
                return False
            if wanted_tags and not wanted_tags.intersection(tag.lower() for tag in t.tags):
                return False
            if needle:
                haystack = [t.name.lower(), t.description.lower(), *(tag.lower() for tag in t.tags)]
                return any(needle in text for text in haystack)
            return True

        found = sorted(
            (t for t in self.templates.list() if visible(t) and matches(t)),
            key=lambda t: (-t.usage_count, t.name.lower()),
        )
        start = (page - 1) * page_size
        return TemplatePage(found[start:start + page_size], len(found), page, page_size)

    def get_by_category(self, category: str) -> list[Template]:
        return sorted(
            (t for t in self.templates.list() if t.category.lower() == category.lower()),
            key=lambda t: t.name.lower(),
        )

    def get_popular(self, limit: int = 10) -> list[Template]:
        ranked = sorted(self.templates.list(), key=lambda t: (-t.usage_count, t.name.lower()))
        return ranked[:limit]

    def get_usage_stats(self, template_id: str) -> dict[str, Any]:
        template = self.get_template(template_id)
        workflows = [
            d for d in self.catalog.list() if d.metadata.get("templateId") == template_id
        ]
        return {
            "template_id": template_id,
            "usage_count": template.usage_count,
            "workflow_count": len(workflows),
            "workflow_ids": [d.id for d in workflows],
            "created_at": to_iso8601(template.created_at),
            "updated_at": to_iso8601(template.updated_at),
        }

    # -- modification ------------------------------------------------------

    def _check_owner(self, template: Template, user: str | None) -> None:
        if template.created_by is not None and user != template.created_by:
            raise TemplatePermissionError(
                f"Template {template.id} is owned by another user"
            ).with_context(template_id=template.id)

    def validate_body(
        self,
        template_definition: Mapping[str, Any],
        parameters: Iterable[ParameterDefinition],
    ) -> ValidationResult:
        """Validate a template body with every placeholder bound to its default."""
        values = {p.name: copy.deepcopy(p.default) for p in parameters}
        values[NAME_PLACEHOLDER] = "template-validation"
        document = substitute_placeholders(dict(template_definition), values)
        try:
            definition = parse_definition(document)
        except DefinitionParseError as exc:
            result = ValidationResult()
            result.error("PARSE_ERROR", exc.message)
            return result
        return validate_definition(definition)

    def update_template(
        self,
        template_id: str,
        *,
        updated_by: str | None = None,
        name: str | None = None,
        description: str | None = None,
        category: str | None = None,
        tags: Iterable[str] | None = None,
        is_public: bool | None = None,
        template_definition: Mapping[str, Any] | None = None,
        parameters: Iterable[ParameterDefinition] | None = None,
    ) -> Template:
        """Change a template in place; a new body is validated first."""
        template = self.get_template(template_id)
        self._check_owner(template, updated_by)

        if template_definition is not None or parameters is not None:
            body = dict(template_definition) if template_definition is not None else template.template_definition
            params = list(parameters) if parameters is not None else template.parameters
            result = self.validate_body(body, params)
            if not result.is_valid:
                raise TemplateValidationError(
                    f"Template body is invalid: {result.summary()}", result
                ).with_context(template_id=template_id)
            template.template_definition = copy.deepcopy(body)
            template.parameters = params
        if name is not None:
            template.name = name
        if description is not None:
            template.description = description
        if category is not None:
            template.category = category
        if tags is not None:
            template.tags = list(tags)
        if is_public is not None:
            template.is_public = is_public
        template.updated_at = utc_now()

        self.templates.save(template)
        logger.info("template.updated", template_id=template_id)
        return template

    def delete_template(self, template_id: str, deleted_by: str | None = None) -> None:
        template = self.get_template(template_id)
        self._check_owner(template, deleted_by)
        self.templates.delete(template_id)
        logger.info("template.deleted", template_id=template_id)

    # -- export / import ---------------------------------------------------

    def export_template(self, template_id: str, exported_by: str | None = None) -> bytes:
        template = self.get_template(template_id)
        payload = {
            "name": template.name,
            "description": template.description,
            "category": template.category,
            "templateDefinition": template.template_definition,
            "parameters": [p.to_dict() for p in template.parameters],
            "tags": list(template.tags),
            "exportedAt": to_iso8601(utc_now()),
            "exportedBy": exported_by,
            "version": EXPORT_FORMAT_VERSION,
        }
        logger.info("template.exported", template_id=template_id)
        return json.dumps(payload, indent=2).encode("utf-8")

    def import_template(self, data: bytes | str, created_by: str | None = None) -> str:
        """Store an exported template as a new private template.

        Raises:
            TemplateImportError: Malformed payload or invalid embedded definition.
        """
        try:
            payload = json.loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise TemplateImportError(f"Template data is not valid JSON: {exc}", cause=exc) from exc
        if not isinstance(payload, dict):
            raise TemplateImportError("Template data must be a JSON object")

        body = payload.get("templateDefinition")
        if not isinstance(body, dict):
            raise TemplateImportError("Template data has no templateDefinition object")
        try:
            parameters = [ParameterDefinition.from_dict(p) for p in payload.get("parameters") or []]
        except (KeyError, TypeError, AttributeError) as exc:
            raise TemplateImportError(f"Template parameters are malformed: {exc}", cause=exc) from exc

        result = self.validate_body(body, parameters)
        if not result.is_valid:
            raise TemplateImportError(
                "Invalid template definition: " + ", ".join(i.message for i in result.errors)
            )

        template = Template(
            id=generate_id(),
            name=_field(payload, "name", "Imported Template"),
            description=_field(payload, "description", "Imported workflow template"),
            category=_field(payload, "category", "General"),
            template_definition=body,
            parameters=parameters,
            tags=[str(t) for t in payload.get("tags") or []],
            is_public=False,
            created_by=created_by,
        )
        self.templates.save(template)
        logger.info("template.imported", template_id=template.id, template=template.name)
        return template.id



def _field(payload: dict[str, Any], key: str, fallback: str) -> str:
    """``payload[key]`` as text; ``fallback`` only when absent or null."""
    value = payload.get(key)
    return fallback if value is None else str(value)

__all__ = [
    "ParameterDefinition",
    "Template",
    "TemplatePage",
    "TemplateService",
    "check_parameter_type",
    "placeholder",
    "substitute_placeholders",
]

"""Tests for template extraction, instantiation, search and import/export."""

import json

import pytest

from conftest import end_node, registry_with, start_node
from spindle.core.errors import (
    DefinitionError,
    TemplateImportError,
    TemplateNotFoundError,
    TemplatePermissionError,
    TemplateValidationError,
)
from spindle.core.values import Value
from spindle.orchestration import (
    ExecutionStatus,
    InMemoryTemplateRepository,
    Node,
    ParameterDefinition,
    ParameterSpec,
    TemplateService,
    WorkflowCatalog,
    WorkflowDefinition,
    WorkflowEngine,
)
from spindle.orchestration.templates import check_parameter_type, substitute_placeholders


@pytest.fixture
def catalog():
    return WorkflowCatalog()


@pytest.fixture
def service(catalog):
    return TemplateService(InMemoryTemplateRepository(), catalog)


@pytest.fixture
def batch_definition():
    return WorkflowDefinition(
        name="orders.batch",
        description="Nightly batch load",
        parameters={"region": ParameterSpec("region", required=True, description="Target region")},
        nodes=(
            start_node(),
            Node(
                "load",
                name="Load orders",
                dependencies=("start",),
                configuration={"region": "${parameters.region}", "batch_size": 100, "mode": "full"},
            ),
            end_node("load"),
        ),
    )


class TestExtract:
    def test_declared_and_implicit_parameters(self, batch_definition):
        body, parameters = TemplateService.extract(batch_definition)

        by_name = {p.name: p for p in parameters}
        assert set(by_name) == {"region", "load_batch_size", "load_mode"}
        assert by_name["region"].required
        assert by_name["region"].description == "Target region"
        assert by_name["load_batch_size"].type == "integer"
        assert by_name["load_batch_size"].default == 100
        assert by_name["load_mode"].type == "string"
        assert by_name["load_mode"].description == "Configuration parameter for Load orders"

        assert body["name"] == "{{name}}"
        assert "id" not in body
        load = body["nodes"][1]
        assert load["configuration"] == {
            "region": "${parameters.region}",
            "batch_size": "{{load_batch_size}}",
            "mode": "{{load_mode}}",
        }

    def test_source_definition_is_untouched(self, batch_definition):
        TemplateService.extract(batch_definition)
        assert batch_definition.get_node("load").configuration["mode"] == Value.of("full")

    def test_create_template(self, service, batch_definition):
        template_id = service.create_template_from_workflow(
            batch_definition, name="nightly", category="ETL", tags=["orders"], created_by="alice"
        )
        template = service.get_template(template_id)
        assert template.name == "nightly"
        assert template.description == "Nightly batch load"
        assert template.category == "ETL"
        assert template.tags == ["orders"]
        assert template.created_by == "alice"
        assert template.usage_count == 0
        assert not template.is_public

    def test_create_from_execution(self, service, catalog, linear_definition):
        catalog.create(linear_definition)
        engine = WorkflowEngine(executors=registry_with(lambda c, s: {"rows": 1}), catalog=catalog)
        execution = engine.execute(linear_definition)
        assert execution.status == ExecutionStatus.COMPLETED

        template_id = service.create_template_from_workflow(execution, name="from-run")
        names = [p.name for p in service.get_template(template_id).parameters]
        assert names == ["table", "load_rows"]


class TestInstantiate:
    def test_creates_catalogued_workflow(self, service, catalog, batch_definition):
        template_id = service.create_template_from_workflow(batch_definition, name="nightly")

        workflow_id = service.create_workflow_from_template(
            template_id, "orders.eu", {"region": "eu", "load_batch_size": "250"}, created_by="bob"
        )

        definition = catalog.get(workflow_id)
        load = definition.get_node("load")
        assert definition.name == "orders.eu"
        assert definition.description == "Workflow created from template: nightly"
        assert load.configuration["batch_size"] == Value.of(250)
        assert load.configuration["mode"] == Value.of("full")
        assert load.configuration["region"] == Value.of("${parameters.region}")
        assert definition.parameters["region"].default == Value.of("eu")
        assert definition.metadata["templateId"] == template_id
        assert definition.metadata["createdBy"] == "bob"
        assert service.get_template(template_id).usage_count == 1

    def test_instantiated_workflow_runs(self, service, catalog, batch_definition):
        template_id = service.create_template_from_workflow(batch_definition, name="nightly")
        workflow_id = service.create_workflow_from_template(template_id, "orders.us", {"region": "us"})
        seen = []
        engine = WorkflowEngine(executors=registry_with(lambda c, s: seen.append(c)), catalog=catalog)

        execution = engine.start(workflow_id).result(timeout=5)

        assert execution.status == ExecutionStatus.COMPLETED
        assert seen == [{"region": "us", "batch_size": 100, "mode": "full"}]

    def test_missing_required_parameter(self, service, batch_definition):
        template_id = service.create_template_from_workflow(batch_definition, name="nightly")
        with pytest.raises(TemplateValidationError) as exc_info:
            service.create_workflow_from_template(template_id, "orders.none")
        assert exc_info.value.result.codes() == ["MISSING_REQUIRED_PARAMETER"]
        assert service.get_template(template_id).usage_count == 0

    def test_invalid_rendered_definition(self, service, catalog):
        definition = WorkflowDefinition(
            name="solo",
            nodes=(start_node(), Node("work", dependencies=("start",), configuration={"dep": "x"})),
        )
        template_id = service.create_template_from_workflow(definition, name="solo")
        with pytest.raises(DefinitionError):
            service.create_workflow_from_template(template_id, "")
        assert len(catalog) == 0

    def test_unknown_template(self, service):
        with pytest.raises(TemplateNotFoundError):
            service.create_workflow_from_template("missing", "x")


class TestParameterValidation:
    def test_issues(self, service, batch_definition):
        template_id = service.create_template_from_workflow(batch_definition, name="nightly")

        result = service.validate_template_parameters(
            template_id, {"region": "eu", "load_batch_size": "lots", "colour": "red"}
        )

        assert not result.is_valid
        assert [i.code for i in result.errors] == ["INVALID_PARAMETER_VALUE"]
        assert [i.code for i in result.warnings] == ["UNKNOWN_PARAMETER"]

    def test_unknown_template(self, service):
        result = service.validate_template_parameters("missing", {})
        assert result.codes() == ["TEMPLATE_NOT_FOUND"]

    @pytest.mark.parametrize(
        "declared, value, ok",
        [
            ("string", "x", True),
            ("string", 1, False),
            ("integer", "12", True),
            ("integer", True, False),
            ("number", "1.5", True),
            ("number", "abc", False),
            ("boolean", "false", True),
            ("boolean", "nope", False),
            ("datetime", "2024-01-01T00:00:00Z", True),
            ("datetime", "yesterday", False),
            ("object", {"a": 1}, True),
        ],
    )
    def test_type_checks(self, declared, value, ok):
        assert check_parameter_type(declared, value) is ok

    def test_substitution_is_single_pass(self):
        document = {"a": "{{x}}", "b": ["{{y}}", "plain"], "c": "{{unknown}}"}
        assert substitute_placeholders(document, {"x": "{{y}}", "y": 3}) == {
            "a": "{{y}}",
            "b": [3, "plain"],
            "c": "{{unknown}}",
        }


class TestDiscovery:
    @pytest.fixture
    def populated(self, service, batch_definition, linear_definition):
        ids = {
            "nightly": service.create_template_from_workflow(
                batch_definition, name="nightly", category="ETL", tags=["orders", "batch"], is_public=True
            ),
            "linear": service.create_template_from_workflow(
                linear_definition, name="linear", category="ETL", tags=["simple"], created_by="alice"
            ),
            "report": service.create_template_from_workflow(
                linear_definition, name="report", category="Reporting", created_by="bob"
            ),
        }
        service.create_workflow_from_template(ids["report"], "r1")
        service.create_workflow_from_template(ids["report"], "r2")
        service.create_workflow_from_template(ids["nightly"], "n1", {"region": "eu"})
        return ids

    def test_search_orders_by_usage(self, service, populated):
        page = service.search()
        assert [t.name for t in page.items] == ["report", "nightly", "linear"]
        assert page.total == 3
        assert not page.has_next

    def test_search_filters(self, service, populated):
        assert [t.name for t in service.search(query="NIGHT").items] == ["nightly"]
        assert [t.name for t in service.search(query="simple").items] == ["linear"]
        assert [t.name for t in service.search(category="etl").items] == ["nightly", "linear"]
        assert [t.name for t in service.search(tags=["batch", "none"]).items] == ["nightly"]

    def test_search_visibility(self, service, populated):
        assert [t.name for t in service.search(owner="alice").items] == ["nightly", "linear"]
        assert [t.name for t in service.search(owner="alice", include_public=False).items] == ["linear"]
        assert [t.name for t in service.search(include_public=False).items] == ["report", "linear"]

    def test_pagination(self, service, populated):
        page = service.search(page=1, page_size=2)
        assert len(page.items) == 2
        assert page.total_pages == 2
        assert page.has_next
        assert [t.name for t in service.search(page=2, page_size=2).items] == ["linear"]
        with pytest.raises(ValueError):
            service.search(page=0)

    def test_category_and_popular(self, service, populated):
        assert [t.name for t in service.get_by_category("ETL")] == ["linear", "nightly"]
        assert [t.name for t in service.get_popular(limit=2)] == ["report", "nightly"]

    def test_usage_stats(self, service, populated):
        stats = service.get_usage_stats(populated["report"])
        assert stats["usage_count"] == 2
        assert stats["workflow_count"] == 2
        assert len(stats["workflow_ids"]) == 2
        with pytest.raises(TemplateNotFoundError):
            service.get_usage_stats("missing")


class TestModification:
    def test_owner_can_update(self, service, batch_definition):
        template_id = service.create_template_from_workflow(batch_definition, name="nightly", created_by="alice")

        updated = service.update_template(
            template_id, updated_by="alice", name="nightly-v2", tags=["v2"], is_public=True
        )

        assert updated.name == "nightly-v2"
        assert service.get_template(template_id).tags == ["v2"]
        assert service.get_template(template_id).is_public
        assert updated.updated_at >= updated.created_at

    def test_other_users_cannot_modify(self, service, batch_definition):
        template_id = service.create_template_from_workflow(batch_definition, name="nightly", created_by="alice")
        with pytest.raises(TemplatePermissionError):
            service.update_template(template_id, updated_by="mallory", name="mine")
        with pytest.raises(TemplatePermissionError):
            service.delete_template(template_id, deleted_by="mallory")
        assert service.get_template(template_id).name == "nightly"

    def test_unowned_templates_are_open(self, service, batch_definition):
        template_id = service.create_template_from_workflow(batch_definition, name="nightly")
        service.update_template(template_id, description="shared")
        service.delete_template(template_id, deleted_by="anyone")
        with pytest.raises(TemplateNotFoundError):
            service.get_template(template_id)

    def test_invalid_body_rejected(self, service, batch_definition):
        template_id = service.create_template_from_workflow(batch_definition, name="nightly")
        with pytest.raises(TemplateValidationError):
            service.update_template(template_id, template_definition={"name": "{{name}}", "nodes": []})

    def test_parameters_replace(self, service, batch_definition):
        template_id = service.create_template_from_workflow(batch_definition, name="nightly")
        template = service.get_template(template_id)
        params = [p if p.name != "load_mode" else ParameterDefinition("load_mode", default="delta")
                  for p in template.parameters]

        service.update_template(template_id, parameters=params)

        assert service.get_template(template_id).parameter("load_mode").default == "delta"


class TestExportImport:
    def test_round_trip(self, service, batch_definition):
        template_id = service.create_template_from_workflow(
            batch_definition, name="nightly", category="ETL", tags=["orders"], is_public=True, created_by="alice"
        )

        data = service.export_template(template_id, exported_by="alice")
        payload = json.loads(data)
        assert payload["version"] == "1.0"
        assert payload["exportedBy"] == "alice"
        assert payload["templateDefinition"]["name"] == "{{name}}"

        imported_id = service.import_template(data, created_by="bob")
        imported = service.get_template(imported_id)
        original = service.get_template(template_id)
        assert imported_id != template_id
        assert imported.name == "nightly"
        assert imported.description == original.description
        assert imported.category == "ETL"
        assert imported.tags == ["orders"]
        assert imported.created_by == "bob"
        assert not imported.is_public
        assert imported.template_definition == original.template_definition
        assert [p.to_dict() for p in imported.parameters] == [p.to_dict() for p in original.parameters]

    def test_round_trip_keeps_empty_fields(self, service, linear_definition):
        assert linear_definition.description == ""
        template_id = service.create_template_from_workflow(linear_definition, name="plain", category="")

        imported = service.get_template(service.import_template(service.export_template(template_id)))

        assert imported.description == ""
        assert imported.category == ""

    def test_import_fills_missing_fields(self, service, batch_definition):
        payload = json.loads(service.export_template(
            service.create_template_from_workflow(batch_definition, name="nightly")
        ))
        for key in ("name", "description", "category"):
            del payload[key]

        imported = service.get_template(service.import_template(json.dumps(payload)))

        assert imported.name == "Imported Template"
        assert imported.description == "Imported workflow template"
        assert imported.category == "General"

    def test_imported_template_instantiates(self, service, catalog, batch_definition):
        data = service.export_template(service.create_template_from_workflow(batch_definition, name="nightly"))
        imported_id = service.import_template(data.decode("utf-8"))
        workflow_id = service.create_workflow_from_template(imported_id, "orders.jp", {"region": "jp"})
        assert catalog.exists(workflow_id)

    @pytest.mark.parametrize(
        "data",
        [
            b"not json",
            b"[1, 2]",
            b'{"name": "x"}',
            b'{"templateDefinition": {"name": "x", "nodes": []}}',
            b'{"templateDefinition": {"name": "x", "nodes": [{"id": "s", "type": "start"}]}, "parameters": [{}]}',
        ],
    )
    def test_import_errors(self, service, data):
        with pytest.raises(TemplateImportError):
            service.import_template(data)
        assert service.search().total == 0

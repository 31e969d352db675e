"""
Bundle exporter and importer.

- Export strips organization ids, credentials and run statistics.
- Import assigns fresh ids, slugs and tenant context; bad items are reported per item.
"""
from datetime import datetime, timezone

import pytest

from conftest import sample_form, sample_workflow
from bundles.exporter import (
    FORM_EXCLUDED_FIELDS,
    WORKFLOW_EXCLUDED_FIELDS,
    create_bundle,
    create_manifest,
    export_form,
    export_workflow,
)
from bundles.importer import (
    generate_slug,
    import_bundle,
    import_form,
    import_workflow,
    validate_form_definition,
    validate_workflow_definition,
)
from utils.errors import ValidationError


class TestExport:

    def test_form_tenant_fields_removed(self):
        exported = export_form(sample_form())
        assert not FORM_EXCLUDED_FIELDS & set(exported)
        assert exported["name"] == "Contact Form"
        assert exported["fieldConfigs"][0]["path"] == "email"
        assert exported["theme"] == {"primaryColor": "#00684A"}

    def test_workflow_tenant_fields_removed(self):
        exported = export_workflow(sample_workflow())
        assert not WORKFLOW_EXCLUDED_FIELDS & set(exported)
        assert exported["canvas"]["nodes"][0]["type"] == "form-trigger"

    def test_datetimes_serialized(self):
        created = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        exported = export_form(sample_form(createdAt=created, settings={"publishedAt": created}))
        assert exported["createdAt"] == created.isoformat()
        assert exported["settings"]["publishedAt"] == created.isoformat()

    def test_source_record_not_mutated(self):
        form = sample_form()
        export_form(form)
        assert form["organizationId"] == "org_1"


class TestManifest:

    def test_asset_paths(self):
        manifest = create_manifest("Pack", "1.0.0", [{}, {}, {}], [{}], has_theme=True)
        assert manifest.assets.forms == ["forms/form.json", "forms/form-2.json", "forms/form-3.json"]
        assert manifest.assets.workflows == ["workflows/workflow.json"]
        assert manifest.assets.theme == "theme.json"

    def test_empty_lists_omitted(self):
        manifest = create_manifest("Pack", "1.0.0", [], [])
        assert manifest.assets.forms is None
        assert manifest.assets.workflows is None
        assert "assets" not in manifest.to_document() or manifest.to_document()["assets"] == {}

    def test_create_bundle_exports_records(self):
        bundle = create_bundle("Pack", "1.0.0", [sample_form()], [sample_workflow()], theme={"mode": "dark"})
        assert "organizationId" not in bundle.forms[0]
        assert "stats" not in bundle.workflows[0]
        assert bundle.manifest.assets.theme == "theme.json"
        assert bundle.manifest.created_at == bundle.manifest.updated_at


class TestSlug:

    @pytest.mark.parametrize("name,expected", [
        ("Contact Form", "contact-form"),
        ("My Örg Form!!", "my-rg-form"),
        ("  --Leading and trailing--  ", "leading-and-trailing"),
        ("", ""),
    ])
    def test_generate_slug(self, name, expected):
        assert generate_slug(name) == expected

    def test_slug_length_capped(self):
        assert len(generate_slug("a" * 250)) == 100


class TestValidation:

    def test_form_requires_name_and_fields(self):
        result = validate_form_definition({"name": 3})
        assert not result.valid
        assert "Form definition must have a name" in result.errors
        assert "Form definition must have a fieldConfigs array" in result.errors

    def test_form_not_object(self):
        assert validate_form_definition(["x"]).errors == ["Form definition must be an object"]

    def test_workflow_requires_settings(self):
        definition = export_workflow(sample_workflow())
        del definition["settings"]
        result = validate_workflow_definition(definition)
        assert result.errors == ["Workflow definition must have a settings object"]


class TestImport:

    def test_form_gets_tenant_context(self):
        record = import_form(export_form(sample_form()), "org_new", "user_new", project_id="proj_new")
        assert record["id"].startswith("form_")
        assert record["id"] != "form_abc"
        assert record["slug"] == "contact-form"
        assert record["organizationId"] == "org_new"
        assert record["createdBy"] == "user_new"
        assert record["projectId"] == "proj_new"
        assert record["createdAt"] == record["updatedAt"]

    def test_preserve_slug(self):
        definition = dict(export_form(sample_form()), slug="kept-slug")
        assert import_form(definition, "org", "user", preserve_slug=True)["slug"] == "kept-slug"
        assert import_form(definition, "org", "user")["slug"] == "contact-form"

    def test_invalid_form_raises(self):
        with pytest.raises(ValidationError) as exc:
            import_form({"name": "No fields"}, "org", "user")
        assert exc.value.validation_errors == ["Form definition must have a fieldConfigs array"]

    def test_workflow_starts_as_draft(self):
        record = import_workflow(export_workflow(sample_workflow()), "org_new", "user_new")
        assert record["id"].startswith("wf_")
        assert record["orgId"] == "org_new"
        assert record["status"] == "draft"
        assert record["version"] == 1
        assert record["stats"]["totalExecutions"] == 0

    def test_export_then_import_keeps_definition(self):
        bundle = create_bundle("Pack", "1.0.0", [sample_form()], [sample_workflow()])
        result = import_bundle(bundle, "org_2", "user_2")
        assert result.success
        assert result.forms[0]["fieldConfigs"] == sample_form()["fieldConfigs"]
        assert result.workflows[0]["canvas"] == sample_workflow()["canvas"]
        assert "connectionString" not in result.forms[0]

    def test_bad_items_reported_not_fatal(self):
        bundle = create_bundle(
            "Pack", "1.0.0",
            [sample_form(), {"name": "Broken"}],
            [{"name": "No canvas", "settings": {}}],
        )
        result = import_bundle(bundle, "org_2", "user_2")
        assert not result.success
        assert len(result.forms) == 1
        assert result.workflows == []
        assert result.errors[0].startswith("Form 2:")
        assert result.errors[1].startswith("Workflow 1:")

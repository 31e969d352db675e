"""
Bundle injector.

Writes a validated bundle into a standalone application template so the
template can be committed and deployed. The bundle lands at
<template>/bundle.json as a single pretty-printed JSON document.
"""
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional, Dict, Any, List, Union

from bundles.importer import ValidationResult, validate_form_definition
from bundles.models import Bundle, EnvGenerator
from utils.errors import ValidationError

logger = logging.getLogger(__name__)

BUNDLE_FILENAME = "bundle.json"
VALID_GENERATORS = {g.value for g in EnvGenerator}

BundleInput = Union[Bundle, Dict[str, Any]]


def _as_document(bundle: BundleInput) -> Any:
    if isinstance(bundle, Bundle):
        return bundle.to_document()
    return bundle


def _validate_env_specs(environment: Any, errors: List[str]) -> None:
    if not isinstance(environment, dict):
        errors.append("deployment.environment must be an object")
        return
    seen = set()
    for group in ("required", "optional"):
        specs = environment.get(group, [])
        if not isinstance(specs, list):
            errors.append(f"deployment.environment.{group} must be an array")
            continue
        for i, spec in enumerate(specs):
            where = f"deployment.environment.{group}[{i}]"
            if not isinstance(spec, dict):
                errors.append(f"{where} must be an object")
                continue
            name = spec.get("name")
            if not isinstance(name, str) or not name:
                errors.append(f"{where} must have a name")
            elif name in seen:
                errors.append(f"{where} duplicates environment variable {name}")
            else:
                seen.add(name)
            if "required" in spec and not isinstance(spec["required"], bool):
                errors.append(f"{where}.required must be a boolean")
            generator = spec.get("generator", EnvGenerator.NONE.value)
            if generator not in VALID_GENERATORS:
                errors.append(f"{where}.generator must be one of {sorted(VALID_GENERATORS)}")


def validate_bundle(bundle: BundleInput) -> ValidationResult:
    """Check manifest, asset index consistency and deployment env specs."""
    document = _as_document(bundle)
    if not isinstance(document, dict):
        return ValidationResult(False, ["Bundle must be an object"])

    errors: List[str] = []
    forms = document.get("forms", [])
    workflows = document.get("workflows", [])
    if not isinstance(forms, list):
        errors.append("forms must be an array")
        forms = []
    if not isinstance(workflows, list):
        errors.append("workflows must be an array")
        workflows = []

    manifest = document.get("manifest")
    if not isinstance(manifest, dict):
        errors.append("Bundle must have a manifest")
    else:
        for key in ("name", "version"):
            value = manifest.get(key)
            if not value:
                errors.append(f"Manifest must have a {key}")
            elif not isinstance(value, str):
                errors.append(f"manifest.{key} must be a string")
        if manifest.get("updatedAt") is not None and not isinstance(manifest["updatedAt"], str):
            errors.append("manifest.updatedAt must be a string")
        assets =manifest.get("assets") or {}
        if not isinstance(assets, dict):
            errors.append("manifest.assets must be an object")
            assets = {}
        for key, items in (("forms", forms), ("workflows", workflows)):
            listed = assets.get(key) or []
            if not isinstance(listed, list):
                errors.append(f"manifest.assets.{key} must be an array")
            elif len(listed) > len(items):
                errors.append(
                    f"manifest.assets.{key} lists {len(listed)} entries but bundle has {len(items)} {key}"
                )
        theme = assets.get("theme")
        if theme is not None and not isinstance(theme, str):
            errors.append("manifest.assets.theme must be a string")
        elif theme and not document.get("theme"):
            errors.append("manifest.assets.theme is set but bundle has no theme")

    metadata = document.get("metadata")
    if metadata is not None:
        if not isinstance(metadata, dict):
            errors.append("metadata must be an object")
        elif metadata.get("exportedAt") is not None and not isinstance(metadata["exportedAt"], str):
            errors.append("metadata.exportedAt must be a string")

    for i, form in enumerate(forms):
        for error in validate_form_definition(form).errors:
            errors.append(f"forms[{i}]: {error}")
    for i, workflow in enumerate(workflows):
        # Settings are defaulted by the template; only name and canvas are needed here
        if not isinstance(workflow, dict):
            errors.append(f"workflows[{i}]: Workflow definition must be an object")
            continue
        if not isinstance(workflow.get("name"), str):
            errors.append(f"workflows[{i}]: Workflow definition must have a name")
        if not isinstance(workflow.get("canvas"), dict):
            errors.append(f"workflows[{i}]: Workflow definition must have a canvas object")

    deployment = document.get("deployment")
    if deployment is not None:
        if not isinstance(deployment, dict):
            errors.append("deployment must be an object")
        elif "environment" in deployment:
            _validate_env_specs(deployment["environment"], errors)

    return ValidationResult(not errors, errors)


def inject_bundle_into_template(template_path: Union[str, Path], bundle: BundleInput) -> str:
    """Validate and write the bundle into the template; returns the bundle path.

    Re-running overwrites the previous bundle. Nothing is written when
    validation fails.
    """
    result = validate_bundle(bundle)
    if not result.valid:
        raise ValidationError("Bundle validation failed", result.errors)

    template_dir = Path(template_path)
    if not template_dir.is_dir():
        raise ValidationError(f"Template directory not found: {template_dir}")

    bundle_path = template_dir / BUNDLE_FILENAME
    payload = json.dumps(_as_document(bundle), indent=2)

    # Write to a sibling temp file then swap in, so readers never see a partial bundle
    fd, tmp_path = tempfile.mkstemp(dir=str(template_dir), prefix=".bundle-", suffix=".json")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
        os.replace(tmp_path, bundle_path)
    except OSError:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise

    logger.info(f"Bundle injected into template: {bundle_path}")
    return str(bundle_path)


def get_bundle_from_template(template_path: Union[str, Path]) -> Optional[Dict[str, Any]]:
    bundle_path = Path(template_path) / BUNDLE_FILENAME
    if not bundle_path.is_file():
        return None
    with open(bundle_path, "r", encoding="utf-8") as f:
        return json.load(f)


def bundle_exists(template_path: Union[str, Path]) -> bool:
    return (Path(template_path) / BUNDLE_FILENAME).is_file()

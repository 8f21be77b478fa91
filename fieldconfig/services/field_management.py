from __future__ import annotations

import logging
from typing import Any, Mapping, Sequence

from fieldconfig.core.exceptions import FieldNotFound, FieldValidationError, FormulaError
from fieldconfig.schemas.fields import (
    OPTION_FIELD_TYPES,
    FieldCreate,
    FieldDefinition,
    FieldUpdate,
    field_name_to_label,
)
from fieldconfig.services.audit import record_field_audit
from fieldconfig.services.field_catalog import FieldCatalogStore
from fieldconfig.services.formula import parse_formula, referenced_fields
from fieldconfig.services.role_visibility import normalize_roles

logger = logging.getLogger(__name__)

# Columns that cannot be cleared by sending null in a patch.
REQUIRED_COLUMNS = frozenset(
    {
        "field_name",
        "field_label",
        "field_type",
        "category",
        "is_repeatable_category",
        "required",
        "read_only",
        "options",
        "display_order",
        "visible_to_roles",
    }
)


def _snapshot(definition: FieldDefinition) -> dict[str, Any]:
    return definition.model_dump(mode="json", exclude={"created_at", "updated_at"})


def _conditional_references(candidate: Mapping[str, Any]) -> list[tuple[str, str]]:
    """(where, referenced field) pairs found in the candidate's conditionals."""
    found: list[tuple[str, str]] = []
    display = candidate.get("display_conditional")
    if isinstance(display, Mapping) and isinstance(display.get("field"), str):
        found.append(("display_conditional", display["field"]))
    value = candidate.get("value_conditional")
    if not isinstance(value, Mapping):
        return found
    if value.get("type") == "copy_from" and isinstance(value.get("source_field"), str):
        found.append(("value_conditional", value["source_field"]))
    elif value.get("type") == "conditional_value" and isinstance(value.get("rules"), list):
        for rule in value["rules"]:
            if isinstance(rule, Mapping) and isinstance(rule.get("condition_field"), str):
                found.append(("value_conditional rule", rule["condition_field"]))
    return found


def validate_definition(
    candidate: Mapping[str, Any],
    siblings: Sequence[FieldDefinition],
    *,
    field_id: str | None = None,
) -> list[str]:
    """Return every rule the candidate definition breaks; empty when valid."""
    errors: list[str] = []
    name = candidate.get("field_name")

    if any(item.field_name == name and item.id != field_id for item in siblings):
        errors.append(f"field_name {name!r} already exists in this context")

    if candidate.get("field_type") in OPTION_FIELD_TYPES and not candidate.get("options"):
        errors.append(f"options are required for {candidate.get('field_type')} fields")

    for where, referenced in _conditional_references(candidate):
        if referenced == name:
            errors.append(f"{where} cannot reference the field itself")

    value = candidate.get("value_conditional")
    if isinstance(value, Mapping) and value.get("type") == "formula":
        formula = value.get("formula") or ""
        try:
            parse_formula(formula)
        except FormulaError as exc:
            errors.append(f"formula is invalid: {exc}")
        else:
            if name in referenced_fields(formula):
                errors.append("formula cannot reference the field itself")

    return errors


def _find(definitions: Sequence[FieldDefinition], field_id: str) -> FieldDefinition:
    for definition in definitions:
        if definition.id == str(field_id):
            return definition
    raise FieldNotFound(str(field_id))


async def create_field(store: FieldCatalogStore, context: str, payload: FieldCreate) -> FieldDefinition:
    existing = await store.list(context)
    data = payload.model_dump(mode="json")
    data["context"] = context
    data["field_label"] = data.get("field_label") or field_name_to_label(payload.field_name)
    data["visible_to_roles"] = normalize_roles(data.get("visible_to_roles"))
    if data.get("display_order") is None:
        data["display_order"] = len(existing)

    errors = validate_definition(data, existing)
    if errors:
        raise FieldValidationError(errors)

    created = await store.create(data)
    record_field_audit(
        action="field.created",
        context=context,
        field_id=created.id,
        new_value=_snapshot(created),
    )
    logger.info("Created field %s in %s", created.field_name, context)
    return created


async def update_field(
    store: FieldCatalogStore,
    context: str,
    field_id: str,
    patch: FieldUpdate,
) -> FieldDefinition:
    existing = await store.list(context)
    current = _find(existing, field_id)

    changes = patch.model_dump(mode="json", exclude_unset=True)
    changes = {key: value for key, value in changes.items() if value is not None or key not in REQUIRED_COLUMNS}
    if "visible_to_roles" in changes:
        changes["visible_to_roles"] = normalize_roles(changes["visible_to_roles"])
    if not changes:
        return current

    merged = {**current.model_dump(mode="json"), **changes}
    errors = validate_definition(merged, existing, field_id=current.id)
    if errors:
        raise FieldValidationError(errors)

    updated = await store.update(current.id, changes)
    record_field_audit(
        action="field.updated",
        context=context,
        field_id=updated.id,
        old_value=_snapshot(current),
        new_value=_snapshot(updated),
    )
    return updated


async def delete_field(store: FieldCatalogStore, context: str, field_id: str) -> None:
    existing = await store.list(context)
    current = _find(existing, field_id)
    await store.delete(current.id)
    record_field_audit(
        action="field.deleted",
        context=context,
        field_id=current.id,
        old_value=_snapshot(current),
    )
    logger.info("Deleted field %s from %s", current.field_name, context)

import logging

import pytest

from conftest import InMemoryCatalogStore, make_definition
from fieldconfig.core.exceptions import FieldNotFound, FieldValidationError
from fieldconfig.core.logging import AUDIT_LOGGER_NAME
from fieldconfig.schemas.fields import FieldCreate, FieldUpdate
from fieldconfig.services.field_management import create_field, delete_field, update_field


@pytest.mark.asyncio
async def test_create_derives_label_and_appends_order():
    store = InMemoryCatalogStore([make_definition("existing_one"), make_definition("existing_two")])

    created = await create_field(
        store,
        "application",
        FieldCreate(
            field_name="property_zip_code",
            category="property",
            field_type="zipcode",
            visible_to_roles=["loan officer", "Guarantor", "Loan Officer"],
        ),
    )

    assert created.field_label == "Property Zip Code"
    assert created.display_order == 2
    assert created.visible_to_roles == ["Loan Officer"]
    assert created.context == "application"


@pytest.mark.asyncio
async def test_create_rejects_duplicate_name_in_context():
    store = InMemoryCatalogStore([make_definition("loan_amount")])
    with pytest.raises(FieldValidationError) as exc_info:
        await create_field(store, "application", FieldCreate(field_name="loan_amount", category="loan"))
    assert "already exists" in exc_info.value.errors[0]
    assert not [call for call in store.calls if call[0] == "create"]


@pytest.mark.asyncio
async def test_same_name_allowed_in_other_context():
    store = InMemoryCatalogStore([make_definition("loan_amount", context="loan")])
    created = await create_field(store, "application", FieldCreate(field_name="loan_amount", category="loan"))
    assert created.field_name == "loan_amount"


@pytest.mark.asyncio
async def test_create_collects_every_validation_error():
    store = InMemoryCatalogStore()
    payload = FieldCreate(
        field_name="loan_type",
        category="loan",
        field_type="select",
        display_conditional={"field": "loan_type", "operator": "equals", "value": "bridge"},
        value_conditional={"type": "formula", "formula": "{{loan_type}} ++"},
    )
    with pytest.raises(FieldValidationError) as exc_info:
        await create_field(store, "application", payload)

    errors = exc_info.value.errors
    assert any("options are required" in message for message in errors)
    assert any("display_conditional cannot reference" in message for message in errors)
    assert any("formula is invalid" in message for message in errors)


@pytest.mark.asyncio
async def test_create_rejects_self_referencing_formula():
    store = InMemoryCatalogStore()
    payload = FieldCreate(
        field_name="total",
        category="loan",
        value_conditional={"type": "formula", "formula": "{{total}} + 1"},
    )
    with pytest.raises(FieldValidationError) as exc_info:
        await create_field(store, "application", payload)
    assert exc_info.value.errors == ["formula cannot reference the field itself"]


@pytest.mark.asyncio
async def test_update_validates_merged_definition():
    existing = make_definition("loan_type", field_type="select", options=["bridge", "rental"])
    store = InMemoryCatalogStore([existing])

    with pytest.raises(FieldValidationError):
        await update_field(store, "application", existing.id, FieldUpdate(options=[]))

    updated = await update_field(store, "application", existing.id, FieldUpdate(field_label="Loan Program"))
    assert updated.field_label == "Loan Program"
    assert updated.options == ["bridge", "rental"]
    assert store.update_calls == [("update", existing.id, {"field_label": "Loan Program"})]


@pytest.mark.asyncio
async def test_update_can_clear_conditionals_but_not_required_columns():
    existing = make_definition(
        "notes",
        display_conditional={"field": "has_notes", "operator": "equals", "value": True},
    )
    store = InMemoryCatalogStore([existing])

    updated = await update_field(
        store,
        "application",
        existing.id,
        FieldUpdate.model_validate({"display_conditional": None, "field_label": None}),
    )
    assert updated.display_conditional is None
    assert updated.field_label == "Notes"


@pytest.mark.asyncio
async def test_update_unknown_id_raises_not_found():
    store = InMemoryCatalogStore()
    with pytest.raises(FieldNotFound):
        await update_field(store, "application", "missing", FieldUpdate(required=True))


@pytest.mark.asyncio
async def test_delete_writes_audit_event(caplog):
    existing = make_definition("obsolete")
    store = InMemoryCatalogStore([existing])
    audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)

    # The audit stream does not propagate to root, so attach the capture handler directly.
    audit_logger.addHandler(caplog.handler)
    try:
        with caplog.at_level(logging.INFO, logger=AUDIT_LOGGER_NAME):
            await delete_field(store, "application", existing.id)
    finally:
        audit_logger.removeHandler(caplog.handler)

    assert existing.id not in store.rows
    events = [record.event for record in caplog.records if record.name == AUDIT_LOGGER_NAME]
    assert events[-1]["action"] == "field.deleted"
    assert events[-1]["resource_id"] == existing.id

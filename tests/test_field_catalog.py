import asyncio
from datetime import datetime, timezone
from uuid import uuid4

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from conftest import FakeAsyncSession, FakeResult
from fieldconfig.core.exceptions import CatalogUnavailable, FieldNotFound, FieldValidationError
from fieldconfig.models.field_configuration import FieldConfiguration
from fieldconfig.services.field_catalog import SqlFieldCatalogStore


def _row(**overrides) -> FieldConfiguration:
    defaults = dict(
        id=uuid4(),
        context="application",
        field_name="loan_amount",
        field_label="Loan Amount",
        field_type="currency",
        category="loan",
        category_display_name=None,
        is_repeatable_category=False,
        section=None,
        required=True,
        read_only=False,
        options=[],
        display_order=0,
        display_conditional=None,
        value_conditional=None,
        visible_to_roles=["Administrator"],
        placeholder=None,
        description=None,
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        updated_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )
    defaults.update(overrides)
    return FieldConfiguration(**defaults)


@pytest.mark.asyncio
async def test_list_maps_rows_to_definitions(fake_db: FakeAsyncSession):
    row = _row()
    fake_db.on_execute_return(FakeResult(items=[row]))
    store = SqlFieldCatalogStore(fake_db, timeout=1)

    definitions = await store.list("application")

    assert len(definitions) == 1
    assert definitions[0].id == str(row.id)
    assert definitions[0].field_type == "currency"
    assert definitions[0].visible_to_roles == ["Administrator"]


@pytest.mark.asyncio
async def test_create_persists_and_commits(fake_db: FakeAsyncSession):
    store = SqlFieldCatalogStore(fake_db, timeout=1)
    created = await store.create(
        {
            "context": "loan",
            "field_name": "maturity_date",
            "field_label": "Maturity Date",
            "field_type": "date",
            "category": "terms",
            "is_repeatable_category": False,
            "required": False,
            "read_only": False,
            "options": [],
            "display_order": 3,
            "visible_to_roles": [],
        }
    )

    assert fake_db.committed is True
    assert isinstance(fake_db.added[0], FieldConfiguration)
    assert created.field_name == "maturity_date"
    assert created.id == str(fake_db.added[0].id)


@pytest.mark.asyncio
async def test_update_applies_only_known_columns(fake_db: FakeAsyncSession):
    row = _row()
    fake_db.on_execute_return(FakeResult(scalar=row))
    store = SqlFieldCatalogStore(fake_db, timeout=1)

    updated = await store.update(str(row.id), {"display_order": 7, "id": "ignored"})

    assert updated.display_order == 7
    assert row.display_order == 7
    assert updated.id == str(row.id)


@pytest.mark.asyncio
async def test_update_missing_row_raises_not_found(fake_db: FakeAsyncSession):
    store = SqlFieldCatalogStore(fake_db, timeout=1)
    with pytest.raises(FieldNotFound):
        await store.update(str(uuid4()), {"display_order": 1})
    with pytest.raises(FieldNotFound):
        await store.delete("not-a-uuid")


@pytest.mark.asyncio
async def test_delete_removes_row(fake_db: FakeAsyncSession):
    row = _row()
    fake_db.on_execute_return(FakeResult(scalar=row))
    store = SqlFieldCatalogStore(fake_db, timeout=1)

    await store.delete(str(row.id))

    assert fake_db.deleted == [row]
    assert fake_db.committed is True


@pytest.mark.asyncio
async def test_database_error_maps_to_catalog_unavailable(fake_db: FakeAsyncSession):
    fake_db.fail_with = OperationalError("SELECT 1", {}, Exception("connection refused"))
    store = SqlFieldCatalogStore(fake_db, timeout=1)

    with pytest.raises(CatalogUnavailable) as exc_info:
        await store.list("application")
    assert exc_info.value.operation == "list"
    assert fake_db.rolled_back is True


@pytest.mark.asyncio
async def test_unique_violation_maps_to_validation_error(fake_db: FakeAsyncSession):
    store = SqlFieldCatalogStore(fake_db, timeout=1)
    fake_db.fail_with = IntegrityError("INSERT", {}, Exception("duplicate key"))

    with pytest.raises(FieldValidationError):
        await store.create({"context": "loan", "field_name": "dup", "field_label": "Dup", "category": "x"})


@pytest.mark.asyncio
async def test_slow_store_times_out(fake_db: FakeAsyncSession):
    async def _hang(*args, **kwargs):
        await asyncio.sleep(1)

    fake_db.execute = _hang
    store = SqlFieldCatalogStore(fake_db, timeout=0.01)

    with pytest.raises(CatalogUnavailable):
        await store.list("application")

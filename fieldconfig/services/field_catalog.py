from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Protocol, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fieldconfig.core.exceptions import CatalogUnavailable, FieldNotFound, FieldValidationError
from fieldconfig.core.settings import settings
from fieldconfig.models.field_configuration import FieldConfiguration
from fieldconfig.schemas.fields import FieldDefinition

logger = logging.getLogger(__name__)

T = TypeVar("T")

MUTABLE_COLUMNS = frozenset(
    {
        "field_name",
        "field_label",
        "field_type",
        "category",
        "category_display_name",
        "is_repeatable_category",
        "section",
        "required",
        "read_only",
        "options",
        "display_order",
        "display_conditional",
        "value_conditional",
        "visible_to_roles",
        "placeholder",
        "description",
    }
)


class FieldCatalogStore(Protocol):
    """Persistence for field definitions, keyed by context."""

    async def list(self, context: str) -> list[FieldDefinition]: ...

    async def create(self, data: dict[str, Any]) -> FieldDefinition: ...

    async def update(self, field_id: str, patch: dict[str, Any]) -> FieldDefinition: ...

    async def delete(self, field_id: str) -> None: ...


def _parse_id(field_id: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(field_id))
    except ValueError as exc:
        raise FieldNotFound(field_id) from exc


class SqlFieldCatalogStore:
    """Catalog store on an ``AsyncSession``.

    Every call is bounded by ``timeout`` seconds. Database and timeout failures
    surface as :class:`CatalogUnavailable`; a duplicate ``field_name`` reported
    by the unique constraint surfaces as :class:`FieldValidationError`.
    """

    def __init__(self, session: AsyncSession, *, timeout: float | None = None) -> None:
        self.session = session
        self.timeout = settings.catalog_timeout_seconds if timeout is None else timeout

    async def _rollback(self) -> None:
        try:
            await self.session.rollback()
        except SQLAlchemyError:
            logger.warning("Rollback after catalog failure did not complete", exc_info=True)

    async def _run(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        try:
            return await asyncio.wait_for(call(), timeout=self.timeout)
        except IntegrityError as exc:
            await self._rollback()
            raise FieldValidationError(["field_name already exists in this context"]) from exc
        except (SQLAlchemyError, asyncio.TimeoutError, OSError) as exc:
            await self._rollback()
            logger.error("Catalog %s failed: %s", operation, exc.__class__.__name__)
            raise CatalogUnavailable(operation=operation) from exc

    async def _get(self, field_id: str) -> FieldConfiguration:
        stmt = select(FieldConfiguration).where(FieldConfiguration.id == _parse_id(field_id))
        result = await self.session.execute(stmt)
        row = result.scalar_one_or_none()
        if row is None:
            raise FieldNotFound(field_id)
        return row

    async def list(self, context: str) -> list[FieldDefinition]:
        async def _list() -> list[FieldDefinition]:
            stmt = (
                select(FieldConfiguration)
                .where(FieldConfiguration.context == context)
                .order_by(FieldConfiguration.created_at, FieldConfiguration.id)
            )
            result = await self.session.execute(stmt)
            return [FieldDefinition.model_validate(row) for row in result.scalars().all()]

        return await self._run("list", _list)

    async def create(self, data: dict[str, Any]) -> FieldDefinition:
        async def _create() -> FieldDefinition:
            row = FieldConfiguration(**data)
            self.session.add(row)
            await self.session.flush()
            await self.session.refresh(row)
            await self.session.commit()
            return FieldDefinition.model_validate(row)

        return await self._run("create", _create)

    async def update(self, field_id: str, patch: dict[str, Any]) -> FieldDefinition:
        async def _update() -> FieldDefinition:
            row = await self._get(field_id)
            for key, value in patch.items():
                if key in MUTABLE_COLUMNS:
                    setattr(row, key, value)
            await self.session.flush()
            await self.session.refresh(row)
            await self.session.commit()
            return FieldDefinition.model_validate(row)

        return await self._run("update", _update)

    async def delete(self, field_id: str) -> None:
        async def _delete() -> None:
            row = await self._get(field_id)
            await self.session.delete(row)
            await self.session.commit()

        await self._run("delete", _delete)

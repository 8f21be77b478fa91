import asyncio
from dataclasses import asdict

from fastapi import APIRouter, Depends, Query, Request

from fieldconfig.api import deps
from fieldconfig.core.limiter import limiter
from fieldconfig.core.settings import settings
from fieldconfig.schemas.fields import (
    CategoryGroupOut,
    DiagnosticOut,
    EvaluateRequest,
    EvaluateResponse,
    FieldContext,
    FieldCreate,
    FieldDefinition,
    FieldUpdate,
    ReorderRequest,
    ReorderResponse,
    ResolvedFieldsOut,
    RoleCleanupResponse,
)
from fieldconfig.services.conditionals import evaluate_form
from fieldconfig.services.field_catalog import FieldCatalogStore
from fieldconfig.services.field_management import create_field, delete_field, update_field
from fieldconfig.services.field_resolver import load_definitions, resolve_fields
from fieldconfig.services.reorder import StoreFactory, ThrottledUpdateQueue, start_reorder
from fieldconfig.services.role_cleanup import strip_legacy_roles
from fieldconfig.services.role_visibility import is_visible

router = APIRouter(prefix="/fields", tags=["fields"])


@router.post(
    "/maintenance/role-cleanup",
    response_model=RoleCleanupResponse,
    summary="Persist normalized visible_to_roles across all contexts",
)
async def cleanup_roles(
    _: str = Depends(deps.require_manager_role),
    store: FieldCatalogStore = Depends(deps.get_catalog_store),
) -> RoleCleanupResponse:
    return RoleCleanupResponse(updated=await strip_legacy_roles(store))


@router.get("/{context}", response_model=ResolvedFieldsOut, summary="List fields visible to the actor")
async def list_fields(
    context: FieldContext,
    search: str | None = Query(default=None, max_length=200),
    actor_role: str = Depends(deps.require_actor_role),
    store: FieldCatalogStore = Depends(deps.get_catalog_store),
) -> ResolvedFieldsOut:
    resolved = await resolve_fields(store, context.value, actor_role, search=search)
    return ResolvedFieldsOut(
        context=context,
        fields=resolved.fields,
        categories=[CategoryGroupOut(**asdict(group)) for group in resolved.categories],
    )


@router.post("/{context}", response_model=FieldDefinition, status_code=201, summary="Create a field")
async def create_field_definition(
    context: FieldContext,
    payload: FieldCreate,
    _: str = Depends(deps.require_manager_role),
    store: FieldCatalogStore = Depends(deps.get_catalog_store),
) -> FieldDefinition:
    return await create_field(store, context.value, payload)


@router.post("/{context}/reorder", response_model=ReorderResponse, summary="Move a category or a field")
async def reorder(
    context: FieldContext,
    payload: ReorderRequest,
    _: str = Depends(deps.require_manager_role),
    open_store: StoreFactory = Depends(deps.get_catalog_store_factory),
    queue: ThrottledUpdateQueue = Depends(deps.get_reorder_queue),
) -> ReorderResponse:
    # Queued writes keep running on their own session if the client goes away.
    task = start_reorder(open_store, context.value, payload, queue)
    result = await asyncio.shield(task)
    return ReorderResponse(updated=result.updated, total_fields=result.total_fields)


@router.post("/{context}/evaluate", response_model=EvaluateResponse, summary="Compute values and visibility")
@limiter.limit(lambda: f"{settings.rate_limit_per_minute}/minute")
async def evaluate(
    context: FieldContext,
    payload: EvaluateRequest,
    request: Request,
    actor_role: str = Depends(deps.require_actor_role),
    store: FieldCatalogStore = Depends(deps.get_catalog_store),
) -> EvaluateResponse:
    definitions = await load_definitions(store, context.value)
    evaluation = evaluate_form(definitions, payload.record, payload.overridden_fields)
    visible = {item.field_name for item in definitions if is_visible(item, actor_role)}
    hidden = {item.field_name for item in definitions} - visible
    record = {
        name: value for name, value in evaluation.record.items() if name not in hidden or name in payload.record
    }
    return EvaluateResponse(
        record=record,
        visibility={name: shown for name, shown in evaluation.visibility.items() if name in visible},
        diagnostics=[DiagnosticOut(**asdict(item)) for item in evaluation.diagnostics],
    )


@router.patch("/{context}/{field_id}", response_model=FieldDefinition, summary="Update a field")
async def update_field_definition(
    context: FieldContext,
    field_id: str,
    payload: FieldUpdate,
    _: str = Depends(deps.require_manager_role),
    store: FieldCatalogStore = Depends(deps.get_catalog_store),
) -> FieldDefinition:
    return await update_field(store, context.value, field_id, payload)


@router.delete("/{context}/{field_id}", status_code=204, summary="Delete a field")
async def delete_field_definition(
    context: FieldContext,
    field_id: str,
    _: str = Depends(deps.require_manager_role),
    store: FieldCatalogStore = Depends(deps.get_catalog_store),
) -> None:
    await delete_field(store, context.value, field_id)
    return None

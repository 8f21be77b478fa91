from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from functools import partial
from typing import Any, AsyncContextManager, Awaitable, Callable, Iterable, Sequence

from fieldconfig.core.exceptions import FieldNotFound, FieldValidationError, PartialReorderFailure
from fieldconfig.core.settings import settings
from fieldconfig.schemas.fields import (
    CategoryMoveRequest,
    FieldDefinition,
    FieldOrderChange,
    ReorderRequest,
)
from fieldconfig.services.audit import record_field_audit
from fieldconfig.services.field_catalog import FieldCatalogStore
from fieldconfig.services.field_resolver import group_by_category, load_definitions

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[Any]]
StoreFactory = Callable[[], AsyncContextManager[FieldCatalogStore]]

_running_reorders: set[asyncio.Task] = set()


def _check_index(name: str, index: int, size: int) -> None:
    if not 0 <= index < size:
        raise FieldValidationError([f"{name} {index} is out of range (0..{size - 1})"])


def plan_category_move(
    fields: Sequence[FieldDefinition],
    source_index: int,
    destination_index: int,
) -> list[FieldDefinition]:
    """Full field ordering after moving one category to a new position."""
    groups = group_by_category(list(fields))
    _check_index("source_index", source_index, len(groups))
    _check_index("destination_index", destination_index, len(groups))
    moved = groups.pop(source_index)
    groups.insert(destination_index, moved)
    return [item for group in groups for item in group.fields]


def plan_field_move(
    fields: Sequence[FieldDefinition],
    field_id: str,
    destination_category: str,
    destination_index: int,
) -> list[FieldDefinition]:
    """Full field ordering after moving one field within its category."""
    groups = group_by_category(list(fields))
    for group in groups:
        dragged = next((item for item in group.fields if item.id == str(field_id)), None)
        if dragged is not None:
            break
    else:
        raise FieldNotFound(str(field_id))

    if group.key != destination_category:
        raise FieldValidationError(
            [f"field {dragged.field_name!r} can only be reordered within category {group.key!r}"]
        )
    group.fields.remove(dragged)
    group.fields.insert(min(destination_index, len(group.fields)), dragged)
    return [item for grp in groups for item in grp.fields]


def plan_display_orders(
    fields: Sequence[FieldDefinition],
    ordered: Sequence[FieldDefinition],
) -> list[FieldOrderChange]:
    """Dense ``0..N-1`` orders for ``ordered``; only the entries that change."""
    current = {item.id: item.display_order for item in fields}
    return [
        FieldOrderChange(id=item.id, display_order=index)
        for index, item in enumerate(ordered)
        if current.get(item.id) != index
    ]


@dataclass
class QueueOutcome:
    applied_ids: list[str] = field(default_factory=list)
    failed_ids: list[str] = field(default_factory=list)


class ThrottledUpdateQueue:
    """Run jobs one at a time, starting them at least ``min_interval`` seconds apart.

    A failing job is recorded and the queue moves on to the next one.
    """

    def __init__(
        self,
        min_interval: float | None = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.min_interval = settings.reorder_min_interval_seconds if min_interval is None else min_interval
        self._sleep = sleep
        self._clock = clock
        self._lock = asyncio.Lock()
        self._last_started: float | None = None

    async def _wait_turn(self) -> None:
        if self._last_started is not None:
            remaining = self.min_interval - (self._clock() - self._last_started)
            if remaining > 0:
                await self._sleep(remaining)
        self._last_started = self._clock()

    async def run(self, jobs: Iterable[tuple[str, Job]]) -> QueueOutcome:
        outcome = QueueOutcome()
        async with self._lock:
            for job_id, job in jobs:
                await self._wait_turn()
                try:
                    await job()
                except Exception:
                    logger.warning("Queued update %s failed", job_id, exc_info=True)
                    outcome.failed_ids.append(job_id)
                else:
                    outcome.applied_ids.append(job_id)
        return outcome


async def apply_reorder(
    store: FieldCatalogStore,
    changes: Sequence[FieldOrderChange],
    queue: ThrottledUpdateQueue,
) -> list[FieldOrderChange]:
    """Issue one ``display_order`` update per change through ``queue``.

    Updates that succeeded are kept when others fail; the failure is raised as
    :class:`PartialReorderFailure` once the queue has drained.
    """
    jobs = [(change.id, partial(store.update, change.id, {"display_order": change.display_order})) for change in changes]
    outcome = await queue.run(jobs)
    if outcome.failed_ids:
        raise PartialReorderFailure(outcome.failed_ids, outcome.applied_ids)
    return list(changes)


@dataclass
class ReorderResult:
    updated: list[FieldOrderChange]
    total_fields: int


async def reorder_fields(
    store: FieldCatalogStore,
    context: str,
    request: ReorderRequest,
    queue: ThrottledUpdateQueue,
) -> ReorderResult:
    definitions = await load_definitions(store, context)
    if isinstance(request, CategoryMoveRequest):
        ordered = plan_category_move(definitions, request.source_index, request.destination_index)
    else:
        ordered = plan_field_move(
            definitions,
            request.field_id,
            request.destination_category,
            request.destination_index,
        )
    changes = plan_display_orders(definitions, ordered)
    try:
        updated = await apply_reorder(store, changes, queue)
    finally:
        if changes:
            record_field_audit(
                action="field.reordered",
                context=context,
                field_id="*",
                new_value={"requested": [change.model_dump() for change in changes]},
            )
    return ReorderResult(updated=updated, total_fields=len(definitions))


def _log_reorder_outcome(context: str, task: asyncio.Task) -> None:
    _running_reorders.discard(task)
    if task.cancelled():
        logger.error("Reorder of %s fields was cancelled before it finished", context)
        return
    exc = task.exception()
    if isinstance(exc, PartialReorderFailure):
        logger.error(
            "Reorder of %s fields partially failed; failed=%s applied=%s",
            context,
            exc.failed_ids,
            exc.applied_ids,
        )
    elif exc is not None:
        logger.error("Reorder of %s fields failed", context, exc_info=exc)
    else:
        logger.info("Reorder of %s fields applied %d updates", context, len(task.result().updated))


def start_reorder(
    open_store: StoreFactory,
    context: str,
    request: ReorderRequest,
    queue: ThrottledUpdateQueue,
) -> asyncio.Task:
    """Run :func:`reorder_fields` as a task that owns its own catalog store.

    The task keeps running when the caller stops waiting for it, and its outcome
    is always logged.
    """

    async def _run() -> ReorderResult:
        async with open_store() as store:
            return await reorder_fields(store, context, request, queue)

    task = asyncio.create_task(_run())
    _running_reorders.add(task)
    task.add_done_callback(partial(_log_reorder_outcome, context))
    return task

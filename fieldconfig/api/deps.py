from contextlib import asynccontextmanager
from functools import lru_cache
from typing import AsyncIterator, Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from fieldconfig.core.context import set_actor_role
from fieldconfig.core.settings import settings
from fieldconfig.db.session import AsyncSessionLocal, get_db
from fieldconfig.services.field_catalog import FieldCatalogStore, SqlFieldCatalogStore
from fieldconfig.services.reorder import StoreFactory, ThrottledUpdateQueue
from fieldconfig.services.role_visibility import normalize_app_role


async def get_actor_role(
    x_actor_role: Optional[str] = Header(default=None, alias="X-Actor-Role"),
) -> Optional[str]:
    role = normalize_app_role(x_actor_role)
    if not role:
        return None
    set_actor_role(role)
    return role


async def require_actor_role(actor_role: Optional[str] = Depends(get_actor_role)) -> str:
    if actor_role is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-Actor-Role header is required",
        )
    return actor_role


async def require_manager_role(actor_role: str = Depends(require_actor_role)) -> str:
    allowed = {normalize_app_role(role) for role in settings.manager_roles}
    if actor_role not in allowed:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Field configuration can only be managed by: " + ", ".join(sorted(allowed)),
        )
    return actor_role


async def get_catalog_store(db: AsyncSession = Depends(get_db)) -> FieldCatalogStore:
    return SqlFieldCatalogStore(db)


@asynccontextmanager
async def _open_catalog_store() -> AsyncIterator[FieldCatalogStore]:
    async with AsyncSessionLocal() as session:
        yield SqlFieldCatalogStore(session)


async def get_catalog_store_factory() -> StoreFactory:
    """Stores opened here outlive the request that asked for them."""
    return _open_catalog_store


@lru_cache(maxsize=1)
def _shared_reorder_queue() -> ThrottledUpdateQueue:
    return ThrottledUpdateQueue(settings.reorder_min_interval_seconds)


async def get_reorder_queue() -> ThrottledUpdateQueue:
    """One queue per process so concurrent reorders never interleave their writes."""
    return _shared_reorder_queue()

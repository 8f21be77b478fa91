from __future__ import annotations

import logging
from typing import Iterable

from fieldconfig.schemas.fields import FieldContext
from fieldconfig.services.audit import record_field_audit
from fieldconfig.services.field_catalog import FieldCatalogStore
from fieldconfig.services.role_visibility import normalize_roles

logger = logging.getLogger(__name__)

ALL_CONTEXTS = tuple(context.value for context in FieldContext)


async def strip_legacy_roles(store: FieldCatalogStore, contexts: Iterable[str] = ALL_CONTEXTS) -> int:
    """Persist normalized ``visible_to_roles`` for every definition that needs it.

    Returns the number of definitions updated; running it again returns 0.
    """
    updated = 0
    for context in contexts:
        for definition in await store.list(context):
            roles = normalize_roles(definition.visible_to_roles)
            if roles == definition.visible_to_roles:
                continue
            await store.update(definition.id, {"visible_to_roles": roles})
            record_field_audit(
                action="field.roles_normalized",
                context=context,
                field_id=definition.id,
                old_value={"visible_to_roles": definition.visible_to_roles},
                new_value={"visible_to_roles": roles},
            )
            updated += 1
    logger.info("Role cleanup updated %s field definitions", updated)
    return updated

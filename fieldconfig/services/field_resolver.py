from __future__ import annotations

from dataclasses import dataclass, field

from fieldconfig.schemas.fields import FieldDefinition
from fieldconfig.services.field_catalog import FieldCatalogStore
from fieldconfig.services.role_visibility import is_visible, normalize_definition


@dataclass
class CategoryGroup:
    key: str
    category: str
    display_name: str
    is_repeatable: bool = False
    fields: list[FieldDefinition] = field(default_factory=list)


@dataclass
class ResolvedFields:
    context: str
    fields: list[FieldDefinition]
    categories: list[CategoryGroup]


def _matches(definition: FieldDefinition, needle: str) -> bool:
    haystack = (
        definition.field_name,
        definition.field_label,
        definition.category,
        definition.category_display_name or "",
    )
    return any(needle in value.lower() for value in haystack)


def group_by_category(definitions: list[FieldDefinition]) -> list[CategoryGroup]:
    """Group definitions by display category, ordered as the form renders them.

    Members are stable-sorted by ``display_order``; groups are stable-sorted by
    the ``display_order`` of their first member.
    """
    groups: dict[str, CategoryGroup] = {}
    for definition in definitions:
        key = definition.group_key
        group = groups.get(key)
        if group is None:
            group = CategoryGroup(key=key, category=definition.category, display_name=key)
            groups[key] = group
        group.fields.append(definition)
        if definition.is_repeatable_category:
            group.is_repeatable = True
    for group in groups.values():
        group.fields.sort(key=lambda item: item.display_order)
    return sorted(groups.values(), key=lambda group: group.fields[0].display_order)


async def load_definitions(store: FieldCatalogStore, context: str) -> list[FieldDefinition]:
    """All definitions of ``context`` with normalized roles, in catalog order."""
    return [normalize_definition(definition) for definition in await store.list(context)]


async def resolve_fields(
    store: FieldCatalogStore,
    context: str,
    actor_role: str | None,
    search: str | None = None,
) -> ResolvedFields:
    definitions = await load_definitions(store, context)
    if actor_role is not None:
        definitions = [item for item in definitions if is_visible(item, actor_role)]
    needle = (search or "").strip().lower()
    if needle:
        definitions = [item for item in definitions if _matches(item, needle)]
    categories = group_by_category(definitions)
    ordered = [item for group in categories for item in group.fields]
    return ResolvedFields(context=context, fields=ordered, categories=categories)

from __future__ import annotations

from typing import Iterable

from fieldconfig.schemas.fields import FieldDefinition

APP_ROLES = (
    "Administrator",
    "Loan Officer",
    "Borrower",
    "Broker",
    "Liaison",
    "Referral Partner",
    "Title Company",
    "Insurance Company",
    "Servicer",
)

# Roles that no longer exist and must never be stored or matched.
REMOVED_ROLES = frozenset({"guarantor"})

LEGACY_ROLE_MAP = {
    "administrator": "Administrator",
    "loan officer": "Loan Officer",
    "borrower": "Borrower",
    "liaison": "Liaison",
    "broker": "Broker",
    "brokerage": "Broker",
    "referrer": "Referral Partner",
    "referral partner": "Referral Partner",
    "title company": "Title Company",
    "insurance provider": "Insurance Company",
    "insurance company": "Insurance Company",
    "servicer": "Servicer",
    "auditor": "Referral Partner",
    "appraisal firm": "Referral Partner",
    "legal counsel": "Referral Partner",
    "other": "Referral Partner",
}


def normalize_app_role(role: str | None) -> str:
    """Map a legacy role label onto its current name; unknown labels pass through trimmed."""
    label = (role or "").strip()
    return LEGACY_ROLE_MAP.get(label.lower(), label)


def normalize_roles(roles: Iterable[str] | None) -> list[str]:
    normalized: list[str] = []
    for role in roles or []:
        if not isinstance(role, str):
            continue
        name = normalize_app_role(role)
        if not name or name.lower() in REMOVED_ROLES or name in normalized:
            continue
        normalized.append(name)
    return normalized


def normalize_definition(definition: FieldDefinition) -> FieldDefinition:
    roles = normalize_roles(definition.visible_to_roles)
    if roles == definition.visible_to_roles:
        return definition
    return definition.model_copy(update={"visible_to_roles": roles})


def is_visible(definition: FieldDefinition, actor_role: str | None) -> bool:
    roles = normalize_roles(definition.visible_to_roles)
    if not roles:
        return True
    return normalize_app_role(actor_role) in roles

from __future__ import annotations

from typing import Iterable


class FieldConfigError(Exception):
    """Base class for field configuration errors."""


class CatalogUnavailable(FieldConfigError):
    """The catalog store could not be reached or rejected the call."""

    def __init__(self, message: str = "Field catalog is unavailable", *, operation: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.operation = operation


class FieldNotFound(FieldConfigError):
    def __init__(self, field_id: str) -> None:
        super().__init__(f"Field configuration {field_id} not found")
        self.field_id = field_id


class FieldValidationError(FieldConfigError):
    """A field definition breaks a catalog invariant; raised before persisting."""

    def __init__(self, errors: Iterable[str]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "Invalid field definition")


class FormulaError(FieldConfigError):
    def __init__(self, message: str, *, formula: str | None = None, position: int | None = None) -> None:
        self.message = message
        self.formula = formula
        self.position = position
        if position is not None:
            message = f"{message} (at position {position})"
        super().__init__(message)


class PartialReorderFailure(FieldConfigError):
    """Some display_order updates failed; applied ones are kept as-is."""

    def __init__(self, failed_ids: list[str], applied_ids: list[str]) -> None:
        self.failed_ids = list(failed_ids)
        self.applied_ids = list(applied_ids)
        super().__init__(
            f"{len(self.failed_ids)} of {len(self.failed_ids) + len(self.applied_ids)} "
            "display order updates failed; reload the catalog"
        )

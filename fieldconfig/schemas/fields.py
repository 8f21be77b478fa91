from __future__ import annotations

import math
import re
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

FIELD_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_]*$")


class FieldContext(str, Enum):
    APPLICATION = "application"
    LOAN = "loan"


class FieldType(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    CHECKBOX = "checkbox"
    SELECT = "select"
    RADIO = "radio"
    DATE = "date"
    DATETIME = "datetime"
    EMAIL = "email"
    TEL = "tel"
    CURRENCY = "currency"
    PERCENTAGE = "percentage"
    SSN = "ssn"
    ZIPCODE = "zipcode"
    ADDRESS = "address"
    FULLADDRESS = "fulladdress"
    STATE = "state"
    CITY = "city"
    COUNTY = "county"
    TEXTAREA = "textarea"


OPTION_FIELD_TYPES = {FieldType.SELECT.value, FieldType.RADIO.value}


class Operator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    IN = "in"


RecordValue = Union[bool, int, float, str, list[Any], dict[str, Any], None]


class DisplayConditional(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    field: str = Field(min_length=1)
    operator: Operator = Operator.EQUALS
    value: Any = None


class FormulaValueConditional(BaseModel):
    type: Literal["formula"]
    formula: str = Field(min_length=1)


class CopyFromValueConditional(BaseModel):
    type: Literal["copy_from"]
    source_field: str = Field(min_length=1)


class ConditionalValueRule(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    condition_field: str = Field(min_length=1)
    condition_operator: Operator = Operator.EQUALS
    condition_value: Any = None
    result_value: Any = None


class ConditionalValueConditional(BaseModel):
    type: Literal["conditional_value"]
    rules: list[ConditionalValueRule] = Field(default_factory=list)


ValueConditional = Annotated[
    Union[FormulaValueConditional, CopyFromValueConditional, ConditionalValueConditional],
    Field(discriminator="type"),
]


def field_name_to_label(field_name: str) -> str:
    return " ".join(word[:1].upper() + word[1:] for word in field_name.split("_") if word)


def _finite_or_none(value: Any) -> Any:
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, list):
        return [_finite_or_none(item) for item in value]
    if isinstance(value, dict):
        return {key: _finite_or_none(item) for key, item in value.items()}
    return value


def _clean_strings(values: list[str] | None) -> list[str]:
    cleaned: list[str] = []
    for value in values or []:
        text = str(value).strip()
        if text:
            cleaned.append(text)
    return cleaned


class FieldDefinition(BaseModel):
    """A stored field configuration as read back from the catalog."""

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)

    id: str
    context: FieldContext
    field_name: str
    field_label: str
    field_type: str = FieldType.TEXT.value
    category: str
    category_display_name: str | None = None
    is_repeatable_category: bool = False
    section: str | None = None
    required: bool = False
    read_only: bool = False
    options: list[str] = Field(default_factory=list)
    display_order: int = 0
    display_conditional: dict[str, Any] | None = None
    value_conditional: dict[str, Any] | None = None
    visible_to_roles: list[str] = Field(default_factory=list)
    placeholder: str | None = None
    description: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("id", mode="before")
    @classmethod
    def stringify_id(cls, v: Any) -> str:
        return str(v)

    @field_validator("options", "visible_to_roles", mode="before")
    @classmethod
    def none_to_list(cls, v: Any) -> Any:
        return [] if v is None else v

    @field_validator("display_order", mode="before")
    @classmethod
    def none_to_zero(cls, v: Any) -> Any:
        return 0 if v is None else v

    @property
    def group_key(self) -> str:
        return self.category_display_name or self.category


class _FieldPayload(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    @field_validator("field_name", check_fields=False)
    @classmethod
    def validate_field_name(cls, v: str | None) -> str | None:
        if v is None:
            return v
        value = v.strip()
        if not FIELD_NAME_PATTERN.match(value):
            raise ValueError("field_name must be snake_case (lowercase letters, digits, underscores)")
        return value

    @field_validator("category", "field_label", check_fields=False)
    @classmethod
    def strip_non_empty(cls, v: str | None) -> str | None:
        if v is None:
            return v
        value = v.strip()
        if not value:
            raise ValueError("Value cannot be empty")
        return value

    @field_validator("category_display_name", "section", check_fields=False)
    @classmethod
    def blank_to_none(cls, v: str | None) -> str | None:
        if v is None:
            return v
        return v.strip() or None

    @field_validator("options", "visible_to_roles", check_fields=False)
    @classmethod
    def clean_lists(cls, v: list[str] | None) -> list[str] | None:
        if v is None:
            return v
        return _clean_strings(v)


class FieldCreate(_FieldPayload):
    field_name: str
    field_label: str | None = None
    field_type: FieldType = FieldType.TEXT
    category: str
    category_display_name: str | None = None
    is_repeatable_category: bool = False
    section: str | None = None
    required: bool = False
    read_only: bool = False
    options: list[str] = Field(default_factory=list)
    display_order: int | None = Field(default=None, ge=0)
    display_conditional: DisplayConditional | None = None
    value_conditional: ValueConditional | None = None
    visible_to_roles: list[str] = Field(default_factory=list)
    placeholder: str | None = None
    description: str | None = None


class FieldUpdate(_FieldPayload):
    field_name: str | None = None
    field_label: str | None = None
    field_type: FieldType | None = None
    category: str | None = None
    category_display_name: str | None = None
    is_repeatable_category: bool | None = None
    section: str | None = None
    required: bool | None = None
    read_only: bool | None = None
    options: list[str] | None = None
    display_order: int | None = Field(default=None, ge=0)
    display_conditional: DisplayConditional | None = None
    value_conditional: ValueConditional | None = None
    visible_to_roles: list[str] | None = None
    placeholder: str | None = None
    description: str | None = None


class CategoryGroupOut(BaseModel):
    key: str
    category: str
    display_name: str
    is_repeatable: bool
    fields: list[FieldDefinition]


class ResolvedFieldsOut(BaseModel):
    context: FieldContext
    fields: list[FieldDefinition]
    categories: list[CategoryGroupOut]


class CategoryMoveRequest(BaseModel):
    type: Literal["category"]
    source_index: int = Field(ge=0)
    destination_index: int = Field(ge=0)


class FieldMoveRequest(BaseModel):
    type: Literal["field"]
    field_id: str
    destination_category: str
    destination_index: int = Field(ge=0)


ReorderRequest = Union[CategoryMoveRequest, FieldMoveRequest]


class FieldOrderChange(BaseModel):
    id: str
    display_order: int


class ReorderResponse(BaseModel):
    updated: list[FieldOrderChange]
    total_fields: int


class EvaluateRequest(BaseModel):
    record: dict[str, RecordValue] = Field(default_factory=dict)
    overridden_fields: list[str] = Field(default_factory=list)

    @field_validator("record")
    @classmethod
    def non_finite_to_none(cls, v: dict[str, Any]) -> dict[str, Any]:
        # NaN and Infinity are accepted by the JSON parser but cannot be echoed back.
        return {key: _finite_or_none(value) for key, value in v.items()}


class DiagnosticOut(BaseModel):
    field_name: str
    kind: str
    message: str


class EvaluateResponse(BaseModel):
    record: dict[str, Any]
    visibility: dict[str, bool]
    diagnostics: list[DiagnosticOut]


class RoleCleanupResponse(BaseModel):
    updated: int

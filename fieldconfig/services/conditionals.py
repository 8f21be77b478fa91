from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Iterable, Mapping, Sequence

from fieldconfig.core.exceptions import FormulaError
from fieldconfig.schemas.fields import FieldDefinition, Operator
from fieldconfig.services.formula import evaluate_formula, referenced_fields

logger = logging.getLogger(__name__)

KIND_MALFORMED = "malformed_conditional"
KIND_UNKNOWN_FIELD = "unknown_field"
KIND_FORMULA_ERROR = "formula_error"


class _Unset:
    """Marker for "leave the field as it is"."""

    __slots__ = ()

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "UNSET"


UNSET = _Unset()


@dataclass(frozen=True)
class Diagnostic:
    field_name: str
    kind: str
    message: str


DiagnosticHook = Callable[[Diagnostic], None]


@dataclass
class FormEvaluation:
    record: dict[str, Any]
    visibility: dict[str, bool]
    diagnostics: list[Diagnostic] = field(default_factory=list)


class _Malformed(ValueError):
    pass


def log_diagnostic(diagnostic: Diagnostic) -> None:
    logger.warning(
        "Conditional diagnostic for %s (%s): %s",
        diagnostic.field_name,
        diagnostic.kind,
        diagnostic.message,
    )


def _report(hook: DiagnosticHook | None, diagnostic: Diagnostic) -> None:
    (hook or log_diagnostic)(diagnostic)


# ---------------------------------------------------------------------------
# Operators
# ---------------------------------------------------------------------------


def _strict_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "false"):
            return lowered == "true"
    return None


def _loose_bool(value: Any) -> bool | None:
    strict = _strict_bool(value)
    if strict is not None:
        return strict
    if _is_numeric(value) and value in (0, 1):
        return value == 1
    if isinstance(value, str) and value.strip() in ("0", "1"):
        return value.strip() == "1"
    return None


def _is_numeric(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _as_number(value: Any) -> Decimal | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, (float, Decimal)):
        number = Decimal(str(value)) if isinstance(value, float) else value
    elif isinstance(value, str):
        try:
            number = Decimal(value.strip())
        except InvalidOperation:
            return None
    else:
        return None
    return number if number.is_finite() else None


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, Decimal):
        if value == value.to_integral_value():
            return str(value.quantize(Decimal(1)))
        return format(value.normalize(), "f")
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def _values_equal(field_value: Any, condition_value: Any) -> bool:
    if field_value is None or condition_value is None:
        return field_value is None and condition_value is None
    if _strict_bool(field_value) is not None or _strict_bool(condition_value) is not None:
        left = _loose_bool(field_value)
        return left is not None and left == _loose_bool(condition_value)
    if _is_numeric(field_value) or _is_numeric(condition_value):
        left_number = _as_number(field_value)
        right_number = _as_number(condition_value)
        if left_number is not None and right_number is not None:
            return left_number == right_number
    if type(field_value) is type(condition_value):
        return field_value == condition_value
    return _stringify(field_value) == _stringify(condition_value)


def _membership_set(condition_value: Any) -> set[str]:
    if isinstance(condition_value, (list, tuple, set)):
        items: Iterable[Any] = condition_value
    elif isinstance(condition_value, str):
        items = condition_value.split(",")
    else:
        items = [condition_value]
    return {_stringify(item).strip() for item in items}


def evaluate_condition(field_value: Any, operator: str, condition_value: Any) -> bool:
    """Apply ``operator`` to a record value and a configured condition value."""
    if operator == Operator.EQUALS.value:
        return _values_equal(field_value, condition_value)
    if operator == Operator.NOT_EQUALS.value:
        return not _values_equal(field_value, condition_value)
    if operator == Operator.CONTAINS.value:
        if field_value is None:
            return False
        needle = _stringify(condition_value)
        if isinstance(field_value, (list, tuple)):
            return any(_stringify(item) == needle for item in field_value)
        return needle in _stringify(field_value)
    if operator in (Operator.GREATER_THAN.value, Operator.LESS_THAN.value):
        left = _as_number(field_value)
        right = _as_number(condition_value)
        if left is None or right is None:
            return False
        return left > right if operator == Operator.GREATER_THAN.value else left < right
    if operator == Operator.IN.value:
        if field_value is None:
            return False
        allowed = _membership_set(condition_value)
        if isinstance(field_value, (list, tuple)):
            return any(_stringify(item).strip() in allowed for item in field_value)
        return _stringify(field_value).strip() in allowed
    raise _Malformed(f"unknown operator {operator!r}")


def _condition_parts(conditional: Any, field_key: str, operator_key: str, value_key: str) -> tuple[str, str, Any]:
    if not isinstance(conditional, Mapping):
        raise _Malformed("conditional is not an object")
    referenced = conditional.get(field_key)
    if not isinstance(referenced, str) or not referenced.strip():
        raise _Malformed(f"missing {field_key}")
    operator = conditional.get(operator_key) or Operator.EQUALS.value
    if not isinstance(operator, str):
        raise _Malformed(f"unknown operator {operator!r}")
    return referenced.strip(), operator, conditional.get(value_key)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def should_display(
    definition: FieldDefinition,
    record: Mapping[str, Any],
    on_diagnostic: DiagnosticHook | None = None,
) -> bool:
    conditional = definition.display_conditional
    if not conditional:
        return True
    try:
        referenced, operator, condition_value = _condition_parts(conditional, "field", "operator", "value")
        return evaluate_condition(record.get(referenced), operator, condition_value)
    except _Malformed as exc:
        _report(on_diagnostic, Diagnostic(definition.field_name, KIND_MALFORMED, f"display_conditional: {exc}"))
        return True


def _known_names(all_definitions: Sequence[FieldDefinition] | None) -> set[str] | None:
    if all_definitions is None:
        return None
    return {item.field_name for item in all_definitions}


def _check_known(
    definition: FieldDefinition,
    names: Iterable[str],
    known: set[str] | None,
    record: Mapping[str, Any],
    on_diagnostic: DiagnosticHook | None,
) -> None:
    if known is None:
        return
    for name in sorted(set(names) - known - set(record)):
        _report(
            on_diagnostic,
            Diagnostic(definition.field_name, KIND_UNKNOWN_FIELD, f"references unknown field {name!r}"),
        )


def compute_value(
    definition: FieldDefinition,
    record: Mapping[str, Any],
    all_definitions: Sequence[FieldDefinition] | None = None,
    on_diagnostic: DiagnosticHook | None = None,
) -> Any:
    """Compute the value a field's ``value_conditional`` assigns, or ``UNSET``.

    Formula failures raise :class:`FormulaError`; every other configuration
    problem is reported through ``on_diagnostic`` and yields ``UNSET``.
    """
    conditional = definition.value_conditional
    if not conditional:
        return UNSET
    known = _known_names(all_definitions)
    try:
        if not isinstance(conditional, Mapping):
            raise _Malformed("value_conditional is not an object")
        kind = conditional.get("type")
        if kind == "formula":
            formula = conditional.get("formula")
            if not isinstance(formula, str) or not formula.strip():
                raise _Malformed("missing formula")
            _check_known(definition, referenced_fields(formula), known, record, on_diagnostic)
            result = evaluate_formula(formula, record)
            return UNSET if result is None else result
        if kind == "copy_from":
            source = conditional.get("source_field")
            if not isinstance(source, str) or not source.strip():
                raise _Malformed("missing source_field")
            _check_known(definition, [source], known, record, on_diagnostic)
            return record.get(source)
        if kind == "conditional_value":
            rules = conditional.get("rules")
            if not isinstance(rules, list):
                raise _Malformed("rules must be a list")
            for rule in rules:
                referenced, operator, condition_value = _condition_parts(
                    rule, "condition_field", "condition_operator", "condition_value"
                )
                _check_known(definition, [referenced], known, record, on_diagnostic)
                if evaluate_condition(record.get(referenced), operator, condition_value):
                    return rule.get("result_value")
            return UNSET
        raise _Malformed(f"unknown value type {kind!r}")
    except _Malformed as exc:
        _report(on_diagnostic, Diagnostic(definition.field_name, KIND_MALFORMED, f"value_conditional: {exc}"))
        return UNSET


def apply_computed_values(
    definitions: Sequence[FieldDefinition],
    record: Mapping[str, Any],
    overridden_fields: Iterable[str] = (),
    on_diagnostic: DiagnosticHook | None = None,
) -> dict[str, Any]:
    """Return a copy of ``record`` with every computed field filled in.

    Definitions are processed in order, so a field may depend on values computed
    for fields before it. Overridden fields keep the value that was entered.
    """
    working = dict(record)
    overridden = set(overridden_fields)
    for definition in definitions:
        if not definition.value_conditional or definition.field_name in overridden:
            continue
        try:
            value = compute_value(definition, working, definitions, on_diagnostic)
        except FormulaError as exc:
            _report(on_diagnostic, Diagnostic(definition.field_name, KIND_FORMULA_ERROR, str(exc)))
            continue
        if value is not UNSET:
            working[definition.field_name] = value
    return working


def evaluate_form(
    definitions: Sequence[FieldDefinition],
    record: Mapping[str, Any],
    overridden_fields: Iterable[str] = (),
    on_diagnostic: DiagnosticHook | None = None,
) -> FormEvaluation:
    diagnostics: list[Diagnostic] = []

    def _collect(diagnostic: Diagnostic) -> None:
        diagnostics.append(diagnostic)
        _report(on_diagnostic, diagnostic)

    computed = apply_computed_values(definitions, record, overridden_fields, _collect)
    visibility = {definition.field_name: should_display(definition, computed, _collect) for definition in definitions}
    return FormEvaluation(record=computed, visibility=visibility, diagnostics=diagnostics)

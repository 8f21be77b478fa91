"""Formula language for computed field values.

Formulas reference record values with ``{{field_name}}`` placeholders and are
parsed into a small expression tree; nothing is ever handed to a host
evaluator.

Grammar, lowest to highest precedence::

    expression  := comparison
    comparison  := additive ( ("=" | "==" | "!=" | "<>" | "<" | ">" | "<=" | ">=") additive )?
    additive    := term ( ("+" | "-") term )*
    term        := power ( ("*" | "/") power )*
    power       := unary ( "^" power )?
    unary       := ("-" | "+") unary | primary
    primary     := NUMBER | STRING | TRUE | FALSE | {{field}}
                 | NAME "(" [ expression ("," expression)* ] ")"
                 | "(" expression ")"

``+ - * /`` are left associative, ``^`` is right associative and a comparison
does not chain. Function arguments are evaluated left to right, except for
``IF`` and ``IFERROR`` which only evaluate the branch they return.

Arithmetic runs on ``Decimal``. A missing or blank reference reads as ``0`` in
arithmetic and ``""`` in text. ISO dates take part in day arithmetic: date plus
or minus a number shifts by days, date minus date yields days.
"""

from __future__ import annotations

import calendar
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Decimal, InvalidOperation
from functools import lru_cache
from typing import Any, Callable, Mapping

from fieldconfig.core.exceptions import FormulaError

__all__ = [
    "evaluate_formula",
    "parse_formula",
    "referenced_fields",
    "tokenize",
    "FUNCTION_NAMES",
]


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Token:
    kind: str
    value: str
    position: int


_TOKEN_RE = re.compile(
    r"""
      (?P<WS>\s+)
    | (?P<FIELD>\{\{\s*[A-Za-z_][A-Za-z0-9_]*\s*\}\})
    | (?P<NUMBER>\d+(?:\.\d*)?|\.\d+)
    | (?P<STRING>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
    | (?P<NAME>[A-Za-z_][A-Za-z0-9_]*)
    | (?P<OP><=|>=|<>|!=|==|[-+*/^=<>])
    | (?P<LPAREN>\()
    | (?P<RPAREN>\))
    | (?P<COMMA>,)
    """,
    re.VERBOSE,
)
_ESCAPE_RE = re.compile(r"\\(.)")


def tokenize(formula: str) -> list[Token]:
    tokens: list[Token] = []
    pos = 0
    while pos < len(formula):
        match = _TOKEN_RE.match(formula, pos)
        if match is None:
            raise FormulaError(f"Unexpected character {formula[pos]!r}", formula=formula, position=pos)
        kind = match.lastgroup or ""
        text = match.group(0)
        if kind == "FIELD":
            tokens.append(Token("FIELD", text[2:-2].strip(), pos))
        elif kind == "STRING":
            tokens.append(Token("STRING", _ESCAPE_RE.sub(r"\1", text[1:-1]), pos))
        elif kind != "WS":
            tokens.append(Token(kind, text, pos))
        pos = match.end()
    tokens.append(Token("EOF", "", len(formula)))
    return tokens


def referenced_fields(formula: str) -> set[str]:
    """Names of every ``{{field}}`` placeholder in ``formula``."""
    return {token.value for token in tokenize(formula) if token.kind == "FIELD"}


# ---------------------------------------------------------------------------
# Expression tree
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Number:
    value: Decimal


@dataclass(frozen=True, slots=True)
class Text:
    value: str


@dataclass(frozen=True, slots=True)
class Boolean:
    value: bool


@dataclass(frozen=True, slots=True)
class FieldRef:
    name: str


@dataclass(frozen=True, slots=True)
class Unary:
    op: str
    operand: "Node"


@dataclass(frozen=True, slots=True)
class Binary:
    op: str
    left: "Node"
    right: "Node"


@dataclass(frozen=True, slots=True)
class Call:
    name: str
    args: tuple["Node", ...]
    position: int


Node = Number | Text | Boolean | FieldRef | Unary | Binary | Call

_COMPARISON_OPS = {
    "=": "==",
    "==": "==",
    "!=": "!=",
    "<>": "!=",
    "<": "<",
    ">": ">",
    "<=": "<=",
    ">=": ">=",
}


class _Parser:
    def __init__(self, formula: str) -> None:
        self.formula = formula
        self.tokens = tokenize(formula)
        self.index = 0

    def _peek(self) -> Token:
        return self.tokens[self.index]

    def _advance(self) -> Token:
        token = self.tokens[self.index]
        if token.kind != "EOF":
            self.index += 1
        return token

    def _error(self, message: str, token: Token) -> FormulaError:
        return FormulaError(message, formula=self.formula, position=token.position)

    def _expect(self, kind: str, description: str) -> Token:
        token = self._peek()
        if token.kind != kind:
            found = "end of formula" if token.kind == "EOF" else repr(token.value)
            raise self._error(f"Expected {description}, found {found}", token)
        return self._advance()

    def parse(self) -> Node:
        if self._peek().kind == "EOF":
            raise self._error("Formula is empty", self._peek())
        node = self._comparison()
        token = self._peek()
        if token.kind != "EOF":
            raise self._error(f"Unexpected {token.value!r}", token)
        return node

    def _comparison(self) -> Node:
        left = self._additive()
        token = self._peek()
        if token.kind == "OP" and token.value in _COMPARISON_OPS:
            self._advance()
            right = self._additive()
            return Binary(_COMPARISON_OPS[token.value], left, right)
        return left

    def _additive(self) -> Node:
        node = self._term()
        while self._peek().kind == "OP" and self._peek().value in ("+", "-"):
            op = self._advance().value
            node = Binary(op, node, self._term())
        return node

    def _term(self) -> Node:
        node = self._power()
        while self._peek().kind == "OP" and self._peek().value in ("*", "/"):
            op = self._advance().value
            node = Binary(op, node, self._power())
        return node

    def _power(self) -> Node:
        base = self._unary()
        if self._peek().kind == "OP" and self._peek().value == "^":
            self._advance()
            return Binary("^", base, self._power())
        return base

    def _unary(self) -> Node:
        token = self._peek()
        if token.kind == "OP" and token.value in ("+", "-"):
            self._advance()
            return Unary(token.value, self._unary())
        return self._primary()

    def _primary(self) -> Node:
        token = self._peek()
        if token.kind == "NUMBER":
            self._advance()
            return Number(Decimal(token.value))
        if token.kind == "STRING":
            self._advance()
            return Text(token.value)
        if token.kind == "FIELD":
            self._advance()
            return FieldRef(token.value)
        if token.kind == "LPAREN":
            self._advance()
            node = self._comparison()
            self._expect("RPAREN", "')'")
            return node
        if token.kind == "NAME":
            self._advance()
            if self._peek().kind == "LPAREN":
                return self._call(token)
            upper = token.value.upper()
            if upper in ("TRUE", "FALSE"):
                return Boolean(upper == "TRUE")
            raise self._error(f"Unknown name {token.value!r}; reference fields as {{{{name}}}}", token)
        if token.kind == "EOF":
            raise self._error("Unexpected end of formula", token)
        raise self._error(f"Unexpected {token.value!r}", token)

    def _call(self, name_token: Token) -> Node:
        name = name_token.value.upper()
        entry = _FUNCTIONS.get(name)
        if entry is None:
            raise self._error(f"Unknown function {name_token.value}", name_token)
        self._expect("LPAREN", "'('")
        args: list[Node] = []
        if self._peek().kind != "RPAREN":
            args.append(self._comparison())
            while self._peek().kind == "COMMA":
                self._advance()
                args.append(self._comparison())
        self._expect("RPAREN", "')'")
        if len(args) < entry.min_args or (entry.max_args is not None and len(args) > entry.max_args):
            raise self._error(f"{name} expects {entry.arity_text()}, got {len(args)}", name_token)
        return Call(name, tuple(args), name_token.position)


@lru_cache(maxsize=512)
def parse_formula(formula: str) -> Node:
    try:
        return _Parser(formula).parse()
    except RecursionError as exc:
        raise FormulaError("Formula is nested too deeply", formula=formula) from exc


# ---------------------------------------------------------------------------
# Values
# ---------------------------------------------------------------------------


class _Blank:
    """A missing or empty reference."""

    __slots__ = ()

    def __repr__(self) -> str:
        return "BLANK"


BLANK = _Blank()
_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}")
_ZERO = Decimal(0)


def _from_record(name: str, value: Any) -> Any:
    if value is None or (isinstance(value, str) and not value.strip()):
        return BLANK
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, (float, Decimal)):
        number = Decimal(str(value)) if isinstance(value, float) else value
        if not number.is_finite():
            raise FormulaError(f"Field {name} is not a finite number")
        return number
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, (date, str)):
        return value
    raise FormulaError(f"Field {name} does not hold a single value")


def _parse_number_text(text: str) -> Decimal | None:
    cleaned = text.strip().replace(",", "").replace("$", "")
    if not cleaned:
        return None
    try:
        number = Decimal(cleaned)
    except InvalidOperation:
        return None
    return number if number.is_finite() else None


def _maybe_number(value: Any) -> Decimal | None:
    if value is BLANK:
        return _ZERO
    if isinstance(value, bool):
        return Decimal(int(value))
    if isinstance(value, Decimal):
        return value
    if isinstance(value, str) and not _ISO_DATE_RE.match(value):
        return _parse_number_text(value)
    return None


def _to_number(value: Any) -> Decimal:
    number = _maybe_number(value)
    if number is None:
        raise FormulaError(f"Expected a number, got {_to_text(value)!r}")
    return number


def _maybe_date(value: Any) -> date | None:
    if isinstance(value, date):
        return value
    if isinstance(value, str) and _ISO_DATE_RE.match(value):
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            return None
    return None


def _to_date(value: Any) -> date:
    parsed = _maybe_date(value)
    if parsed is None:
        raise FormulaError(f"Expected a date, got {_to_text(value)!r}")
    return parsed


def _plain_decimal(value: Decimal) -> str:
    if value == value.to_integral_value():
        return str(value.quantize(Decimal(1)))
    return format(value.normalize(), "f")


def _to_text(value: Any) -> str:
    if value is BLANK:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, Decimal):
        return _plain_decimal(value)
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def _truthy(value: Any) -> bool:
    if value is BLANK:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, Decimal):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "false"):
            return lowered == "true"
        number = _parse_number_text(value)
        if number is not None:
            return number != 0
        return bool(lowered)
    return True


def _shift_days(day: date, days: Decimal) -> date:
    try:
        return day + timedelta(days=int(days))
    except OverflowError as exc:
        raise FormulaError("Date is out of range") from exc


def _to_output(value: Any) -> Any:
    if value is BLANK:
        return None
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise FormulaError("Result is not a finite number")
        if value == value.to_integral_value():
            return int(value)
        return float(value)
    if isinstance(value, date):
        return value.isoformat()
    return value


# ---------------------------------------------------------------------------
# Functions
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class _FunctionSpec:
    min_args: int
    max_args: int | None
    impl: Callable[..., Any]
    lazy: bool = False

    def arity_text(self) -> str:
        if self.max_args is None:
            return f"at least {self.min_args} argument(s)"
        if self.min_args == self.max_args:
            return f"{self.min_args} argument(s)"
        return f"{self.min_args} to {self.max_args} arguments"


def _fn_if(evaluator: "_Evaluator", args: tuple[Node, ...]) -> Any:
    if _truthy(evaluator.evaluate(args[0])):
        return evaluator.evaluate(args[1])
    if len(args) > 2:
        return evaluator.evaluate(args[2])
    return False


def _fn_iferror(evaluator: "_Evaluator", args: tuple[Node, ...]) -> Any:
    try:
        value = evaluator.evaluate(args[0])
    except FormulaError:
        return evaluator.evaluate(args[1])
    if value is BLANK:
        return evaluator.evaluate(args[1])
    return value


def _fn_eomonth(start: Any, months: Any) -> date:
    day = _to_date(start)
    offset = int(_to_number(months))
    total = day.year * 12 + (day.month - 1) + offset
    year, month_index = divmod(total, 12)
    if not 1 <= year <= 9999:
        raise FormulaError("EOMONTH result is out of range")
    month = month_index + 1
    return date(year, month, calendar.monthrange(year, month)[1])


def _fn_round(value: Any, digits: Any = _ZERO) -> Decimal:
    number = _to_number(value)
    places = int(_to_number(digits))
    try:
        return number.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise FormulaError("ROUND result is out of range") from exc


def _fn_extreme(pick: Callable[..., Any]) -> Callable[..., Any]:
    def _impl(*values: Any) -> Any:
        dates = [_maybe_date(value) for value in values]
        if all(dates):
            return pick(dates)
        return pick(_to_number(value) for value in values)

    return _impl


def _fn_abs(value: Any) -> Decimal:
    return abs(_to_number(value))


def _fn_floor(value: Any) -> Decimal:
    return _to_number(value).to_integral_value(rounding=ROUND_FLOOR)


def _fn_ceil(value: Any) -> Decimal:
    return _to_number(value).to_integral_value(rounding=ROUND_CEILING)


def _fn_sqrt(value: Any) -> Decimal:
    number = _to_number(value)
    if number < 0:
        raise FormulaError("SQRT of a negative number")
    return number.sqrt()


_DATE_TOKEN_RE = re.compile(r"yyyy|yy|mmmm|mmm|mm|m|dd|d|[^ymd]+", re.IGNORECASE)
_NUMBER_CORE_RE = re.compile(r"[#0][#0,]*(?:\.[#0]+)?|\.[#0]+")


def _format_date(day: date, pattern: str) -> str:
    parts: list[str] = []
    for token in _DATE_TOKEN_RE.findall(pattern):
        lowered = token.lower()
        if lowered == "yyyy":
            parts.append(f"{day.year:04d}")
        elif lowered == "yy":
            parts.append(f"{day.year % 100:02d}")
        elif lowered == "mmmm":
            parts.append(calendar.month_name[day.month])
        elif lowered == "mmm":
            parts.append(calendar.month_abbr[day.month])
        elif lowered == "mm":
            parts.append(f"{day.month:02d}")
        elif lowered == "m":
            parts.append(str(day.month))
        elif lowered == "dd":
            parts.append(f"{day.day:02d}")
        elif lowered == "d":
            parts.append(str(day.day))
        else:
            parts.append(token)
    return "".join(parts)


def _format_number(number: Decimal, pattern: str) -> str:
    match = _NUMBER_CORE_RE.search(pattern)
    if match is None:
        raise FormulaError(f"Unsupported TEXT format {pattern!r}")
    core = match.group(0)
    prefix, suffix = pattern[: match.start()], pattern[match.end() :]
    if "%" in prefix or "%" in suffix:
        number *= 100
    integer_part, _, fraction_part = core.partition(".")
    decimals = len(fraction_part)
    rounded = number.quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_HALF_UP)
    grouping = "," if "," in integer_part else ""
    digits = format(abs(rounded), f"{grouping}.{decimals}f")
    min_int_digits = integer_part.count("0")
    if not grouping and min_int_digits > 1:
        whole, dot, frac = digits.partition(".")
        digits = whole.zfill(min_int_digits) + dot + frac
    sign = "-" if rounded < 0 else ""
    return f"{sign}{prefix}{digits}{suffix}"


def _looks_like_date_format(pattern: str) -> bool:
    lowered = pattern.lower()
    return ("y" in lowered or "d" in lowered) and _NUMBER_CORE_RE.search(pattern) is None


def _fn_text(value: Any, pattern: Any) -> str:
    fmt = _to_text(pattern)
    day = _maybe_date(value)
    if day is not None or _looks_like_date_format(fmt):
        return _format_date(_to_date(value), fmt)
    return _format_number(_to_number(value), fmt)


_FUNCTIONS: dict[str, _FunctionSpec] = {
    "IF": _FunctionSpec(2, 3, _fn_if, lazy=True),
    "IFERROR": _FunctionSpec(2, 2, _fn_iferror, lazy=True),
    "EOMONTH": _FunctionSpec(2, 2, _fn_eomonth),
    "TEXT": _FunctionSpec(2, 2, _fn_text),
    "MIN": _FunctionSpec(1, None, _fn_extreme(min)),
    "MAX": _FunctionSpec(1, None, _fn_extreme(max)),
    "ROUND": _FunctionSpec(1, 2, _fn_round),
    "ABS": _FunctionSpec(1, 1, _fn_abs),
    "FLOOR": _FunctionSpec(1, 1, _fn_floor),
    "CEIL": _FunctionSpec(1, 1, _fn_ceil),
    "SQRT": _FunctionSpec(1, 1, _fn_sqrt),
}
FUNCTION_NAMES = frozenset(_FUNCTIONS)


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


class _Evaluator:
    def __init__(self, formula: str, record: Mapping[str, Any]) -> None:
        self.formula = formula
        self.record = record

    def evaluate(self, node: Node) -> Any:
        if isinstance(node, Number):
            return node.value
        if isinstance(node, Text):
            return node.value
        if isinstance(node, Boolean):
            return node.value
        if isinstance(node, FieldRef):
            return _from_record(node.name, self.record.get(node.name))
        if isinstance(node, Unary):
            operand = _to_number(self.evaluate(node.operand))
            return -operand if node.op == "-" else operand
        if isinstance(node, Binary):
            return self._binary(node)
        if isinstance(node, Call):
            return self._call(node)
        raise FormulaError(f"Cannot evaluate {node!r}", formula=self.formula)

    def _call(self, node: Call) -> Any:
        entry = _FUNCTIONS[node.name]
        if entry.lazy:
            return entry.impl(self, node.args)
        values = [self.evaluate(arg) for arg in node.args]
        return entry.impl(*values)

    def _binary(self, node: Binary) -> Any:
        left = self.evaluate(node.left)
        right = self.evaluate(node.right)
        op = node.op
        if op in ("==", "!=", "<", ">", "<=", ">="):
            return _compare(op, left, right)
        try:
            if op in ("+", "-"):
                return _add_or_subtract(op, left, right)
            if op == "*":
                return _to_number(left) * _to_number(right)
            if op == "/":
                divisor = _to_number(right)
                if divisor == 0:
                    raise FormulaError("Division by zero")
                return _to_number(left) / divisor
            if op == "^":
                return _to_number(left) ** _to_number(right)
        except (InvalidOperation, ArithmeticError) as exc:
            raise FormulaError(f"Arithmetic error in {op!r}: {exc}") from exc
        raise FormulaError(f"Unknown operator {op!r}", formula=self.formula)


def _add_or_subtract(op: str, left: Any, right: Any) -> Any:
    left_date = _maybe_date(left)
    right_date = _maybe_date(right)
    if left_date is not None and right_date is not None:
        if op == "+":
            raise FormulaError("Cannot add two dates")
        return Decimal((left_date - right_date).days)
    if left_date is not None:
        days = _to_number(right)
        return _shift_days(left_date, days if op == "+" else -days)
    if right_date is not None:
        if op == "-":
            raise FormulaError("Cannot subtract a date from a number")
        return _shift_days(right_date, _to_number(left))
    if op == "+":
        return _to_number(left) + _to_number(right)
    return _to_number(left) - _to_number(right)


def _compare(op: str, left: Any, right: Any) -> bool:
    left_date = _maybe_date(left)
    right_date = _maybe_date(right)
    if left_date is not None and right_date is not None:
        a: Any = left_date
        b: Any = right_date
    else:
        left_number = _maybe_number(left)
        right_number = _maybe_number(right)
        if left_number is not None and right_number is not None:
            a, b = left_number, right_number
        else:
            a, b = _to_text(left), _to_text(right)
    if op == "==":
        return a == b
    if op == "!=":
        return a != b
    if op == "<":
        return a < b
    if op == ">":
        return a > b
    if op == "<=":
        return a <= b
    return a >= b


def evaluate_formula(formula: str, record: Mapping[str, Any]) -> Any:
    """Evaluate ``formula`` against ``record``.

    Returns an ``int``/``float`` for numbers, an ISO string for dates, ``str`` or
    ``bool`` as produced, or ``None`` when the result is blank. Raises
    :class:`FormulaError` on any parse or evaluation failure.
    """
    node = parse_formula(formula)
    try:
        value = _Evaluator(formula, record).evaluate(node)
    except FormulaError as exc:
        if exc.formula is None:
            exc.formula = formula
        raise
    except RecursionError as exc:
        raise FormulaError("Formula is nested too deeply", formula=formula) from exc
    except ArithmeticError as exc:
        raise FormulaError(f"Arithmetic error: {exc}", formula=formula) from exc
    try:
        return _to_output(value)
    except FormulaError as exc:
        exc.formula = formula
        raise

"""
Formula language for derived fields.

A formula is a small arithmetic/text expression over the values of a derived
field's parents, written as parent0, parent1, ... in the order the parents are
listed on the field. Formulas are parsed with Python's expression grammar,
checked against a whitelist of node types, helpers and names, and evaluated
by simpleeval with our own operator table, so nothing outside the parent
values and the helpers in HELPERS is reachable. Allowed:

    numbers, 'strings', parentN, helper(args), (...), + - * / % and unary -

Coercion: strings that look like numbers are numbers. '+' adds numbers,
shifts dates by milliseconds and otherwise concatenates text; the other
operators need numbers, except date - date which yields milliseconds.
"""

import ast
import math
import re
import time
from collections import namedtuple
from datetime import date, datetime, timedelta, time as dt_time
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from functools import lru_cache
from typing import Any, Optional, Sequence, Set

from simpleeval import InvalidExpression, SimpleEval

MAX_FORMULA_LENGTH = 1000
MAX_DEPTH = 100

_NUMBER_TEXT = re.compile(r"[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?")
_YEAR_TEXT = re.compile(r"\d{4}")
_PARENT_RE = re.compile(r"parent(\d+)")


class FormulaError(ValueError):
    """Raised when a formula cannot be parsed or evaluated."""

    def __init__(self, message: str, position: Optional[int] = None):
        self.message = message
        self.position = position
        if position is not None:
            message = f"{message} (at position {position})"
        super().__init__(message)


# --- Value coercion ---

def _is_date(value: Any) -> bool:
    return isinstance(value, (date, datetime))


def _as_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone().replace(tzinfo=None)
        return value
    if isinstance(value, date):
        return datetime.combine(value, dt_time())
    raise FormulaError(f"expected a date, got {_text(value)!r}")


def _is_numeric(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    return isinstance(value, str) and _NUMBER_TEXT.fullmatch(value.strip()) is not None


def _to_number(value: Any):
    if isinstance(value, bool) or not _is_numeric(value):
        raise FormulaError(f"expected a number, got {_text(value)!r}")
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            return float(text)
    return value


def _tidy(number):
    if isinstance(number, float):
        if not math.isfinite(number):
            raise FormulaError("result is not a finite number")
        if number.is_integer() and abs(number) < 2 ** 53:
            return int(number)
    return number


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    if _is_date(value):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return ", ".join(_text(item) for item in value)
    return str(value)


def _parse_date(value: Any) -> datetime:
    """Read a date from a date, ISO text, a bare year ("2000") or epoch milliseconds."""
    if _is_date(value):
        return _as_datetime(value)
    if isinstance(value, str):
        text = value.strip()
        if _YEAR_TEXT.fullmatch(text):
            return datetime(int(text), 1, 1)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return _as_datetime(datetime.fromisoformat(text))
        except ValueError:
            if not _is_numeric(text):
                raise FormulaError(f"invalid date {value!r}")
    try:
        return datetime.fromtimestamp(_to_number(value) / 1000)
    except (OverflowError, OSError, ValueError):
        raise FormulaError(f"invalid date {_text(value)!r}")


# --- Operators ---

def _add(left, right):
    if _is_date(left) or _is_date(right):
        if _is_date(left) and _is_date(right):
            raise FormulaError("cannot add two dates")
        moment, offset = (left, right) if _is_date(left) else (right, left)
        return _as_datetime(moment) + timedelta(milliseconds=_to_number(offset))
    if _is_numeric(left) and _is_numeric(right):
        return _tidy(_to_number(left) + _to_number(right))
    return _text(left) + _text(right)


def _subtract(left, right):
    if _is_date(left):
        if _is_date(right):
            delta = _as_datetime(left) - _as_datetime(right)
            return _tidy(delta.total_seconds() * 1000)
        return _as_datetime(left) - timedelta(milliseconds=_to_number(right))
    return _tidy(_to_number(left) - _to_number(right))


def _multiply(left, right):
    return _tidy(_to_number(left) * _to_number(right))


def _divide(left, right):
    divisor = _to_number(right)
    if divisor == 0:
        raise FormulaError("division by zero")
    return _tidy(_to_number(left) / divisor)


def _modulo(left, right):
    divisor = _to_number(right)
    if divisor == 0:
        raise FormulaError("division by zero")
    return _tidy(math.fmod(_to_number(left), divisor))


def _negate(value):
    return _tidy(-_to_number(value))


# --- Helpers ---

def _round(value, digits=0):
    # half-up on the decimal text, so round(2.345, 2) is 2.35
    exponent = Decimal(1).scaleb(-int(_to_number(digits)))
    try:
        rounded = Decimal(str(_to_number(value))).quantize(exponent, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise FormulaError(f"cannot round {_text(value)!r}")
    return _tidy(float(rounded))


def _length(value):
    if isinstance(value, (list, tuple)):
        return len(value)
    return len(_text(value))


Helper = namedtuple("Helper", "func min_args max_args")

HELPERS = {
    "now": Helper(lambda: datetime.now(), 0, 0),
    "today": Helper(lambda: date.today(), 0, 0),
    "date": Helper(_parse_date, 1, 1),
    "floor": Helper(lambda x: math.floor(_to_number(x)), 1, 1),
    "ceil": Helper(lambda x: math.ceil(_to_number(x)), 1, 1),
    "round": Helper(_round, 1, 2),
    "abs": Helper(lambda x: abs(_to_number(x)), 1, 1),
    "min": Helper(lambda *xs: min(_to_number(x) for x in xs), 1, 20),
    "max": Helper(lambda *xs: max(_to_number(x) for x in xs), 1, 20),
    "number": Helper(_to_number, 1, 1),
    "text": Helper(_text, 1, 1),
    "upper": Helper(lambda x: _text(x).upper(), 1, 1),
    "lower": Helper(lambda x: _text(x).lower(), 1, 1),
    "trim": Helper(lambda x: _text(x).strip(), 1, 1),
    "length": Helper(_length, 1, 1),
    "concat": Helper(lambda *xs: "".join(_text(x) for x in xs), 1, 20),
    "year": Helper(lambda d: _parse_date(d).year, 1, 1),
    "month": Helper(lambda d: _parse_date(d).month, 1, 1),
    "day": Helper(lambda d: _parse_date(d).day, 1, 1),
}
HELPERS.update({
    "Math.floor": HELPERS["floor"],
    "Math.ceil": HELPERS["ceil"],
    "Math.round": HELPERS["round"],
    "Math.abs": HELPERS["abs"],
    "Math.min": HELPERS["min"],
    "Math.max": HELPERS["max"],
    "Date.now": Helper(lambda: int(time.time() * 1000), 0, 0),
})


# --- Parsing ---

_ALLOWED_NODES = (
    ast.Expression, ast.BinOp, ast.UnaryOp, ast.Call, ast.Name, ast.Constant, ast.Load,
    ast.Add, ast.Sub, ast.Mult, ast.Div, ast.Mod, ast.USub, ast.UAdd,
)


class _HelperAliases(ast.NodeTransformer):
    """Turn Math.floor(...) style calls into calls of the helper named "Math.floor"."""

    def visit_Attribute(self, node):
        if isinstance(node.value, ast.Name):
            name = f"{node.value.id}.{node.attr}"
            if name in HELPERS:
                return ast.copy_location(ast.Name(id=name, ctx=ast.Load()), node)
        raise FormulaError(f"attribute access is not allowed ({node.attr!r})", node.col_offset)


class _Checker(ast.NodeVisitor):
    def __init__(self):
        self.depth = 0
        self.parent_refs: Set[int] = set()

    def generic_visit(self, node):
        if not isinstance(node, _ALLOWED_NODES):
            raise FormulaError(f"{type(node).__name__} is not allowed", getattr(node, "col_offset", None))
        self.depth += 1
        if self.depth > MAX_DEPTH:
            raise FormulaError("formula is nested too deeply", getattr(node, "col_offset", None))
        super().generic_visit(node)
        self.depth -= 1

    def visit_Constant(self, node):
        if type(node.value) not in (int, float, str):
            raise FormulaError(f"unsupported literal {node.value!r}", node.col_offset)

    def visit_Name(self, node):
        match = _PARENT_RE.fullmatch(node.id)
        if not match:
            raise FormulaError(f"unknown name {node.id!r}", node.col_offset)
        self.parent_refs.add(int(match.group(1)))

    def visit_Call(self, node):
        name = node.func.id if isinstance(node.func, ast.Name) else None
        helper = HELPERS.get(name)
        if helper is None:
            raise FormulaError(f"unknown helper {name or ''!r}", node.col_offset)
        if node.keywords:
            raise FormulaError(f"{name}() takes no keyword arguments", node.col_offset)
        if not helper.min_args <= len(node.args) <= helper.max_args:
            raise FormulaError(
                f"{name}() takes {helper.min_args}-{helper.max_args} arguments, got {len(node.args)}",
                node.col_offset,
            )
        self.depth += 1
        if self.depth > MAX_DEPTH:
            raise FormulaError("formula is nested too deeply", node.col_offset)
        for arg in node.args:
            self.visit(arg)
        self.depth -= 1


_FUNCTIONS = {name: helper.func for name, helper in HELPERS.items()}
_EVAL_OPERATORS = {
    ast.Add: _add,
    ast.Sub: _subtract,
    ast.Mult: _multiply,
    ast.Div: _divide,
    ast.Mod: _modulo,
    ast.USub: _negate,
    ast.UAdd: lambda x: x,
}


class Expression:
    """A parsed and checked formula, ready to be evaluated against parent values."""

    def __init__(self, source: str, body: ast.AST, parent_refs: Set[int]):
        self.source = source
        self.body = body
        self.parent_refs = frozenset(parent_refs)

    def evaluate(self, parents: Sequence[Any]):
        names = {f"parent{i}": value for i, value in enumerate(parents)}
        evaluator = SimpleEval(operators=_EVAL_OPERATORS, functions=_FUNCTIONS, names=names)
        try:
            return evaluator.eval(self.source, previously_parsed=self.body)
        except FormulaError:
            raise
        except InvalidExpression as e:
            raise FormulaError(getattr(e, "message", None) or str(e))
        except (TypeError, ValueError, ArithmeticError) as e:
            raise FormulaError(str(e))

    def __repr__(self):
        return f"Expression({self.source!r})"


@lru_cache(maxsize=256)
def parse_formula(text: str) -> Expression:
    if text is None or not text.strip():
        raise FormulaError("formula is empty")
    if len(text) > MAX_FORMULA_LENGTH:
        raise FormulaError(f"formula is longer than {MAX_FORMULA_LENGTH} characters")
    try:
        tree = ast.parse(text.strip(), mode="eval")
    except SyntaxError as e:
        raise FormulaError(f"invalid formula: {e.msg}", e.offset)
    except (RecursionError, MemoryError):
        raise FormulaError("formula is nested too deeply")
    except ValueError as e:
        raise FormulaError(f"invalid formula: {e}")
    tree = _HelperAliases().visit(tree)
    checker = _Checker()
    checker.visit(tree)
    return Expression(text, tree.body, checker.parent_refs)


def evaluate_formula(text: str, parents: Sequence[Any]):
    return parse_formula(text).evaluate(parents)

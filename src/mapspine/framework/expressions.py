"""
Formula expressions for field mapping.

A formula is a Python-syntax arithmetic expression evaluated against one
record. Fields are referenced with ``{dotted.path}`` placeholders or, for
top-level keys that are valid identifiers, by bare name::

    "{order.qty} * {order.unit_price}"
    "round(price * (1 + tax_rate), 2)"
    "'adult' if age >= 18 else 'minor'"

Only literals, arithmetic, comparison, boolean and conditional
expressions plus a small set of functions are accepted. Anything else
(attribute access, subscripts, lambdas, comprehensions, unknown
functions) raises ``InvalidExpressionError`` at compile time, so a bad
formula is rejected when the stage is built rather than per record. A bare
name that is neither a constant nor a key of the record raises the same
error on evaluation.
"""

from __future__ import annotations

import ast
import operator
import re
from collections.abc import Callable, Mapping
from typing import Any

from mapspine.core.errors import InvalidExpressionError, TransformationError
from mapspine.core.records import MISSING, get_path

_PLACEHOLDER = re.compile(r"\{([^{}]+)\}")

_BIN_OPS: dict[type[ast.operator], Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY_OPS: dict[type[ast.unaryop], Callable[[Any], Any]] = {
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
    ast.Not: operator.not_,
}

_COMPARE_OPS: dict[type[ast.cmpop], Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

FUNCTIONS: dict[str, Callable[..., Any]] = {
    "abs": abs,
    "round": round,
    "min": min,
    "max": max,
    "len": len,
    "str": str,
    "int": int,
    "float": float,
}

CONSTANTS: dict[str, Any] = {"True": True, "False": False, "None": None}


class _Checker(ast.NodeVisitor):
    """Rejects every node outside the supported subset."""

    _ALLOWED = (
        ast.Expression, ast.BinOp, ast.UnaryOp, ast.BoolOp, ast.Compare, ast.IfExp,
        ast.Constant, ast.Name, ast.Load, ast.Call, ast.Tuple, ast.List,
        ast.operator, ast.unaryop, ast.cmpop, ast.boolop,
    )

    def __init__(self, source: str) -> None:
        self.source = source

    def generic_visit(self, node: ast.AST) -> None:
        if not isinstance(node, self._ALLOWED):
            raise InvalidExpressionError(
                f"Unsupported syntax in formula {self.source!r}: {type(node).__name__}"
            )
        if isinstance(node, ast.BinOp) and type(node.op) not in _BIN_OPS:
            raise InvalidExpressionError(f"Unsupported operator in formula {self.source!r}")
        super().generic_visit(node)

    def visit_Call(self, node: ast.Call) -> None:
        if not isinstance(node.func, ast.Name) or node.func.id not in FUNCTIONS:
            raise InvalidExpressionError(f"Unsupported function in formula {self.source!r}")
        if node.keywords:
            raise InvalidExpressionError(f"Keyword arguments are not supported in formula {self.source!r}")
        for arg in node.args:
            self.visit(arg)


class Formula:
    """A compiled formula. Call ``evaluate(record)`` for each record."""

    def __init__(self, expression: str) -> None:
        self.expression = expression
        self._paths: dict[str, str] = {}

        def substitute(match: re.Match[str]) -> str:
            name = f"__f{len(self._paths)}"
            self._paths[name] = match.group(1).strip()
            return name

        rewritten = _PLACEHOLDER.sub(substitute, expression)
        try:
            self._tree = ast.parse(rewritten.strip(), mode="eval")
        except SyntaxError as e:
            raise InvalidExpressionError(f"Invalid formula {expression!r}: {e.msg}", cause=e) from e
        _Checker(expression).visit(self._tree)

    def evaluate(self, record: Any) -> Any:
        try:
            return self._eval(self._tree.body, record)
        except (InvalidExpressionError, TransformationError):
            raise
        except (ArithmeticError, TypeError, ValueError) as e:
            raise TransformationError(
                f"Formula {self.expression!r} failed: {e}", details={"expression": self.expression}, cause=e
            ) from e

    def _lookup(self, name: str, record: Any) -> Any:
        if name in self._paths:
            value = get_path(record, self._paths[name])
        elif name in CONSTANTS:
            return CONSTANTS[name]
        elif isinstance(record, Mapping) and name in record:
            value = record[name]
        else:
            raise InvalidExpressionError(f"Unknown name {name!r} in formula {self.expression!r}")
        return None if value is MISSING else value

    def _eval(self, node: ast.AST, record: Any) -> Any:
        match node:
            case ast.Constant(value=value):
                return value
            case ast.Name(id=name):
                return self._lookup(name, record)
            case ast.BinOp(left=left, op=op, right=right):
                return _BIN_OPS[type(op)](self._eval(left, record), self._eval(right, record))
            case ast.UnaryOp(op=op, operand=operand):
                return _UNARY_OPS[type(op)](self._eval(operand, record))
            case ast.BoolOp(op=ast.And(), values=values):
                result: Any = True
                for value in values:
                    result = self._eval(value, record)
                    if not result:
                        return result
                return result
            case ast.BoolOp(op=ast.Or(), values=values):
                result = False
                for value in values:
                    result = self._eval(value, record)
                    if result:
                        return result
                return result
            case ast.Compare(left=left, ops=ops, comparators=comparators):
                current = self._eval(left, record)
                for op, comparator in zip(ops, comparators, strict=True):
                    right = self._eval(comparator, record)
                    if not _COMPARE_OPS[type(op)](current, right):
                        return False
                    current = right
                return True
            case ast.IfExp(test=test, body=body, orelse=orelse):
                return self._eval(body if self._eval(test, record) else orelse, record)
            case ast.Call(func=ast.Name(id=func), args=args):
                return FUNCTIONS[func](*(self._eval(arg, record) for arg in args))
            case ast.Tuple(elts=elts) | ast.List(elts=elts):
                return [self._eval(elt, record) for elt in elts]
        raise InvalidExpressionError(f"Unsupported syntax in formula {self.expression!r}")

"""Named value transforms used by field-mapping rules.

Every transform has the signature ``(value, options) -> value`` where
``options`` is the rule's option dict (possibly empty). Transforms are pure
and never mutate their input.

Example:
    >>> library = TransformLibrary()
    >>> library.apply("pad", "7", {"length": 3, "char": "0"})
    '007'
    >>> library.register("reverse", lambda value, options: value[::-1])
"""

from __future__ import annotations

import math
import re
from collections.abc import Callable
from datetime import UTC, date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from mapspine.core.errors import FunctionNotFoundError, TransformationError
from mapspine.core.logging import get_logger

logger = get_logger(__name__)

TransformFunc = Callable[[Any, dict[str, Any]], Any]

_TRUE_STRINGS = frozenset({"true", "1", "yes", "y", "on"})
_FALSE_STRINGS = frozenset({"false", "0", "no", "n", "off", ""})


# =============================================================================
# String
# =============================================================================


def uppercase(value: Any, options: dict[str, Any]) -> Any:
    return None if value is None else str(value).upper()


def lowercase(value: Any, options: dict[str, Any]) -> Any:
    return None if value is None else str(value).lower()


def trim(value: Any, options: dict[str, Any]) -> Any:
    return None if value is None else str(value).strip()


def capitalize(value: Any, options: dict[str, Any]) -> Any:
    if value is None:
        return None
    text = str(value)
    return text[:1].upper() + text[1:].lower()


def title(value: Any, options: dict[str, Any]) -> Any:
    if value is None:
        return None
    return " ".join(word[:1].upper() + word[1:].lower() for word in str(value).split(" "))


def replace(value: Any, options: dict[str, Any]) -> Any:
    """Regex replace. Options: ``pattern``, ``replacement`` (default ``""``)."""
    if value is None:
        return None
    pattern = options.get("pattern")
    if pattern is None:
        raise TransformationError("replace requires a 'pattern' option")
    return re.sub(pattern, options.get("replacement", ""), str(value))


def substring(value: Any, options: dict[str, Any]) -> Any:
    """Options: ``start`` (default 0), ``end`` (default end of string)."""
    if value is None:
        return None
    return str(value)[options.get("start", 0):options.get("end")]


def pad(value: Any, options: dict[str, Any]) -> Any:
    """Options: ``length``, ``char`` (default space), ``side`` ``left|right``."""
    text = "" if value is None else str(value)
    length = int(options.get("length", len(text)))
    char = str(options.get("char", " "))[:1] or " "
    if options.get("side", "left") == "right":
        return text.ljust(length, char)
    return text.rjust(length, char)


# =============================================================================
# Number
# =============================================================================


def to_number(value: Any, options: dict[str, Any]) -> Any:
    """Parse to int when integral, else float. Unparseable input gives ``None``."""
    if value is None or isinstance(value, bool):
        return None if value is None else int(value)
    if isinstance(value, int | float):
        return value
    text = str(value).strip().replace(",", "")
    if not text:
        return None
    try:
        number = float(text)
    except ValueError:
        return None
    if math.isfinite(number) and number.is_integer() and re.fullmatch(r"[+-]?\d+", text):
        return int(number)
    return number


def round_number(value: Any, options: dict[str, Any]) -> Any:
    """Half-up rounding. Options: ``decimals`` (default 0)."""
    number = to_number(value, options)
    if number is None:
        return None
    decimals = int(options.get("decimals", 0))
    quantum = Decimal(1).scaleb(-decimals)
    rounded = Decimal(str(number)).quantize(quantum, rounding=ROUND_HALF_UP)
    return int(rounded) if decimals <= 0 else float(rounded)


def absolute(value: Any, options: dict[str, Any]) -> Any:
    number = to_number(value, options)
    return None if number is None else abs(number)


def multiply(value: Any, options: dict[str, Any]) -> Any:
    """Options: ``factor`` (default 1)."""
    number = to_number(value, options)
    return None if number is None else number * options.get("factor", 1)


def add(value: Any, options: dict[str, Any]) -> Any:
    """Options: ``amount`` (default 0)."""
    number = to_number(value, options)
    return None if number is None else number + options.get("amount", 0)


# =============================================================================
# Date
# =============================================================================


def _as_datetime(value: Any, fmt: str | None = None) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=UTC)
    if isinstance(value, int | float):
        return datetime.fromtimestamp(value, tz=UTC)
    text = str(value).strip()
    if fmt:
        return datetime.strptime(text, fmt)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def parse_date(value: Any, options: dict[str, Any]) -> Any:
    """Options: ``format`` (strptime pattern; ISO 8601 when absent)."""
    try:
        return _as_datetime(value, options.get("format"))
    except (TypeError, ValueError) as e:
        raise TransformationError(f"Cannot parse date: {value!r}", cause=e) from e


def to_iso(value: Any, options: dict[str, Any]) -> Any:
    parsed = parse_date(value, options)
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC).isoformat().replace("+00:00", "Z")


def format_date(value: Any, options: dict[str, Any]) -> Any:
    """Options: ``format`` (output strftime pattern, default ``%Y-%m-%d``),
    ``input_format`` (input strptime pattern)."""
    parsed = parse_date(value, {"format": options.get("input_format")})
    if parsed is None:
        return None
    return parsed.strftime(options.get("format", "%Y-%m-%d"))


# =============================================================================
# Array
# =============================================================================


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list | tuple):
        return list(value)
    return [value]


def join(value: Any, options: dict[str, Any]) -> Any:
    """Options: ``separator`` (default ``,``)."""
    separator = options.get("separator", ",")
    return separator.join("" if v is None else str(v) for v in _as_list(value))


def first(value: Any, options: dict[str, Any]) -> Any:
    items = _as_list(value)
    return items[0] if items else None


def last(value: Any, options: dict[str, Any]) -> Any:
    items = _as_list(value)
    return items[-1] if items else None


def unique(value: Any, options: dict[str, Any]) -> Any:
    """Order-preserving de-duplication."""
    seen: list[Any] = []
    for item in _as_list(value):
        if item not in seen:
            seen.append(item)
    return seen


def length(value: Any, options: dict[str, Any]) -> Any:
    if value is None:
        return 0
    if isinstance(value, str | list | tuple | dict):
        return len(value)
    return 1


# =============================================================================
# Type
# =============================================================================


def to_string(value: Any, options: dict[str, Any]) -> Any:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def to_boolean(value: Any, options: dict[str, Any]) -> Any:
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    return bool(value)


def to_integer(value: Any, options: dict[str, Any]) -> Any:
    number = to_number(value, options)
    return None if number is None else int(number)


# =============================================================================
# Conditional
# =============================================================================


def default(value: Any, options: dict[str, Any]) -> Any:
    """Replace ``None`` (and ``""`` with ``empty=True``). Options: ``value``."""
    if value is None or (options.get("empty", False) and value == ""):
        return options.get("value")
    return value


def map_value(value: Any, options: dict[str, Any]) -> Any:
    """Options: ``mapping`` dict, ``default`` for unmapped values (else passthrough)."""
    mapping = options.get("mapping") or {}
    key = value if value in mapping else str(value)
    if key in mapping:
        return mapping[key]
    return options.get("default", value)


BUILTIN_TRANSFORMS: dict[str, TransformFunc] = {
    # string
    "uppercase": uppercase,
    "lowercase": lowercase,
    "trim": trim,
    "capitalize": capitalize,
    "title": title,
    "replace": replace,
    "substring": substring,
    "pad": pad,
    # number
    "round": round_number,
    "to_number": to_number,
    "abs": absolute,
    "multiply": multiply,
    "add": add,
    # date
    "to_iso": to_iso,
    "format_date": format_date,
    "parse_date": parse_date,
    # array
    "join": join,
    "first": first,
    "last": last,
    "unique": unique,
    "length": length,
    # type
    "to_string": to_string,
    "to_boolean": to_boolean,
    "to_integer": to_integer,
    # conditional
    "default": default,
    "map_value": map_value,
}


class TransformLibrary:
    """Registry of named transforms; starts with the built-ins."""

    def __init__(self, transforms: dict[str, TransformFunc] | None = None) -> None:
        self._transforms: dict[str, TransformFunc] = dict(BUILTIN_TRANSFORMS)
        self._transforms.update(transforms or {})

    def register(self, name: str, func: TransformFunc) -> None:
        if name in self._transforms:
            logger.debug("transform_overridden", name=name)
        self._transforms[name] = func

    def get(self, name: str) -> TransformFunc:
        try:
            return self._transforms[name]
        except KeyError:
            raise FunctionNotFoundError(name) from None

    def __contains__(self, name: object) -> bool:
        return name in self._transforms

    def names(self) -> list[str]:
        return sorted(self._transforms)

    def apply(self, name: str, value: Any, options: dict[str, Any] | None = None) -> Any:
        return self.get(name)(value, options or {})


default_library = TransformLibrary()

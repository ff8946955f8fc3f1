"""Helpers shared by the built-in stages."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from mapspine.core.errors import StageError

M = TypeVar("M", bound=BaseModel)


class RuleModel(BaseModel):
    """Base for declarative stage rules."""

    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True, frozen=True)


def parse_rules(model: type[M], rules: Iterable[M | dict[str, Any]] | None, stage: str) -> list[M]:
    """Coerce rule dicts into ``model`` instances; report bad config as ``StageError``."""
    parsed: list[M] = []
    for index, rule in enumerate(rules or []):
        if isinstance(rule, model):
            parsed.append(rule)
            continue
        try:
            parsed.append(model.model_validate(rule))
        except PydanticValidationError as e:
            raise StageError(
                f"Invalid rule #{index} for stage {stage}: {e.errors(include_url=False)[0]['msg']}",
                stage=stage,
                details={"rule": index, "errors": e.errors(include_url=False)},
                cause=e,
            ) from e
    return parsed


def map_items(data: Any, func: Callable[[Any, int], Any]) -> Any:
    """Apply ``func(item, index)`` to a record or to each record of a list."""
    if isinstance(data, list):
        return [func(item, index) for index, item in enumerate(data)]
    return func(data, 0)

"""
Template Resolver: expands {{name}} / {{name:default}} placeholders.

Every placeholder is resolved independently against one Context snapshot.
Substituted text is never rescanned, so a value that itself contains
"{{...}}" is inserted literally.

Value stringification:
  TextValue        -> verbatim
  NumberValue      -> decimal text ("42", "1.5")
  StructuredValue  -> compact JSON, with the quotes stripped when the JSON is
                      a single string literal
"""

import json
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterator, Mapping, Union

PLACEHOLDER_RE = re.compile(r"\{\{([^}:]+)(?::([^}]*))?\}\}")


@dataclass(frozen=True)
class TextValue:
    value: str


@dataclass(frozen=True)
class NumberValue:
    value: int | float


@dataclass(frozen=True)
class StructuredValue:
    value: Any


ContextValue = Union[TextValue, NumberValue, StructuredValue]


def to_context_value(raw: Any) -> ContextValue:
    """Tag a plain Python value. bool is structured, not numeric."""
    if isinstance(raw, (TextValue, NumberValue, StructuredValue)):
        return raw
    if isinstance(raw, str):
        return TextValue(raw)
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return NumberValue(raw)
    return StructuredValue(raw)


def strip_string_literal(serialized: str) -> str:
    """Drop the surrounding quotes when `serialized` is exactly one JSON string literal."""
    if len(serialized) < 2 or not (serialized.startswith('"') and serialized.endswith('"')):
        return serialized
    try:
        decoded = json.loads(serialized)
    except ValueError:
        return serialized
    if isinstance(decoded, str):
        return serialized[1:-1]
    return serialized


def stringify(value: ContextValue) -> str:
    if isinstance(value, TextValue):
        return value.value
    if isinstance(value, NumberValue):
        return str(value.value)
    serialized = json.dumps(value.value, separators=(",", ":"), ensure_ascii=False, default=str)
    return strip_string_literal(serialized)


@dataclass(frozen=True)
class Context(Mapping[str, ContextValue]):
    """Immutable name -> ContextValue mapping handed from one step to the next."""

    _values: Mapping[str, ContextValue] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "_values", MappingProxyType(dict(self._values)))

    @classmethod
    def from_raw(cls, values: Mapping[str, Any] | None = None) -> "Context":
        return cls({k: to_context_value(v) for k, v in (values or {}).items()})

    def __getitem__(self, key: str) -> ContextValue:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def to_plain(self) -> dict[str, Any]:
        return {k: v.value for k, v in self._values.items()}


EMPTY_CONTEXT = Context()


def resolve(template: str | None, context: Mapping[str, Any] | None = None) -> str | None:
    """
    Expand every placeholder in `template`.

    `context` may be a Context or any plain mapping; plain values are tagged
    with to_context_value. None templates pass through as None.
    """
    if template is None:
        return None
    ctx = context if isinstance(context, Context) else Context.from_raw(context)

    def _replace(match: re.Match) -> str:
        name, default = match.group(1), match.group(2)
        value = ctx.get(name)
        if value is not None:
            return stringify(value)
        if default is not None:
            return default
        return ""

    return PLACEHOLDER_RE.sub(_replace, template)


def resolve_map(templates: Mapping[str, Any], context: Mapping[str, Any] | None = None) -> dict[str, str]:
    """Resolve each value of a name -> template map. Non-string templates are stringified first."""
    ctx = context if isinstance(context, Context) else Context.from_raw(context)
    resolved = {}
    for key, template in templates.items():
        text = template if isinstance(template, str) else stringify(to_context_value(template))
        resolved[key] = resolve(text, ctx)
    return resolved

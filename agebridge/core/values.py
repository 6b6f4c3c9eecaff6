"""
Validation of values crossing into the graph engine.

Cypher parameters travel as one JSON document that AGE turns into agtype, so
only JSON-shaped data is accepted: string, number, bool, null, list, map
(string keys). Anything else is rejected here, before a statement is issued.
"""

import json
import math
from enum import Enum
from typing import Any, Dict, Mapping, Optional


class AgValueKind(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOL = "bool"
    NULL = "null"
    LIST = "list"
    MAP = "map"


class UnsupportedValueError(ValueError):
    """Raised when a value has no agtype representation."""

    def __init__(self, path: str, value: Any, reason: str):
        self.path = path
        self.value = value
        super().__init__(f"Unsupported parameter value at '{path}' ({type(value).__name__}): {reason}")


def value_kind(value: Any, path: str = "$") -> AgValueKind:
    """
    Return the tag of ``value``, validating nested lists and maps.

    Raises:
        UnsupportedValueError: for bytes, sets, NaN/inf, non-string map keys,
            arbitrary objects
    """
    # bool before number: bool is an int subclass
    if value is None:
        return AgValueKind.NULL
    if isinstance(value, bool):
        return AgValueKind.BOOL
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            raise UnsupportedValueError(path, value, "NaN and infinity are not representable")
        return AgValueKind.NUMBER
    if isinstance(value, str):
        return AgValueKind.STRING
    if isinstance(value, Mapping):
        for key, item in value.items():
            if not isinstance(key, str):
                raise UnsupportedValueError(f"{path}.{key!r}", key, "map keys must be strings")
            value_kind(item, f"{path}.{key}")
        return AgValueKind.MAP
    if isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            value_kind(item, f"{path}[{index}]")
        return AgValueKind.LIST
    raise UnsupportedValueError(path, value, "expected string, number, bool, null, list or map")


def validate_parameters(params: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Validate a Cypher parameter map and return it as a plain dict."""
    if params is None:
        return {}
    if not isinstance(params, Mapping):
        raise UnsupportedValueError("$", params, "parameters must be a map")
    value_kind(params)
    return dict(params)


def serialize_parameters(params: Optional[Mapping[str, Any]]) -> str:
    """JSON text for the third argument of ag_catalog.cypher()."""
    return json.dumps(validate_parameters(params), ensure_ascii=False, allow_nan=False)


def summarize_parameters(params: Any, max_length: int = 120) -> str:
    """Short, log-safe description of statement parameters."""
    if params is None:
        return "none"
    if isinstance(params, Mapping):
        text = f"map[{', '.join(sorted(str(k) for k in params.keys()))}]"
    elif isinstance(params, (list, tuple)):
        text = f"{len(params)} positional"
    else:
        text = type(params).__name__
    return text if len(text) <= max_length else text[:max_length] + "..."


__all__ = [
    "AgValueKind",
    "UnsupportedValueError",
    "value_kind",
    "validate_parameters",
    "serialize_parameters",
    "summarize_parameters",
]

from __future__ import annotations

import json
from typing import Any, Dict, List, Tuple

from jsonschema import Draft202012Validator

STRING = "string"
STRING_LIST = "string[]"
OBJECT = "object"
OBJECT_LIST = "object[]"

FIELD_KINDS = (STRING, STRING_LIST, OBJECT, OBJECT_LIST)

_JSON_SCHEMA_TYPES: Dict[str, Dict[str, Any]] = {
    STRING: {"type": "string"},
    STRING_LIST: {"type": "array", "items": {"type": "string"}},
    OBJECT: {"type": "object"},
    OBJECT_LIST: {"type": "array", "items": {"type": "object"}},
}


def default_for(kind: str) -> Any:
    if kind == STRING:
        return ""
    if kind in (STRING_LIST, OBJECT_LIST):
        return []
    if kind == OBJECT:
        return {}
    raise ValueError(f"unknown field kind: {kind}")


def build_json_schema(expected_fields: Dict[str, str]) -> Dict[str, Any]:
    return {
        "$schema": "https://json-schema.org/draft/2020-12/schema",
        "type": "object",
        "properties": {name: _JSON_SCHEMA_TYPES[kind] for name, kind in expected_fields.items()},
        "required": list(expected_fields),
    }


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _coerce_string(name: str, value: Any, warnings: List[str]) -> str:
    if isinstance(value, str):
        return value
    warnings.append(f"Field '{name}' expected string, got {type(value).__name__}; converted to string")
    return _stringify(value)


def _coerce_string_list(name: str, value: Any, warnings: List[str]) -> List[str]:
    if isinstance(value, list):
        items: List[str] = []
        for index, item in enumerate(value):
            if item is None:
                warnings.append(f"Field '{name}[{index}]' was null; dropped")
                continue
            if not isinstance(item, str):
                warnings.append(
                    f"Field '{name}[{index}]' expected string, got {type(item).__name__}; converted to string"
                )
                item = _stringify(item)
            items.append(item)
        return items
    if value is None:
        warnings.append(f"Field '{name}' was null; using empty list")
        return []
    if isinstance(value, (str, int, float, bool)):
        warnings.append(f"Field '{name}' expected string[], got {type(value).__name__}; wrapped in list")
        if isinstance(value, str) and not value.strip():
            return []
        return [_stringify(value)]
    warnings.append(f"Field '{name}' expected string[], got {type(value).__name__}; using default")
    return []


def _coerce_object(name: str, value: Any, warnings: List[str]) -> Dict[str, Any]:
    if isinstance(value, dict):
        return value
    if value is None:
        warnings.append(f"Field '{name}' was null; using empty object")
    else:
        warnings.append(f"Field '{name}' expected object, got {type(value).__name__}; using default")
    return {}


def _coerce_object_list(name: str, value: Any, warnings: List[str]) -> List[Dict[str, Any]]:
    if isinstance(value, list):
        items: List[Dict[str, Any]] = []
        for index, item in enumerate(value):
            if isinstance(item, dict):
                items.append(item)
            else:
                warnings.append(f"Field '{name}[{index}]' expected object, got {type(item).__name__}; dropped")
        return items
    if isinstance(value, dict):
        warnings.append(f"Field '{name}' expected object[], got object; wrapped in list")
        return [value]
    if value is None:
        warnings.append(f"Field '{name}' was null; using empty list")
    else:
        warnings.append(f"Field '{name}' expected object[], got {type(value).__name__}; using default")
    return []


_COERCERS = {
    STRING: _coerce_string,
    STRING_LIST: _coerce_string_list,
    OBJECT: _coerce_object,
    OBJECT_LIST: _coerce_object_list,
}


def normalize_to_schema(data: Any, expected_fields: Dict[str, str]) -> Tuple[Dict[str, Any], List[str]]:
    """Fill missing fields and coerce mismatched ones.

    Never raises on document content. Every change is reported in the
    returned warnings, in field order.
    """
    warnings: List[str] = []
    if isinstance(data, dict):
        normalized = dict(data)
    else:
        warnings.append(f"Expected JSON object at top level, got {type(data).__name__}; using defaults")
        normalized = {}
    for name, kind in expected_fields.items():
        if kind not in _COERCERS:
            raise ValueError(f"unknown field kind for {name}: {kind}")
        if name not in normalized:
            warnings.append(f"Missing field '{name}'; using default")
            normalized[name] = default_for(kind)
            continue
        normalized[name] = _COERCERS[kind](name, normalized[name], warnings)
    validator = Draft202012Validator(build_json_schema(expected_fields))
    for error in sorted(validator.iter_errors(normalized), key=lambda e: [str(p) for p in e.path]):
        location = ".".join(str(part) for part in error.path) or "<root>"
        warnings.append(f"Schema violation at {location}: {error.message}")
    return normalized, warnings

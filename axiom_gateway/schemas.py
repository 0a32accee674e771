"""JSON Schema validation helpers for gateway inputs and records.

Used by the ``axiom schema-validate`` CLI subcommand and by loaders that want
a readable list of problems instead of the first model error.

Design notes:
- Uses jsonschema Draft 2020-12.
- Schemas are embedded (no files to ship or locate at runtime).
"""

from __future__ import annotations

from typing import Any, Dict, List

import jsonschema

_HEX64 = "^[0-9a-f]{64}$"

EVENT_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "event",
    "type": "object",
    "required": ["seq", "type", "timestamp", "data", "prev_hash", "hash"],
    "properties": {
        "seq": {"type": "integer", "minimum": 1},
        "type": {"type": "string", "minLength": 1},
        "timestamp": {"type": "string", "minLength": 1},
        "data": {},
        "prev_hash": {"oneOf": [{"type": "null"}, {"type": "string", "pattern": _HEX64}]},
        "hash": {"type": "string", "pattern": _HEX64},
    },
}

OPERATION_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "operation",
    "type": "object",
    "required": ["type"],
    "properties": {
        "type": {"type": "string", "minLength": 1},
        "complexity": {"type": "number", "minimum": 0},
        "target": {"type": "string"},
        "params": {"type": "object"},
    },
}

STATE_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "state",
    "type": "object",
    "required": ["coupling", "energy"],
    "properties": {
        "coupling": {
            "type": "object",
            "required": ["active"],
            "properties": {
                "active": {"type": "boolean"},
                "partner": {"type": ["string", "null"]},
                "since": {"type": ["string", "null"]},
            },
        },
        "energy": {
            "type": "object",
            "required": ["current"],
            "properties": {
                "current": {"type": "number"},
                "min": {"type": "number"},
                "threshold": {"type": "number"},
            },
        },
        "lyapunov": {
            "type": "object",
            "properties": {
                "V": {"type": "number", "minimum": 0},
                "V_previous": {"type": ["number", "null"]},
            },
        },
        "integrity": {
            "type": "object",
            "properties": {
                "invariant_violations": {"type": "integer", "minimum": 0},
                "status": {"type": "string"},
            },
        },
        "memory": {
            "type": "object",
            "properties": {
                "event_count": {"type": "integer", "minimum": 0},
                "last_event_hash": {"type": ["string", "null"]},
            },
        },
    },
}

SIGNAL_PAYLOAD_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "signal_payload",
    "type": "object",
    "required": ["type", "ts", "seq", "org_hash", "state", "coupling"],
    "additionalProperties": False,
    "properties": {
        "type": {"enum": ["STATUS_CHANGED", "ENERGY_WARNING", "COUPLING_REQUESTED", "HEARTBEAT"]},
        "ts": {"type": "string"},
        "seq": {"type": "integer", "minimum": 1},
        "org_hash": {"type": "string", "pattern": _HEX64},
        "state": {
            "type": "object",
            "required": ["energy", "V", "integrity"],
            "additionalProperties": False,
            "properties": {
                "energy": {"type": "number"},
                "V": {"type": "number"},
                "integrity": {"type": "string", "pattern": "^[0-9]+/[0-9]+$"},
            },
        },
        "coupling": {
            "type": "object",
            "required": ["pending", "urgent"],
            "additionalProperties": False,
            "properties": {
                "pending": {"type": "integer", "minimum": 0},
                "urgent": {"type": "integer", "minimum": 0},
            },
        },
    },
}

SCHEMAS: Dict[str, Dict[str, Any]] = {
    "event": EVENT_SCHEMA,
    "operation": OPERATION_SCHEMA,
    "state": STATE_SCHEMA,
    "signal_payload": SIGNAL_PAYLOAD_SCHEMA,
}


def list_schemas() -> List[str]:
    return sorted(SCHEMAS)


def _get_validator(kind: str) -> "jsonschema.Draft202012Validator":
    try:
        schema = SCHEMAS[kind]
    except KeyError:
        raise ValueError(f"unknown schema {kind!r} (expected one of {', '.join(list_schemas())})") from None
    return jsonschema.Draft202012Validator(schema)


def validate_instance(kind: str, instance: Any) -> List[str]:
    """Validate ``instance`` against schema ``kind``; returns error strings (empty if valid)."""
    validator = _get_validator(kind)
    errors = sorted(validator.iter_errors(instance), key=lambda e: list(e.absolute_path))
    out: List[str] = []
    for err in errors:
        path = "$" + "".join(f"[{p!r}]" if isinstance(p, str) else f"[{p}]" for p in err.absolute_path)
        out.append(f"{path}: {err.message}")
    return out

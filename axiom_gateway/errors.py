"""Stable error taxonomy for the axiom gateway.

Policy outcomes (allow/block/unknown, signal denials) are returned as values and
never raised. This module covers the remaining genuine faults: malformed input
that cannot be hashed, parsed or stored.

Design goals:
- Stable `code` string suitable for programmatic handling.
- Optional `retryable` flag and `http_status` for transport layers.
- Structured `details` for debugging without parsing messages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


# Canonicalization / hashing
AXG_E_SERIALIZATION_CIRCULAR = "AXG_E_SERIALIZATION_CIRCULAR"
AXG_E_SERIALIZATION_TYPE = "AXG_E_SERIALIZATION_TYPE"
AXG_E_SERIALIZATION_NONFINITE = "AXG_E_SERIALIZATION_NONFINITE"
AXG_E_SERIALIZATION_KEY_TYPE = "AXG_E_SERIALIZATION_KEY_TYPE"
AXG_E_SERIALIZATION_DEPTH = "AXG_E_SERIALIZATION_DEPTH"
AXG_E_SERIALIZATION_ENCODING = "AXG_E_SERIALIZATION_ENCODING"

# Input models
AXG_E_BAD_OPERATION = "AXG_E_BAD_OPERATION"
AXG_E_BAD_STATE = "AXG_E_BAD_STATE"
AXG_E_BAD_EVENT = "AXG_E_BAD_EVENT"
AXG_E_STATE_MISSING = "AXG_E_STATE_MISSING"

# Event storage
AXG_E_STORE_CORRUPT = "AXG_E_STORE_CORRUPT"

# Generic
AXG_E_BAD_REQUEST = "AXG_E_BAD_REQUEST"
AXG_E_INTERNAL = "AXG_E_INTERNAL"


@dataclass
class GatewayError(Exception):
    """Base gateway exception with stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
            "http_status": int(self.http_status),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class SerializationError(GatewayError):
    """Raised when a value cannot be canonicalized for hashing."""


def gateway_error(
    code: str,
    message: str,
    *,
    retryable: bool = False,
    http_status: int = 400,
    **details: Any,
) -> GatewayError:
    return GatewayError(code=code, message=message, retryable=retryable, http_status=http_status, details=details)


def serialization_error(code: str, message: str, **details: Any) -> SerializationError:
    return SerializationError(code=code, message=message, http_status=400, details=details)

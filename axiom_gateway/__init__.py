"""Axiom Gateway package.

A governance layer that sits between an autonomous agent and the outside world:

- Axiom validator: allow / block / unknown for every proposed operation,
  with a conservative guard that denies anything not explicitly allowed
- Hash chain: tamper-evident, append-only event history
- Presence guard: rate-limited, change-driven outward signalling

Convenience imports
------------------
The package avoids heavy import-time side effects. These are available as
top-level imports and are loaded lazily:

    from axiom_gateway import GovernanceGateway, create_app
    from axiom_gateway import validate, guard, verify_chain, guard_signal
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments.

    The project version is a simple `version = "..."` field in
    `pyproject.toml`, so a regex parse is enough.
    """

    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
        m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
        return m.group(1) if m else None
    except Exception:
        return None


__version__ = _read_version_from_pyproject() or "0.3.0"

__all__ = [
    "__version__",
    "GovernanceGateway",
    "create_app",
    "GovernanceConfig",
    "PresencePolicy",
    "validate",
    "guard",
    "check_repeated_blocks",
    "EventChain",
    "hash_event",
    "verify_chain",
    "guard_signal",
    "silence_channel",
    "GatewayError",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "GovernanceGateway": ("axiom_gateway.gateway", "GovernanceGateway"),
    "create_app": ("axiom_gateway.server", "create_app"),
    "GovernanceConfig": ("axiom_gateway.config", "GovernanceConfig"),
    "PresencePolicy": ("axiom_gateway.config", "PresencePolicy"),
    "validate": ("axiom_gateway.validator", "validate"),
    "guard": ("axiom_gateway.validator", "guard"),
    "check_repeated_blocks": ("axiom_gateway.validator", "check_repeated_blocks"),
    "EventChain": ("axiom_gateway.chain", "EventChain"),
    "hash_event": ("axiom_gateway.chain", "hash_event"),
    "verify_chain": ("axiom_gateway.chain", "verify_chain"),
    "guard_signal": ("axiom_gateway.presence", "guard_signal"),
    "silence_channel": ("axiom_gateway.presence", "silence_channel"),
    "GatewayError": ("axiom_gateway.errors", "GatewayError"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        value = getattr(import_module(module_name), attr)
        globals()[name] = value
        return value
    raise AttributeError(f"module 'axiom_gateway' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))

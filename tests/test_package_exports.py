import importlib

import pytest


def _read_pyproject_version() -> str:
    import re
    from pathlib import Path

    txt = (Path(__file__).resolve().parents[1] / "pyproject.toml").read_text(encoding="utf-8")
    m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
    assert m, "Could not locate [project].version in pyproject.toml"
    return m.group(1)


def test_convenience_imports_work():
    import axiom_gateway

    assert hasattr(axiom_gateway, "GovernanceGateway")
    assert hasattr(axiom_gateway, "create_app")

    from axiom_gateway import GovernanceGateway, create_app  # noqa: F401
    from axiom_gateway import guard, guard_signal, validate, verify_chain  # noqa: F401

    assert "EventChain" in dir(axiom_gateway)
    importlib.reload(axiom_gateway)


def test_unknown_attribute_raises():
    import axiom_gateway

    with pytest.raises(AttributeError):
        axiom_gateway.NotAThing  # noqa: B018


def test_version_export_matches_pyproject():
    import axiom_gateway

    assert axiom_gateway.__version__ == _read_pyproject_version()

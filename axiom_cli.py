#!/usr/bin/env python3
"""
Axiom Gateway - Command Line Interface

Usage:
    axiom verify <events.jsonl>                       Verify hash chain integrity
    axiom validate <operation.json> --state <state>   Run the conservative guard on one operation
    axiom invariants <state.json> <events.jsonl>      Check global invariants and Lyapunov V
    axiom schema-validate <kind> <file>               Validate a JSON/JSONL file against a schema
    axiom append <events.jsonl> <type> [--data JSON]  Append one event to a chain file

Exit codes:
    0  ok / allow
    1  verification failed / block
    2  unknown (denied by the conservative guard)
    3  input error
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, List

from axiom_gateway.config import GovernanceConfig
from axiom_gateway.errors import GatewayError
from axiom_gateway.event_store import JsonlEventStore
from axiom_gateway.invariants import verify_invariants
from axiom_gateway.models import State
from axiom_gateway.schemas import list_schemas, validate_instance
from axiom_gateway.validator import STATUS_ALLOW, STATUS_BLOCK, guard

logger = logging.getLogger("axiom_gateway")

EXIT_OK = 0
EXIT_FAIL = 1
EXIT_UNKNOWN = 2
EXIT_INPUT_ERROR = 3


def setup_logging(verbose: bool = False):
    """Configure logging for CLI usage."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    logger.setLevel(level)


def _input_error(message: str) -> None:
    print(f"ERROR: {message}", file=sys.stderr)
    sys.exit(EXIT_INPUT_ERROR)


def load_json_file(path: str) -> Any:
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        _input_error(f"File not found: {path}")
    except json.JSONDecodeError as e:
        _input_error(f"Invalid JSON in {path}: {e}")


def _load_store(path: str, *, must_exist: bool = True) -> JsonlEventStore:
    store = JsonlEventStore(path)
    if must_exist and not store.path.exists():
        _input_error(f"File not found: {path}")
    return store


def _emit_json(obj: Any) -> None:
    print(json.dumps(obj, indent=2, sort_keys=True))


def cmd_verify(args):
    """Verify hash chain integrity of a JSONL event file."""
    store = _load_store(args.events)
    report = store.verify()

    if args.json:
        _emit_json(report)
    else:
        print(f"Verifying hash chain in {args.events}...")
        print(f"Total events: {report['count']}")
        if report["ok"]:
            print("✓ Chain integrity verified")
        else:
            where = f" at index {report['index']}" if report.get("index") is not None else ""
            print(f"✗ Chain integrity check FAILED: {report['reason']}{where}")
            if report.get("error"):
                print(f"  - {report['error']}")

    sys.exit(EXIT_OK if report["ok"] else EXIT_FAIL)


def cmd_validate(args):
    """Run the conservative guard for one operation against one state."""
    operation = load_json_file(args.operation)
    state = load_json_file(args.state)

    try:
        decision = guard(operation, state, GovernanceConfig.from_env())
    except GatewayError as e:
        _input_error(str(e))

    result = decision.result
    if args.json:
        _emit_json(decision.as_dict())
    else:
        print(f"\n{'='*60}")
        print(f"DECISION: {'ALLOW' if decision.allowed else 'DENY'} ({result.status})")
        print(f"{'='*60}")
        print(f"Operation: {operation.get('type') if isinstance(operation, dict) else operation}")
        if result.axiom:
            print(f"Axiom:     {result.axiom}")
        if result.reason:
            print(f"Reason:    {result.reason}")
        print(f"{'='*60}\n")

    if result.status == STATUS_ALLOW:
        sys.exit(EXIT_OK)
    elif result.status == STATUS_BLOCK:
        sys.exit(EXIT_FAIL)
    else:
        sys.exit(EXIT_UNKNOWN)


def cmd_invariants(args):
    """Check global invariants for a state and its event history."""
    raw_state = load_json_file(args.state)
    store = _load_store(args.events)
    try:
        state = State.from_dict(raw_state)
        events = store.load_records()
    except GatewayError as e:
        _input_error(str(e))

    verification = verify_invariants(state, events)
    if args.json:
        _emit_json(verification.as_dict())
    else:
        print(f"\n{'='*60}")
        print("INVARIANTS")
        print(f"{'='*60}")
        for inv in verification.invariants:
            mark = "✓" if inv.satisfied else "✗"
            print(f"  {mark} {inv.id} {inv.name}: {inv.details}")
        print(f"\nLyapunov V: {verification.lyapunov_V:.4f}")
        print(f"{'='*60}\n")

    sys.exit(EXIT_OK if verification.all_satisfied else EXIT_FAIL)


def _read_instances(path: Path) -> List[Any]:
    if path.suffix == ".jsonl":
        instances = []
        try:
            lines = path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            _input_error(f"File not found: {path}")
        for lineno, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                instances.append(json.loads(line))
            except json.JSONDecodeError as e:
                _input_error(f"Invalid JSON in {path} line {lineno}: {e}")
        return instances
    return [load_json_file(str(path))]


def cmd_schema_validate(args):
    """Validate a JSON (or JSONL, one instance per line) file against a schema."""
    if args.list_schemas:
        for name in list_schemas():
            print(name)
        sys.exit(EXIT_OK)

    if not args.kind or not args.file:
        _input_error("schema-validate requires <kind> and <file> (or --list-schemas)")
    if args.kind not in list_schemas():
        _input_error(f"unknown schema {args.kind!r} (expected one of {', '.join(list_schemas())})")

    instances = _read_instances(Path(args.file))
    failures = 0
    for i, instance in enumerate(instances):
        errors = validate_instance(args.kind, instance)
        label = f"{args.file}" if len(instances) == 1 else f"{args.file}[{i}]"
        if errors:
            failures += 1
            print(f"✗ {label}")
            for err in errors:
                print(f"  - {err}")
        else:
            print(f"✓ {label}")

    sys.exit(EXIT_OK if failures == 0 else EXIT_FAIL)


def cmd_append(args):
    """Append one event to a JSONL chain, refusing to extend a broken chain."""
    data: Any = {}
    if args.data is not None:
        try:
            data = json.loads(args.data)
        except json.JSONDecodeError as e:
            _input_error(f"--data is not valid JSON: {e}")

    store = _load_store(args.events, must_exist=False)
    try:
        chain = store.load_chain()
    except GatewayError as e:
        _input_error(str(e))

    ok, reason, index = chain.verify_detailed()
    if not ok:
        print(f"ERROR: refusing to append to a broken chain: {reason} at index {index}", file=sys.stderr)
        sys.exit(EXIT_FAIL)

    try:
        event = chain.append(args.type, data, before_commit=store.append)
    except GatewayError as e:
        _input_error(str(e))
    logger.debug("Appended seq=%d type=%s to %s", event.seq, event.type, args.events)
    _emit_json(event.as_dict())
    sys.exit(EXIT_OK)


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Axiom Gateway CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # verify command
    verify_parser = subparsers.add_parser("verify", help="Verify hash chain integrity")
    verify_parser.add_argument("events", help="Path to events JSONL file")
    verify_parser.add_argument("--json", action="store_true", help="Machine-readable output")
    verify_parser.set_defaults(func=cmd_verify)

    # validate command
    validate_parser = subparsers.add_parser("validate", help="Validate an operation against a state")
    validate_parser.add_argument("operation", help="Path to operation JSON file")
    validate_parser.add_argument("--state", required=True, help="Path to state JSON file")
    validate_parser.add_argument("--json", action="store_true", help="Machine-readable output")
    validate_parser.set_defaults(func=cmd_validate)

    # invariants command
    inv_parser = subparsers.add_parser("invariants", help="Check global invariants")
    inv_parser.add_argument("state", help="Path to state JSON file")
    inv_parser.add_argument("events", help="Path to events JSONL file")
    inv_parser.add_argument("--json", action="store_true", help="Machine-readable output")
    inv_parser.set_defaults(func=cmd_invariants)

    # schema-validate command
    sv_parser = subparsers.add_parser("schema-validate", help="Validate a file against a JSON Schema")
    sv_parser.add_argument("kind", nargs="?", help="Schema name (see --list-schemas)")
    sv_parser.add_argument("file", nargs="?", help="Path to a .json file or a .jsonl file")
    sv_parser.add_argument("--list-schemas", action="store_true", help="List supported schema names")
    sv_parser.set_defaults(func=cmd_schema_validate)

    # append command
    append_parser = subparsers.add_parser("append", help="Append an event to a chain file")
    append_parser.add_argument("events", help="Path to events JSONL file (created if missing)")
    append_parser.add_argument("type", help="Event type")
    append_parser.add_argument("--data", default=None, help="Event data as a JSON string")
    append_parser.set_defaults(func=cmd_append)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(EXIT_FAIL)

    setup_logging(args.verbose)
    args.func(args)


if __name__ == "__main__":
    main()

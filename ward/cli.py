"""
Secure Ward - Command Line Interface

Drive a workflow run from the terminal. State lives only for the
lifetime of one command, so each command is a complete run.

Usage:
    # Full admission → invoice → reveal chain with offline advisory values
    python -m ward.cli demo

    # Same, asking the configured LLM for bills and severities
    python -m ward.cli demo --live

    # Replay a scripted list of actions
    python -m ward.cli run --script steps.json

    # Facility metadata and the per-role operation table
    python -m ward.cli manifest
    python -m ward.cli operations --role SPECIALIST

Script format (JSON or YAML list):
    [{"role": "PATIENT", "action": "admit"},
     {"role": "PATIENT", "action": "forward", "target": "GENERAL_DOCTOR"}]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

import yaml

from clinic.advisory import LLMAdvisor, load_role_advisories
from clinic.config import get_config_value, load_config
from clinic.llm import create_llm
from clinic.logging import configure_logging
from ward.routing import RoutingConfigError
from ward.transitions import TransitionEngine, TransitionResult
from ward.types import AgentRole


DEMO_SCRIPT = [
    {"role": "PATIENT", "action": "admit"},
    {"role": "PATIENT", "action": "lock"},
    {"role": "PATIENT", "action": "forward", "target": "GENERAL_DOCTOR"},
    {"role": "GENERAL_DOCTOR", "action": "forward", "target": "MEDICAL_LAB"},
    {"role": "MEDICAL_LAB", "action": "compute"},
    {"role": "MEDICAL_LAB", "action": "forward", "target": "SPECIALIST"},
    {"role": "SPECIALIST", "action": "compute"},
    {"role": "SPECIALIST", "action": "forward", "target": "HUMAN_DOCTOR"},
    {"role": "HUMAN_DOCTOR", "action": "compute"},
    {"role": "BILLING", "action": "compute"},
    {"role": "PATIENT", "action": "unlock"},
]


def build_engine(config: dict, live: bool = False) -> TransitionEngine:
    """Engine with the offline advisor, or an LLM advisor when live."""
    advisor = None
    if live:
        advisor = LLMAdvisor(
            llm=create_llm(config=config),
            roles=load_role_advisories(config),
            timeout_seconds=get_config_value("advisory.timeout_seconds", config, None),
        )
    return TransitionEngine.from_config(config, advisor=advisor)


async def run_script(engine: TransitionEngine, steps: list[dict]) -> list[TransitionResult]:
    results = []
    for step in steps:
        result = await engine.submit(
            step.get("role", ""),
            step.get("action", ""),
            payload=step.get("payload"),
            target=step.get("target"),
        )
        results.append(result)
    return results


def _print_results(steps: list[dict], results: list[TransitionResult]):
    for step, result in zip(steps, results):
        target = f" → {step['target']}" if step.get("target") else ""
        label = f"{step.get('role', '?')}/{step.get('action', '?')}{target}"
        if result.applied:
            actions = ", ".join(e.action for e in result.all_entries())
            print(f"  ✓ {label:44s} {actions}", file=sys.stderr)
        else:
            print(f"  · {label:44s} ignored ({result.reason})", file=sys.stderr)


def _print_summary(engine: TransitionEngine):
    print(f"\n{'═' * 70}", file=sys.stderr)
    print(f"  RUN SUMMARY ({engine.trace_id})", file=sys.stderr)
    print(f"{'─' * 70}", file=sys.stderr)
    for role, slot in engine.slots().items():
        held = slot.record.state.value if slot.record else "-"
        print(f"  {role.display_name:16s} {slot.status:28s} {held}", file=sys.stderr)

    patient = engine.slot(AgentRole.PATIENT).record
    if patient is not None and patient.total_charge is not None:
        print(f"\n  CHARGES:", file=sys.stderr)
        for agent, amount in patient.charges.items():
            print(f"    {agent:20s} {amount:>10.2f}", file=sys.stderr)
        print(f"    {'TOTAL':20s} {patient.total_charge:>10.2f}", file=sys.stderr)

    entries = engine.entries()
    ok, message = engine.verify_audit()
    print(f"\n  AUDIT LOG ({len(entries)} entries, {'ok' if ok else 'BROKEN'}: {message})",
          file=sys.stderr)
    for e in entries:
        print(f"    #{e.sequence:<3d} {e.source:16s} {e.action:16s} {e.integrity_tag[:12]}",
              file=sys.stderr)
    print(f"{'═' * 70}\n", file=sys.stderr)


def _finish(args, engine: TransitionEngine):
    _print_summary(engine)
    snapshot = engine.snapshot()
    if args.output:
        with open(args.output, "w") as f:
            json.dump(snapshot, f, indent=2, default=str)
        print(f"  Output saved: {args.output}", file=sys.stderr)
    elif args.verbose:
        print(json.dumps(snapshot, indent=2, default=str))


def cmd_demo(args, config: dict):
    """Run the full chain."""
    engine = build_engine(config, live=args.live)
    results = asyncio.run(run_script(engine, DEMO_SCRIPT))
    _print_results(DEMO_SCRIPT, results)
    _finish(args, engine)
    if not engine.is_complete:
        sys.exit(2)


def cmd_run(args, config: dict):
    """Replay a scripted list of actions."""
    p = Path(args.script)
    if not p.exists():
        print(f"Error: script not found: {args.script}", file=sys.stderr)
        sys.exit(1)
    with open(p) as f:
        steps = json.load(f) if p.suffix == ".json" else yaml.safe_load(f)
    if not isinstance(steps, list):
        print("Error: script must be a list of steps", file=sys.stderr)
        sys.exit(1)
    for i, step in enumerate(steps):
        if not isinstance(step, dict):
            print(f"Error: step {i} must be a mapping with role and action, got {step!r}",
                  file=sys.stderr)
            sys.exit(1)

    engine = build_engine(config, live=args.live)
    results = asyncio.run(run_script(engine, steps))
    _print_results(steps, results)
    _finish(args, engine)


def cmd_manifest(args, config: dict):
    """Print facility metadata."""
    print(json.dumps(config.get("facility", {}), indent=2))


def cmd_operations(args, config: dict):
    """Print the operation table."""
    engine = TransitionEngine.from_config(config)
    roles = [AgentRole.parse(args.role)] if args.role else list(AgentRole)
    if roles == [None]:
        print(f"Error: unknown role {args.role}", file=sys.stderr)
        sys.exit(1)
    print(json.dumps({r.value: engine.available_operations(r) for r in roles}, indent=2))


def main():
    parser = argparse.ArgumentParser(
        description="Secure Ward - confidential clinical workflow",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", default="", help="Base config YAML (default: packaged defaults)")
    parser.add_argument("--env", default="", help="Config overlay profile (overrides WARD_ENV)")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ERROR")

    subs = parser.add_subparsers(dest="command", help="Command")

    demo_p = subs.add_parser("demo", help="Run the full chain")
    demo_p.add_argument("--live", action="store_true", help="Use the configured LLM advisor")
    demo_p.add_argument("--output", "-o", help="Save snapshot JSON")
    demo_p.add_argument("--verbose", "-v", action="store_true")

    run_p = subs.add_parser("run", help="Replay a scripted list of actions")
    run_p.add_argument("--script", "-s", required=True, help="JSON or YAML list of steps")
    run_p.add_argument("--live", action="store_true", help="Use the configured LLM advisor")
    run_p.add_argument("--output", "-o", help="Save snapshot JSON")
    run_p.add_argument("--verbose", "-v", action="store_true")

    subs.add_parser("manifest", help="Show facility metadata")

    ops_p = subs.add_parser("operations", help="Show the operation table")
    ops_p.add_argument("--role", "-r", help="Only this role")

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        config = load_config(base_path=args.config, env=args.env)
    except (OSError, yaml.YAMLError) as e:
        print(f"Error: cannot load config: {e}", file=sys.stderr)
        sys.exit(1)
    configure_logging(level=args.log_level or get_config_value("logging.level", config, "INFO"))

    commands = {
        "demo": cmd_demo,
        "run": cmd_run,
        "manifest": cmd_manifest,
        "operations": cmd_operations,
    }
    try:
        commands[args.command](args, config)
    except RoutingConfigError as e:
        print(f"Error: invalid operation table: {e}", file=sys.stderr)
        sys.exit(1)
    except EnvironmentError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()

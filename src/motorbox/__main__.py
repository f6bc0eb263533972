"""Motorbox CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from motorbox.config import MotorboxConfig, load_config


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


# ── netpolicy ───────────────────────────────────────────────────────────────


async def _netpolicy_build(config: MotorboxConfig) -> int:
    from motorbox.sandbox import ContainerRuntime, NetpolicyImage

    runtime = ContainerRuntime(
        config.sandbox.container_runtime, config.sandbox.command_timeout_seconds
    )
    image = NetpolicyImage(config.sandbox, runtime)
    if await image.ensure():
        print(f"Network policy image ready: {image.name}")
        return 0
    print(f"Error: failed to build network policy image {image.name}", file=sys.stderr)
    return 1


# ── deps ────────────────────────────────────────────────────────────────────


async def _deps_install(config: MotorboxConfig, args) -> int:
    from motorbox.sandbox import (
        ContainerRuntime,
        DependencyInstaller,
        DependencyInstallError,
        DependencyValidationError,
    )

    policy_path: Path = args.policy
    if not policy_path.exists():
        print(f"Error: policy file not found: {policy_path}", file=sys.stderr)
        return 1
    try:
        raw = json.loads(policy_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        print(f"Error: cannot read policy file {policy_path}: {exc}", file=sys.stderr)
        return 1
    declared = raw.get("dependencies") if isinstance(raw, dict) else None
    if not declared:
        print("No dependencies declared.")
        return 0

    runtime = ContainerRuntime(
        config.sandbox.container_runtime, config.sandbox.command_timeout_seconds
    )
    installer = DependencyInstaller(config.sandbox, runtime, config.deps_cache_dir)
    label = args.label or policy_path.parent.name
    try:
        prepared = await installer.install(declared, label)
    except DependencyValidationError as exc:
        for error in exc.errors:
            print(f"Error: {error}", file=sys.stderr)
        return 1
    except DependencyInstallError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    _print_json(prepared.to_handoff() if prepared else {})
    return 0


# ── skills ──────────────────────────────────────────────────────────────────


async def _skills(config: MotorboxConfig, args) -> int:
    from motorbox.skills import SkillTool, SkillToolParams, ToolContext, TriggerType

    if args.skills_command == "extract":
        return await _skills_extract(config, args)

    tool = SkillTool(config.skills_dir)
    params = SkillToolParams(action=args.skills_command, name=getattr(args, "name", None))
    # A CLI invocation is a human at the keyboard.
    result = await tool.execute(params, ToolContext(trigger_type=TriggerType.USER_MESSAGE))
    _print_json(result.model_dump(mode="json", exclude_none=True))
    return 0 if result.success else 1


async def _skills_extract(config: MotorboxConfig, args) -> int:
    from motorbox.skills import SkillExtractor

    extractor = SkillExtractor(config.skills)
    result = await extractor.extract(args.workspace, config.skills_dir, args.run_id)
    _print_json({"created": result.created, "updated": result.updated})
    return 0


# ── runs ────────────────────────────────────────────────────────────────────


async def _runs(config: MotorboxConfig, args) -> int:
    from motorbox.models import RunStatus
    from motorbox.runs import RunStateManager

    config.db_path.parent.mkdir(parents=True, exist_ok=True)
    store = RunStateManager(str(config.db_path), config.runs.max_cas_retries)
    await store.initialize()
    try:
        if args.runs_command == "active":
            run = await store.get_active_run()
            _print_json(run.model_dump(mode="json") if run else None)
        else:
            status = RunStatus(args.status) if args.status else None
            runs = await store.list_runs(status)
            _print_json([r.model_dump(mode="json") for r in runs])
    finally:
        await store.close()
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="motorbox",
        description="Motorbox: sandboxed motor runs, skill extraction and dependency cache",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to motorbox.yaml (default: ./motorbox.yaml if present)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    subparsers = parser.add_subparsers(dest="command")

    # motorbox netpolicy build
    netpolicy_parser = subparsers.add_parser("netpolicy", help="Network policy helper image")
    netpolicy_sub = netpolicy_parser.add_subparsers(dest="netpolicy_command", required=True)
    netpolicy_sub.add_parser("build", help="Build the helper image if it does not exist")

    # motorbox deps install
    deps_parser = subparsers.add_parser("deps", help="Skill dependency cache")
    deps_sub = deps_parser.add_subparsers(dest="deps_command", required=True)
    install_parser = deps_sub.add_parser("install", help="Install a skill's declared dependencies")
    install_parser.add_argument("policy", type=Path, help="Path to the skill's policy.json")
    install_parser.add_argument("--label", help="Label for log messages (default: skill directory)")

    # motorbox skills ...
    skills_parser = subparsers.add_parser("skills", help="Inspect and manage stored skills")
    skills_sub = skills_parser.add_subparsers(dest="skills_command", required=True)
    skills_sub.add_parser("list", help="List stored skills")
    for action in ("read", "review", "approve", "reject", "delete"):
        action_parser = skills_sub.add_parser(action, help=f"{action.capitalize()} a skill")
        action_parser.add_argument("name", help="Skill name")
    extract_parser = skills_sub.add_parser("extract", help="Extract skills from a run workspace")
    extract_parser.add_argument("workspace", type=Path, help="Run workspace directory")
    extract_parser.add_argument("--run-id", required=True, help="Originating run id")

    # motorbox runs ...
    runs_parser = subparsers.add_parser("runs", help="Inspect motor runs")
    runs_sub = runs_parser.add_subparsers(dest="runs_command", required=True)
    list_parser = runs_sub.add_parser("list", help="List runs, newest first")
    list_parser.add_argument(
        "--status",
        choices=[
            "created",
            "running",
            "awaiting_input",
            "awaiting_approval",
            "completed",
            "failed",
            "cancelled",
        ],
        help="Only runs with this status",
    )
    runs_sub.add_parser("active", help="Show the active run, if any")

    return parser


def main():
    parser = _build_parser()
    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        config = load_config(args.config)
    except FileNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    if args.command == "netpolicy":
        code = asyncio.run(_netpolicy_build(config))
    elif args.command == "deps":
        code = asyncio.run(_deps_install(config, args))
    elif args.command == "skills":
        code = asyncio.run(_skills(config, args))
    else:
        code = asyncio.run(_runs(config, args))
    sys.exit(code)


if __name__ == "__main__":
    main()

"""CLI entry point for the agentrun package."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import subprocess
import sys
from typing import List, Optional

from . import __version__


def _print_help() -> None:
    print("agentrun: run LLM agents with sub-agent delegation and memory")
    print()
    print("Usage:")
    print("  agentrun run <agent> [--skill PATH] [--workdir DIR] [--model P/M] [--timeout S]")
    print("                       [--dry-run] [--verbose] [--json]")
    print("  agentrun gc <agent> [--dry-run] [--model P/M]")
    print("  agentrun gc --all [--dry-run] [--model P/M]")
    print("  agentrun agents list")
    print("  agentrun agents show <agent>")
    print("  agentrun agents init <agent>")
    print("  agentrun agents edit <agent>")
    print("  agentrun config path")
    print("  agentrun config init")
    print("  agentrun version")
    print()


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # type: ignore[override]
        from .engine import ExitError

        raise ExitError(1, message)


def _build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(prog="agentrun", add_help=False)
    sub = parser.add_subparsers(dest="command")

    run = sub.add_parser("run", add_help=False)
    run.add_argument("agent")
    run.add_argument("--skill", default="")
    run.add_argument("--workdir", default="")
    run.add_argument("--model", default="")
    run.add_argument("--timeout", type=int, default=0)
    run.add_argument("--dry-run", action="store_true")
    run.add_argument("-v", "--verbose", action="store_true")
    run.add_argument("--json", dest="json_output", action="store_true")

    gc = sub.add_parser("gc", add_help=False)
    gc.add_argument("agent", nargs="?", default="")
    gc.add_argument("--all", dest="all_agents", action="store_true")
    gc.add_argument("--dry-run", action="store_true")
    gc.add_argument("--model", default="")

    agents = sub.add_parser("agents", add_help=False)
    agents.add_argument("action", choices=["list", "show", "init", "edit"])
    agents.add_argument("agent", nargs="?", default="")

    config = sub.add_parser("config", add_help=False)
    config.add_argument("action", choices=["path", "init"])

    sub.add_parser("version", add_help=False)
    return parser


def _configure_logging(verbose: bool) -> None:
    from .config import get_settings

    level = logging.DEBUG if verbose else getattr(logging, get_settings().log_level, logging.WARNING)
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s", stream=sys.stderr)


def _cmd_run(args: argparse.Namespace) -> int:
    from .engine import RunOptions, run_agent

    options = RunOptions(
        model=args.model,
        skill=args.skill,
        workdir=args.workdir,
        timeout=args.timeout,
        dry_run=args.dry_run,
        verbose=args.verbose,
        json_output=args.json_output,
    )
    return asyncio.run(run_agent(args.agent, options))


def _cmd_gc(args: argparse.Namespace) -> int:
    from .engine import ExitError
    from .gc import run_gc, run_gc_all

    if args.all_agents and args.agent:
        raise ExitError(1, "cannot specify both --all and an agent name")
    if not args.all_agents and not args.agent:
        raise ExitError(1, "agent name is required (or use --all)")

    if args.all_agents:
        return asyncio.run(run_gc_all(dry_run=args.dry_run, model_override=args.model))
    return asyncio.run(run_gc(args.agent, dry_run=args.dry_run, model_override=args.model))


def _cmd_agents(args: argparse.Namespace) -> int:
    from .agent_loader import AgentLoadError, agent_path, list_agents, load_agent, scaffold
    from .engine import ExitError, effective_max_depth

    if args.action == "list":
        agents = list_agents()
        if not agents:
            print("No agents configured.")
        for agent in agents:
            print(f"{agent.name}\t{agent.description}" if agent.description else agent.name)
        return 0

    if not args.agent:
        raise ExitError(1, f"agent name is required for 'agents {args.action}'")

    if args.action == "show":
        try:
            agent = load_agent(args.agent)
        except AgentLoadError as exc:
            raise ExitError(2, str(exc)) from exc
        print(f"Name:        {agent.name}")
        print(f"Model:       {agent.model}")
        print(f"Description: {agent.description or '(none)'}")
        print(f"Skill:       {agent.skill or '(none)'}")
        print(f"Files:       {', '.join(agent.files) or '(none)'}")
        print(f"Workdir:     {agent.workdir or '(none)'}")
        print(f"Sub-Agents:  {', '.join(agent.sub_agents) or '(none)'}")
        if agent.sub_agents:
            policy = agent.sub_agents_config
            print(f"  Max Depth: {effective_max_depth(agent)}")
            print(f"  Parallel:  {'yes' if policy.parallel else 'no'}")
            print(f"  Timeout:   {policy.timeout}s")
        print(f"Memory:      {'enabled' if agent.memory.enabled else 'disabled'}")
        if agent.memory.enabled:
            print(f"  Last N:      {agent.memory.last_n}")
            print(f"  Max Entries: {agent.memory.max_entries}")
        return 0

    path = agent_path(args.agent)

    if args.action == "init":
        if path.exists():
            raise ExitError(1, f"agent config already exists: {path}")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(scaffold(args.agent), encoding="utf-8")
        print(f"Created {path}")
        return 0

    # edit
    if not path.exists():
        raise ExitError(2, f"agent config not found: {args.agent}")
    editor = os.environ.get("EDITOR", "").strip()
    if not editor:
        raise ExitError(1, "$EDITOR is not set")
    subprocess.run([editor, str(path)], check=False)
    return 0


def _cmd_config(args: argparse.Namespace) -> int:
    from .config import GLOBAL_CONFIG_TEMPLATE, get_settings, global_config_path

    settings = get_settings()
    if args.action == "path":
        print(settings.config_dir)
        return 0

    (settings.config_dir / "agents").mkdir(parents=True, exist_ok=True)
    (settings.config_dir / "skills").mkdir(parents=True, exist_ok=True)
    path = global_config_path(settings)
    if path.exists():
        print(f"Config already exists: {path}")
    else:
        path.write_text(GLOBAL_CONFIG_TEMPLATE, encoding="utf-8")
        print(f"Created {path}")
    return 0


def main(argv: Optional[List[str]] = None) -> None:
    """Parse arguments, dispatch the subcommand and exit with its status."""
    from .engine import ExitError

    argv = sys.argv[1:] if argv is None else argv
    if not argv or argv[0] in {"-h", "--help", "help"}:
        _print_help()
        sys.exit(0)

    try:
        args = _build_parser().parse_args(argv)
    except ExitError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        sys.exit(exc.code)

    _configure_logging(getattr(args, "verbose", False))

    handlers = {
        "run": _cmd_run,
        "gc": _cmd_gc,
        "agents": _cmd_agents,
        "config": _cmd_config,
    }

    if args.command == "version":
        print(f"agentrun version {__version__}")
        sys.exit(0)

    try:
        code = handlers[args.command](args)
    except ExitError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        sys.exit(exc.code)
    sys.exit(code)


if __name__ == "__main__":
    main()

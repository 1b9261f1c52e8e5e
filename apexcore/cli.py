"""
Apex-Core CLI

Command-line interface for running goals and inspecting provider ladders.
"""

import argparse
import asyncio
import json
import sys
from typing import List, Optional

from dotenv import load_dotenv


def _load_ladder(args: argparse.Namespace):
    from apexcore.ladder import DEFAULT_LADDER, load_ladder

    return load_ladder(args.ladder) if args.ladder else DEFAULT_LADDER


def cmd_version(args: argparse.Namespace) -> int:
    """Print version information."""
    from apexcore import __version__
    print(f"apex-core {__version__}")
    return 0


def cmd_ladder(args: argparse.Namespace) -> int:
    """Print the resolved provider ladder as JSON."""
    from apexcore.errors import ConfigError

    try:
        ladder = _load_ladder(args)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(json.dumps(ladder.to_dict(), indent=2))
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    """Run a goal through the orchestrator and print the aggregate result."""
    from apexcore import AdmissionController, ApexConfig, ApexLoop, Orchestrator, get_quota_oracle
    from apexcore.errors import ConfigError
    from apexcore.orchestrator import OrchestrationMode
    from apexcore.state import Blackboard

    try:
        config = ApexConfig.from_env()
        ladder = _load_ladder(args)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.provider == "openai":
        from apexcore.providers import OpenAICompatibleProvider
        adapter = OpenAICompatibleProvider(base_url=args.base_url)
    else:
        from apexcore.providers import LiteLLMProvider
        adapter = LiteLLMProvider(temperature=args.temperature)

    loop = ApexLoop(
        adapter=adapter,
        ladder=ladder,
        retry_policy=config.retry_policy(),
        task_deadline=config.task_deadline,
        quota=get_quota_oracle(),
        verbose=args.verbose
    )
    blackboard = Blackboard(max_log_entries=config.max_log_entries)
    orchestrator = Orchestrator(
        loop=loop,
        admission=AdmissionController(max_workers=config.max_workers),
        blackboard=blackboard,
        config=config,
        guard=args.guard,
        verbose=args.verbose
    )

    result = asyncio.run(orchestrator.run(
        goal=args.goal,
        context=args.context,
        mode=OrchestrationMode(args.mode)
    ))

    output = result.to_dict()
    if args.logs:
        output["mission_logs"] = [
            {"source": e.source, "level": e.level.value, "message": e.message}
            for e in blackboard.get_context().mission_logs
        ]
    print(json.dumps(output, indent=2, default=str))
    return 0 if result.success else 2


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    load_dotenv()

    parser = argparse.ArgumentParser(
        prog="apex",
        description="Apex-Core - Resilient LLM task orchestration"
    )
    parser.add_argument(
        "--version", "-V",
        action="store_true",
        help="Show version and exit"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # version command
    version_parser = subparsers.add_parser("version", help="Show version")
    version_parser.set_defaults(func=cmd_version)

    # ladder command
    ladder_parser = subparsers.add_parser("ladder", help="Show the provider ladder")
    ladder_parser.add_argument(
        "--ladder",
        default=None,
        help="JSON ladder file (default: built-in ladder)"
    )
    ladder_parser.set_defaults(func=cmd_ladder)

    # run command
    run_parser = subparsers.add_parser("run", help="Run a goal through the swarm")
    run_parser.add_argument("goal", help="The goal to accomplish")
    run_parser.add_argument(
        "--context",
        default="",
        help="Extra grounding context"
    )
    run_parser.add_argument(
        "--mode",
        default="auto",
        choices=["auto", "physics", "voxel", "scientific"],
        help="Rendering mode (default: auto)"
    )
    run_parser.add_argument(
        "--ladder",
        default=None,
        help="JSON ladder file (default: built-in ladder)"
    )
    run_parser.add_argument(
        "--provider",
        default="litellm",
        choices=["litellm", "openai"],
        help="Provider adapter (default: litellm)"
    )
    run_parser.add_argument(
        "--base-url",
        default="https://openrouter.ai/api/v1",
        help="Base URL for the openai adapter (default: OpenRouter)"
    )
    run_parser.add_argument(
        "--temperature",
        type=float,
        default=0.7,
        help="Sampling temperature (default: 0.7)"
    )
    run_parser.add_argument(
        "--guard",
        action="store_true",
        help="Screen the goal with the critic before planning"
    )
    run_parser.add_argument(
        "--logs",
        action="store_true",
        help="Include mission logs in the output"
    )
    run_parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging"
    )
    run_parser.set_defaults(func=cmd_run)

    args = parser.parse_args(argv)

    if args.version:
        return cmd_version(args)

    if not args.command:
        parser.print_help()
        return 0

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())

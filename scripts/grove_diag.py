"""Grove MCP diagnostics CLI."""

from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path

from grove_mcp.agent import probe_agent
from grove_mcp.agent.environment import build_child_environment
from grove_mcp.agent.validation import default_agent_candidates
from grove_mcp.config import GroveSettings
from grove_mcp.git import GitService, GitUnavailableError


def load_git(settings: GroveSettings) -> GitService:
    try:
        return GitService(Path(settings.git_path).expanduser() if settings.git_path else None)
    except GitUnavailableError as exc:
        print(f"git unavailable: {exc}")
        raise SystemExit(1)


def cmd_agent(args: argparse.Namespace) -> None:
    settings = GroveSettings()
    candidates = (
        (Path(settings.claude_path).expanduser(),) if settings.claude_path else default_agent_candidates()
    )
    metadata = asyncio.run(probe_agent(candidates))
    metadata["allowed_tools"] = list(settings.allowed_tools)
    print(json.dumps(metadata, indent=2))
    if not metadata["available"]:
        raise SystemExit(1)


def cmd_env(args: argparse.Namespace) -> None:
    keys = sorted(build_child_environment())
    if args.json:
        print(json.dumps(keys))
    else:
        for key in keys:
            print(key)


def cmd_worktrees(args: argparse.Namespace) -> None:
    settings = GroveSettings()
    service = load_git(settings)
    worktrees = asyncio.run(service.list_worktrees(args.repo))
    print(json.dumps([worktree.to_dict() for worktree in worktrees], indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Grove MCP diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_agent = sub.add_parser("agent", help="Probe the agent CLI and report its version")
    p_agent.set_defaults(func=cmd_agent)

    p_env = sub.add_parser("env", help="List the environment variables passed to agents")
    p_env.add_argument("--json", action="store_true", help="Output JSON")
    p_env.set_defaults(func=cmd_env)

    p_worktrees = sub.add_parser("worktrees", help="List the worktrees of a repository")
    p_worktrees.add_argument("repo", help="Path to the repository")
    p_worktrees.set_defaults(func=cmd_worktrees)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()

"""FastMCP server bootstrap for Grove."""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from fastmcp import FastMCP

from . import __version__
from .agent import SessionManager, probe_agent
from .agent.validation import default_agent_candidates
from .config import GroveSettings, get_settings
from .git import GitService, GitUnavailableError
from .tools import register_tools
from .workspace import WorkspaceLoader

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    """Configure root logging for the Grove server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def _run_sync(coro):
    """Execute an async coroutine on a dedicated event loop."""

    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


class _EmptyRegistry:
    """Registry used when git is unavailable; no path is a known worktree."""

    def is_known_worktree_path(self, path: Path) -> bool:
        return False


def create_server(
    settings: Optional[GroveSettings] = None,
    *,
    git_service: GitService | None = None,
    session_manager: SessionManager | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server with session tools and a status resource."""

    settings = settings or get_settings()

    git_metadata: dict[str, Any] = {"available": False, "path": None, "error": None}
    if git_service is None:
        try:
            git_service = GitService(Path(settings.git_path).expanduser() if settings.git_path else None)
        except GitUnavailableError as exc:
            git_metadata["error"] = str(exc)
            git_service = None
    if git_service is not None:
        git_metadata["available"] = True
        git_metadata["path"] = str(git_service.executable)

    agent_candidates = (
        (Path(settings.claude_path).expanduser(),) if settings.claude_path else default_agent_candidates()
    )
    agent_metadata = _run_sync(probe_agent(agent_candidates))

    workspace_loader = WorkspaceLoader(settings.workspace_paths)
    if git_service is not None:
        workspace_metadata = _run_sync(workspace_loader.register_worktrees(git_service))
    else:
        workspace_metadata = {
            "search_paths": [str(path) for path in workspace_loader.search_paths],
            "workspaces": [],
            "worktree_count": 0,
            "error": "git unavailable; workspaces not loaded",
        }

    if session_manager is None:
        registry = git_service if git_service is not None else _EmptyRegistry()
        session_manager = SessionManager(registry, settings=settings)
    manager = session_manager

    @asynccontextmanager
    async def _lifespan(_server):
        try:
            yield {}
        finally:
            await manager.shutdown()

    server = FastMCP(
        name="Grove MCP",
        version=__version__,
        instructions=(
            "Grove runs one Claude agent session per git worktree. List or add "
            "worktrees, create a session for one, then send it prompts and read "
            "back the streamed conversation."
        ),
        lifespan=_lifespan,
    )

    handles = register_tools(
        server,
        manager=manager,
        git_service=git_service,
        settings=settings,
    )

    def status_payload() -> dict[str, Any]:
        try:
            sessions = {
                worktree_id: status.to_dict() for worktree_id, status in manager.list_sessions().items()
            }
            session_error: str | None = None
        except Exception as exc:  # the status resource must not fail
            sessions = {}
            session_error = str(exc)

        state_counts: dict[str, int] = {}
        for status in sessions.values():
            state_counts[status["state"]] = state_counts.get(status["state"], 0) + 1

        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "agent": {
                "allowed_tools": list(settings.allowed_tools),
                **agent_metadata,
            },
            "git": {
                **git_metadata,
                "known_worktrees": (
                    sorted(str(path) for path in git_service.known_worktree_paths)
                    if git_service is not None
                    else []
                ),
            },
            "workspaces": workspace_metadata,
            "sessions": {
                "count": len(sessions),
                "max": settings.max_sessions,
                "state_counts": state_counts,
                "items": sessions,
                "error": session_error,
            },
        }

    @server.resource(
        "resource://grove/status",
        name="grove_status",
        description="Provides the current runtime status for the Grove MCP server.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource() -> str:
        """Return a JSON string summarizing agent, git, and session state."""

        return json.dumps(status_payload())

    setattr(server, "session_manager", manager)
    setattr(server, "git_service", git_service)
    setattr(server, "agent_metadata", agent_metadata)
    setattr(server, "git_metadata", git_metadata)
    setattr(server, "workspace_metadata", workspace_metadata)
    setattr(server, "status_payload", status_payload)
    setattr(server, "tool_handles", handles)
    return server


def main() -> None:
    """Entry point for running the Grove MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logger.info(
        "Launching Grove MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "agent_available": getattr(server, "agent_metadata", {}).get("available"),
            "git_available": getattr(server, "git_metadata", {}).get("available"),
        },
    )
    server.run()


if __name__ == "__main__":
    main()

"""Tool registration for Grove MCP."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastmcp import Context, FastMCP

from ..agent import SessionManager
from ..config import GroveSettings
from ..git import GitService, worktree_id_for


@dataclass(slots=True)
class ToolHandles:
    create_session: Any
    send_message: Any
    abort_session: Any
    session_status: Any
    remove_session: Any
    get_messages: Any
    list_worktrees: Any
    add_worktree: Any
    remove_worktree: Any
    list_branches: Any


def register_tools(
    server: FastMCP,
    *,
    manager: SessionManager,
    git_service: GitService | None,
    settings: GroveSettings,
) -> ToolHandles:
    """Register Grove's MCP tools on the server."""

    def _session_payload(worktree_id: str) -> dict[str, Any]:
        usage = manager.get_usage(worktree_id)
        return {
            "worktree_id": worktree_id,
            **manager.get_session_status(worktree_id).to_dict(),
            "usage": usage.to_dict() if usage is not None else None,
        }

    def _require_git() -> GitService:
        if git_service is None:
            raise RuntimeError("git is unavailable; set GROVE_GIT_PATH to a trusted git executable")
        return git_service

    async def _create_session(
        worktree_id: str,
        working_directory: str,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Create or replace the agent session bound to a worktree."""

        await manager.create_session(worktree_id, working_directory)
        _emit_log(
            context,
            "info",
            "Created session",
            extra={"worktree_id": worktree_id, "working_directory": working_directory},
        )
        return _session_payload(worktree_id)

    async def _send_message(
        worktree_id: str,
        message: str,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Send a prompt to the session's agent and wait for its reply."""

        _emit_log(
            context,
            "info",
            "Sending message",
            extra={"worktree_id": worktree_id, "length": len(message) if isinstance(message, str) else None},
        )
        reply = await manager.send_message(worktree_id, message)
        return {
            "message": reply.to_dict(),
            "tool_calls": [call.to_dict() for call in manager.get_tool_calls(worktree_id)],
            **_session_payload(worktree_id),
        }

    async def _abort_session(worktree_id: str, context: Context | None = None) -> dict[str, Any]:
        """Stop the agent process running for a worktree, if any."""

        await manager.abort_session(worktree_id)
        _emit_log(context, "info", "Aborted session", extra={"worktree_id": worktree_id})
        return _session_payload(worktree_id)

    def _session_status(worktree_id: str, context: Context | None = None) -> dict[str, Any]:
        _emit_log(context, "debug", "Fetching session status", extra={"worktree_id": worktree_id})
        return _session_payload(worktree_id)

    async def _remove_session(worktree_id: str, context: Context | None = None) -> dict[str, Any]:
        removed = await manager.remove_session(worktree_id)
        _emit_log(context, "info", "Removed session", extra={"worktree_id": worktree_id, "removed": removed})
        return {"worktree_id": worktree_id, "removed": removed}

    def _get_messages(
        worktree_id: str,
        limit: int | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Return the conversation history for a worktree session."""

        messages = manager.get_messages(worktree_id)
        if limit is not None:
            if limit < 1:
                raise ValueError("limit must be >= 1")
            messages = messages[-limit:]
        _emit_log(
            context,
            "debug",
            "Fetching messages",
            extra={"worktree_id": worktree_id, "count": len(messages)},
        )
        return {
            "worktree_id": worktree_id,
            "messages": [message.to_dict() for message in messages],
            "tool_calls": [call.to_dict() for call in manager.get_tool_calls(worktree_id)],
        }

    async def _list_worktrees(repo_path: str, context: Context | None = None) -> list[dict[str, Any]]:
        """List a repository's worktrees and allow sessions in them."""

        worktrees = await _require_git().list_worktrees(repo_path)
        _emit_log(
            context,
            "debug",
            "Listing worktrees",
            extra={"repo_path": repo_path, "count": len(worktrees)},
        )
        return [
            {**worktree.to_dict(), "session": manager.get_session_status(worktree.id).to_dict()}
            for worktree in worktrees
        ]

    async def _add_worktree(
        repo_path: str,
        branch: str,
        base_branch: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        path = await _require_git().add_worktree(repo_path, branch, base_branch)
        _emit_log(
            context,
            "info",
            "Added worktree",
            extra={"repo_path": repo_path, "branch": branch, "path": str(path)},
        )
        return {"id": worktree_id_for(str(path)), "path": str(path), "branch": branch}

    async def _remove_worktree(
        repo_path: str,
        worktree_path: str,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Remove a worktree, first closing any session bound to it."""

        service = _require_git()
        worktree = await service.find_worktree(repo_path, worktree_path)
        worktree_id = worktree.id
        session_removed = await manager.remove_session(worktree_id)
        await service.remove_worktree(repo_path, worktree.path)
        _emit_log(
            context,
            "info",
            "Removed worktree",
            extra={"repo_path": repo_path, "path": worktree.path, "session_removed": session_removed},
        )
        return {"id": worktree_id, "path": worktree.path, "removed": True, "session_removed": session_removed}

    async def _list_branches(repo_path: str, context: Context | None = None) -> dict[str, Any]:
        service = _require_git()
        branches = await service.get_branches(repo_path)
        current = await service.get_current_branch(repo_path)
        default = await service.get_default_branch(repo_path)
        _emit_log(context, "debug", "Listing branches", extra={"repo_path": repo_path, "count": len(branches)})
        return {"branches": branches, "current": current, "default": default}

    tool_create = server.tool(
        name="create_session",
        description=(
            "Create the agent session for a worktree. The working directory must be a "
            "worktree Grove knows about (list_worktrees or add_worktree registers them). "
            "An existing session for the same id is aborted and replaced."
        ),
    )(_create_session)

    tool_send = server.tool(
        name="send_message",
        description=(
            "Send a prompt to the worktree's agent and wait for the turn to finish. "
            f"Allowed agent tools: {', '.join(settings.allowed_tools)}."
        ),
    )(_send_message)

    tool_abort = server.tool(
        name="abort_session",
        description="Terminate the agent process currently running for a worktree session.",
    )(_abort_session)

    tool_status = server.tool(
        name="session_status",
        description="Report whether a worktree session exists, is processing, and its last error.",
    )(_session_status)

    tool_remove = server.tool(
        name="remove_session",
        description="Abort and forget the session for a worktree.",
    )(_remove_session)

    tool_messages = server.tool(
        name="get_messages",
        description="Return the message history and tool calls for a worktree session.",
    )(_get_messages)

    tool_list_worktrees = server.tool(
        name="list_worktrees",
        description="List the worktrees of a git repository with their session state.",
    )(_list_worktrees)

    tool_add_worktree = server.tool(
        name="add_worktree",
        description=(
            "Create a worktree for a branch next to the repository, creating the branch "
            "(optionally from base_branch) when it does not exist."
        ),
    )(_add_worktree)

    tool_remove_worktree = server.tool(
        name="remove_worktree",
        description="Remove a worktree from a repository, closing its session first.",
    )(_remove_worktree)

    tool_branches = server.tool(
        name="list_branches",
        description="List local branches plus the current and default branch of a repository.",
    )(_list_branches)

    return ToolHandles(
        create_session=tool_create,
        send_message=tool_send,
        abort_session=tool_abort,
        session_status=tool_status,
        remove_session=tool_remove,
        get_messages=tool_messages,
        list_worktrees=tool_list_worktrees,
        add_worktree=tool_add_worktree,
        remove_worktree=tool_remove_worktree,
        list_branches=tool_branches,
    )


__all__ = ["register_tools", "ToolHandles"]

logger = logging.getLogger(__name__)


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Best-effort logging that prefers the MCP context logger when available."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)

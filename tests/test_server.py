from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest
from fastmcp import Client

from grove_mcp.agent import SessionManager
from grove_mcp.config import GroveSettings
from grove_mcp.git import Worktree, worktree_id_for
from grove_mcp.server import create_server


class StubGitService:
    executable = Path("/usr/bin/git")

    def __init__(self, worktrees: dict[str, list[Path]]) -> None:
        self._worktrees = worktrees
        self.known: set[Path] = set()
        self.listed: list[str] = []

    @property
    def known_worktree_paths(self) -> frozenset[Path]:
        return frozenset(self.known)

    def is_known_worktree_path(self, path: Path) -> bool:
        return Path(path) in self.known

    async def list_worktrees(self, repo_path) -> list[Worktree]:
        self.listed.append(str(repo_path))
        paths = self._worktrees.get(str(repo_path), [])
        self.known.update(paths)
        return [
            Worktree(id=worktree_id_for(str(path)), path=str(path), branch="main", is_main=index == 0)
            for index, path in enumerate(paths)
        ]


def write_agent(tmp_path: Path) -> Path:
    script = tmp_path / "claude"
    script.write_text("#!/bin/sh\necho 'claude 9.9.9'\n", encoding="utf-8")
    script.chmod(0o755)
    return script


def write_workspace(directory: Path, repo: Path) -> None:
    directory.mkdir(exist_ok=True)
    (directory / "default.yaml").write_text(
        f"id: default\nrepositories:\n  - path: {repo}\n    name: project\n",
        encoding="utf-8",
    )


@pytest.fixture()
def environment(tmp_path: Path):
    repo = tmp_path / "project"
    repo.mkdir()
    repo = repo.resolve()
    workspaces = tmp_path / "workspaces"
    write_workspace(workspaces, repo)
    settings = GroveSettings(
        claude_path=str(write_agent(tmp_path)),
        workspace_paths=[workspaces],
        kill_grace_seconds=0.5,
    )
    git_service = StubGitService({str(repo): [repo]})
    return settings, git_service, repo


def test_create_server_seeds_registry_from_workspaces(environment) -> None:
    settings, git_service, repo = environment

    server = create_server(settings, git_service=git_service)

    assert git_service.listed == [str(repo)]
    assert git_service.is_known_worktree_path(repo)
    assert server.workspace_metadata["worktree_count"] == 1
    assert server.workspace_metadata["workspaces"][0]["repositories"][0]["name"] == "project"
    assert server.workspace_metadata["error"] is None
    assert isinstance(server.session_manager, SessionManager)


def test_status_payload_reports_agent_and_sessions(environment) -> None:
    settings, git_service, repo = environment
    server = create_server(settings, git_service=git_service)

    asyncio.run(server.session_manager.create_session("w1", str(repo)))
    payload = server.status_payload()

    assert payload["agent"]["available"] is True
    assert payload["agent"]["version"] == "claude 9.9.9"
    assert payload["agent"]["allowed_tools"] == list(settings.allowed_tools)
    assert payload["git"]["available"] is True
    assert payload["git"]["known_worktrees"] == [str(repo)]
    assert payload["sessions"]["count"] == 1
    assert payload["sessions"]["state_counts"] == {"idle": 1}
    assert payload["sessions"]["items"]["w1"]["active"] is True
    json.dumps(payload)


def test_status_payload_without_agent(environment, tmp_path: Path) -> None:
    settings, git_service, _ = environment
    settings = settings.model_copy(update={"claude_path": str(tmp_path / "missing-claude")})

    server = create_server(settings, git_service=git_service)
    payload = server.status_payload()

    assert payload["agent"]["available"] is False
    assert "No trusted agent executable" in payload["agent"]["error"]


def test_workspace_errors_are_reported(environment, tmp_path: Path) -> None:
    settings, git_service, _ = environment
    broken = tmp_path / "broken"
    broken.mkdir()
    (broken / "bad.yaml").write_text("id: [oops", encoding="utf-8")
    settings = settings.model_copy(update={"workspace_paths": (broken,)})

    server = create_server(settings, git_service=git_service)

    assert server.workspace_metadata["error"]
    assert server.workspace_metadata["worktree_count"] == 0


def test_provided_session_manager_is_used(environment) -> None:
    settings, git_service, _ = environment
    manager = SessionManager(git_service, settings=settings)

    server = create_server(settings, git_service=git_service, session_manager=manager)

    assert server.session_manager is manager


def test_status_resource_and_tools_over_mcp(environment) -> None:
    settings, git_service, _ = environment
    server = create_server(settings, git_service=git_service)

    async def scenario():
        async with Client(server) as client:
            tools = await client.list_tools()
            contents = await client.read_resource("resource://grove/status")
        return tools, contents

    tools, contents = asyncio.run(scenario())

    assert {tool.name for tool in tools} >= {"create_session", "send_message", "list_worktrees"}
    payload = json.loads(contents[0].text)
    assert payload["workspaces"]["worktree_count"] == 1
    assert payload["sessions"]["count"] == 0

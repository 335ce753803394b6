from __future__ import annotations

import pytest

from grove_mcp.agent.environment import allowed_variables, build_child_environment


def test_environment_keeps_only_allowed_variables() -> None:
    source = {
        "PATH": "/usr/bin",
        "HOME": "/home/dev",
        "LANG": "C.UTF-8",
        "ANTHROPIC_API_KEY": "secret",
        "AWS_SECRET_ACCESS_KEY": "secret",
        "PYTHONPATH": "/tmp/evil",
        "LD_PRELOAD": "/tmp/evil.so",
    }

    env = build_child_environment(source)

    assert env == {"PATH": "/usr/bin", "HOME": "/home/dev", "LANG": "C.UTF-8"}


def test_environment_can_drop_identity_variables() -> None:
    env = build_child_environment({"HOME": "/home/dev", "USER": "dev", "TERM": "xterm"}, include_identity=False)

    assert env == {"TERM": "xterm"}
    assert "HOME" not in allowed_variables(include_identity=False)


def test_environment_reads_process_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GROVE_TEST_SECRET", "value")
    monkeypatch.setenv("PATH", "/usr/bin:/bin")

    env = build_child_environment()

    assert "GROVE_TEST_SECRET" not in env
    assert env["PATH"] == "/usr/bin:/bin"


def test_environment_additional_overrides() -> None:
    env = build_child_environment({"PATH": "/usr/bin"}, additional={"NO_COLOR": "1"})

    assert env == {"PATH": "/usr/bin", "NO_COLOR": "1"}

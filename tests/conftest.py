"""Shared fixtures for jupmux tests."""

import io

import pytest
from rich.console import Console

import jupmux
from jupmux_session import SessionRegistry


class FakeRegistry(SessionRegistry):
    """In-memory stand-in for the tmux server."""

    def __init__(self):
        self.sessions: dict[str, dict] = {}
        self.killed: list[str] = []
        self.fail_create = False

    def has_session(self, name):
        return name in self.sessions

    def kill_session(self, name):
        if name not in self.sessions:
            raise RuntimeError(f"can't find session: {name}")
        del self.sessions[name]
        self.killed.append(name)

    def new_session(self, name, workdir, shell_command):
        if self.fail_create:
            raise RuntimeError("tmux new-session failed: no server")
        if name in self.sessions:
            raise RuntimeError(f"duplicate session: {name}")
        self.sessions[name] = {
            "workdir": workdir,
            "shell_command": shell_command,
            "dead": False,
            "pane": [],
        }

    def capture_pane(self, name, lines):
        if name not in self.sessions:
            raise RuntimeError(f"can't find session: {name}")
        return self.sessions[name]["pane"][-lines:]

    def list_sessions(self):
        return list(self.sessions)

    def pane_dead(self, name):
        return self.sessions.get(name, {}).get("dead", False)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def registry():
    return FakeRegistry()


@pytest.fixture
def output(monkeypatch):
    """Capture everything jupmux prints to its console."""
    buffer = io.StringIO()
    monkeypatch.setattr(jupmux, "console", Console(file=buffer, width=200, color_system=None))
    return buffer

"""
jupmux session: named, detached tmux sessions for long-running servers.

The tmux server is a host-global registry of sessions. It is modelled here as
an explicit interface (SessionRegistry) so the supervisor logic can run
against an in-memory registry in tests.

At most one session exists per name: ensure_session() kills any previous
session with the same name before creating the new one.
"""

from __future__ import annotations

import enum
import re
import shlex
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

# ============================================================================
# Constants
# ============================================================================

SESSION_PREFIX = "jupyter_"
LOGIN_SHELL = "bash"

# tmux treats '.' and ':' as target separators
_UNSAFE_NAME = re.compile(r"[.:\s]")


class SessionState(enum.Enum):
    ABSENT = "absent"
    RUNNING = "running"
    DEAD = "dead"


@dataclass
class SessionHandle:
    """A supervised session as seen right after launch."""
    name: str
    workdir: str
    command: list[str] = field(default_factory=list)
    state: SessionState = SessionState.RUNNING

    @property
    def attach_command(self) -> str:
        return f"tmux attach -t {self.name}"


# ============================================================================
# Registry - Host-global session table
# ============================================================================

class SessionRegistry(ABC):
    """Named-session registry (create, destroy, list, capture)."""

    @abstractmethod
    def has_session(self, name: str) -> bool:
        pass

    @abstractmethod
    def kill_session(self, name: str) -> None:
        pass

    @abstractmethod
    def new_session(self, name: str, workdir: str, shell_command: str) -> None:
        """Create a detached session running shell_command."""
        pass

    @abstractmethod
    def capture_pane(self, name: str, lines: int) -> list[str]:
        """Return the most recent lines of the session's primary pane."""
        pass

    @abstractmethod
    def list_sessions(self) -> list[str]:
        pass

    @abstractmethod
    def pane_dead(self, name: str) -> bool:
        """True if the session is registered but its command has exited."""
        pass


class TmuxRegistry(SessionRegistry):
    """Registry backed by the tmux binary."""

    def __init__(self, tmux: str = "tmux"):
        self.tmux = tmux

    def _run(self, *args: str) -> subprocess.CompletedProcess:
        return subprocess.run([self.tmux, *args], capture_output=True, text=True)

    def _check(self, result: subprocess.CompletedProcess, what: str):
        if result.returncode != 0:
            raise RuntimeError(f"tmux {what} failed: {result.stderr.strip()}")

    def has_session(self, name: str) -> bool:
        # '=' forces an exact match instead of tmux's prefix matching
        return self._run("has-session", "-t", f"={name}").returncode == 0

    def kill_session(self, name: str) -> None:
        self._check(self._run("kill-session", "-t", f"={name}"), "kill-session")

    def new_session(self, name: str, workdir: str, shell_command: str) -> None:
        result = self._run("new-session", "-d", "-s", name, "-c", workdir, shell_command)
        self._check(result, "new-session")

    def capture_pane(self, name: str, lines: int) -> list[str]:
        if lines < 1:
            raise ValueError(f"lines must be at least 1, got {lines}")
        result = self._run("capture-pane", "-p", "-t", f"={name}:", "-S", f"-{lines}")
        self._check(result, "capture-pane")
        captured = result.stdout.rstrip("\n").splitlines()
        return captured[-lines:]

    def list_sessions(self) -> list[str]:
        # Exits non-zero when no tmux server is running: that means no sessions
        result = self._run("list-sessions", "-F", "#{session_name}")
        if result.returncode != 0:
            return []
        return [line for line in result.stdout.splitlines() if line]

    def pane_dead(self, name: str) -> bool:
        result = self._run("list-panes", "-t", f"={name}", "-F", "#{pane_dead}")
        if result.returncode != 0:
            return False
        return "1" in result.stdout.split()


# ============================================================================
# Supervisor
# ============================================================================

def session_name(project: str) -> str:
    """Session name for a project, e.g. 'demo' -> 'jupyter_demo'."""
    project = project.strip()
    if not project:
        raise ValueError("project name is empty")
    return SESSION_PREFIX + _UNSAFE_NAME.sub("_", project)


def login_shell(workdir: str, argv: list[str]) -> str:
    """Wrap argv so it runs from a login shell after an explicit cd."""
    inner = f"cd {shlex.quote(workdir)} && exec {shlex.join(argv)}"
    return f"{LOGIN_SHELL} -lc {shlex.quote(inner)}"


def session_state(registry: SessionRegistry, name: str) -> SessionState:
    if not registry.has_session(name):
        return SessionState.ABSENT
    if registry.pane_dead(name):
        return SessionState.DEAD
    return SessionState.RUNNING


def ensure_session(
    registry: SessionRegistry,
    name: str,
    workdir: str | Path,
    command: list[str],
) -> SessionHandle:
    """Start command in a fresh detached session called name.

    Any existing session with the same name is killed first, whether its
    command is still running or not. The call returns as soon as tmux has
    created the session; it does not wait for the command to come up.

    Args:
        registry: Session registry to act on
        name: Session name
        workdir: Directory the command runs in (must exist)
        command: Argv of the command; argv[0] must be an absolute path

    Returns:
        Handle for the new session, in the running state

    Raises:
        FileNotFoundError: workdir does not exist
        ValueError: command is empty or argv[0] is not absolute
        RuntimeError: the registry failed to create the session
    """
    workdir = str(Path(workdir))
    if not Path(workdir).is_dir():
        raise FileNotFoundError(f"working directory does not exist: {workdir}")
    if not command:
        raise ValueError("empty command")
    if not Path(command[0]).is_absolute():
        raise ValueError(f"command must use an absolute path: {command[0]}")

    if registry.has_session(name):
        try:
            registry.kill_session(name)
        except RuntimeError:
            # Gone between the check and the kill
            if registry.has_session(name):
                raise

    registry.new_session(name, workdir, login_shell(workdir, command))
    return SessionHandle(name=name, workdir=workdir, command=list(command))


def stop_session(registry: SessionRegistry, name: str) -> bool:
    """Kill the named session. Returns False if there was none."""
    if not registry.has_session(name):
        return False
    registry.kill_session(name)
    return True


def list_supervised(registry: SessionRegistry) -> list[str]:
    """Names of sessions created by jupmux."""
    return [s for s in registry.list_sessions() if s.startswith(SESSION_PREFIX)]

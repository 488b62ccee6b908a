"""
jupmux ready: poll a Jupyter server's status listing until it shows up.

`jupyter server list` prints one free-form line per running server, e.g.

    http://localhost:5000/?token=0f3c... :: /home/me/demo

There is no schema beyond two conventions: the URL contains ':<port>/' and,
unless authentication is disabled or password based, a 'token=' parameter.
Parsing is kept in pure functions so it can be tested against literal lines.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable

import anyio

DEFAULT_ATTEMPTS = 90
DEFAULT_INTERVAL = 1.0

# Greedy prefix: the last token= on the line wins
_TOKEN_RE = re.compile(r".*token=(\S*)")

StatusQuery = Callable[[], Awaitable[Iterable[str]]]


# ============================================================================
# Records
# ============================================================================

@dataclass(frozen=True)
class ServiceRecord:
    """One status line identifying a running server."""
    raw: str
    port: int
    token: str | None = None

    def browser_url(self, host: str = "localhost") -> str | None:
        if not self.token:
            return None
        return f"http://{host}:{self.port}/?token={self.token}"


@dataclass
class PollAttempt:
    index: int
    elapsed: float
    record: str | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "attempt": self.index,
            "elapsed": round(self.elapsed, 3),
            "matched": self.record is not None,
            "error": self.error,
        }


def port_marker(port: int) -> str:
    """':5000/' - the trailing slash stops 5000 from matching 50001."""
    return f":{port}/"


def matches_port(port: int) -> Callable[[str], bool]:
    marker = port_marker(port)
    return lambda line: marker in line


def extract_token(text: str) -> str | None:
    """Token following 'token=' up to whitespace, or None if absent."""
    match = _TOKEN_RE.match(text)
    if match is None or not match.group(1):
        return None
    return match.group(1)


def parse_record(line: str, port: int) -> ServiceRecord | None:
    if port_marker(port) not in line:
        return None
    return ServiceRecord(raw=line.rstrip("\r\n"), port=port, token=extract_token(line))


def select_record(lines: Iterable[str], port: int) -> ServiceRecord | None:
    """First line in listing order that is about port."""
    for line in lines:
        record = parse_record(line, port)
        if record is not None:
            return record
    return None


# ============================================================================
# Polling
# ============================================================================

async def poll_until_ready(
    query: StatusQuery,
    predicate: Callable[[str], bool],
    max_attempts: int = DEFAULT_ATTEMPTS,
    interval: float = DEFAULT_INTERVAL,
    on_attempt: Callable[[PollAttempt], None] | None = None,
    sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
) -> str | None:
    """Query status lines until one satisfies predicate.

    Failures raised by query are expected while the server is still binding
    its listener; they count as an attempt with no lines and are not raised.

    With a positive interval the whole poll, queries included, is cut off
    after max_attempts * interval seconds, so a hung query cannot block it.

    Args:
        query: Async zero-argument callable returning status lines
        predicate: Test applied to each line, in listing order
        max_attempts: Hard cap on the number of queries
        interval: Seconds to sleep between attempts
        on_attempt: Called with a PollAttempt after every query
        sleep: Async sleep function

    Returns:
        The first matching line, or None once every attempt or the time
        ceiling is used up
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")

    ceiling = max_attempts * interval if interval > 0 else None
    started = time.monotonic()
    with anyio.move_on_after(ceiling):
        for index in range(1, max_attempts + 1):
            error = None
            try:
                lines = list(await query())
            except Exception as e:
                lines = []
                error = f"{type(e).__name__}: {e}"

            found = next((line for line in lines if predicate(line)), None)

            if on_attempt is not None:
                on_attempt(PollAttempt(index, time.monotonic() - started, found, error))

            if found is not None:
                return found
            if index < max_attempts:
                await sleep(interval)

    return None


async def wait_for_server(
    query: StatusQuery,
    port: int,
    max_attempts: int = DEFAULT_ATTEMPTS,
    interval: float = DEFAULT_INTERVAL,
    on_attempt: Callable[[PollAttempt], None] | None = None,
    sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
) -> ServiceRecord | None:
    """Poll until the server on port is listed, then parse its line."""
    line = await poll_until_ready(
        query, matches_port(port),
        max_attempts=max_attempts, interval=interval,
        on_attempt=on_attempt, sleep=sleep,
    )
    if line is None:
        return None
    return parse_record(line, port)


def server_list_query(jupyter_bin: str) -> StatusQuery:
    """Status query running '<jupyter_bin> server list'.

    The binary is called by absolute path so the listing comes from the same
    environment the server was launched from.
    """
    async def query() -> list[str]:
        result = await anyio.run_process([jupyter_bin, "server", "list"], check=True)
        text = result.stdout.decode("utf-8", errors="replace")
        return [line for line in text.splitlines() if line.strip()]

    return query

"""Registry of live terminal sessions and their idle timers."""

import asyncio
import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import paramiko
from starlette.concurrency import run_in_threadpool
from starlette.websockets import WebSocketState

from shared.protocol import SessionNotFoundError

logger = logging.getLogger("termrelay.registry")

DEFAULT_IDLE_TIMEOUT = 600.0  # 10 minutes


def generate_session_id() -> str:
    """Generate an unguessable 128-bit session ID (32 hex characters)."""
    return secrets.token_hex(16)


async def close_socket(websocket: Any, code: int = 1000) -> None:
    """Close a WebSocket unless either side has already closed it."""
    if (
        websocket.application_state == WebSocketState.DISCONNECTED
        or websocket.client_state == WebSocketState.DISCONNECTED
    ):
        return
    try:
        await websocket.close(code=code)
    except Exception as e:
        logger.debug(f"Error closing WebSocket: {e}")


class SocketSlot:
    """
    Holds the single WebSocket bound to a session.

    Ownership moves with every swap: the previous socket is handed back to
    the caller, who is then responsible for closing it.
    """

    def __init__(self):
        self._socket: Any = None
        self._lock = threading.Lock()

    def swap(self, websocket: Any) -> Any:
        """Bind a new socket and return the one it replaces (or None)."""
        with self._lock:
            previous, self._socket = self._socket, websocket
        return previous

    def take(self) -> Any:
        """Unbind and return the current socket."""
        with self._lock:
            current, self._socket = self._socket, None
        return current

    def holds(self, websocket: Any) -> bool:
        with self._lock:
            return self._socket is websocket

    @property
    def current(self) -> Any:
        with self._lock:
            return self._socket


@dataclass
class TerminalSession:
    """One remote shell bridged between an SSH channel and a WebSocket."""

    id: str
    client: paramiko.SSHClient
    channel: paramiko.Channel
    hostname: str = ""
    port: int = 22
    username: str = ""
    socket: SocketSlot = field(default_factory=SocketSlot)
    closed: asyncio.Event = field(default_factory=asyncio.Event)
    created_at: float = field(default_factory=time.monotonic)
    last_activity: float = field(default_factory=time.monotonic)
    opened_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    )
    shell_started: bool = False
    shell_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    outbound: asyncio.Queue | None = None
    idle_task: asyncio.Task | None = None
    tasks: set[asyncio.Task] = field(default_factory=set)

    def touch(self) -> None:
        """Record input or output activity."""
        self.last_activity = time.monotonic()

    def release_producers(self) -> None:
        """Empty the outbound queue so producers blocked on a full queue resume."""
        if self.outbound is None:
            return
        while True:
            try:
                self.outbound.get_nowait()
            except asyncio.QueueEmpty:
                break

    @property
    def is_bound(self) -> bool:
        return self.socket.current is not None

    def to_dict(self) -> dict:
        return {
            "session_id": self.id,
            "hostname": self.hostname,
            "port": self.port,
            "username": self.username,
            "opened_at": self.opened_at,
            "idle_seconds": round(time.monotonic() - self.last_activity, 1),
            "bound": self.is_bound,
            "shell_started": self.shell_started,
        }


class SessionRegistry:
    """
    Maps session IDs to live sessions.

    Insert, lookup and delete happen under a single lock, so no caller sees
    a partially constructed or partially removed session. Each session's
    socket binding has its own lock (SocketSlot) so rebinding one session
    never waits on another.
    """

    def __init__(
        self,
        idle_timeout: float | None = DEFAULT_IDLE_TIMEOUT,
        renew_on_activity: bool = False,
    ):
        """
        Args:
            idle_timeout: Seconds before a session is cleaned up (None or 0 disables)
            renew_on_activity: Measure the timeout from the last input/output
                instead of from creation
        """
        self.idle_timeout = idle_timeout
        self.renew_on_activity = renew_on_activity
        self._sessions: dict[str, TerminalSession] = {}
        self._lock = asyncio.Lock()

    async def create(
        self,
        client: paramiko.SSHClient,
        channel: paramiko.Channel,
        hostname: str = "",
        port: int = 22,
        username: str = "",
    ) -> str:
        """Register an authenticated SSH connection and return its session ID."""
        async with self._lock:
            session_id = generate_session_id()
            while session_id in self._sessions:
                session_id = generate_session_id()

            session = TerminalSession(
                id=session_id,
                client=client,
                channel=channel,
                hostname=hostname,
                port=port,
                username=username,
            )
            if self.idle_timeout:
                session.idle_task = asyncio.create_task(
                    self._expire_when_idle(session), name=f"idle-{session_id[:8]}"
                )
            self._sessions[session_id] = session

        logger.info(
            f"Created session {session_id[:8]}... for {username}@{hostname}:{port} "
            f"({len(self._sessions)} active)"
        )
        return session_id

    async def get(self, session_id: str) -> TerminalSession:
        """Look up a live session."""
        async with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def bind(self, session_id: str, websocket: Any) -> TerminalSession:
        """
        Attach a WebSocket to a session.

        A socket bound earlier is closed once the new one has taken its place.
        """
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            previous = session.socket.swap(websocket)

        if previous is not None and previous is not websocket:
            logger.info(f"Session {session_id[:8]}...: replacing previously bound WebSocket")
            await close_socket(previous)
        else:
            logger.info(f"Session {session_id[:8]}...: WebSocket bound")
        return session

    async def cleanup(self, session_id: str, owner: Any = None, reason: str = "") -> bool:
        """
        Tear down a session and forget it.

        Safe to call any number of times from any path: only the first caller
        performs the teardown, later callers find the session gone and return.
        When ``owner`` is given the teardown only happens while that socket is
        still the one bound to the session.

        Returns:
            True if this call tore the session down
        """
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            if owner is not None and not session.socket.holds(owner):
                logger.debug(
                    f"Session {session_id[:8]}... was reclaimed by a newer WebSocket, "
                    "not cleaning up"
                )
                return False
            del self._sessions[session_id]

        await self._teardown(session)
        logger.info(
            f"Cleaned up session {session_id[:8]}...{f' ({reason})' if reason else ''} "
            f"({len(self._sessions)} active)"
        )
        return True

    async def close_all(self) -> None:
        """Clean up every session (called on shutdown)."""
        async with self._lock:
            session_ids = list(self._sessions.keys())

        for session_id in session_ids:
            await self.cleanup(session_id, reason="shutdown")

    async def list_sessions(self) -> list[dict]:
        async with self._lock:
            return [session.to_dict() for session in self._sessions.values()]

    @property
    def count(self) -> int:
        """Number of live sessions."""
        return len(self._sessions)

    async def _teardown(self, session: TerminalSession) -> None:
        session.closed.set()

        current = asyncio.current_task()
        for task in [session.idle_task, *session.tasks]:
            if task is not None and task is not current and not task.done():
                task.cancel()
        session.release_producers()

        websocket = session.socket.take()
        if websocket is not None:
            await close_socket(websocket)

        # Closing the channel unblocks the output pumps
        await run_in_threadpool(_close_ssh, session)

    async def _expire_when_idle(self, session: TerminalSession) -> None:
        while True:
            anchor = session.last_activity if self.renew_on_activity else session.created_at
            remaining = anchor + self.idle_timeout - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(remaining)

        logger.info(f"Session {session.id[:8]}... idle timeout ({self.idle_timeout:.0f}s) elapsed")
        await self.cleanup(session.id, reason="idle timeout")


def _close_ssh(session: TerminalSession) -> None:
    try:
        session.channel.close()
    except Exception as e:
        logger.warning(f"Error closing shell for session {session.id[:8]}...: {e}")

    try:
        session.client.close()
    except Exception as e:
        logger.warning(f"Error closing SSH client for session {session.id[:8]}...: {e}")

"""Relay between a remote SSH shell and the WebSocket bound to its session."""

import asyncio
import codecs
import concurrent.futures
import logging
import threading
from typing import Callable

import paramiko
from starlette.concurrency import run_in_threadpool

from server.session_registry import SessionRegistry, TerminalSession
from shared.protocol import (
    MAX_WINDOW_DIMENSION,
    AuthenticationFailedError,
    CodecChain,
    ConnectionFailedError,
    InvalidRequestError,
    PtySetupFailedError,
    ProtocolEncodeError,
    TransportError,
    WireMessage,
    default_codec,
)

logger = logging.getLogger("termrelay.bridge")

DEFAULT_PORT = 22
DEFAULT_TERM = "xterm-256color"
DEFAULT_COLS = 80
DEFAULT_ROWS = 24
READ_BUFFER_SIZE = 4096
KEEPALIVE_INTERVAL = 30

# Errors a paramiko channel raises once the connection is gone
_CHANNEL_ERRORS = (OSError, EOFError, paramiko.SSHException)


class SSHBridge:
    """
    Opens SSH shells and pumps bytes between them and their WebSockets.

    Each streaming session gets two pump threads (stdout and stderr) doing
    blocking reads on the channel, and one sender task on the event loop that
    drains a bounded queue into the bound WebSocket. When the queue is full
    the pump blocks, which in turn stops reading from the SSH window. A
    consumer that stays stalled for ``stall_timeout`` seconds gets the session
    disconnected; output is never dropped.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        connect_timeout: float = 30.0,
        outbound_queue_size: int = 256,
        stall_timeout: float = 30.0,
        term: str = DEFAULT_TERM,
        cols: int = DEFAULT_COLS,
        rows: int = DEFAULT_ROWS,
        codec: CodecChain | None = None,
    ):
        self.registry = registry
        self.connect_timeout = connect_timeout
        self.outbound_queue_size = outbound_queue_size
        self.stall_timeout = stall_timeout
        self.term = term
        self.cols = cols
        self.rows = rows
        self.codec = codec or default_codec()

    def connect(
        self,
        hostname: str,
        port: int | None,
        username: str,
        password: str,
    ) -> tuple[paramiko.SSHClient, paramiko.Channel]:
        """
        Dial the SSH server and open a session channel.

        Blocking; call from a worker thread.

        Returns:
            (client, channel) - the caller owns both
        """
        missing = [
            name
            for name, value in (("hostname", hostname), ("username", username), ("password", password))
            if not value
        ]
        if missing:
            raise InvalidRequestError("Missing required fields", missing)
        if not all(isinstance(v, str) for v in (hostname, username, password)):
            raise InvalidRequestError("Invalid request body")

        port = port or DEFAULT_PORT
        if not isinstance(port, int) or isinstance(port, bool) or not 0 < port < 65536:
            raise InvalidRequestError("Invalid port", ["port"])

        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        logger.info(f"Opening SSH connection to {username}@{hostname}:{port}")
        try:
            client.connect(
                hostname=hostname,
                port=port,
                username=username,
                password=password,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except paramiko.AuthenticationException as e:
            client.close()
            logger.error(f"SSH authentication failed for {username}@{hostname}: {e}")
            raise AuthenticationFailedError(hostname, str(e) or "credentials rejected") from e
        except (paramiko.SSHException, OSError) as e:
            client.close()
            logger.error(f"SSH connection to {hostname}:{port} failed: {e}")
            raise ConnectionFailedError(hostname, str(e) or type(e).__name__) from e

        transport = client.get_transport()
        if transport is None:
            client.close()
            raise ConnectionFailedError(hostname, "transport closed after authentication")
        transport.set_keepalive(KEEPALIVE_INTERVAL)

        try:
            channel = transport.open_session(timeout=self.connect_timeout)
        except _CHANNEL_ERRORS as e:
            client.close()
            logger.error(f"Session creation on {hostname} failed: {e}")
            raise ConnectionFailedError(hostname, f"session creation failed: {e}") from e

        return client, channel

    def allocate_pty(self, channel: paramiko.Channel) -> None:
        """Request an interactive pseudo-terminal and start the remote shell."""
        try:
            channel.get_pty(term=self.term, width=self.cols, height=self.rows)
            channel.invoke_shell()
        except _CHANNEL_ERRORS as e:
            raise PtySetupFailedError(str(e) or type(e).__name__) from e

    async def start_shell(self, session: TerminalSession) -> None:
        """Allocate the PTY and begin streaming, once per session."""
        async with session.shell_lock:
            if session.shell_started:
                return
            await run_in_threadpool(self.allocate_pty, session.channel)
            session.shell_started = True
            self.stream_output(session)

    def stream_output(self, session: TerminalSession) -> None:
        """Start relaying remote stdout and stderr to the session's WebSocket."""
        loop = asyncio.get_running_loop()
        session.outbound = asyncio.Queue(maxsize=self.outbound_queue_size)

        sender = loop.create_task(self._send_outbound(session), name=f"send-{session.id[:8]}")
        session.tasks.add(sender)
        sender.add_done_callback(session.tasks.discard)

        pumps: tuple[tuple[str, Callable[[int], bytes]], ...] = (
            ("stdout", session.channel.recv),
            ("stderr", session.channel.recv_stderr),
        )
        for stream, read in pumps:
            threading.Thread(
                target=self._pump,
                args=(session, stream, read, loop),
                name=f"pump-{stream}-{session.id[:8]}",
                daemon=True,
            ).start()

        logger.debug(f"Session {session.id[:8]}...: output streaming started")

    def write(self, session: TerminalSession, data: str) -> int:
        """Write keystrokes to the remote shell."""
        try:
            payload = data.encode("utf-8", errors="surrogateescape")
        except UnicodeEncodeError:
            payload = data.encode("utf-8", errors="replace")

        try:
            session.channel.sendall(payload)
        except _CHANNEL_ERRORS as e:
            raise TransportError(session.id, f"write to shell failed: {e}") from e

        session.touch()
        return len(payload)

    def resize(self, session: TerminalSession, cols: int | None, rows: int | None) -> bool:
        """
        Forward a window change to the remote shell.

        Returns:
            False if the request was ignored (missing, non-positive or oversized)
        """
        if not cols or not rows or cols <= 0 or rows <= 0:
            return False
        if cols > MAX_WINDOW_DIMENSION or rows > MAX_WINDOW_DIMENSION:
            return False

        try:
            session.channel.resize_pty(width=cols, height=rows)
        except _CHANNEL_ERRORS as e:
            raise TransportError(session.id, f"resize failed: {e}") from e

        logger.debug(f"Session {session.id[:8]}...: resized to {cols}x{rows}")
        return True

    def _pump(
        self,
        session: TerminalSession,
        stream: str,
        read: Callable[[int], bytes],
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        # Incremental decoding keeps multibyte characters split across reads intact
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        while not session.closed.is_set():
            try:
                chunk = read(READ_BUFFER_SIZE)
            except _CHANNEL_ERRORS as e:
                logger.debug(f"Session {session.id[:8]}...: {stream} read ended: {e}")
                break
            if not chunk:
                break

            text = decoder.decode(chunk)
            if not text:
                continue

            try:
                future = asyncio.run_coroutine_threadsafe(
                    self._enqueue(session, WireMessage.output_message(text)), loop
                )
                accepted = future.result()
            except (RuntimeError, concurrent.futures.CancelledError) as e:
                logger.debug(f"Session {session.id[:8]}...: {stream} pump stopped: {e}")
                break
            if not accepted:
                break

        logger.debug(f"Session {session.id[:8]}...: {stream} pump finished")

    async def _enqueue(self, session: TerminalSession, msg: WireMessage) -> bool:
        if session.closed.is_set() or session.outbound is None:
            return False

        try:
            await asyncio.wait_for(session.outbound.put(msg), timeout=self.stall_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Session {session.id[:8]}...: output consumer stalled for "
                f"{self.stall_timeout:.0f}s, disconnecting"
            )
            await self.registry.cleanup(session.id, reason="stalled consumer")
            return False

        session.touch()
        return True

    async def _send_outbound(self, session: TerminalSession) -> None:
        while True:
            msg = await session.outbound.get()

            websocket = session.socket.current
            if websocket is None:
                logger.debug(f"Session {session.id[:8]}...: no WebSocket bound, output dropped")
                continue

            try:
                payload = self.codec.encode(msg)
            except ProtocolEncodeError as e:
                logger.warning(f"Session {session.id[:8]}...: {e.message}")
                continue

            try:
                await websocket.send_bytes(payload)
            except Exception as e:
                logger.warning(f"Session {session.id[:8]}...: WebSocket send failed: {e}")
                if await self.registry.cleanup(
                    session.id, owner=websocket, reason="websocket send failed"
                ):
                    return
                if session.closed.is_set():
                    return
                # A newer WebSocket took over; keep relaying to it

"""Client side of the terminal tunnel: control call, WebSocket stream, events."""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import httpx
import websockets
import websockets.exceptions

from shared.protocol import (
    MSG_ERROR,
    MSG_OUTPUT,
    MSG_STATUS,
    AuthenticationFailedError,
    CodecChain,
    ConnectionFailedError,
    InvalidRequestError,
    NotConnectedError,
    ProtocolDecodeError,
    ProtocolEncodeError,
    TransportError,
    TunnelError,
    WireMessage,
    default_codec,
)

logger = logging.getLogger("termrelay.client")

# Events delivered to the host application
EVENT_CONNECTED = "terminal:connected"
EVENT_DISCONNECTED = "terminal:disconnected"
EVENT_OUTPUT = "terminal:output"
EVENT_ERROR = "terminal:error"
EVENT_STATUS = "terminal:status"

EventSink = Callable[[str, Any], None]
WebSocketConnector = Callable[[str], Awaitable[Any]]

# Errors that mean the WebSocket is unusable
_SOCKET_ERRORS = (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException)


class ConnectionState(str, Enum):
    """Connection state exposed to the host UI."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass
class ConnectResponse:
    """Successful reply from the control endpoint."""

    session_id: str
    status: str

    @classmethod
    def from_dict(cls, data: dict) -> "ConnectResponse":
        return cls(session_id=data.get("sessionId", ""), status=data.get("status", ""))


def _error_from_response(hostname: str, status_code: int, data: dict) -> TunnelError:
    """Map a control endpoint error reply to the matching exception."""
    message = data.get("error") or f"HTTP {status_code}"
    if status_code == 400:
        return InvalidRequestError(message)
    if status_code == 401:
        return AuthenticationFailedError(hostname, message)
    return ConnectionFailedError(hostname, message)


class TerminalBridge:
    """
    Drives one remote terminal through a termrelay server.

    The host application supplies ``on_event``, which receives
    ``(event_name, payload)`` for connected, disconnected, output, error and
    status events. Output payloads are strings; the others are dicts.
    """

    def __init__(
        self,
        server_url: str = "http://localhost:7879",
        on_event: Optional[EventSink] = None,
        token_provider: Optional[Callable[[], Optional[str]]] = None,
        request_timeout: float = 60.0,
        close_timeout: float = 5.0,
        codec: Optional[CodecChain] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        ws_connect: Optional[WebSocketConnector] = None,
    ):
        """
        Args:
            server_url: Base URL of the relay (http:// or https://)
            on_event: Callback for terminal events
            token_provider: Returns a bearer token for the control endpoint
            request_timeout: Timeout for the connect request, which includes the SSH dial
            close_timeout: Seconds to wait for the read loop after disconnect()
            codec: Wire codec chain (msgpack first, JSON fallback by default)
            http_transport: Custom httpx transport
            ws_connect: Coroutine function opening a WebSocket (default: websockets.connect)
        """
        self.server_url = server_url.rstrip("/")
        self.on_event = on_event
        self.token_provider = token_provider
        self.request_timeout = request_timeout
        self.close_timeout = close_timeout
        self.codec = codec or default_codec()
        self._http_transport = http_transport
        self._ws_connect = ws_connect or websockets.connect

        self.session_id: Optional[str] = None
        self._state = ConnectionState.DISCONNECTED
        self._websocket: Any = None
        self._reader_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED and self._websocket is not None

    @property
    def ws_url(self) -> str:
        if self.server_url.startswith("https://"):
            return "wss://" + self.server_url[len("https://") :]
        if self.server_url.startswith("http://"):
            return "ws://" + self.server_url[len("http://") :]
        return self.server_url

    async def connect(
        self, hostname: str, port: int, username: str, password: str
    ) -> ConnectResponse:
        """Open an SSH session on the relay and attach the terminal stream."""
        response = await self.connect_ssh(hostname, port, username, password)
        await self.start_terminal(response.session_id)
        return response

    async def connect_ssh(
        self, hostname: str, port: int, username: str, password: str
    ) -> ConnectResponse:
        """Ask the relay to open an SSH connection; returns the new session ID."""
        logger.info(f"Attempting ssh connection to {hostname}:{port}, user: {username}")
        self._state = ConnectionState.CONNECTING

        headers = {}
        token = self.token_provider() if self.token_provider else None
        if token:
            headers["Authorization"] = f"Bearer {token}"

        payload = {"hostname": hostname, "port": port, "username": username, "password": password}
        try:
            async with httpx.AsyncClient(
                timeout=self.request_timeout, transport=self._http_transport
            ) as http:
                response = await http.post(
                    f"{self.server_url}/ssh/connect", json=payload, headers=headers
                )
        except httpx.HTTPError as e:
            raise self._fail(ConnectionFailedError(hostname, f"relay unreachable: {e}"))

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if not response.is_success:
            raise self._fail(_error_from_response(hostname, response.status_code, data))

        result = ConnectResponse.from_dict(data)
        if not result.session_id:
            raise self._fail(ConnectionFailedError(hostname, "relay returned no session ID"))

        logger.info(f"SSH session {result.session_id[:8]}... opened on relay")
        return result

    async def start_terminal(self, session_id: str) -> None:
        """Open the WebSocket for a session and start reading from it."""
        if self._websocket is not None:
            await self.disconnect()

        url = f"{self.ws_url}/ws/ssh/{session_id}"
        logger.info(f"Attempting websocket connection to {url}")
        self._state = ConnectionState.CONNECTING

        try:
            websocket = await self._ws_connect(url)
        except _SOCKET_ERRORS as e:
            logger.error(f"WebSocket connection failed: {e}")
            raise self._fail(ConnectionFailedError(url, f"WebSocket connection failed: {e}"))

        self._websocket = websocket
        self.session_id = session_id
        self._state = ConnectionState.CONNECTED
        self._emit(EVENT_CONNECTED, {"status": "connected", "sessionId": session_id})

        self._reader_task = asyncio.create_task(self._read_loop(websocket))

    async def send_input(self, data: str) -> None:
        """Send keystrokes to the remote shell."""
        websocket = self._require_connection("send_input")
        # Falls back to JSON when msgpack cannot encode the text
        encoded = self.codec.encode(WireMessage.input_message(data))
        await self._send(websocket, encoded, "input")

    async def resize(self, cols: int, rows: int) -> None:
        """Tell the remote shell about a new terminal size."""
        websocket = self._require_connection("resize")
        try:
            encoded = self.codec.encode(WireMessage.resize_message(cols, rows), fallback=False)
        except ProtocolEncodeError as e:
            logger.error(f"Failed to resize terminal: {e.message}")
            raise
        await self._send(websocket, encoded, "resize")
        logger.debug(f"Terminal resized to {cols}x{rows}")

    async def disconnect(self) -> None:
        """Close the terminal stream. Does nothing if already disconnected."""
        websocket, self._websocket = self._websocket, None
        reader, self._reader_task = self._reader_task, None
        self._state = ConnectionState.DISCONNECTED

        if websocket is not None:
            try:
                await websocket.close()
            except _SOCKET_ERRORS as e:
                logger.debug(f"Error closing WebSocket: {e}")

        if reader is not None and reader is not asyncio.current_task():
            done, _ = await asyncio.wait({reader}, timeout=self.close_timeout)
            if not done:
                reader.cancel()
                await asyncio.gather(reader, return_exceptions=True)

    async def _read_loop(self, websocket: Any) -> None:
        try:
            async for frame in websocket:
                try:
                    msg = self.codec.decode(frame)
                except ProtocolDecodeError as e:
                    logger.warning(f"Dropped inbound message: {e.message}")
                    continue
                if not self._dispatch(msg):
                    break
        except websockets.exceptions.ConnectionClosed as e:
            if self._websocket is websocket:
                logger.error(f"WebSocket read error: {e}")
                self._state = ConnectionState.ERROR
                self._emit(EVENT_ERROR, {"error": str(e)})
        except OSError as e:
            logger.error(f"WebSocket read error: {e}")
            self._state = ConnectionState.ERROR
            self._emit(EVENT_ERROR, {"error": str(e)})
        finally:
            if self._websocket is websocket:
                self._websocket = None
                try:
                    await websocket.close()
                except _SOCKET_ERRORS as e:
                    logger.debug(f"Error closing WebSocket: {e}")
            self._state = ConnectionState.DISCONNECTED
            self._emit(EVENT_DISCONNECTED, {"reason": "Connection closed"})

    def _dispatch(self, msg: WireMessage) -> bool:
        """Forward one inbound message to the host. Returns False to stop reading."""
        if msg.type == MSG_OUTPUT:
            if msg.data:
                self._emit(EVENT_OUTPUT, msg.data)
        elif msg.type == MSG_ERROR:
            self._state = ConnectionState.ERROR
            self._emit(EVENT_ERROR, {"error": msg.message or ""})
            return False
        elif msg.type == MSG_STATUS:
            self._emit(EVENT_STATUS, {"message": msg.message or ""})
        else:
            logger.debug(f"Unknown message type: {msg.type}")
            if msg.data:
                self._emit(EVENT_OUTPUT, msg.data)
        return True

    def _require_connection(self, operation: str) -> Any:
        if not self.is_connected:
            raise NotConnectedError(operation)
        return self._websocket

    async def _send(self, websocket: Any, encoded: bytes, kind: str) -> None:
        try:
            await websocket.send(encoded)
        except _SOCKET_ERRORS as e:
            logger.error(f"Failed to send {kind} payload: {e}")
            raise TransportError(self.session_id or "", f"failed to send {kind}: {e}") from e

    def _fail(self, error: TunnelError) -> TunnelError:
        self._state = ConnectionState.ERROR
        self._emit(EVENT_ERROR, {"error": error.message})
        return error

    def _emit(self, event: str, payload: Any) -> None:
        if self.on_event is None:
            return
        try:
            self.on_event(event, payload)
        except Exception as e:
            logger.warning(f"Event handler for {event} failed: {e}")

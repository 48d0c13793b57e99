"""WebSocket endpoint that attaches terminal clients to SSH sessions."""

import logging

from starlette.concurrency import run_in_threadpool
from starlette.responses import JSONResponse
from starlette.websockets import WebSocket

from server.session_registry import SessionRegistry, TerminalSession, close_socket
from server.ssh_bridge import SSHBridge
from shared.protocol import (
    MSG_INPUT,
    MSG_OUTPUT,
    MSG_RESIZE,
    CodecChain,
    ProtocolDecodeError,
    PtySetupFailedError,
    SessionNotFoundError,
    TransportError,
    WireMessage,
    default_codec,
)

logger = logging.getLogger("termrelay.gateway")

# Close code used when the server cannot answer the upgrade with an HTTP 404
WS_CLOSE_SESSION_NOT_FOUND = 4404


class TerminalGateway:
    """Binds inbound WebSockets to sessions and runs their read loops."""

    def __init__(
        self,
        registry: SessionRegistry,
        bridge: SSHBridge,
        codec: CodecChain | None = None,
    ):
        self.registry = registry
        self.bridge = bridge
        self.codec = codec or default_codec()

    async def handle(self, websocket: WebSocket) -> None:
        """Endpoint for ``/ws/ssh/{session_id}``."""
        session_id = websocket.path_params.get("session_id", "")

        try:
            await self.registry.get(session_id)
        except SessionNotFoundError as e:
            logger.warning(f"WebSocket rejected for unknown session {session_id[:8]}...")
            await self._deny(websocket, e)
            return

        await websocket.accept()

        try:
            session = await self.registry.bind(session_id, websocket)
        except SessionNotFoundError as e:
            # Cleaned up between the lookup and the upgrade
            await self._send(websocket, WireMessage.error_message(e.message))
            await close_socket(websocket, code=WS_CLOSE_SESSION_NOT_FOUND)
            return

        try:
            await self.bridge.start_shell(session)
        except PtySetupFailedError as e:
            # The session stays registered until its idle timeout reclaims it
            logger.error(f"Session {session_id[:8]}...: {e.message}")
            await self._send(
                websocket, WireMessage(type=MSG_OUTPUT, data=f"{e.message}\r\n", message=e.message)
            )
            await close_socket(websocket)
            return

        # Queued behind any output already read so the client sees them in order
        await session.outbound.put(
            WireMessage.status_message(
                f"Connected to {session.username}@{session.hostname}:{session.port}"
            )
        )
        await self._read_loop(session, websocket)

    async def _read_loop(self, session: TerminalSession, websocket: WebSocket) -> None:
        try:
            while True:
                try:
                    frame = await websocket.receive()
                except Exception as e:
                    logger.warning(f"Session {session.id[:8]}...: WebSocket read error: {e}")
                    break

                if frame["type"] == "websocket.disconnect":
                    logger.info(
                        f"Session {session.id[:8]}...: WebSocket closed (code={frame.get('code')})"
                    )
                    break

                payload = frame.get("bytes")
                if payload is None:
                    payload = frame.get("text")
                if payload is None:
                    continue

                try:
                    msg = self.codec.decode(payload)
                except ProtocolDecodeError as e:
                    logger.warning(f"Session {session.id[:8]}...: dropped message: {e.message}")
                    continue

                try:
                    await self._dispatch(session, msg)
                except TransportError as e:
                    logger.error(e.message)
                    break
        finally:
            await self.registry.cleanup(session.id, owner=websocket, reason="websocket closed")

    async def _dispatch(self, session: TerminalSession, msg: WireMessage) -> None:
        if msg.type == MSG_INPUT:
            if msg.data:
                await run_in_threadpool(self.bridge.write, session, msg.data)
        elif msg.type == MSG_RESIZE:
            resized = await run_in_threadpool(self.bridge.resize, session, msg.cols, msg.rows)
            if not resized:
                logger.debug(
                    f"Session {session.id[:8]}...: ignored resize to {msg.cols}x{msg.rows}"
                )
        else:
            logger.warning(f"Session {session.id[:8]}...: unknown message type: {msg.type}")

    async def _send(self, websocket: WebSocket, msg: WireMessage) -> None:
        try:
            await websocket.send_bytes(self.codec.encode(msg))
        except Exception as e:
            logger.warning(f"Failed to send {msg.type} message: {e}")

    async def _deny(self, websocket: WebSocket, error: SessionNotFoundError) -> None:
        if "websocket.http.response" in (websocket.scope.get("extensions") or {}):
            await websocket.send_denial_response(JSONResponse(error.to_dict(), status_code=404))
        else:
            await websocket.close(code=WS_CLOSE_SESSION_NOT_FOUND)

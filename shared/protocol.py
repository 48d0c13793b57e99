"""Wire protocol shared by the relay server and terminal clients."""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import msgpack

# Message types
MSG_INPUT = "input"
MSG_OUTPUT = "output"
MSG_RESIZE = "resize"
MSG_STATUS = "status"
MSG_ERROR = "error"

MESSAGE_TYPES = (MSG_INPUT, MSG_OUTPUT, MSG_RESIZE, MSG_STATUS, MSG_ERROR)

# Optional fields and the Python type each must carry when present
_STR_FIELDS = ("data", "message")
_INT_FIELDS = ("cols", "rows")

# Window sizes travel as uint32 in SSH window-change requests
MAX_WINDOW_DIMENSION = 2**32 - 1


@dataclass
class WireMessage:
    """A single message exchanged over the terminal WebSocket.

    Optional fields are ``None`` when absent. Absence is kept distinct from
    empty or zero values, so a resize with ``cols=0`` still carries ``cols``.
    """

    type: str
    data: str | None = None
    cols: int | None = None
    rows: int | None = None
    message: str | None = None

    def to_dict(self) -> dict:
        """Convert to a map, omitting absent fields."""
        result: dict[str, Any] = {"type": self.type}
        for name in ("data", "cols", "rows", "message"):
            value = getattr(self, name)
            if value is not None:
                result[name] = value
        return result

    @classmethod
    def from_dict(cls, obj: Any) -> "WireMessage":
        """Build a message from a decoded map, validating field types."""
        if not isinstance(obj, dict):
            raise ProtocolDecodeError(f"expected a map, got {type(obj).__name__}")

        msg_type = obj.get("type")
        if not isinstance(msg_type, str) or not msg_type:
            raise ProtocolDecodeError("message has no 'type' field")

        fields: dict[str, Any] = {}
        for name in _STR_FIELDS:
            value = obj.get(name)
            if isinstance(value, bytes):
                value = value.decode("utf-8", errors="replace")
            if value is not None and not isinstance(value, str):
                raise ProtocolDecodeError(f"field '{name}' must be a string")
            fields[name] = value
        for name in _INT_FIELDS:
            value = obj.get(name)
            if value is not None and (not isinstance(value, int) or isinstance(value, bool)):
                raise ProtocolDecodeError(f"field '{name}' must be an integer")
            if value is not None and not 0 <= value <= MAX_WINDOW_DIMENSION:
                raise ProtocolDecodeError(f"field '{name}' out of range: {value}")
            fields[name] = value

        return cls(type=msg_type, **fields)

    @classmethod
    def input_message(cls, data: str) -> "WireMessage":
        return cls(type=MSG_INPUT, data=data)

    @classmethod
    def output_message(cls, data: str) -> "WireMessage":
        return cls(type=MSG_OUTPUT, data=data)

    @classmethod
    def resize_message(cls, cols: int, rows: int) -> "WireMessage":
        return cls(type=MSG_RESIZE, cols=cols, rows=rows)

    @classmethod
    def status_message(cls, message: str) -> "WireMessage":
        return cls(type=MSG_STATUS, message=message)

    @classmethod
    def error_message(cls, message: str) -> "WireMessage":
        return cls(type=MSG_ERROR, message=message)


# =============================================================================
# Serialization strategies
# =============================================================================


class WireCodec(ABC):
    """One serialization format for wire messages."""

    name = "abstract"

    @abstractmethod
    def encode(self, msg: WireMessage) -> bytes:
        """Serialize a message. Raises ProtocolEncodeError."""

    @abstractmethod
    def decode(self, payload: bytes) -> WireMessage:
        """Parse a message. Raises ProtocolDecodeError."""


class MsgpackCodec(WireCodec):
    """Compact binary map encoding, the primary wire format."""

    name = "msgpack"

    def encode(self, msg: WireMessage) -> bytes:
        try:
            return msgpack.packb(msg.to_dict(), use_bin_type=True)
        except (TypeError, ValueError, OverflowError) as e:
            raise ProtocolEncodeError(self.name, str(e)) from e

    def decode(self, payload: bytes) -> WireMessage:
        try:
            obj = msgpack.unpackb(payload, raw=False)
        except (TypeError, ValueError, msgpack.exceptions.UnpackException) as e:
            raise ProtocolDecodeError(f"msgpack: {e}") from e
        return WireMessage.from_dict(obj)


class JsonCodec(WireCodec):
    """Plain-text JSON encoding, used when msgpack encoding fails."""

    name = "json"

    def encode(self, msg: WireMessage) -> bytes:
        try:
            return json.dumps(msg.to_dict()).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise ProtocolEncodeError(self.name, str(e)) from e

    def decode(self, payload: bytes) -> WireMessage:
        try:
            obj = json.loads(payload)
        except (TypeError, ValueError) as e:
            raise ProtocolDecodeError(f"json: {e}") from e
        return WireMessage.from_dict(obj)


class CodecChain:
    """Codecs tried in a fixed priority order."""

    def __init__(self, *codecs: WireCodec):
        if not codecs:
            raise ValueError("CodecChain needs at least one codec")
        self.codecs = codecs

    @property
    def primary(self) -> WireCodec:
        return self.codecs[0]

    def encode(self, msg: WireMessage, fallback: bool = True) -> bytes:
        """Encode with the primary codec, then the others if ``fallback``."""
        candidates = self.codecs if fallback else self.codecs[:1]
        last_error: ProtocolEncodeError | None = None
        for codec in candidates:
            try:
                return codec.encode(msg)
            except ProtocolEncodeError as e:
                last_error = e
        raise last_error

    def decode(self, payload: bytes | str) -> WireMessage:
        """Decode with the first codec that accepts the payload."""
        if isinstance(payload, str):
            payload = payload.encode("utf-8")

        reasons = []
        for codec in self.codecs:
            try:
                return codec.decode(payload)
            except ProtocolDecodeError as e:
                reasons.append(e.message)
        raise ProtocolDecodeError("; ".join(reasons))


def default_codec() -> CodecChain:
    """msgpack first, JSON as fallback."""
    return CodecChain(MsgpackCodec(), JsonCodec())


# =============================================================================
# Error taxonomy
# =============================================================================


class TunnelError(Exception):
    """Base exception for tunnel errors with structured error responses."""

    def __init__(
        self,
        code: str,
        message: str,
        details: dict | None = None,
        recovery_hint: str | None = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        self.recovery_hint = recovery_hint
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to structured error response."""
        result = {
            "error": self.message,
            "code": self.code,
        }
        if self.details:
            result["details"] = self.details
        if self.recovery_hint:
            result["recovery_hint"] = self.recovery_hint
        return result


class InvalidRequestError(TunnelError):
    """Raised when connect parameters are missing or malformed."""

    def __init__(self, message: str = "Missing required fields", fields: list[str] | None = None):
        super().__init__(
            code="INVALID_REQUEST",
            message=message,
            details={"fields": fields} if fields else None,
            recovery_hint="Provide hostname, username and password (port defaults to 22).",
        )


class AuthenticationFailedError(TunnelError):
    """Raised when the SSH server rejects the credentials."""

    def __init__(self, host: str, reason: str):
        super().__init__(
            code="AUTHENTICATION_FAILED",
            message=f"SSH authentication failed for {host}: {reason}",
            details={"host": host, "reason": reason},
            recovery_hint="Check the username and password for the target host.",
        )


class ConnectionFailedError(TunnelError):
    """Raised when the SSH transport (or the relay) cannot be reached."""

    def __init__(self, host: str, reason: str):
        super().__init__(
            code="CONNECTION_FAILED",
            message=f"SSH connection failed to {host}: {reason}",
            details={"host": host, "reason": reason},
            recovery_hint="Verify the host is reachable and SSH is enabled on the target.",
        )


class PtySetupFailedError(TunnelError):
    """Raised when the remote pseudo-terminal or shell cannot be started."""

    def __init__(self, reason: str):
        super().__init__(
            code="PTY_SETUP_FAILED",
            message=f"Terminal setup failed: {reason}",
            details={"reason": reason},
            recovery_hint="Disconnect and open a new session.",
        )


class SessionNotFoundError(TunnelError):
    """Raised when a session ID is unknown or already cleaned up."""

    def __init__(self, session_id: str):
        super().__init__(
            code="SESSION_NOT_FOUND",
            message="Session not found",
            details={"session_id": session_id},
            recovery_hint="Sessions are single-use; connect again to get a new session ID.",
        )


class ProtocolDecodeError(TunnelError):
    """Raised when an inbound wire message cannot be decoded."""

    def __init__(self, reason: str):
        super().__init__(
            code="PROTOCOL_DECODE_ERROR",
            message=f"Malformed message: {reason}",
        )


class ProtocolEncodeError(TunnelError):
    """Raised when an outbound wire message cannot be encoded."""

    def __init__(self, codec: str, reason: str):
        super().__init__(
            code="PROTOCOL_ENCODE_ERROR",
            message=f"Failed to encode message with {codec}: {reason}",
            details={"codec": codec},
        )


class TransportError(TunnelError):
    """Raised on a read/write failure after the session is set up."""

    def __init__(self, session_id: str, reason: str):
        super().__init__(
            code="TRANSPORT_ERROR",
            message=f"Transport failure on session {session_id}: {reason}",
            details={"session_id": session_id, "reason": reason},
            recovery_hint="The session is closed; reconnect to open a new one.",
        )


class NotConnectedError(TunnelError):
    """Raised when a terminal operation needs a connected WebSocket."""

    def __init__(self, operation: str):
        super().__init__(
            code="NOT_CONNECTED",
            message="WebSocket not connected",
            details={"operation": operation},
            recovery_hint="Call connect() before sending input or resizing.",
        )

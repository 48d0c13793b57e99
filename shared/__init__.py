"""Shared protocol definitions for termrelay."""

from .protocol import (
    MSG_ERROR,
    MSG_INPUT,
    MSG_OUTPUT,
    MSG_RESIZE,
    MSG_STATUS,
    CodecChain,
    TunnelError,
    WireMessage,
    default_codec,
)

__all__ = [
    "WireMessage",
    "CodecChain",
    "TunnelError",
    "default_codec",
    "MSG_INPUT",
    "MSG_OUTPUT",
    "MSG_RESIZE",
    "MSG_STATUS",
    "MSG_ERROR",
]

# =============================================================================
# ChatSync Client -- Payload Codec
# =============================================================================
#
# Message content is opaque to the sync layer.  Applications plug their
# end-to-end encryption in here; nothing in the realtime or request
# layers calls a codec on its own.
# =============================================================================

from __future__ import annotations

import base64
import binascii
from typing import Protocol

from .errors import ProtocolError


class PayloadCodec(Protocol):
    """Transforms message content to and from its wire string."""

    def encode(self, content: bytes | str) -> str: ...

    def decode(self, wire: str) -> bytes: ...


class PassthroughCodec:
    """Sends content as UTF-8 text unchanged."""

    def encode(self, content: bytes | str) -> str:
        if isinstance(content, bytes):
            return content.decode("utf-8")
        return content

    def decode(self, wire: str) -> bytes:
        return wire.encode("utf-8")


class Base64Codec:
    """Base64 transport encoding.  Not encryption."""

    def encode(self, content: bytes | str) -> str:
        if isinstance(content, str):
            content = content.encode("utf-8")
        return base64.b64encode(content).decode("ascii")

    def decode(self, wire: str) -> bytes:
        try:
            return base64.b64decode(wire, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ProtocolError(f"Invalid base64 payload: {exc}") from exc

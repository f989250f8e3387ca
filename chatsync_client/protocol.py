# =============================================================================
# ChatSync Client -- Wire Protocol Codec
# =============================================================================
#
# Every frame is a JSON object with a ``type`` field:
#
# Outgoing (client -> server):
#   {"type": "auth", "token": <credential>}        first frame after open
#   {"type": "subscribe" | "unsubscribe", "channel": <string>}
#
# Incoming (server -> client):
#   {"type": "authenticated"} | {"type": "auth_failed", ...}
#   {"type": <event-name>, ...payload}             routed to listeners
# =============================================================================

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from .constants import (
    CONTROL_FRAMES,
    FRAME_AUTH,
    FRAME_SUBSCRIBE,
    FRAME_UNSUBSCRIBE,
)
from .errors import ProtocolError
from .events import ServerEvent, decode_event

try:
    import orjson

    def _json_loads(data: str | bytes) -> Any:
        return orjson.loads(data)

    def _json_dumps(obj: Any) -> str:
        return orjson.dumps(obj).decode()

except ImportError:

    def _json_loads(data: str | bytes) -> Any:
        return json.loads(data)

    def _json_dumps(obj: Any) -> str:
        return json.dumps(obj, separators=(",", ":"))


@dataclass(frozen=True, slots=True)
class ControlFrame:
    """Handshake reply from the server (``authenticated`` / ``auth_failed``)."""

    type: str
    payload: dict[str, Any]


class FrameCodec:
    """Encode outbound frames and decode inbound ones."""

    def encode(self, frame: dict[str, Any]) -> str:
        if not isinstance(frame.get("type"), str):
            raise ProtocolError("Outbound frame has no 'type'")
        return _json_dumps(frame)

    def auth(self, token: str) -> str:
        return self.encode({"type": FRAME_AUTH, "token": token})

    def subscribe(self, channel: str) -> str:
        return self.encode({"type": FRAME_SUBSCRIBE, "channel": channel})

    def unsubscribe(self, channel: str) -> str:
        return self.encode({"type": FRAME_UNSUBSCRIBE, "channel": channel})

    def decode(self, data: str | bytes) -> ControlFrame | ServerEvent:
        """Decode one inbound frame.

        Raises:
            ProtocolError: If the frame is not a JSON object with a
                string ``type``.
        """
        try:
            frame = _json_loads(data)
        except ValueError as exc:
            raise ProtocolError(f"Invalid JSON frame: {exc}") from exc

        if not isinstance(frame, dict):
            raise ProtocolError("Frame is not a JSON object")
        frame_type = frame.get("type")
        if not isinstance(frame_type, str) or not frame_type:
            raise ProtocolError("Frame has no 'type'")

        if frame_type in CONTROL_FRAMES:
            payload = {k: v for k, v in frame.items() if k != "type"}
            return ControlFrame(type=frame_type, payload=payload)
        return decode_event(frame)

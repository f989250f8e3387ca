# =============================================================================
# ChatSync Client -- Server Events
# =============================================================================
#
# One frozen dataclass per inbound event type.  Frames arrive as
# ``{"type": <name>, ...payload}``; ``decode_event`` picks the variant
# registered for ``type`` and falls back to the base ``ServerEvent``.
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, TypeVar

E = TypeVar("E", bound="ServerEvent")

# envelope fields only; item fields like createdAt are not event order
_TIMESTAMP_KEYS = ("ts", "timestamp")


@dataclass(frozen=True, slots=True)
class ServerEvent:
    """An event pushed by the server over the realtime channel.

    Attributes:
        type: Event name, e.g. ``"new_message"``.
        payload: Every frame field except ``type``.
        timestamp: Logical server time in epoch seconds, when the frame
            carries one.  Used to order point events against snapshots.
    """

    type: str
    payload: dict[str, Any]
    timestamp: float | None = None

    @classmethod
    def from_frame(cls, frame: dict[str, Any]) -> ServerEvent:
        payload = {k: v for k, v in frame.items() if k != "type"}
        return cls(type=frame["type"], payload=payload, timestamp=parse_timestamp(payload))


@dataclass(frozen=True, slots=True)
class MessageEvent(ServerEvent):
    """A message was created, edited or deleted in a conversation."""

    conversation_id: str | None = None
    message: dict[str, Any] = field(default_factory=dict)
    client_msg_id: str | None = None

    @property
    def deleted(self) -> bool:
        return self.type == "message_deleted"

    @property
    def message_id(self) -> str | None:
        return _as_id(self.message.get("id"))

    @classmethod
    def from_frame(cls, frame: dict[str, Any]) -> MessageEvent:
        base = ServerEvent.from_frame(frame)
        message = frame.get("message")
        if not isinstance(message, dict):
            # message_deleted frames only carry the id
            message = {"id": frame.get("messageId")} if "messageId" in frame else {}
        return cls(
            type=base.type,
            payload=base.payload,
            timestamp=base.timestamp,
            conversation_id=_as_id(frame.get("conversationId", message.get("conversationId"))),
            message=message,
            client_msg_id=_as_id(message.get("clientMsgId", frame.get("clientMsgId"))),
        )


@dataclass(frozen=True, slots=True)
class ReactionEvent(ServerEvent):
    """The reaction set of one message changed."""

    conversation_id: str | None = None
    message_id: str | None = None
    reactions: tuple[dict[str, Any], ...] = ()

    @classmethod
    def from_frame(cls, frame: dict[str, Any]) -> ReactionEvent:
        base = ServerEvent.from_frame(frame)
        return cls(
            type=base.type,
            payload=base.payload,
            timestamp=base.timestamp,
            conversation_id=_as_id(frame.get("conversationId")),
            message_id=_as_id(frame.get("messageId")),
            reactions=tuple(frame.get("reactions") or ()),
        )


@dataclass(frozen=True, slots=True)
class TypingEvent(ServerEvent):
    conversation_id: str | None = None
    user_id: str | None = None

    @classmethod
    def from_frame(cls, frame: dict[str, Any]) -> TypingEvent:
        base = ServerEvent.from_frame(frame)
        return cls(
            type=base.type,
            payload=base.payload,
            timestamp=base.timestamp,
            conversation_id=_as_id(frame.get("conversationId")),
            user_id=_as_id(frame.get("userId")),
        )


@dataclass(frozen=True, slots=True)
class PresenceEvent(ServerEvent):
    user_id: str | None = None
    online: bool = False
    last_seen: str | None = None

    @classmethod
    def from_frame(cls, frame: dict[str, Any]) -> PresenceEvent:
        base = ServerEvent.from_frame(frame)
        return cls(
            type=base.type,
            payload=base.payload,
            timestamp=base.timestamp,
            user_id=_as_id(frame.get("userId")),
            online=bool(frame.get("isOnline", frame.get("online", False))),
            last_seen=frame.get("lastSeen"),
        )


@dataclass(frozen=True, slots=True)
class ConversationEvent(ServerEvent):
    """Conversation metadata changed (rename, pin, mute, new last message)."""

    conversation_id: str | None = None
    conversation: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_frame(cls, frame: dict[str, Any]) -> ConversationEvent:
        base = ServerEvent.from_frame(frame)
        conversation = frame.get("conversation")
        if not isinstance(conversation, dict):
            conversation = {}
        return cls(
            type=base.type,
            payload=base.payload,
            timestamp=base.timestamp,
            conversation_id=_as_id(frame.get("conversationId", conversation.get("id"))),
            conversation=conversation,
        )


@dataclass(frozen=True, slots=True)
class NotificationEvent(ServerEvent):
    notification: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_frame(cls, frame: dict[str, Any]) -> NotificationEvent:
        base = ServerEvent.from_frame(frame)
        notification = frame.get("notification")
        return cls(
            type=base.type,
            payload=base.payload,
            timestamp=base.timestamp,
            notification=notification if isinstance(notification, dict) else {},
        )


@dataclass(frozen=True, slots=True)
class UnreadCountEvent(ServerEvent):
    count: int = 0
    conversation_id: str | None = None

    @classmethod
    def from_frame(cls, frame: dict[str, Any]) -> UnreadCountEvent:
        base = ServerEvent.from_frame(frame)
        try:
            count = int(frame.get("count", 0))
        except (TypeError, ValueError):
            count = 0
        return cls(
            type=base.type,
            payload=base.payload,
            timestamp=base.timestamp,
            count=count,
            conversation_id=_as_id(frame.get("conversationId")),
        )


# -- Registry -----------------------------------------------------------------

EVENT_TYPES: dict[str, type[ServerEvent]] = {}


def register_event(*names: str) -> Callable[[type[E]], type[E]]:
    """Class decorator binding event names to a ``ServerEvent`` variant."""

    def decorator(cls: type[E]) -> type[E]:
        for name in names:
            EVENT_TYPES[name] = cls
        return cls

    return decorator


register_event("new_message", "message_updated", "message_deleted")(MessageEvent)
register_event("reaction_updated")(ReactionEvent)
register_event("typing")(TypingEvent)
register_event("presence")(PresenceEvent)
register_event("conversation_updated")(ConversationEvent)
register_event("notification")(NotificationEvent)
register_event("unread_count")(UnreadCountEvent)


def decode_event(frame: dict[str, Any]) -> ServerEvent:
    """Build the typed event for an inbound frame."""
    cls = EVENT_TYPES.get(frame["type"], ServerEvent)
    return cls.from_frame(frame)


# -- Helpers ------------------------------------------------------------------


def parse_timestamp(data: dict[str, Any]) -> float | None:
    """Extract a logical timestamp in epoch seconds.

    Accepts ISO-8601 strings and epoch numbers; values above 1e11 are
    taken to be milliseconds.
    """
    for key in _TIMESTAMP_KEYS:
        value = data.get(key)
        if value is None or isinstance(value, bool):
            continue
        if isinstance(value, (int, float)):
            return value / 1000.0 if value > 1e11 else float(value)
        if isinstance(value, str):
            try:
                return datetime.fromisoformat(value).timestamp()
            except ValueError:
                continue
    return None


def _as_id(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)

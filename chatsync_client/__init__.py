"""ChatSync Python client: realtime synchronization for a chat API.

Async usage::

    from chatsync_client import AsyncChatClient, ClientConfig, SessionCredential

    credential = SessionCredential(token="your-token")
    async with AsyncChatClient(ClientConfig.from_env(), credential) as client:
        await client.watch_conversation(42)

        @client.on("new_message")
        def handle(event):
            print(event.conversation_id, event.message)

Optimistic updates::

    await client.mutate(
        messages_key(42),
        lambda items: items + [placeholder],
        lambda: client.api.post("/messages/send", body),
    )

Optional extras::

    pip install chatsync-client[fast]   # orjson frame codec
"""

from ._version import __version__
from .api import ApiClient, ApiRequest, CredentialStore, CursorPage
from .cache import CacheEntry, QueryCache, conversation_channel, messages_key
from .client import AsyncChatClient
from .codec import Base64Codec, PassthroughCodec, PayloadCodec
from .config import ClientConfig
from .connection import ConnectionManager, open_websocket
from .dispatcher import EventDispatcher
from .errors import (
    AuthRejectedError,
    ChatSyncError,
    NotConnectedError,
    ProtocolError,
    RequestError,
    RequestFailedError,
    ShutdownError,
    TransportError,
    UnauthenticatedError,
)
from .events import (
    ConversationEvent,
    MessageEvent,
    NotificationEvent,
    PresenceEvent,
    ReactionEvent,
    ServerEvent,
    TypingEvent,
    UnreadCountEvent,
    register_event,
)
from .reconciler import PendingMutation, Reconciler, Snapshot
from .subscriptions import SubscriptionRegistry
from .types import ConnectionState, ConnectionStats, ReconnectConfig, SessionCredential

__all__ = [
    "__version__",
    # Client
    "AsyncChatClient",
    "ClientConfig",
    # Components
    "ApiClient",
    "ApiRequest",
    "CredentialStore",
    "CursorPage",
    "ConnectionManager",
    "open_websocket",
    "SubscriptionRegistry",
    "EventDispatcher",
    "QueryCache",
    "CacheEntry",
    "Reconciler",
    "PendingMutation",
    "Snapshot",
    "messages_key",
    "conversation_channel",
    # Codecs
    "PayloadCodec",
    "PassthroughCodec",
    "Base64Codec",
    # Types
    "ConnectionState",
    "ConnectionStats",
    "ReconnectConfig",
    "SessionCredential",
    # Events
    "ServerEvent",
    "MessageEvent",
    "ReactionEvent",
    "TypingEvent",
    "PresenceEvent",
    "ConversationEvent",
    "NotificationEvent",
    "UnreadCountEvent",
    "register_event",
    # Errors
    "ChatSyncError",
    "TransportError",
    "NotConnectedError",
    "AuthRejectedError",
    "ProtocolError",
    "RequestError",
    "UnauthenticatedError",
    "RequestFailedError",
    "ShutdownError",
]

"""In-memory transport fakes for chatsync client tests."""

import asyncio
import json
import time

from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK


_DROP = object()
_EOF = object()


class FakeSocket:
    """In-memory stand-in for a websockets client connection.

    Replies to the auth frame with *auth_reply* (``None``: never reply).
    """

    def __init__(self, auth_reply: str | None = "authenticated"):
        self.auth_reply = auth_reply
        self.sent: list[dict] = []
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def send(self, message: str) -> None:
        if self.closed:
            raise ConnectionClosedOK(None, None)
        frame = json.loads(message)
        self.sent.append(frame)
        if frame["type"] == "auth" and self.auth_reply:
            self.push({"type": self.auth_reply})

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(_EOF)

    def push(self, frame) -> None:
        """Queue an inbound frame (dicts are JSON-encoded)."""
        self._inbox.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def drop(self) -> None:
        """Simulate an abnormal network drop."""
        self._inbox.put_nowait(_DROP)

    def frames(self, frame_type: str) -> list[dict]:
        return [f for f in self.sent if f["type"] == frame_type]

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        item = await self._inbox.get()
        if item is _DROP:
            self.closed = True
            raise ConnectionClosedError(None, None)
        if item is _EOF:
            raise StopAsyncIteration
        return item


class FakeConnector:
    """Connector handing out FakeSockets; the first *fail_times* opens fail."""

    def __init__(self, *, fail_times: int = 0, auth_reply: str | None = "authenticated"):
        self.fail_times = fail_times
        self.auth_reply = auth_reply
        self.attempts = 0
        self.sockets: list[FakeSocket] = []

    async def __call__(self, url: str) -> FakeSocket:
        self.attempts += 1
        if self.fail_times > 0:
            self.fail_times -= 1
            raise OSError("Connection refused")
        sock = FakeSocket(auth_reply=self.auth_reply)
        self.sockets.append(sock)
        return sock

    @property
    def current(self) -> FakeSocket:
        return self.sockets[-1]


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Yield to the loop until *predicate()* is true."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met within timeout")
        await asyncio.sleep(0.001)



# =============================================================================
# ChatSync Client -- Authenticated Request Layer
# =============================================================================
#
# REST calls against the chat API on top of httpx.AsyncClient:
#
#   - bearer credential on every request, CSRF header on mutating ones
#   - 401 -> one single-flight session refresh shared by all callers
#     -> retry once -> UnauthenticatedError if still rejected
#   - refresh failure -> session expired, logout signalled once
#
# Knows nothing about the realtime channel.
# =============================================================================

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx

from ._logging import logger
from .constants import (
    CSRF_COOKIE_NAME,
    CSRF_HEADER_NAME,
    DEFAULT_API_BASE_URL,
    DEFAULT_PAGE_SIZE,
    HTTP_NO_CONTENT,
    HTTP_UNAUTHORIZED,
    MUTATING_METHODS,
    REFRESH_PATH,
    REQUEST_TIMEOUT,
)
from .errors import RequestFailedError, UnauthenticatedError
from .types import SessionCredential

Headers = dict[str, str] | None

@dataclass
class ApiRequest:
    """One REST call.

    Attributes:
        method: HTTP verb.
        path: Path relative to the API base URL.
        json: JSON body, if any.
        params: Query parameters.
        files: Multipart files (``upload`` only).
        data: Multipart form fields.
        headers: Extra headers.
    """

    method: str
    path: str
    json: Any = None
    params: dict[str, Any] | None = None
    files: Any = None
    data: dict[str, Any] | None = None
    headers: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.method = self.method.upper()

    @property
    def is_mutating(self) -> bool:
        return self.method in MUTATING_METHODS


@dataclass
class CursorPage:
    """One page of a cursor-paginated listing."""

    data: list[Any]
    next_cursor: str | None = None
    has_more: bool = False

    @classmethod
    def from_dict(cls, body: Any) -> CursorPage:
        if not isinstance(body, dict):
            return cls(data=[])
        next_cursor = body.get("nextCursor", body.get("next_cursor"))
        has_more = body.get("hasMore", body.get("has_more", next_cursor is not None))
        return cls(
            data=list(body.get("data") or []),
            next_cursor=next_cursor,
            has_more=bool(has_more),
        )


class CredentialStore:
    """Holds the current session credential.

    Shared by the request layer and the realtime channel so a refreshed
    token is used by the next reconnect.
    """

    def __init__(self, credential: SessionCredential | None = None) -> None:
        self._credential = credential

    @property
    def credential(self) -> SessionCredential | None:
        return self._credential

    def get(self) -> SessionCredential | None:
        return self._credential

    @property
    def token(self) -> str | None:
        return self._credential.token if self._credential else None

    def set(self, credential: SessionCredential | None) -> None:
        self._credential = credential

    def clear(self) -> None:
        self._credential = None

    def __bool__(self) -> bool:
        return self._credential is not None


def _parse_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


class ApiClient:
    """Async REST client with CSRF handling and single-flight refresh.

    Args:
        base_url: API root, e.g. ``"https://chat.example.com/api"``.
        credentials: Store of the current session credential.
        csrf_token: Accessor returning the CSRF token.  Defaults to the
            *csrf_cookie_name* cookie in the client's jar, then the
            credential's ``csrf_token``.
        refresh_path: Session refresh endpoint (POSTed with no body).
        on_session_expired: Called once when a refresh fails; the
            application should force a logout.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (tests use
            ``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str = DEFAULT_API_BASE_URL,
        *,
        credentials: CredentialStore | None = None,
        csrf_token: Callable[[], str | None] | None = None,
        csrf_cookie_name: str = CSRF_COOKIE_NAME,
        refresh_path: str = REFRESH_PATH,
        on_session_expired: Callable[[], Any] | None = None,
        timeout: float = REQUEST_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._credentials = credentials or CredentialStore()
        self._csrf_accessor = csrf_token
        self._csrf_cookie_name = csrf_cookie_name
        self._refresh_path = refresh_path
        self._on_session_expired = on_session_expired
        self._http = httpx.AsyncClient(
            base_url=base_url, timeout=timeout, transport=transport
        )

        # Single-flight refresh state
        self._refresh_task: asyncio.Task[bool] | None = None
        self._epoch = 0
        self._last_refresh_ok = True
        self._session_expired = False
        self._background_tasks: set[asyncio.Task[Any]] = set()
        self._refresh_count = 0

    # -- Properties -----------------------------------------------------------

    @property
    def credentials(self) -> CredentialStore:
        return self._credentials

    @property
    def session_expired(self) -> bool:
        return self._session_expired

    @property
    def refresh_count(self) -> int:
        """Refresh requests issued so far."""
        return self._refresh_count

    @property
    def http(self) -> httpx.AsyncClient:
        return self._http

    def set_credential(self, credential: SessionCredential | None) -> None:
        """Install a credential after login; clears the expired flag."""
        self._credentials.set(credential)
        if credential is not None:
            self._session_expired = False

    # -- Execute --------------------------------------------------------------

    async def execute(self, request: ApiRequest) -> Any:
        """Send *request* and return the parsed JSON body.

        Returns ``None`` for 204 and empty bodies.

        Raises:
            UnauthenticatedError: 401 that a session refresh could not fix.
            RequestFailedError: Any other non-2xx response, or no response.
        """
        epoch = self._epoch
        response = await self._send(request)
        if response.status_code != HTTP_UNAUTHORIZED or request.path == self._refresh_path:
            return self._handle_response(response)

        if not await self._refresh_session(epoch):
            raise UnauthenticatedError(_parse_body(response))

        response = await self._send(request)
        if response.status_code == HTTP_UNAUTHORIZED:
            logger.warning("%s %s rejected after refresh", request.method, request.path)
            raise UnauthenticatedError(_parse_body(response))
        return self._handle_response(response)

    async def get(
        self,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        return await self.execute(
            ApiRequest("GET", path, params=params, headers=headers or {})
        )

    async def post(self, path: str, body: Any = None, *, headers: Headers = None) -> Any:
        return await self._with_body("POST", path, body, headers)

    async def put(self, path: str, body: Any = None, *, headers: Headers = None) -> Any:
        return await self._with_body("PUT", path, body, headers)

    async def patch(self, path: str, body: Any = None, *, headers: Headers = None) -> Any:
        return await self._with_body("PATCH", path, body, headers)

    async def delete(self, path: str, body: Any = None, *, headers: Headers = None) -> Any:
        return await self._with_body("DELETE", path, body, headers)

    async def _with_body(self, method: str, path: str, body: Any, headers: Headers) -> Any:
        return await self.execute(ApiRequest(method, path, json=body, headers=headers or {}))

    async def upload(
        self,
        path: str,
        files: Any,
        *,
        data: dict[str, Any] | None = None,
        method: str = "POST",
    ) -> Any:
        """Multipart upload.  httpx sets the boundary content type."""
        return await self.execute(ApiRequest(method, path, files=files, data=data))

    async def fetch_page(
        self,
        path: str,
        cursor: str | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
        extra_params: dict[str, Any] | None = None,
    ) -> CursorPage:
        """Fetch one page of a cursor-paginated listing."""
        params: dict[str, Any] = {"limit": limit}
        if cursor:
            params["cursor"] = cursor
        if extra_params:
            params.update(extra_params)
        return CursorPage.from_dict(await self.get(path, params=params))

    # -- Lifecycle ------------------------------------------------------------

    async def aclose(self) -> None:
        task = self._refresh_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self._http.aclose()

    async def __aenter__(self) -> ApiClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    # -- Internal: transport --------------------------------------------------

    def _csrf_token(self) -> str | None:
        if self._csrf_accessor is not None:
            return self._csrf_accessor()
        token = self._http.cookies.get(self._csrf_cookie_name)
        if token:
            return token
        credential = self._credentials.credential
        return credential.csrf_token if credential else None

    def _headers(self, request: ApiRequest) -> dict[str, str]:
        headers = dict(request.headers)
        token = self._credentials.token
        if token:
            headers.setdefault("Authorization", f"Bearer {token}")
        if request.is_mutating:
            csrf = self._csrf_token()
            if csrf:
                headers[CSRF_HEADER_NAME] = csrf
        return headers

    async def _send(self, request: ApiRequest) -> httpx.Response:
        try:
            return await self._http.request(
                request.method,
                request.path,
                json=request.json,
                params=request.params,
                files=request.files,
                data=request.data,
                headers=self._headers(request),
            )
        except httpx.HTTPError as exc:
            logger.warning("%s %s failed: %s", request.method, request.path, exc)
            raise RequestFailedError(0, str(exc) or type(exc).__name__) from exc

    def _handle_response(self, response: httpx.Response) -> Any:
        if not response.is_success:
            raise RequestFailedError(
                response.status_code, response.reason_phrase, _parse_body(response)
            )
        if response.status_code == HTTP_NO_CONTENT or not response.content:
            return None
        return _parse_body(response)

    # -- Internal: session refresh --------------------------------------------

    async def _refresh_session(self, epoch: int) -> bool:
        """Wait for the shared refresh covering a request issued at *epoch*."""
        if self._session_expired:
            return False
        if epoch != self._epoch:
            # a refresh finished after this request was issued
            return self._last_refresh_ok
        if self._refresh_task is None:
            self._refresh_task = asyncio.ensure_future(self._do_refresh())
        return await asyncio.shield(self._refresh_task)

    async def _do_refresh(self) -> bool:
        self._refresh_count += 1
        logger.info("Refreshing session")
        ok = False
        try:
            response = await self._http.post(
                self._refresh_path,
                headers=self._headers(ApiRequest("POST", self._refresh_path)),
            )
            ok = response.is_success
            if ok:
                self._store_refreshed_token(_parse_body(response))
            else:
                logger.warning("Session refresh rejected: HTTP %d", response.status_code)
        except httpx.HTTPError as exc:
            logger.warning("Session refresh failed: %s", exc)
        finally:
            self._epoch += 1
            self._last_refresh_ok = ok
            self._refresh_task = None

        if ok:
            logger.info("Session refreshed")
        else:
            self._expire_session()
        return ok

    def _store_refreshed_token(self, body: Any) -> None:
        if not isinstance(body, dict):
            return
        token = body.get("access_token") or body.get("token")
        if not token:
            return
        current = self._credentials.credential
        csrf = body.get("csrf_token") or (current.csrf_token if current else None)
        self._credentials.set(SessionCredential(token=token, csrf_token=csrf))

    def _expire_session(self) -> None:
        if self._session_expired:
            return
        self._session_expired = True
        self._credentials.clear()
        logger.warning("Session expired; login required")
        if self._on_session_expired is None:
            return
        try:
            result = self._on_session_expired()
            if asyncio.iscoroutine(result):
                task = asyncio.ensure_future(result)
                self._background_tasks.add(task)
                task.add_done_callback(self._background_tasks.discard)
        except Exception:
            logger.exception("on_session_expired callback error")

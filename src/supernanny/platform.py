"""Async client for the hosted backend (auth, tables, storage, functions).

Talks to the Supabase REST surface with httpx:
- /auth/v1      identity and sessions
- /rest/v1      tables and RPC
- /storage/v1   object storage
- /functions/v1 edge functions

Every failure surfaces as ``PlatformError`` carrying the platform's message.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError

from .cache import LocalStore
from .constants import SIGNED_URL_TTL_SECONDS
from .errors import PlatformError
from .models import Session, User

logger = logging.getLogger(__name__)

SESSION_STORAGE_KEY = "supernanny.auth.session"

AuthCallback = Callable[[str, "Session | None"], None]


def _error_message(response: httpx.Response) -> tuple[str, str | None]:
    """Pull a human message and optional code out of an error response."""
    try:
        body = response.json()
    except (json.JSONDecodeError, ValueError):
        return (response.text or f"HTTP {response.status_code}"), None

    if not isinstance(body, dict):
        return str(body), None

    message = (
        body.get("msg")
        or body.get("error_description")
        or body.get("message")
        or body.get("error")
        or f"HTTP {response.status_code}"
    )
    details = body.get("details")
    if details and details != message and isinstance(details, str):
        message = f"{message}: {details}"
    code = body.get("code") or body.get("error_code")
    return str(message), (str(code) if code is not None else None)


class PlatformClient:
    """Entry point for all platform calls.

    Build once at startup and pass it to the components that need it.
    """

    def __init__(
        self,
        url: str,
        anon_key: str,
        storage: LocalStore | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
    ):
        self.url = url.rstrip("/")
        self.anon_key = anon_key
        self._http = httpx.AsyncClient(
            base_url=self.url,
            transport=transport,
            timeout=httpx.Timeout(timeout),
        )
        self.auth = AuthClient(self, storage)
        self.functions = FunctionsClient(self)

    def table(self, name: str) -> "TableQuery":
        return TableQuery(self, name)

    def storage(self, bucket: str) -> "StorageBucket":
        return StorageBucket(self, bucket)

    async def rpc(self, fn: str, params: dict[str, Any]) -> Any:
        return await self.request("POST", f"/rest/v1/rpc/{fn}", json=params)

    def headers(self, access_token: str | None = None) -> dict[str, str]:
        token = access_token or self.auth.access_token or self.anon_key
        return {"apikey": self.anon_key, "Authorization": f"Bearer {token}"}

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Any = None,
        json: Any = None,
        content: bytes | None = None,
        headers: dict[str, str] | None = None,
        access_token: str | None = None,
    ) -> Any:
        """Send a request and return the decoded JSON body (None when empty).

        Raises:
            PlatformError: On transport failure or a non-2xx status
        """
        merged = self.headers(access_token)
        if headers:
            merged.update(headers)

        try:
            response = await self._http.request(
                method, path, params=params, json=json, content=content, headers=merged
            )
        except httpx.HTTPError as e:
            logger.error(f"{method} {path} failed: {e}")
            raise PlatformError(f"Network error: {e}") from e

        if not response.is_success:
            message, code = _error_message(response)
            logger.warning(f"{method} {path} -> {response.status_code}: {message}")
            raise PlatformError(message, status=response.status_code, code=code)

        if not response.content:
            return None
        try:
            return response.json()
        except (ValueError, UnicodeDecodeError):
            return response.text

    async def aclose(self) -> None:
        await self._http.aclose()


class Subscription:
    """Handle returned by ``on_auth_state_change``."""

    def __init__(self, auth: "AuthClient", callback: AuthCallback):
        self._auth = auth
        self.callback = callback

    def unsubscribe(self) -> None:
        self._auth._listeners.discard(self)


class AuthClient:
    """Identity and session calls. The current session persists in the local store."""

    def __init__(self, client: PlatformClient, storage: LocalStore | None = None):
        self._client = client
        self._storage = storage
        self._listeners: set[Subscription] = set()
        self._session: Session | None = self._load_session()

    # --- session persistence ---

    def _load_session(self) -> Session | None:
        if self._storage is None:
            return None
        raw = self._storage.get(SESSION_STORAGE_KEY)
        if not raw:
            return None
        try:
            return Session.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Discarding unreadable stored session: {e}")
            return None

    def _set_session(self, session: Session | None, event: str) -> None:
        self._session = session
        if self._storage is not None:
            if session is None:
                self._storage.delete(SESSION_STORAGE_KEY)
            else:
                self._storage.set(SESSION_STORAGE_KEY, session.model_dump_json())
        self._notify(event, session)

    def _notify(self, event: str, session: Session | None) -> None:
        for sub in list(self._listeners):
            try:
                sub.callback(event, session)
            except Exception:
                logger.exception(f"Auth listener failed on {event}")

    @staticmethod
    def _session_from(body: dict) -> Session | None:
        if not isinstance(body, dict) or not body.get("access_token"):
            return None
        data = dict(body)
        if data.get("expires_at") is None and data.get("expires_in"):
            data["expires_at"] = int(time.time()) + int(data["expires_in"])
        return Session.model_validate(data)

    @property
    def access_token(self) -> str | None:
        return self._session.access_token if self._session else None

    def on_auth_state_change(self, callback: AuthCallback) -> Subscription:
        """Register for session changes. Returns a handle with ``unsubscribe()``."""
        sub = Subscription(self, callback)
        self._listeners.add(sub)
        return sub

    # --- reads ---

    async def get_session(self) -> Session | None:
        """Current session, refreshed first if it has expired."""
        session = self._session
        if session is None:
            return None
        if session.expires_at and session.expires_at <= int(time.time()):
            if not session.refresh_token:
                self._set_session(None, "SIGNED_OUT")
                return None
            try:
                return await self.refresh_session()
            except PlatformError as e:
                logger.warning(f"Session refresh failed: {e}")
                self._set_session(None, "SIGNED_OUT")
                return None
        return session

    async def get_user(self) -> User | None:
        """Fetch the signed-in user from the server."""
        session = await self.get_session()
        if session is None:
            return None
        body = await self._client.request("GET", "/auth/v1/user", access_token=session.access_token)
        return User.model_validate(body)

    # --- sign in / out ---

    async def refresh_session(self) -> Session:
        if self._session is None or not self._session.refresh_token:
            raise PlatformError("Authentication error: No refresh token available")
        body = await self._client.request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "refresh_token"},
            json={"refresh_token": self._session.refresh_token},
            access_token=self._client.anon_key,
        )
        session = self._session_from(body)
        if session is None:
            raise PlatformError("Authentication error: Refresh returned no session")
        self._set_session(session, "TOKEN_REFRESHED")
        return session

    async def sign_in_with_password(self, email: str, password: str) -> Session:
        body = await self._client.request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
            access_token=self._client.anon_key,
        )
        session = self._session_from(body)
        if session is None:
            raise PlatformError("Authentication error: Sign-in returned no session")
        self._set_session(session, "SIGNED_IN")
        return session

    async def sign_up(
        self, email: str, password: str, data: dict[str, Any] | None = None
    ) -> Session | None:
        """Create an account. Returns None when email confirmation is pending."""
        body = await self._client.request(
            "POST",
            "/auth/v1/signup",
            json={"email": email, "password": password, "data": data or {}},
            access_token=self._client.anon_key,
        )
        session = self._session_from(body)
        if session is not None:
            self._set_session(session, "SIGNED_IN")
        return session

    async def sign_in_with_otp(self, email: str, redirect_to: str | None = None) -> None:
        """Send a magic link."""
        params = {"redirect_to": redirect_to} if redirect_to else None
        await self._client.request(
            "POST",
            "/auth/v1/otp",
            params=params,
            json={"email": email, "create_user": True},
            access_token=self._client.anon_key,
        )

    def oauth_url(self, provider: str, redirect_to: str | None = None) -> str:
        """URL that starts an OAuth sign-in with ``provider``."""
        query = {"provider": provider}
        if redirect_to:
            query["redirect_to"] = redirect_to
        return f"{self._client.url}/auth/v1/authorize?{urlencode(query)}"

    async def exchange_code_for_session(self, auth_code: str, code_verifier: str) -> Session:
        body = await self._client.request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "pkce"},
            json={"auth_code": auth_code, "code_verifier": code_verifier},
            access_token=self._client.anon_key,
        )
        session = self._session_from(body)
        if session is None:
            raise PlatformError("Authentication error: Code exchange returned no session")
        self._set_session(session, "SIGNED_IN")
        return session

    async def reset_password_for_email(self, email: str, redirect_to: str | None = None) -> None:
        params = {"redirect_to": redirect_to} if redirect_to else None
        await self._client.request(
            "POST", "/auth/v1/recover", params=params, json={"email": email},
            access_token=self._client.anon_key,
        )

    async def update_user(
        self, data: dict[str, Any] | None = None, password: str | None = None
    ) -> User:
        """Update user metadata and/or password."""
        session = await self.get_session()
        if session is None:
            raise PlatformError("Authentication error: No valid session found")
        payload: dict[str, Any] = {}
        if data is not None:
            payload["data"] = data
        if password is not None:
            payload["password"] = password
        body = await self._client.request(
            "PUT", "/auth/v1/user", json=payload, access_token=session.access_token
        )
        user = User.model_validate(body)
        self._set_session(session.model_copy(update={"user": user}), "USER_UPDATED")
        return user

    async def sign_out(self) -> None:
        session = self._session
        if session is not None:
            try:
                await self._client.request(
                    "POST", "/auth/v1/logout", access_token=session.access_token
                )
            finally:
                self._set_session(None, "SIGNED_OUT")


class TableQuery:
    """A PostgREST request, built fluently and sent with ``execute()``."""

    def __init__(self, client: PlatformClient, table: str):
        self._client = client
        self.table = table
        self._method = "GET"
        self._params: list[tuple[str, str]] = []
        self._body: Any = None
        self._headers: dict[str, str] = {}
        self._single = False

    def select(self, columns: str = "*") -> "TableQuery":
        self._params.append(("select", columns))
        return self

    def insert(self, rows: dict | list[dict]) -> "TableQuery":
        self._method = "POST"
        self._body = rows
        self._headers["Prefer"] = "return=representation"
        return self

    def update(self, values: dict) -> "TableQuery":
        self._method = "PATCH"
        self._body = values
        self._headers["Prefer"] = "return=representation"
        return self

    def eq(self, column: str, value: Any) -> "TableQuery":
        self._params.append((column, f"eq.{value}"))
        return self

    def gte(self, column: str, value: Any) -> "TableQuery":
        self._params.append((column, f"gte.{value}"))
        return self

    def lte(self, column: str, value: Any) -> "TableQuery":
        self._params.append((column, f"lte.{value}"))
        return self

    def order(self, column: str, ascending: bool = True) -> "TableQuery":
        self._params.append(("order", f"{column}.{'asc' if ascending else 'desc'}"))
        return self

    def range(self, start: int, end: int) -> "TableQuery":
        """Inclusive row range, as in ``range(0, 49)`` for the first 50 rows."""
        self._params.append(("offset", str(start)))
        self._params.append(("limit", str(end - start + 1)))
        return self

    def single(self) -> "TableQuery":
        """Expect exactly one row and return it as a dict."""
        self._single = True
        self._headers["Accept"] = "application/vnd.pgrst.object+json"
        return self

    async def execute(self) -> Any:
        return await self._client.request(
            self._method,
            f"/rest/v1/{self.table}",
            params=self._params or None,
            json=self._body,
            headers=self._headers or None,
        )


class StorageBucket:
    """Object storage for one bucket."""

    def __init__(self, client: PlatformClient, bucket: str):
        self._client = client
        self.bucket = bucket

    async def upload(self, path: str, data: bytes, content_type: str) -> dict[str, str]:
        """Upload ``data`` under ``path``. Returns {"path", "id"}."""
        body = await self._client.request(
            "POST",
            f"/storage/v1/object/{self.bucket}/{path}",
            content=data,
            headers={"Content-Type": content_type, "x-upsert": "false"},
        )
        body = body if isinstance(body, dict) else {}
        return {"path": path, "id": str(body.get("Id") or body.get("id") or "")}

    async def create_signed_url(self, path: str, expires_in: int = SIGNED_URL_TTL_SECONDS) -> str:
        """Time-limited read URL for ``path``."""
        body = await self._client.request(
            "POST",
            f"/storage/v1/object/sign/{self.bucket}/{path}",
            json={"expiresIn": expires_in},
        )
        signed = (body or {}).get("signedURL") or (body or {}).get("signedUrl")
        if not signed:
            raise PlatformError("Failed to create signed URL: empty response")
        if signed.startswith("http"):
            return signed
        return f"{self._client.url}/storage/v1{signed}"


class FunctionsClient:
    """Edge function invocation."""

    def __init__(self, client: PlatformClient):
        self._client = client

    async def invoke(self, name: str, body: dict[str, Any], access_token: str | None = None) -> Any:
        return await self._client.request(
            "POST", f"/functions/v1/{name}", json=body, access_token=access_token
        )

"""Shared test fixtures and helpers for supernanny tests."""

import asyncio
import json
import tempfile
import time
from pathlib import Path

import httpx
import pytest

from supernanny.cache import LocalStore, TimelineCache
from supernanny.errors import CaptureError
from supernanny.models import Session, User
from supernanny.platform import SESSION_STORAGE_KEY, PlatformClient

SUPABASE_URL = "https://test.supabase.co"
ANON_KEY = "anon-key"


# --- Fake platform ---


class FakePlatform:
    """Canned platform responses for ``httpx.MockTransport``.

    Routes are keyed by (method, path). A path ending in ``*`` matches any
    path with that prefix. Unrouted requests get a 404.
    """

    def __init__(self):
        self.routes = {}
        self.requests: list[httpx.Request] = []

    def on(self, method, path, status=200, json=None, handler=None):
        if handler is None:
            def handler(request, status=status, body=json):
                return httpx.Response(status, json=body)
        self.routes[(method, path)] = handler

    def _find(self, request):
        exact = self.routes.get((request.method, request.url.path))
        if exact is not None:
            return exact
        for (method, path), handler in self.routes.items():
            if method == request.method and path.endswith("*") and request.url.path.startswith(path[:-1]):
                return handler
        return None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self._find(request)
        if handler is None:
            return httpx.Response(404, json={"message": f"No route for {request.method} {request.url.path}"})
        return handler(request)

    def calls(self, method, path_prefix):
        return [
            r for r in self.requests
            if r.method == method and r.url.path.startswith(path_prefix)
        ]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


def request_json(request: httpx.Request):
    return json.loads(request.content)


def make_user(user_id="user-1", email="parent@example.com", user_metadata=None, app_metadata=None) -> User:
    return User(
        id=user_id,
        email=email,
        user_metadata=user_metadata or {},
        app_metadata=app_metadata or {},
    )


def make_session(access_token="access-1", refresh_token="refresh-1", expires_at=None, **user_kwargs) -> Session:
    if expires_at is None:
        expires_at = int(time.time()) + 3600
    return Session(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=expires_at,
        user=make_user(**user_kwargs),
    )


def token_body(access_token="access-2", **user_kwargs) -> dict:
    """Body of a successful /auth/v1/token response."""
    return {
        "access_token": access_token,
        "refresh_token": "refresh-2",
        "token_type": "bearer",
        "expires_in": 3600,
        "user": make_user(**user_kwargs).model_dump(),
    }


def store_session(store: LocalStore, session: Session) -> None:
    store.set(SESSION_STORAGE_KEY, session.model_dump_json())


TWO_EVENTS = {
    "success": True,
    "transcription": "She had 120 ml at 10 a.m. and then napped for 80 minutes.",
    "events": [
        {
            "id": "e1",
            "event_type": "feeding",
            "event_time": "10 a.m.",
            "metrics": {"amount": 120, "unit": "ml"},
            "text_snippet": "She had 120 ml at 10 a.m.",
            "confidence_score": 92,
        },
        {
            "id": "e2",
            "event_type": "sleep",
            "metrics": {"duration": 80},
            "confidence_score": 85,
        },
    ],
}


def route_happy_path(platform, transcription=TWO_EVENTS):
    """Route every call a successful recording makes, for a member of tenant-1."""
    platform.on("GET", "/auth/v1/user", json={"id": "user-1", "email": "parent@example.com"})
    platform.on("GET", "/rest/v1/users_to_tenants", json={"tenant_id": "tenant-1"})
    platform.on("POST", "/storage/v1/object/sign/voice-recordings/*", json={
        "signedURL": "/object/sign/voice-recordings/tenant-1/note.webm?token=abc",
    })
    platform.on("POST", "/storage/v1/object/voice-recordings/*", json={
        "Id": "file-1", "Key": "voice-recordings/tenant-1/note.webm",
    })
    platform.on("POST", "/functions/v1/transcribe-audio", json=transcription)


# --- Fake capture ---


class FakeAudioSource:
    """Delivers fixed chunks on start; can be told to fail like a denied microphone."""

    def __init__(self, chunks=(b"audio-", b"bytes"), fail=False):
        self.chunks = chunks
        self.fail = fail
        self.started = False
        self.stopped = False
        self.released = 0

    async def start(self, on_chunk):
        if self.fail:
            raise CaptureError("Could not access microphone: permission denied")
        self.started = True
        for chunk in self.chunks:
            on_chunk(chunk)

    async def stop(self):
        self.stopped = True

    def release(self):
        self.released += 1


class FakeProcessor:
    """Records calls and returns a canned result, optionally after a delay."""

    def __init__(self, result=None, delay=0.0, error=None):
        self.result = result
        self.delay = delay
        self.error = error
        self.calls = []

    async def process_recording(self, audio, duration):
        self.calls.append((audio, duration))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


# --- Fixtures ---


@pytest.fixture
def temp_home():
    """Provide a temporary supernanny home directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def store(temp_home):
    """Provide a LocalStore in the temp home, closed after the test."""
    local = LocalStore(temp_home / "supernanny.db")
    yield local
    local.close()


@pytest.fixture
def cache(store):
    return TimelineCache(store)


@pytest.fixture
def platform():
    return FakePlatform()


@pytest.fixture
def client(platform, store):
    """Provide a PlatformClient wired to the fake platform, signed out."""
    c = PlatformClient(SUPABASE_URL, ANON_KEY, storage=store, transport=platform.transport())
    yield c
    asyncio.run(c.aclose())


@pytest.fixture
def signed_in_client(platform, store):
    """Provide a PlatformClient with a valid stored session for user-1."""
    store_session(store, make_session())
    c = PlatformClient(SUPABASE_URL, ANON_KEY, storage=store, transport=platform.transport())
    yield c
    asyncio.run(c.aclose())

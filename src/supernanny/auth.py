"""Application-wide session state.

``AuthState`` is built once at startup around the platform's auth client and
handed to whatever needs the current user. It tracks the latest session
reported by the platform; the most recent change wins.
"""

from __future__ import annotations

import logging
from typing import Callable

from .constants import (
    LOGIN_ROUTE,
    ONBOARDING_ROUTE,
    PUBLIC_ROUTE_PREFIXES,
    TIMELINE_ROUTE,
)
from .errors import AuthenticationError, PlatformError
from .models import Session, User
from .platform import AuthClient, Subscription

logger = logging.getLogger(__name__)

Listener = Callable[["AuthState"], None]


def is_public_route(path: str) -> bool:
    return path == "/" or path.startswith(PUBLIC_ROUTE_PREFIXES)


def route_for(path: str, session: Session | None) -> str | None:
    """Decide where a request for ``path`` should go.

    Returns a redirect target, or None to let the request through.

    - Signed out, private route: the login page.
    - Signed in, on login/signup: onboarding if unfinished, else the timeline.
    """
    if session is None:
        return None if is_public_route(path) else LOGIN_ROUTE

    if path.startswith(("/auth/login", "/auth/signup")):
        if not session.user.onboarding_completed:
            return ONBOARDING_ROUTE
        return TIMELINE_ROUTE

    return None


class AuthState:
    """Current session plus sign-in/out actions."""

    def __init__(self, auth: AuthClient, redirect_origin: str = "http://localhost:3000"):
        self._auth = auth
        self.redirect_origin = redirect_origin.rstrip("/")
        self.session: Session | None = None
        self.is_loading = True
        self._listeners: list[Listener] = []
        self._subscription: Subscription | None = auth.on_auth_state_change(self._on_change)

    async def initialize(self) -> Session | None:
        """Load the initial session. Errors are logged, leaving the state signed out."""
        try:
            session = await self._auth.get_session()
        except PlatformError as e:
            logger.error(f"Error getting session: {e}")
            session = None
        self._apply(session)
        return session

    def _on_change(self, event: str, session: Session | None) -> None:
        logger.debug(f"Auth state change: {event}")
        self._apply(session)

    def _apply(self, session: Session | None) -> None:
        self.session = session
        self.is_loading = False
        for listener in list(self._listeners):
            listener(self)

    @property
    def user(self) -> User | None:
        return self.session.user if self.session else None

    @property
    def is_authenticated(self) -> bool:
        return self.session is not None

    @property
    def needs_onboarding(self) -> bool:
        return self.user is not None and not self.user.onboarding_completed

    def has_role(self, *roles: str) -> bool:
        """True if the signed-in user holds any of ``roles``."""
        if self.user is None:
            return False
        return any(role in self.user.roles for role in roles)

    def require_session(self) -> Session:
        if self.session is None:
            raise AuthenticationError("Authentication error: You must be logged in")
        return self.session

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener`` on every session change. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # --- actions (platform errors propagate to the caller) ---

    async def sign_in(self, email: str, password: str) -> Session:
        return await self._auth.sign_in_with_password(email, password)

    async def sign_up(self, email: str, password: str) -> Session | None:
        return await self._auth.sign_up(email, password, data={"onboarding_completed": False})

    async def sign_in_with_magic_link(self, email: str) -> None:
        await self._auth.sign_in_with_otp(email, redirect_to=f"{self.redirect_origin}/auth/callback")

    def sign_in_with_oauth(self, provider: str) -> str:
        """URL to open for an OAuth sign-in (``google`` or ``apple``)."""
        return self._auth.oauth_url(
            provider,
            redirect_to=f"{self.redirect_origin}/auth/callback?needsOnboarding=true",
        )

    async def complete_onboarding(self) -> User:
        return await self._auth.update_user(data={"onboarding_completed": True})

    async def sign_out(self) -> None:
        await self._auth.sign_out()

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
        self._listeners.clear()

"""Application wiring.

Everything that holds state is built here once and passed down explicitly.
"""

from __future__ import annotations

import logging
import sys
from typing import Callable

import httpx

from .auth import AuthState
from .cache import LocalStore, NewEventHighlighter, TimelineCache
from .config import Settings
from .family import FamilyService
from .processing import AudioProcessingService
from .recording import AudioSource, RecordingSession
from .platform import PlatformClient


def setup_logging(settings: Settings) -> None:
    """Log to <home>/supernanny.log and stderr."""
    settings.home.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.FileHandler(settings.log_file),
            logging.StreamHandler(sys.stderr),
        ],
    )


class App:
    """The long-lived components of one running client."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings
        url, anon_key = settings.require_platform()
        self.store = LocalStore(settings.db_path)
        self.cache = TimelineCache(self.store)
        self.highlighter = NewEventHighlighter()
        self.client = PlatformClient(url, anon_key, storage=self.store, transport=transport)
        self.auth = AuthState(self.client.auth)
        self.family = FamilyService(self.client)
        self.processing = AudioProcessingService(
            self.client,
            self.cache,
            bucket=settings.storage_bucket,
            tz=settings.tz,
            on_new_events=self.highlighter.track,
        )

    def recording_session(self, source_factory: Callable[[], AudioSource]) -> RecordingSession:
        return RecordingSession(
            self.processing,
            source_factory,
            processing_timeout=self.settings.processing_timeout,
            max_duration=self.settings.max_recording_seconds,
        )

    async def aclose(self) -> None:
        self.highlighter.cancel_all()
        self.auth.close()
        await self.client.aclose()
        self.store.close()

"""Audio processing pipeline.

Takes a finished recording through: session check, tenant lookup, upload to
storage, a short-lived signed URL, and the transcription function. Extracted
events are merged into the local timeline cache for immediate display.
"""

import logging
from datetime import datetime, timezone, tzinfo
from typing import Callable

from pydantic import ValidationError

from .cache import TimelineCache
from .constants import (
    AUDIO_CONTENT_TYPE,
    AUDIO_FILE_EXTENSION,
    AUDIO_FILE_TTL_HOURS,
    SIGNED_URL_TTL_SECONDS,
    STORAGE_BUCKET,
    TIMELINE_PAGE_SIZE,
    TRANSCRIBE_FUNCTION,
)
from .describe import to_display_event
from .errors import (
    AuthenticationError,
    PlatformError,
    SuperNannyError,
    TranscriptionError,
    UploadError,
)
from .family import resolve_tenant_id
from .models import DisplayTimelineEvent, StoredEvent, TranscriptionResult, generate_id
from .platform import PlatformClient
from .timeutil import to_iso

logger = logging.getLogger(__name__)

# Substring in the error message -> pipeline stage it came from
FAILED_STEPS = (
    ("Authentication", "authentication"),
    ("Tenant", "tenant-lookup"),
    ("upload", "audio-upload"),
    ("Transcription", "transcription"),
    ("Event save", "event-save"),
)


def classify_failed_step(message: str) -> str:
    """Best-effort guess at which pipeline stage produced ``message``."""
    for needle, step in FAILED_STEPS:
        if needle in message:
            return step
    return "unknown"


NewEventsCallback = Callable[[list[DisplayTimelineEvent]], None]


class AudioProcessingService:
    """Uploads recordings and turns them into timeline events."""

    def __init__(
        self,
        client: PlatformClient,
        cache: TimelineCache,
        bucket: str = STORAGE_BUCKET,
        tz: tzinfo = timezone.utc,
        on_new_events: NewEventsCallback | None = None,
    ):
        self.client = client
        self.cache = cache
        self.bucket = bucket
        self.tz = tz
        self.on_new_events = on_new_events

    async def _upload(self, audio: bytes, tenant_id: str) -> tuple[str, str]:
        path = f"{tenant_id}/{generate_id()}.{AUDIO_FILE_EXTENSION}"
        logger.info(f"Uploading audio file to storage: {path} ({len(audio)} bytes)")
        try:
            uploaded = await self.client.storage(self.bucket).upload(path, audio, AUDIO_CONTENT_TYPE)
        except PlatformError as e:
            raise UploadError(f"Audio upload error: {e.message}") from e
        return uploaded["path"], uploaded["id"]

    async def _signed_url(self, path: str) -> str:
        try:
            return await self.client.storage(self.bucket).create_signed_url(
                path, expires_in=SIGNED_URL_TTL_SECONDS
            )
        except PlatformError as e:
            raise UploadError(f"Signed URL for upload failed: {e.message}") from e

    async def _transcribe(
        self, signed_url: str, file_id: str, duration: int, access_token: str
    ) -> TranscriptionResult:
        logger.info("Invoking transcribe-audio function")
        try:
            body = await self.client.functions.invoke(
                TRANSCRIBE_FUNCTION,
                {"audioUrl": signed_url, "fileId": file_id, "duration": duration},
                access_token=access_token,
            )
        except PlatformError as e:
            raise TranscriptionError(f"Transcription error: {e.message}") from e
        if not isinstance(body, dict):
            raise TranscriptionError("Transcription error: unexpected response from function")
        try:
            return TranscriptionResult.model_validate(body)
        except ValidationError as e:
            raise TranscriptionError(
                f"Transcription error: unexpected response from function ({e.error_count()} invalid field(s))"
            ) from e

    def _cache_events(self, result: TranscriptionResult) -> TranscriptionResult:
        now = datetime.now(timezone.utc)
        display = [to_display_event(e, now=now, tz=self.tz) for e in result.events]
        self.cache.merge(display)

        if self.on_new_events is not None:
            self.on_new_events(display)

        # Carry generated display ids back so callers can refer to the events.
        events = [
            e if e.id else e.model_copy(update={"id": d.id})
            for e, d in zip(result.events, display)
        ]
        return result.model_copy(update={"events": events})

    async def process_recording(self, audio: bytes, duration: int) -> TranscriptionResult:
        """Run a recording through the pipeline.

        Never raises for platform trouble: every failure comes back as an
        unsuccessful result with ``error`` and a ``failed_step`` guess.
        """
        logger.info(f"Starting audio processing: {duration}s, {len(audio)} bytes")

        session = await self.client.auth.get_session()
        if session is None:
            logger.error("User is not authenticated")
            return TranscriptionResult.failure(
                "Authentication error: You must be logged in to process recordings",
                "authentication",
            )

        try:
            try:
                user = await self.client.auth.get_user()
            except PlatformError as e:
                raise AuthenticationError(f"Authentication error: {e.message}") from e
            if user is None:
                raise AuthenticationError("Authentication error: No authenticated user found")

            tenant_id = await resolve_tenant_id(self.client, user)
            path, file_id = await self._upload(audio, tenant_id)
            signed_url = await self._signed_url(path)
            result = await self._transcribe(signed_url, file_id, duration, session.access_token)
        except SuperNannyError as e:
            message = str(e)
            step = classify_failed_step(message)
            logger.error(f"Audio processing failed at step: {step}: {message}")
            return TranscriptionResult.failure(f"Audio processing failed: {message}", step)

        if not result.success:
            error = result.error or "Failed to process recording"
            step = result.failed_step or classify_failed_step(error)
            logger.error(f"Transcription function reported failure at step {step}: {error}")
            return result.model_copy(update={"error": error, "failed_step": step, "events": []})

        logger.info(f"Transcription completed with {len(result.events)} events")
        if result.events:
            result = self._cache_events(result)
        return result

    async def set_audio_file_ttl(self, file_id: str, ttl_hours: int = AUDIO_FILE_TTL_HOURS) -> bool:
        """Ask the database to expire an uploaded recording. Failures are only logged."""
        try:
            await self.client.rpc("set_audio_file_ttl", {"file_id": file_id, "ttl_hours": ttl_hours})
        except PlatformError as e:
            logger.error(f"Error setting audio file TTL: {e}")
            return False
        return True

    async def fetch_timeline_events(
        self, start: datetime, end: datetime, offset: int = 0
    ) -> list[StoredEvent]:
        """Persisted events with ``start <= start_time <= end``, newest first, one page.

        Raises:
            AuthenticationError: If nobody is signed in
            PlatformError: If the query fails
        """
        if await self.client.auth.get_session() is None:
            raise AuthenticationError("Authentication required")

        rows = await (
            self.client.table("events")
            .select("*, diary_entries(raw_text)")
            .gte("start_time", to_iso(start))
            .lte("start_time", to_iso(end))
            .order("start_time", ascending=False)
            .range(offset, offset + TIMELINE_PAGE_SIZE - 1)
            .execute()
        )
        events = []
        for row in rows or []:
            try:
                events.append(StoredEvent.model_validate(row))
            except ValidationError as e:
                logger.warning(f"Skipping malformed event row: {e}")
        return events

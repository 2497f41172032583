"""Voice capture lifecycle.

A ``RecordingSession`` moves through idle -> recording -> processing ->
completion, falling back to idle with ``processing_error`` set when the
pipeline fails or the watchdog fires. One capture at a time per session.

All timers (duration tick, max-duration stop, processing watchdog) belong to
the session and are cancelled whenever the state they serve is left.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from pathlib import Path
from typing import Callable, Protocol

from .constants import (
    DURATION_TICK_SECONDS,
    PROCESSING_TIMEOUT_MESSAGE,
    PROCESSING_TIMEOUT_SECONDS,
)
from .errors import CaptureError
from .models import TranscriptionResult
from .timeutil import format_duration

logger = logging.getLogger(__name__)


class RecordingState(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    PROCESSING = "processing"
    COMPLETION = "completion"


class AudioSource(Protocol):
    """Microphone-like source that pushes audio chunks while open."""

    async def start(self, on_chunk: Callable[[bytes], None]) -> None:
        """Begin capture. Raises CaptureError if the device is unavailable."""

    async def stop(self) -> None:
        """Stop capture, delivering any buffered audio first."""

    def release(self) -> None:
        """Free the device. Safe to call more than once."""


class Processor(Protocol):
    async def process_recording(self, audio: bytes, duration: int) -> TranscriptionResult: ...


class FileAudioSource:
    """Plays a pre-recorded file as if it were being captured live."""

    def __init__(self, path: Path, chunk_size: int = 16384, interval: float = 0.25):
        self.path = Path(path)
        self.chunk_size = chunk_size
        self.interval = interval
        self._file = None
        self._task: asyncio.Task | None = None
        self._on_chunk: Callable[[bytes], None] | None = None

    async def start(self, on_chunk: Callable[[bytes], None]) -> None:
        try:
            self._file = self.path.open("rb")
        except OSError as e:
            raise CaptureError(f"Could not access audio input {self.path}: {e}") from e
        self._on_chunk = on_chunk
        self._task = asyncio.create_task(self._pump())

    async def _pump(self) -> None:
        while self._file is not None:
            chunk = self._file.read(self.chunk_size)
            if not chunk:
                return
            self._on_chunk(chunk)
            await asyncio.sleep(self.interval)

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._file is not None and self._on_chunk is not None:
            rest = self._file.read()
            if rest:
                self._on_chunk(rest)

    def release(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None


Listener = Callable[["RecordingSession"], None]


class RecordingSession:
    """State machine for one capture UI."""

    def __init__(
        self,
        processor: Processor,
        source_factory: Callable[[], AudioSource],
        processing_timeout: float = PROCESSING_TIMEOUT_SECONDS,
        max_duration: int | None = None,
        tick: float = DURATION_TICK_SECONDS,
    ):
        self._processor = processor
        self._source_factory = source_factory
        self.processing_timeout = processing_timeout
        self.max_duration = max_duration
        self.tick = tick

        self.state = RecordingState.IDLE
        self.duration = 0
        self.processing_error: str | None = None
        self.last_event_ids: list[str] = []
        self.last_result: TranscriptionResult | None = None

        self._source: AudioSource | None = None
        self._chunks: list[bytes] = []
        self._tick_handle: asyncio.TimerHandle | None = None
        self._watchdog: asyncio.TimerHandle | None = None
        self._pipeline: asyncio.Task | None = None
        self._auto_stop: asyncio.Task | None = None
        self._generation = 0
        self._settled = asyncio.Event()
        self._settled.set()
        self._listeners: list[Listener] = []

    # --- observation ---

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener`` on state changes and duration ticks."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self)

    @property
    def formatted_duration(self) -> str:
        return format_duration(self.duration)

    # --- transitions ---

    def _set_state(self, new: RecordingState) -> None:
        old = self.state
        if old is RecordingState.RECORDING and new is not RecordingState.RECORDING:
            self._cancel_tick()
        if old is RecordingState.PROCESSING and new is not RecordingState.PROCESSING:
            self._cancel_watchdog()

        self.state = new
        if new is RecordingState.PROCESSING:
            self._settled.clear()
        else:
            self._settled.set()
        if new is RecordingState.IDLE:
            self.duration = 0

        logger.debug(f"Recording state {old.value} -> {new.value}")
        self._notify()

    def _fail(self, message: str) -> None:
        logger.error(f"Recording failed: {message}")
        self.processing_error = message
        self._set_state(RecordingState.IDLE)

    # --- timers ---

    def _schedule_tick(self) -> None:
        loop = asyncio.get_running_loop()
        self._tick_handle = loop.call_later(self.tick, self._on_tick)

    def _on_tick(self) -> None:
        self._tick_handle = None
        if self.state is not RecordingState.RECORDING:
            return
        self.duration += 1
        self._notify()
        if self.max_duration is not None and self.duration >= self.max_duration:
            logger.info(f"Max recording duration {self.max_duration}s reached, stopping")
            self._auto_stop = asyncio.create_task(self.stop())
            return
        self._schedule_tick()

    def _cancel_tick(self) -> None:
        if self._tick_handle is not None:
            self._tick_handle.cancel()
            self._tick_handle = None

    def _on_watchdog(self, generation: int) -> None:
        self._watchdog = None
        if generation != self._generation or self.state is not RecordingState.PROCESSING:
            return
        logger.error("Processing timeout - falling back to idle state")
        # Any result still in flight belongs to an abandoned generation.
        self._generation += 1
        self._fail(PROCESSING_TIMEOUT_MESSAGE)

    def _cancel_watchdog(self) -> None:
        if self._watchdog is not None:
            self._watchdog.cancel()
            self._watchdog = None

    def _release_source(self) -> None:
        if self._source is not None:
            self._source.release()
            self._source = None

    # --- actions ---

    async def start(self) -> bool:
        """Begin a capture.

        Only valid from idle. Ignored (returns False) while recording,
        processing, or showing a completion that has not been reset.
        """
        if self.state is not RecordingState.IDLE:
            logger.warning(f"Ignoring start while {self.state.value}")
            return False

        self.processing_error = None
        self.duration = 0
        self._chunks = []
        source = self._source_factory()
        self._source = source
        self._set_state(RecordingState.RECORDING)

        try:
            await source.start(self._chunks.append)
        except CaptureError as e:
            if self._source is source:
                self._release_source()
                self._fail(str(e) or "Could not access microphone")
            else:
                source.release()
            return False

        if self._source is not source or self.state is not RecordingState.RECORDING:
            # Reset or closed while the device was opening.
            source.release()
            return False

        self._schedule_tick()
        return True

    async def stop(self) -> bool:
        """Finish capture and hand the audio to the processor.

        Returns immediately after processing starts; use ``wait()`` to block
        until the session leaves processing.
        """
        if self.state is not RecordingState.RECORDING:
            logger.debug(f"Ignoring stop while {self.state.value}")
            return False

        duration = self.duration
        source = self._source
        self._set_state(RecordingState.PROCESSING)

        try:
            if source is not None:
                await source.stop()
        except CaptureError as e:
            self._release_source()
            self._fail(str(e))
            return False
        self._release_source()

        audio = b"".join(self._chunks)
        self._chunks = []

        self._generation += 1
        generation = self._generation
        loop = asyncio.get_running_loop()
        self._watchdog = loop.call_later(self.processing_timeout, self._on_watchdog, generation)
        self._pipeline = asyncio.create_task(self._run_pipeline(audio, duration, generation))
        return True

    async def _run_pipeline(self, audio: bytes, duration: int, generation: int) -> None:
        try:
            result = await self._processor.process_recording(audio, duration)
        except Exception as e:
            if generation == self._generation and self.state is RecordingState.PROCESSING:
                logger.exception("Error processing recording")
                self._fail(str(e) or "Unknown error occurred")
            return

        if generation != self._generation or self.state is not RecordingState.PROCESSING:
            logger.warning("Ignoring processing result that arrived after the session moved on")
            return

        self.last_result = result
        if result.success and result.event_ids:
            self.last_event_ids = result.event_ids
            self._set_state(RecordingState.COMPLETION)
        elif result.success:
            self._fail("No events were found in the recording")
        else:
            self._fail(result.error or "Failed to process recording")

    async def wait(self) -> RecordingState:
        """Block until processing finishes or times out; return the new state."""
        await self._settled.wait()
        return self.state

    def reset(self) -> None:
        """Back to idle, dropping any capture, pending result and error."""
        self._cancel_tick()
        self._cancel_watchdog()
        self._release_source()
        self._chunks = []
        self._generation += 1
        self.last_event_ids = []
        self.last_result = None
        self.processing_error = None
        self._set_state(RecordingState.IDLE)

    def close(self) -> None:
        """Tear down: stop timers, free the microphone, abandon the pipeline."""
        self._cancel_tick()
        self._cancel_watchdog()
        self._release_source()
        self._generation += 1
        for task in (self._pipeline, self._auto_stop):
            if task is not None and not task.done():
                task.cancel()
        self._pipeline = None
        self._auto_stop = None
        self._listeners.clear()
        self.state = RecordingState.IDLE
        self._settled.set()

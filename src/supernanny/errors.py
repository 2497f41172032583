"""Exception types raised by supernanny.

Messages are user-facing: the processing pipeline classifies failures by
substring-matching them (see ``processing.classify_failed_step``), so the
stage names in the default messages matter.
"""

from __future__ import annotations


class SuperNannyError(Exception):
    """Base class for all supernanny errors."""


class ConfigError(SuperNannyError):
    """Missing or invalid configuration."""


class PlatformError(SuperNannyError):
    """A hosted platform call (auth, table, storage, function) failed."""

    def __init__(self, message: str, status: int | None = None, code: str | None = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code


class AuthenticationError(SuperNannyError):
    """No valid session for an operation that requires one."""


class TenantNotFoundError(SuperNannyError):
    """Authenticated user has no resolvable tenant."""

    def __init__(self, message: str = "Tenant lookup failed: User tenant not found"):
        super().__init__(message)


class UploadError(SuperNannyError):
    """Audio upload or signed-URL creation failed."""


class CaptureError(SuperNannyError):
    """The audio source could not be opened or read."""


class TranscriptionError(SuperNannyError):
    """The transcription function returned non-success or could not be reached."""

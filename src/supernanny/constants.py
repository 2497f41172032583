"""Shared constants for supernanny."""

# --- Recording lifecycle ---
PROCESSING_TIMEOUT_SECONDS = 30.0
MAX_RECORDING_SECONDS = 120
DURATION_TICK_SECONDS = 1.0
PROCESSING_TIMEOUT_MESSAGE = "Processing timeout - please try again"

# --- Timeline cache ---
TIMELINE_CACHE_KEY = "timelineEvents"
NEW_EVENT_HIGHLIGHT_SECONDS = 2.0
TIMELINE_PAGE_SIZE = 50

# --- Storage ---
STORAGE_BUCKET = "voice-recordings"
AUDIO_CONTENT_TYPE = "audio/webm"
AUDIO_FILE_EXTENSION = "webm"
SIGNED_URL_TTL_SECONDS = 60
AUDIO_FILE_TTL_HOURS = 24

# --- Edge functions ---
TRANSCRIBE_FUNCTION = "transcribe-audio"
INVITE_FUNCTION = "invite-partner"

# --- Family ---
INVITATION_ROLES = ("parent", "caregiver", "family")

# --- Description defaults ---
DEFAULT_FEEDING_UNIT = "ml"
MINUTES_PER_HOUR = 60

# --- Routing ---
PUBLIC_ROUTE_PREFIXES = ("/auth", "/_next", "/api/auth")
LOGIN_ROUTE = "/auth/login"
ONBOARDING_ROUTE = "/onboarding"
TIMELINE_ROUTE = "/timeline"

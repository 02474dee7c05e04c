"""Exception hierarchy for SpeedTracker.

All exceptions inherit from SpeedTrackerError so callers can catch broadly
or narrowly as needed.
"""


class SpeedTrackerError(Exception):
    """Base exception for all SpeedTracker errors."""


# ---------------------------------------------------------------------------
# Admission
# ---------------------------------------------------------------------------

class Blocked(SpeedTrackerError):
    """Caller identity is on the block list."""

    def __init__(self, user: str):
        self.user = user
        super().__init__(f"Request blocked for user {user}")


class InvalidKey(SpeedTrackerError):
    """Requested key does not match the key stored in the profile."""


class AlreadyRunning(SpeedTrackerError):
    """A job for the same target and profile is already in flight."""

    def __init__(self, slug: str, profile_name: str):
        self.slug = slug
        self.profile_name = profile_name
        super().__init__(f"A test for {slug} ({profile_name}) is already running")


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class ProfileUnavailable(SpeedTrackerError):
    """Profile could not be fetched or parsed."""


class MeasurementError(SpeedTrackerError):
    """Measurement provider failure."""


class MeasurementTimeout(MeasurementError):
    """Measurement did not complete within the configured bound."""


class MeasurementFailed(MeasurementError):
    """Measurement provider returned an error."""


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

class StoreUnavailable(SpeedTrackerError):
    """The result store could not accept or serve a request."""


class SchemaInitError(StoreUnavailable):
    """Failed to initialize database schema."""


# ---------------------------------------------------------------------------
# Remote gateway
# ---------------------------------------------------------------------------

class GatewayError(SpeedTrackerError):
    """Failed call to the code-hosting API."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class GatewayNotFound(GatewayError):
    """Requested resource does not exist."""


class GatewayUnauthorized(GatewayError):
    """Token missing, invalid or lacking permission."""


class GatewayRateLimited(GatewayError):
    """Hit API rate limit."""


class GatewayNetworkError(GatewayError):
    """Network-level failure reaching the API."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ConfigError(SpeedTrackerError):
    """Invalid or missing configuration."""

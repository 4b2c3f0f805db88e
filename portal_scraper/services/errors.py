"""Exception taxonomy for the extraction engine.

Only ``AuthError`` and ``RequestValidationError`` fail a run. Everything else
is caught at the strategy or artifact boundary, logged, and degrades to
"zero rows for this category".
"""


class PortalError(Exception):
    """Base class for errors talking to the portal."""


class AuthError(PortalError):
    """Login was rejected. Fatal for the run, never retried."""

    MESSAGES = {
        "invalid_credentials": "Invalid credentials. Please check your portal username and password.",
        "blocked": "Account locked due to too many failed login attempts. Try again in 20 minutes.",
        "paused": "Portal account is paused. Contact portal support.",
        "no_session": "Login did not establish a session (no cookies were issued).",
    }

    def __init__(self, reason: str, message: str = None):
        self.reason = reason
        self.message = message or self.MESSAGES.get(reason, f"Login failed: {reason}")
        super().__init__(self.message)


class TransientNetworkError(PortalError):
    """Timeout, connection failure or unusable status on a single attempt."""


class TooManyRedirects(TransientNetworkError):
    pass


class ParseError(PortalError):
    """The portal answered with a payload of unexpected shape."""


class SessionExpiredError(PortalError):
    """AJAX call was bounced to the login page (soft authentication failure)."""


class UploadError(PortalError):
    """Object store write failed."""


class RequestValidationError(ValueError):
    """Malformed invocation body."""


class DeadlineExceeded(Exception):
    """Run budget is spent; checkpoint and hand off to a continuation."""

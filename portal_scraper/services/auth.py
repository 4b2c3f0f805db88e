from typing import Optional
import logging

from ..models.records import PortalCredentials
from .errors import AuthError
from .page_parser import PortalPageParser, ANTIFORGERY_FIELD
from .session_client import SessionClient

logger = logging.getLogger(__name__)

ENTRY_PATH = "/Account"
LOGIN_PATH = "/Account/Login/DoLogin"
HOME_PATH = "/"

# Literal bodies DoLogin answers with on success
SUCCESS_BODIES = ("singlelocation", "sysadmin")


def classify_login_response(body: str) -> Optional[str]:
    """Return the failure reason for a DoLogin body, or None on success."""
    normalized = (body or "").strip().strip('"\'').strip().lower()
    if "invalidcredentials" in normalized:
        return "invalid_credentials"
    if normalized == "blocked":
        return "blocked"
    if normalized == "paused":
        return "paused"
    return None


class AuthenticationStage:
    """Log in the way the portal's own login page does."""

    def __init__(self, client: SessionClient, parser: Optional[PortalPageParser] = None, log=None):
        self.client = client
        self.parser = parser or PortalPageParser()
        self.log = log

    def _note(self, line: str):
        if self.log is not None:
            self.log.add(line)
        else:
            logger.info(line)

    async def login(self, credentials: PortalCredentials) -> None:
        """Authenticate the session. Raises AuthError on rejection."""
        # Anonymous entry page hands out the session and anti-forgery cookies
        entry = await self.client.get(ENTRY_PATH)
        form = {
            "userName": credentials.username,
            "password": credentials.password,
        }
        token = self.parser.antiforgery_token(entry.body)
        if token:
            form[ANTIFORGERY_FIELD] = token

        response = await self.client.ajax("POST", LOGIN_PATH, data=form)
        body = response.body
        logger.info(f"DoLogin status: {response.status} response: {body[:200]!r}")

        reason = classify_login_response(body)
        if reason:
            error = AuthError(reason)
            self._note(f"LOGIN ERROR: {error.message}")
            raise error

        if not self.client.state.cookies:
            error = AuthError("no_session")
            self._note(f"LOGIN ERROR: {error.message}")
            raise error

        normalized = body.strip().strip('"\'').lower()
        if normalized not in SUCCESS_BODIES and "location" in body.lower():
            self._note("MULTI-LOCATION account detected. The default location will be used.")

        await self._load_practice_context()
        self._note(f"Login successful. Response: {body.strip()[:100]!r}")

    async def _load_practice_context(self):
        """Read the practice identifier off the authenticated home page."""
        try:
            home = await self.client.get(HOME_PATH)
        except Exception as e:
            logger.warning(f"Could not load home page after login: {e}")
            return
        practice_id = self.parser.practice_id(home.body)
        if practice_id:
            self.client.state.practice_id = practice_id
            self._note(f"Practice id: {practice_id}")

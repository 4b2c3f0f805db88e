import pytest
import os
import sys
import tempfile
from pathlib import Path
from types import SimpleNamespace
from urllib.parse import urlparse
from fastapi.testclient import TestClient
from requests.structures import CaseInsensitiveDict

# Set test environment variables before importing the app
os.environ.setdefault("JOB_STORE_BACKEND", "memory")
os.environ.setdefault("CONTINUATION_MODE", "local")
os.environ.setdefault("STORAGE_DIR", tempfile.mkdtemp(prefix="portal_scraper_test_"))

# Add project root to Python path to allow importing 'portal_scraper'
sys.path.append(str(Path(__file__).parent.parent))

from portal_scraper.config import Settings
from portal_scraper.models.records import PortalCredentials
from portal_scraper.services.continuation import ContinuationQueue
from portal_scraper.services.job_store import InMemoryJobStore
from portal_scraper.services.object_store import LocalObjectStore
from portal_scraper.services.portal_endpoints import EndpointCatalog
from portal_scraper.services.progress import RunLog
from portal_scraper.services.session_client import SessionClient
from portal_scraper.services.strategies.base import Deadline, ExtractionContext, Pacing

BASE_URL = "https://portal.test"

LOGIN_PAGE = """
<html><body>
<form id="loginForm" action="/Account/Login/DoLogin" method="post">
  <input name="__RequestVerificationToken" type="hidden" value="csrf-token-123" />
  <input id="txtLoginUserName" name="userName" type="text" />
  <input id="txtLoginPassword" name="password" type="password" />
  <button onclick="Login()">Sign in</button>
</form>
</body></html>
"""

HOME_PAGE = """
<html><body>
<input type="hidden" id="hdnPracticeId" name="hdnPracticeId" value="4711" />
<div id="dashboard">Welcome</div>
</body></html>
"""


def reply(status=200, body="", headers=None, cookies=None, content=None):
    """Canned portal response."""
    return {
        "status": status,
        "body": body,
        "headers": headers or {},
        "cookies": cookies or {},
        "content": content,
    }


class FakePortal:
    """Stands in for ``requests.Session``; routes (method, path) to canned replies.

    A route holding several replies serves them in order and then keeps
    repeating the last one. Unknown routes answer 404.
    """

    def __init__(self):
        self.routes = {}
        self.calls = []

    def on(self, method, path, *replies):
        self.routes[(method.upper(), path)] = list(replies)
        return self

    def request(self, method, url, params=None, data=None, headers=None, allow_redirects=False, timeout=None):
        path = urlparse(url).path or "/"
        self.calls.append(SimpleNamespace(method=method.upper(), path=path, params=params, data=data, headers=headers or {}))
        queue = self.routes.get((method.upper(), path))
        if not queue:
            route = reply(404, "Not Found")
        elif len(queue) > 1:
            route = queue.pop(0)
        else:
            route = queue[0]
        if isinstance(route, Exception):
            raise route
        body = route["body"]
        content = route["content"] if route["content"] is not None else body.encode()
        return SimpleNamespace(
            status_code=route["status"],
            text=body,
            content=content,
            headers=CaseInsensitiveDict(route["headers"]),
            cookies=dict(route["cookies"]),
            url=url,
        )

    def paths(self, method=None):
        return [c.path for c in self.calls if method is None or c.method == method.upper()]


def add_login(portal, response_body='"SingleLocation"'):
    portal.on("GET", "/Account", reply(body=LOGIN_PAGE, cookies={"ASP.NET_SessionId": "anon-session"}))
    portal.on("POST", "/Account/Login/DoLogin", reply(body=response_body, cookies={".ASPXAUTH": "auth-cookie"}))
    portal.on("GET", "/", reply(body=HOME_PAGE))
    return portal


class RecordingContinuationQueue(ContinuationQueue):
    def __init__(self):
        self.enqueued = []

    async def enqueue(self, user_id, payload):
        self.enqueued.append((user_id, payload))


class SteppingClock:
    """Monotonic clock the test advances by hand."""

    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def portal():
    return FakePortal()


@pytest.fixture
def session_client(portal):
    return SessionClient(BASE_URL, session=portal)


@pytest.fixture
def credentials():
    return PortalCredentials(username="front.desk", password="s3cret")


@pytest.fixture
def job_store():
    return InMemoryJobStore()


@pytest.fixture
def object_store(tmp_path):
    return LocalObjectStore(str(tmp_path / "store"), public_base_url="https://files.test")


@pytest.fixture
def test_settings(tmp_path):
    """Zero-delay settings pointed at the fake portal."""
    return Settings(
        portal_base_url=BASE_URL,
        job_store_backend="memory",
        storage_dir=str(tmp_path / "store"),
        run_budget_seconds=100.0,
        progress_every=2,
        request_delay_min=0.0,
        request_delay_max=0.0,
        report_generation_delay=0.0,
        appointment_poll_attempts=2,
        appointment_poll_interval=0.0,
        statement_page_size=2,
    )


@pytest.fixture
def make_context(session_client):
    """Build an ExtractionContext against the fake portal."""
    def _make(budget=100.0, clock=None, **pacing):
        settings_pacing = dict(
            request_delay_min=0.0,
            request_delay_max=0.0,
            report_generation_delay=0.0,
            appointment_poll_attempts=2,
            appointment_poll_interval=0.0,
        )
        settings_pacing.update(pacing)
        deadline = Deadline(budget, clock=clock) if clock else Deadline(budget)
        return ExtractionContext(
            client=session_client,
            endpoints=EndpointCatalog(),
            deadline=deadline,
            log=RunLog(),
            pacing=Pacing(**settings_pacing),
            date_from="01/01/2026",
            date_to="12/31/2026",
        )
    return _make


@pytest.fixture
def test_client():
    """Create FastAPI test client"""
    from portal_scraper.main import app
    return TestClient(app)

from typing import Dict, Any, Optional
from dataclasses import dataclass, field
from urllib.parse import urljoin, urlparse
import asyncio
import logging

import requests

from .errors import TransientNetworkError, TooManyRedirects

logger = logging.getLogger(__name__)

BROWSER_HEADERS = {
    'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
    'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
    'Accept-Language': 'en-US,en;q=0.9',
}

REDIRECT_CODES = {301, 302, 303, 307}
MAX_REDIRECTS = 10

# Markers that only appear on the portal's login page
LOGIN_PAGE_MARKERS = ('txtLoginUserName', 'Login()')
LOGIN_PATH = '/account'


@dataclass
class SessionState:
    """Cookies and tenant context for one run. Never persisted."""
    cookies: Dict[str, str] = field(default_factory=dict)
    practice_id: Optional[str] = None

    def merge_cookies(self, response_cookies) -> None:
        """Last value wins per cookie name."""
        if not response_cookies:
            return
        for name, value in response_cookies.items():
            if name:
                self.cookies[name] = f"{name}={value}"

    def cookie_header(self) -> str:
        return "; ".join(self.cookies.values())


@dataclass
class PortalResponse:
    status: int
    body: str
    headers: Dict[str, str]
    url: str
    content: bytes = b''

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def location(self) -> str:
        return self.headers.get('Location') or self.headers.get('location') or ''

    @property
    def is_login_redirect(self) -> bool:
        """Soft authentication failure: bounced to login, or login page served as 200."""
        if self.status in REDIRECT_CODES:
            return LOGIN_PATH in urlparse(self.location).path.lower()
        return any(marker in self.body for marker in LOGIN_PAGE_MARKERS)


class SessionClient:
    """Browser-equivalent session against the portal.

    Every request carries the accumulated cookie jar and a fixed browser
    header set. Redirects are followed by hand so cookies set on intermediate
    hops are kept.
    """

    def __init__(
        self,
        base_url: str,
        state: Optional[SessionState] = None,
        timeout: int = 30,
        session=None
    ):
        self.base_url = base_url.rstrip('/')
        self.state = state or SessionState()
        self.timeout = timeout
        self.session = session or requests.Session()

    def url_for(self, path: str) -> str:
        if path.startswith(('http://', 'https://')):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    async def send(
        self,
        method: str,
        path: str,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        follow_redirects: bool = True
    ) -> PortalResponse:
        """Send a request, following up to MAX_REDIRECTS redirects by hand."""
        url = self.url_for(path)
        method = method.upper()
        response = await self._request_once(method, url, data=data, params=params, headers=headers)

        hops = 0
        while follow_redirects and response.status in REDIRECT_CODES and response.location:
            hops += 1
            if hops > MAX_REDIRECTS:
                raise TooManyRedirects(f"Exceeded {MAX_REDIRECTS} redirects starting at {url}")

            url = urljoin(response.url, response.location)
            # Browsers downgrade to GET on 303, and on 301/302 after a POST
            if response.status == 303 or (response.status in (301, 302) and method == 'POST'):
                method, data = 'GET', None
            params = None
            logger.debug(f"Redirect {response.status} -> {url}")
            response = await self._request_once(method, url, data=data, headers=headers)

        return response

    async def get(self, path: str, **kwargs) -> PortalResponse:
        return await self.send('GET', path, **kwargs)

    async def post(self, path: str, data: Optional[Dict[str, Any]] = None, **kwargs) -> PortalResponse:
        return await self.send('POST', path, data=data, **kwargs)

    async def ajax(
        self,
        method: str,
        path: str,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None
    ) -> PortalResponse:
        """Script-originated request. Never follows redirects; callers check
        ``is_login_redirect`` on the raw response."""
        headers = {
            'X-Requested-With': 'XMLHttpRequest',
            'Accept': 'application/json, text/javascript, */*; q=0.01',
        }
        return await self.send(method, path, data=data, params=params, headers=headers, follow_redirects=False)

    async def _request_once(
        self,
        method: str,
        url: str,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> PortalResponse:
        request_headers = dict(BROWSER_HEADERS)
        if headers:
            request_headers.update(headers)
        cookie_header = self.state.cookie_header()
        if cookie_header:
            request_headers['Cookie'] = cookie_header
        if data is not None:
            request_headers.setdefault('Content-Type', 'application/x-www-form-urlencoded; charset=UTF-8')

        try:
            response = await asyncio.to_thread(
                self.session.request,
                method,
                url,
                params=params,
                data=data,
                headers=request_headers,
                allow_redirects=False,
                timeout=self.timeout
            )
        except requests.exceptions.Timeout:
            raise TransientNetworkError(f"{method} {url} timed out")
        except requests.exceptions.RequestException as e:
            raise TransientNetworkError(f"{method} {url} failed: {e}")

        self.state.merge_cookies(response.cookies)
        return PortalResponse(
            status=response.status_code,
            body=response.text or '',
            headers=dict(response.headers or {}),
            url=getattr(response, 'url', None) or url,
            content=response.content or b''
        )

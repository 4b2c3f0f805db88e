"""Structured extraction from portal HTML.

Strategies never look at raw markup; they ask this parser for the specific
thing they need:

    antiforgery_token(html)   -> token value or None
    hidden_field(html, name)  -> value of <input name=...> or None
    select_options(html, id)  -> [(value, label), ...] in document order
    practice_id(html)         -> tenant identifier from hidden field or script
    is_login_page(html)       -> True when the portal served its login form
    page_structure(html)      -> multi-line reconnaissance summary
"""
from typing import List, Optional, Tuple
import re
import logging

from bs4 import BeautifulSoup

from .session_client import LOGIN_PAGE_MARKERS

logger = logging.getLogger(__name__)

ANTIFORGERY_FIELD = '__RequestVerificationToken'
PRACTICE_ID_FIELDS = ('hdnPracticeId', 'PracticeId', 'hdnPracticeID', 'practiceId')
PRACTICE_ID_SCRIPT = re.compile(r"""practice_?id["']?\s*[:=]\s*["']?(\d+)""", re.IGNORECASE)
AJAX_CALL = re.compile(r"""\$\.(ajax|post|get)\s*\(\s*\{[^}]*url\s*:\s*["']([^"']+)["']""", re.IGNORECASE)
URL_PATTERN = re.compile(r"""["'](/[A-Za-z]+/[A-Za-z]+[^"']*?)["']""")
STATIC_ASSET = re.compile(r"\.(css|js|png|gif|ico|jpg)", re.IGNORECASE)


class PortalPageParser:
    """bs4-backed parser for portal pages"""

    def _soup(self, html: str) -> BeautifulSoup:
        return BeautifulSoup(html or '', 'html.parser')

    def hidden_field(self, html: str, name: str) -> Optional[str]:
        soup = self._soup(html)
        field = soup.find('input', attrs={'name': name}) or soup.find('input', attrs={'id': name})
        if field is None:
            return None
        return field.get('value')

    def antiforgery_token(self, html: str) -> Optional[str]:
        return self.hidden_field(html, ANTIFORGERY_FIELD)

    def select_options(self, html: str, select_id: Optional[str] = None) -> List[Tuple[str, str]]:
        """Options of the select with ``select_id``, or of a bare option list."""
        soup = self._soup(html)
        container = soup
        if select_id:
            container = soup.find('select', id=select_id)
            if container is None:
                return []
        return [
            (option.get('value', ''), option.get_text(strip=True))
            for option in container.find_all('option')
        ]

    def practice_id(self, html: str) -> Optional[str]:
        for name in PRACTICE_ID_FIELDS:
            value = self.hidden_field(html, name)
            if value:
                return value
        match = PRACTICE_ID_SCRIPT.search(html or '')
        return match.group(1) if match else None

    def is_login_page(self, html: str) -> bool:
        return any(marker in (html or '') for marker in LOGIN_PAGE_MARKERS)

    def page_structure(self, html: str) -> str:
        """Forms, selects, inputs, AJAX calls and URL patterns, one per line."""
        soup = self._soup(html)
        lines = []

        for form in soup.find_all('form'):
            attrs = ' '.join(f'{k}="{v}"' for k, v in form.attrs.items() if isinstance(v, str))
            lines.append(f"FORM: <form {attrs}>")

        for select in soup.find_all('select'):
            if not select.get('id'):
                continue
            opts = [f"{value}={label}" for value, label in self.select_options(str(select))]
            lines.append(f"SELECT#{select['id']}: {' | '.join(opts[:20])}")

        for field in soup.find_all('input'):
            if field.get('name') or field.get('id'):
                lines.append(f"INPUT: {str(field)[:200]}")

        for match in AJAX_CALL.finditer(html or ''):
            lines.append(f'AJAX: $.{match.group(1)}("{match.group(2)}")')

        urls = []
        for match in URL_PATTERN.finditer(html or ''):
            candidate = match.group(1)
            if not STATIC_ASSET.search(candidate) and candidate not in urls:
                urls.append(candidate)
        if urls:
            lines.append(f"URL_PATTERNS: {', '.join(urls[:50])}")

        return '\n'.join(lines)

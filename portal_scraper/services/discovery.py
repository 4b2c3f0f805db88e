from typing import List, Optional, Sequence, Tuple
import logging

from .page_parser import PortalPageParser
from .portal_endpoints import DISCOVERY_TARGETS
from .session_client import SessionClient

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 5000


def section_header(name: str, url: str) -> str:
    return f"===== {name.upper()} ({url}) ====="


class DiscoveryRunner:
    """Fetches a fixed set of pages and records what each one exposes.

    Every target produces a section under the same header whether the fetch
    worked or not, so two runs can be diffed line by line.
    """

    def __init__(self, client: SessionClient, parser: Optional[PortalPageParser] = None,
                 targets: Sequence[Tuple[str, str]] = DISCOVERY_TARGETS):
        self.client = client
        self.parser = parser or PortalPageParser()
        self.targets = list(targets)

    async def run(self, log) -> List[str]:
        sections = []
        for name, path in self.targets:
            url = self.client.url_for(path)
            try:
                response = await self.client.get(path)
                lines = [
                    section_header(name, url),
                    f"Status: {response.status}",
                    f"Final URL: {response.url}",
                    f"Length: {len(response.body)}",
                    f"Login page: {self.parser.is_login_page(response.body)}",
                ]
                structure = self.parser.page_structure(response.body)
                if structure:
                    lines.append(structure)
                lines.append("--- RAW PREVIEW ---")
                lines.append(response.body[:PREVIEW_CHARS])
            except Exception as e:
                logger.warning(f"Discovery fetch of {url} failed: {e}")
                lines = [section_header(name, url), f"ERROR: {e}"]
            section = "\n".join(lines)
            log.add(section)
            sections.append(section)
        return sections

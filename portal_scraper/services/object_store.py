from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional
import asyncio
import logging

from .errors import UploadError

logger = logging.getLogger(__name__)


class ObjectStore(ABC):
    """Where workbooks and exported documents are delivered"""

    @abstractmethod
    async def upload(self, path: str, content: bytes, content_type: str) -> str:
        """Store ``content`` at ``path``. Returns the stored path."""
        pass

    @abstractmethod
    def link_for(self, path: str) -> str:
        """Address a user can open for a stored path."""
        pass


class LocalObjectStore(ObjectStore):
    """Filesystem-backed store rooted at ``base_dir``."""

    def __init__(self, base_dir: str, public_base_url: Optional[str] = None):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip('/') if public_base_url else None

    def _resolve(self, path: str) -> Path:
        target = (self.base_dir / path.lstrip('/')).resolve()
        if self.base_dir.resolve() not in target.parents:
            raise UploadError(f"Refusing to write outside the store: {path}")
        return target

    async def upload(self, path: str, content: bytes, content_type: str) -> str:
        target = self._resolve(path)
        try:
            await asyncio.to_thread(self._write, target, content)
        except OSError as e:
            raise UploadError(f"Failed to store {path}: {e}")
        logger.info(f"Stored {len(content)} bytes ({content_type}) at {path}")
        return path

    @staticmethod
    def _write(target: Path, content: bytes):
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)

    def link_for(self, path: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{path.lstrip('/')}"
        return self._resolve(path).as_uri()

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Optional, Set
import asyncio
import logging

import requests

logger = logging.getLogger(__name__)

ContinuationHandler = Callable[[str, Dict[str, Any]], Awaitable[Any]]


class ContinuationQueue(ABC):
    """Hands a checkpointed run to a fresh invocation."""

    @abstractmethod
    async def enqueue(self, user_id: str, payload: Dict[str, Any]) -> None:
        pass


class InProcessContinuationQueue(ContinuationQueue):
    """Runs the continuation as a background task in this process."""

    def __init__(self, handler: ContinuationHandler):
        self.handler = handler
        self._tasks: Set[asyncio.Task] = set()

    async def enqueue(self, user_id: str, payload: Dict[str, Any]) -> None:
        job_id = payload.get("_continuationJobId")

        async def _runner():
            try:
                logger.info(f"Starting continuation for job {job_id}")
                await self.handler(user_id, payload)
            except Exception as e:
                logger.exception(f"Continuation for job {job_id} failed: {e}")

        task = asyncio.create_task(_runner())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self):
        """Wait until queued continuations, including ones they enqueue, finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class HttpContinuationQueue(ContinuationQueue):
    """POSTs the continuation to this service's own ``/scrape`` endpoint.

    Fire-and-forget: the request is dispatched in the background and its
    outcome is only logged.
    """

    def __init__(self, url: str, token: Optional[str] = None, timeout: int = 10, session=None):
        self.url = url
        self.token = token
        self.timeout = timeout
        self.session = session or requests.Session()
        self._tasks: Set[asyncio.Task] = set()

    def _post(self, user_id: str, payload: Dict[str, Any]):
        headers = {"Content-Type": "application/json", "X-User-Id": user_id}
        if self.token:
            headers["X-Continuation-Token"] = self.token
        try:
            response = self.session.post(self.url, json=payload, headers=headers, timeout=self.timeout)
            logger.info(f"Continuation POST {self.url}: {response.status_code}")
        except requests.exceptions.RequestException as e:
            logger.error(f"Continuation POST {self.url} failed: {e}")

    async def enqueue(self, user_id: str, payload: Dict[str, Any]) -> None:
        task = asyncio.create_task(asyncio.to_thread(self._post, user_id, payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

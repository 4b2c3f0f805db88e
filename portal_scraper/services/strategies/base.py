from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional
import asyncio
import logging
import random
import time

from ...models.records import Category, CategoryResult, Row
from ..errors import DeadlineExceeded, PortalError, SessionExpiredError
from ..page_parser import PortalPageParser
from ..portal_endpoints import EndpointCatalog
from ..session_client import PortalResponse, SessionClient

logger = logging.getLogger(__name__)


class Deadline:
    """Wall-clock budget for one invocation."""

    def __init__(self, budget_seconds: float, clock=time.monotonic):
        self.budget_seconds = budget_seconds
        self._clock = clock
        self.started_at = clock()

    def elapsed(self) -> float:
        return self._clock() - self.started_at

    def remaining(self) -> float:
        return self.budget_seconds - self.elapsed()

    def expired(self) -> bool:
        return self.elapsed() >= self.budget_seconds

    def check(self, needed: float = 0.0):
        """Raise DeadlineExceeded if ``needed`` more seconds don't fit."""
        if self.remaining() < needed or self.expired():
            raise DeadlineExceeded(f"Run budget of {self.budget_seconds:.0f}s spent")


@dataclass
class Pacing:
    """Delays the portal needs between calls."""
    request_delay_min: float = 0.15
    request_delay_max: float = 0.3
    report_generation_delay: float = 20.0
    appointment_poll_attempts: int = 8
    appointment_poll_interval: float = 4.0
    statement_page_size: int = 100
    statement_max_rows: int = 50000

    async def between_requests(self):
        if self.request_delay_max > 0:
            await asyncio.sleep(random.uniform(self.request_delay_min, self.request_delay_max))


@dataclass
class ExtractionContext:
    """Everything a strategy may touch during one run."""
    client: SessionClient
    endpoints: EndpointCatalog
    deadline: Deadline
    log: Any
    parser: PortalPageParser = field(default_factory=PortalPageParser)
    pacing: Pacing = field(default_factory=Pacing)
    date_from: Optional[str] = None
    date_to: Optional[str] = None
    scratch: Dict[str, Any] = field(default_factory=dict)

    async def ajax(self, method: str, path: str, **kwargs) -> PortalResponse:
        """AJAX call that treats a bounce to the login page as an error."""
        response = await self.client.ajax(method, path, **kwargs)
        if response.is_login_redirect:
            raise SessionExpiredError(f"{method} {path} was redirected to the login page")
        return response


class Outcome:
    """Result of one strategy attempt."""
    SUCCESS = "success"
    NO_DATA = "no_data"
    FATAL_IF_LAST = "fatal_if_last"

    def __init__(self, kind: str, rows: Optional[List[Row]] = None, reason: str = ""):
        self.kind = kind
        self.rows = rows or []
        self.reason = reason

    @classmethod
    def success(cls, rows: List[Row]) -> "Outcome":
        return cls(cls.SUCCESS, rows=rows)

    @classmethod
    def no_data(cls, reason: str) -> "Outcome":
        return cls(cls.NO_DATA, reason=reason)

    @classmethod
    def fatal_if_last(cls, reason: str) -> "Outcome":
        return cls(cls.FATAL_IF_LAST, reason=reason)

    @property
    def is_success(self) -> bool:
        return self.kind == self.SUCCESS

    def __repr__(self):
        return f"Outcome({self.kind}, rows={len(self.rows)}, reason={self.reason!r})"


class ExtractionStrategy(ABC):
    """One way of getting a category's rows out of the portal"""

    name = "strategy"

    @abstractmethod
    async def attempt(self, ctx: ExtractionContext) -> Outcome:
        pass


class StrategyChain:
    """Runs strategies in order and stops at the first success.

    Portal errors inside a strategy only disqualify that strategy. A chain
    where nothing succeeds yields an empty result, not an error.
    """

    def __init__(self, category: Category, strategies: List[ExtractionStrategy]):
        self.category = category
        self.strategies = strategies

    async def run(self, ctx: ExtractionContext) -> CategoryResult:
        for position, strategy in enumerate(self.strategies, start=1):
            label = f"[{self.category.value}] {strategy.name} ({position}/{len(self.strategies)})"
            try:
                outcome = await strategy.attempt(ctx)
            except PortalError as e:
                ctx.log.add(f"{label}: {type(e).__name__}: {e}")
                continue

            if outcome.is_success:
                ctx.log.add(f"{label}: {len(outcome.rows)} rows")
                return CategoryResult(category=self.category, rows=outcome.rows, strategy=strategy.name)

            if outcome.kind == Outcome.FATAL_IF_LAST:
                ctx.log.add(f"{label}: failed: {outcome.reason}")
            else:
                ctx.log.add(f"{label}: no data: {outcome.reason}")

        ctx.log.add(f"[{self.category.value}] all strategies exhausted, 0 rows")
        return CategoryResult(category=self.category, rows=[])

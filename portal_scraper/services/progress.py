from typing import List, Optional
import logging

from ..models.records import JobStatus
from .job_store import JobStore

logger = logging.getLogger(__name__)

MAX_RUNNING_PROGRESS = 99


class RunLog:
    """Append-only run log shown to the user. Lines are mirrored to the logger."""

    def __init__(self, lines: Optional[List[str]] = None):
        self.lines: List[str] = list(lines or [])

    def add(self, line: str):
        self.lines.append(line)
        logger.info(line)

    def extend(self, lines: List[str]):
        for line in lines:
            self.add(line)

    def snapshot(self) -> str:
        return "\n".join(self.lines)

    def __len__(self):
        return len(self.lines)


class ProgressReporter:
    """Best-effort progress persistence for one job.

    Progress never goes backwards and stays at or below 99 until
    ``finalize`` writes the terminal status together with 100.
    """

    def __init__(self, job_store: JobStore, job_id: str, total_categories: int, log: RunLog, start_at: int = 0):
        self.job_store = job_store
        self.job_id = job_id
        self.total_categories = max(1, total_categories)
        self.log = log
        self.last_percent = min(max(0, start_at), MAX_RUNNING_PROGRESS)
        self.history: List[int] = []

    def percent(self, completed_categories: int, category_fraction: float = 0.0) -> int:
        share = 100 / self.total_categories
        fraction = min(max(category_fraction, 0.0), 1.0)
        return min(MAX_RUNNING_PROGRESS, int(completed_categories * share + fraction * share))

    async def report(self, percent: int, **fields) -> int:
        """Persist ``percent`` (clamped) plus the current log snapshot."""
        percent = max(self.last_percent, min(int(percent), MAX_RUNNING_PROGRESS))
        self.last_percent = percent
        self.history.append(percent)
        try:
            await self.job_store.update_job(
                self.job_id,
                progress=percent,
                log_output=self.log.snapshot(),
                **fields
            )
        except Exception as e:
            logger.warning(f"Failed to persist progress for job {self.job_id}: {e}")
        return percent

    async def report_category(self, completed_categories: int, category_fraction: float = 0.0) -> int:
        return await self.report(self.percent(completed_categories, category_fraction))

    async def finalize(self, status: JobStatus, error_message: Optional[str] = None):
        """Terminal update: status and progress 100 in one write."""
        self.history.append(100)
        self.last_percent = 100
        try:
            await self.job_store.update_job(
                self.job_id,
                status=status.value,
                progress=100,
                error_message=error_message,
                log_output=self.log.snapshot(),
                batch_state=None
            )
        except Exception as e:
            logger.error(f"Failed to finalize job {self.job_id} as {status.value}: {e}")

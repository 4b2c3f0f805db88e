from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional
import logging

from ..models.records import Category, Checkpoint, PatientRecord, Row, ScrapeRequest
from .continuation import ContinuationQueue
from .errors import DeadlineExceeded, PortalError
from .job_store import JobStore
from .progress import ProgressReporter, RunLog
from .strategies.base import ExtractionContext

logger = logging.getLogger(__name__)

UNITS_COUNTER = "patients_processed"

Unit = Callable[[ExtractionContext, PatientRecord, Dict[str, int]], Awaitable[List[Row]]]


@dataclass
class BatchOutcome:
    category: Category
    rows: List[Row] = field(default_factory=list)
    counters: Dict[str, int] = field(default_factory=dict)
    checkpoint: Optional[Checkpoint] = None

    @property
    def completed(self) -> bool:
        return self.checkpoint is None


async def hand_off(
    job_store: JobStore,
    queue: ContinuationQueue,
    user_id: str,
    job_id: str,
    request: ScrapeRequest,
    checkpoint: Checkpoint,
    log: RunLog,
):
    """Persist ``checkpoint`` with the log and enqueue the continuation."""
    log.add(
        f"Run budget spent. Checkpoint at {checkpoint.category.value} #{checkpoint.resume_index}, "
        f"continuing in a new invocation."
    )
    await job_store.update_job(
        job_id,
        batch_state=checkpoint.model_dump(mode="json"),
        log_output=log.snapshot(),
    )
    await queue.enqueue(user_id, request.continuation_payload(job_id, checkpoint, log.lines))


class CheckpointedBatchRunner:
    """Iterates patients under the run deadline.

    Starting -> Iterating -> Completed | Checkpointed. A unit interrupted by
    the deadline is not counted; the next invocation starts at it again.
    """

    def __init__(
        self,
        category: Category,
        job_store: JobStore,
        queue: ContinuationQueue,
        progress: ProgressReporter,
        user_id: str,
        job_id: str,
        request: ScrapeRequest,
        progress_every: int = 50,
    ):
        self.category = category
        self.job_store = job_store
        self.queue = queue
        self.progress = progress
        self.user_id = user_id
        self.job_id = job_id
        self.request = request
        self.progress_every = max(1, progress_every)

    async def run(
        self,
        ctx: ExtractionContext,
        patients: List[PatientRecord],
        unit: Unit,
        counters: Dict[str, int],
        completed_categories: int = 0,
        completed_results: Optional[Dict[str, List[Row]]] = None,
        checkpoint: Optional[Checkpoint] = None,
    ) -> BatchOutcome:
        index = 0
        rows: List[Row] = []
        counters = dict(counters)
        counters.setdefault(UNITS_COUNTER, 0)

        if checkpoint and checkpoint.category == self.category:
            index = checkpoint.resume_index
            rows = list(checkpoint.partial_rows)
            counters.update(checkpoint.counters)
            ctx.log.add(f"[{self.category.value}] resuming at patient {index + 1} of {len(patients)}")

        start_index = index
        total = len(patients)
        while index < total:
            # At least one unit per invocation, so a continuation always advances
            if ctx.deadline.expired() and index > start_index:
                return await self._checkpoint(ctx, index, counters, rows, completed_results)

            patient = patients[index]
            unit_counters = dict(counters)
            try:
                unit_rows = await unit(ctx, patient, unit_counters)
            except DeadlineExceeded:
                return await self._checkpoint(ctx, index, counters, rows, completed_results)
            except PortalError as e:
                ctx.log.add(f"[{self.category.value}] {patient.search_name}: {type(e).__name__}: {e}")
                unit_rows = []

            counters = unit_counters
            counters[UNITS_COUNTER] += 1
            rows.extend(unit_rows)
            index += 1

            if index % self.progress_every == 0:
                ctx.log.add(f"[{self.category.value}] {index}/{total} patients, {len(rows)} rows")
                await self.progress.report_category(completed_categories, index / total)

        ctx.log.add(f"[{self.category.value}] finished {total} patients: {counters}")
        return BatchOutcome(category=self.category, rows=rows, counters=counters)

    async def _checkpoint(self, ctx, index, counters, rows, completed_results) -> BatchOutcome:
        checkpoint = Checkpoint(
            category=self.category,
            resume_index=index,
            counters=counters,
            partial_rows=rows,
            completed_results=completed_results or {},
        )
        await hand_off(self.job_store, self.queue, self.user_id, self.job_id, self.request, checkpoint, ctx.log)
        return BatchOutcome(category=self.category, rows=rows, counters=counters, checkpoint=checkpoint)

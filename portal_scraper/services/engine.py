from datetime import timedelta
from typing import Awaitable, Callable, Dict, List, Optional
import logging
import time

import requests

from ..config import Settings, settings as default_settings
from ..models.records import (
    Category,
    CategoryResult,
    Checkpoint,
    ITERATING_CATEGORIES,
    JobStatus,
    PortalCredentials,
    Row,
    RunOutcome,
    ScrapeRequest,
)
from .auth import AuthenticationStage
from .batch_runner import CheckpointedBatchRunner, hand_off
from .continuation import ContinuationQueue
from .discovery import DiscoveryRunner
from .errors import AuthError, DeadlineExceeded, PortalError, RequestValidationError
from .job_store import JobStore
from .object_store import ObjectStore
from .output import NO_DATA_MESSAGE, OutputAssembler
from .page_parser import PortalPageParser
from .patient_index import PatientIndexCache
from .portal_endpoints import EndpointCatalog
from .progress import ProgressReporter, RunLog
from .session_client import SessionClient
from .strategies.appointments import appointments_chain, resolve_date_range
from .strategies.base import Deadline, ExtractionContext, Pacing, StrategyChain
from .strategies.demographics import demographics_chain
from .strategies.documents import PatientDocumentExporter, empty_counters
from .strategies.financials import financials_chain

logger = logging.getLogger(__name__)

CredentialsProvider = Callable[[str], Awaitable[Optional[PortalCredentials]]]

CHAINS: Dict[Category, Callable[[], StrategyChain]] = {
    Category.DEMOGRAPHICS: demographics_chain,
    Category.APPOINTMENTS: appointments_chain,
    Category.FINANCIALS: financials_chain,
}

MISSING_CREDENTIALS = "No portal credentials saved. Add them under /credentials first."


def parse_categories(data_types: List[str]) -> List[Category]:
    categories = []
    for tag in data_types:
        try:
            category = Category(tag)
        except ValueError:
            raise RequestValidationError(f"Unknown data type: {tag}")
        if category not in categories:
            categories.append(category)
    return categories


class ExtractionEngine:
    """Runs one invocation: authenticate, then discover or scrape.

    A scrape that runs out of time checkpoints and hands itself to the
    continuation queue; the job is only finalised by the invocation that
    finishes the last category.
    """

    def __init__(
        self,
        job_store: JobStore,
        object_store: ObjectStore,
        credentials_provider: CredentialsProvider,
        continuation: ContinuationQueue,
        config: Optional[Settings] = None,
        session_factory: Callable[[], requests.Session] = requests.Session,
        clock=time.monotonic,
    ):
        self.job_store = job_store
        self.object_store = object_store
        self.credentials_provider = credentials_provider
        if continuation is None:
            raise ValueError("ExtractionEngine needs a continuation queue to hand off checkpointed runs")
        self.continuation = continuation
        self.config = config or default_settings
        self.session_factory = session_factory
        self.clock = clock
        self.assembler = OutputAssembler(object_store, job_store)

    def pacing(self) -> Pacing:
        return Pacing(
            request_delay_min=self.config.request_delay_min,
            request_delay_max=self.config.request_delay_max,
            report_generation_delay=self.config.report_generation_delay,
            appointment_poll_attempts=self.config.appointment_poll_attempts,
            appointment_poll_interval=self.config.appointment_poll_interval,
            statement_page_size=self.config.statement_page_size,
            statement_max_rows=self.config.statement_max_rows,
        )

    async def handle(self, user_id: str, request: ScrapeRequest) -> RunOutcome:
        """Entry point for both fresh invocations and continuations."""
        credentials = await self.credentials_provider(user_id)
        if credentials is None:
            return RunOutcome(success=False, mode=request.mode, error=MISSING_CREDENTIALS, status_code=400)
        return await self.run(user_id, request, credentials)

    async def handle_payload(self, user_id: str, payload: dict) -> RunOutcome:
        return await self.handle(user_id, ScrapeRequest.model_validate(payload))

    async def run(self, user_id: str, request: ScrapeRequest, credentials: PortalCredentials) -> RunOutcome:
        try:
            categories = parse_categories(request.data_types)
            if request.mode == "scrape" and not categories:
                raise RequestValidationError("Select at least one data type")
            date_from, date_to = resolve_date_range(request.date_from, request.date_to)
        except RequestValidationError as e:
            return RunOutcome(success=False, mode=request.mode, error=str(e), status_code=400)

        if request.is_continuation:
            job = await self.job_store.get_job(request.continuation_job_id)
            if job is None or job.user_id != user_id or job.status != JobStatus.RUNNING:
                logger.info(f"Continuation for job {request.continuation_job_id} skipped: job is not running")
                return RunOutcome(
                    success=False,
                    job_id=request.continuation_job_id,
                    mode=request.mode,
                    error="Job is no longer running",
                    status_code=409,
                )
            log = RunLog(request.continuation_log or (job.log_output or "").splitlines())
            log.add(f"--- Continuation invocation for job {job.id} ---")
            start_at = job.progress
        else:
            reclaimed = await self.job_store.reclaim_stale_jobs(
                user_id, timedelta(minutes=self.config.stale_job_minutes)
            )
            if reclaimed:
                logger.info(f"Reclaimed {reclaimed} stale job(s) before starting a new run")
            job = await self.job_store.create_job(user_id, request.mode, [c.value for c in categories])
            log = RunLog()
            log.add(f"Job {job.id}: mode={request.mode} data_types={[c.value for c in categories]}")
            start_at = 0

        progress = ProgressReporter(self.job_store, job.id, len(categories), log, start_at=start_at)

        try:
            return await self._execute(user_id, job.id, request, credentials, categories,
                                       date_from, date_to, log, progress)
        except Exception as e:
            logger.exception(f"Job {job.id} failed: {e}")
            log.add(f"FATAL: {type(e).__name__}: {e}")
            await progress.finalize(JobStatus.FAILED, str(e))
            return RunOutcome(success=False, job_id=job.id, mode=request.mode, error=str(e), status_code=500)

    async def _execute(self, user_id, job_id, request, credentials, categories, date_from, date_to, log, progress) -> RunOutcome:
        deadline = Deadline(self.config.run_budget_seconds, clock=self.clock)
        parser = PortalPageParser()
        client = SessionClient(
            self.config.portal_base_url,
            timeout=self.config.request_timeout,
            session=self.session_factory(),
        )

        try:
            await AuthenticationStage(client, parser, log).login(credentials)
        except AuthError as e:
            await progress.finalize(JobStatus.FAILED, e.message)
            return RunOutcome(success=False, job_id=job_id, mode=request.mode, error=e.message, status_code=400)
        except PortalError as e:
            message = f"Could not reach the portal: {e}"
            log.add(f"LOGIN ERROR: {message}")
            await progress.finalize(JobStatus.FAILED, message)
            return RunOutcome(success=False, job_id=job_id, mode=request.mode, error=message, status_code=502)

        if request.mode == "discover":
            await DiscoveryRunner(client, parser).run(log)
            await progress.finalize(JobStatus.COMPLETED)
            return RunOutcome(success=True, job_id=job_id, mode="discover")

        ctx = ExtractionContext(
            client=client,
            endpoints=EndpointCatalog(self.config.endpoint_overrides),
            deadline=deadline,
            log=log,
            parser=parser,
            pacing=self.pacing(),
            date_from=date_from,
            date_to=date_to,
        )
        patient_index = PatientIndexCache(request.test_limit, request.test_patient_name)

        checkpoint = request.continuation_checkpoint
        completed: Dict[str, List[Row]] = dict(checkpoint.completed_results) if checkpoint else {}
        first_in_invocation = True

        for position, category in enumerate(categories):
            if category.value in completed:
                continue
            if not first_in_invocation and deadline.expired():
                return await self._checkpoint_boundary(user_id, job_id, request, category, completed, log)

            try:
                if category in ITERATING_CATEGORIES:
                    runner = CheckpointedBatchRunner(
                        category, self.job_store, self.continuation, progress,
                        user_id, job_id, request, progress_every=self.config.progress_every,
                    )
                    patients = await patient_index.get(ctx)
                    batch = await runner.run(
                        ctx,
                        patients,
                        PatientDocumentExporter(self.object_store, user_id, job_id),
                        empty_counters(),
                        completed_categories=position,
                        completed_results=completed,
                        checkpoint=checkpoint,
                    )
                    if not batch.completed:
                        return RunOutcome(success=True, job_id=job_id, mode="scrape",
                                          has_data=True, batching=True)
                    rows = batch.rows
                else:
                    rows = (await CHAINS[category]().run(ctx)).rows
            except DeadlineExceeded:
                return await self._checkpoint_boundary(user_id, job_id, request, category, completed, log)
            except Exception as e:
                logger.exception(f"Category {category.value} failed")
                log.add(f"[{category.value}] unexpected error, 0 rows: {type(e).__name__}: {e}")
                rows = []

            completed[category.value] = rows
            first_in_invocation = False
            await progress.report_category(position + 1)

        results = [CategoryResult(category=c, rows=completed.get(c.value, [])) for c in categories]
        has_data = any(r.rows for r in results)
        await self.assembler.assemble(user_id, job_id, results, log)
        await progress.finalize(JobStatus.COMPLETED, None if has_data else NO_DATA_MESSAGE)
        return RunOutcome(success=True, job_id=job_id, mode="scrape", has_data=has_data)

    async def _checkpoint_boundary(self, user_id, job_id, request, category, completed, log) -> RunOutcome:
        checkpoint = Checkpoint(category=category, resume_index=0, completed_results=completed)
        await hand_off(self.job_store, self.continuation, user_id, job_id, request, checkpoint, log)
        return RunOutcome(success=True, job_id=job_id, mode="scrape", has_data=bool(any(completed.values())),
                          batching=True)

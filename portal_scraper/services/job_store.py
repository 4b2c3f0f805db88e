from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional
from datetime import datetime, timedelta
import asyncio
import uuid
import logging

from ..models.records import JobSnapshot, JobStatus, ResultRecord

logger = logging.getLogger(__name__)

STALE_JOB_MESSAGE = "Job timed out without finishing and was reclaimed."

UPDATABLE_FIELDS = {"status", "progress", "error_message", "log_output", "batch_state"}


class JobStore(ABC):
    """Persistence for scrape jobs and their result records."""

    @abstractmethod
    async def create_job(self, user_id: str, mode: str, data_types: List[str]) -> JobSnapshot:
        pass

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[JobSnapshot]:
        pass

    @abstractmethod
    async def update_job(self, job_id: str, **fields) -> None:
        pass

    @abstractmethod
    async def list_jobs(self, user_id: str, limit: int = 50) -> List[JobSnapshot]:
        pass

    @abstractmethod
    async def add_result(self, record: ResultRecord) -> None:
        pass

    @abstractmethod
    async def list_results(self, job_id: str) -> List[ResultRecord]:
        pass

    @abstractmethod
    async def reclaim_stale_jobs(self, user_id: str, older_than: timedelta) -> int:
        """Fail jobs left ``running`` with no update for ``older_than``."""
        pass

    def _check_fields(self, fields: Dict[str, Any]):
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update job fields: {sorted(unknown)}")


class InMemoryJobStore(JobStore):
    """Process-local store for development and tests."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self._jobs: Dict[str, JobSnapshot] = {}
        self._results: List[ResultRecord] = []
        self.updates: List[Dict[str, Any]] = []

    async def create_job(self, user_id: str, mode: str, data_types: List[str]) -> JobSnapshot:
        async with self._lock:
            job = JobSnapshot(
                id=str(uuid.uuid4()),
                user_id=user_id,
                mode=mode,
                data_types=list(data_types),
                status=JobStatus.RUNNING,
            )
            self._jobs[job.id] = job
            return job.model_copy(deep=True)

    async def get_job(self, job_id: str) -> Optional[JobSnapshot]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def update_job(self, job_id: str, **fields) -> None:
        self._check_fields(fields)
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise KeyError(f"Job {job_id} not found")
            self.updates.append({"job_id": job_id, **fields})
            self._jobs[job_id] = job.model_copy(update={**fields, "updated_at": datetime.utcnow()})

    async def list_jobs(self, user_id: str, limit: int = 50) -> List[JobSnapshot]:
        jobs = [j for j in self._jobs.values() if j.user_id == user_id]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return [j.model_copy(deep=True) for j in jobs[:limit]]

    async def add_result(self, record: ResultRecord) -> None:
        self._results.append(record)

    async def list_results(self, job_id: str) -> List[ResultRecord]:
        return [r for r in self._results if r.job_id == job_id]

    async def reclaim_stale_jobs(self, user_id: str, older_than: timedelta) -> int:
        cutoff = datetime.utcnow() - older_than
        stale = [
            j.id for j in self._jobs.values()
            if j.user_id == user_id and j.status == JobStatus.RUNNING and j.updated_at < cutoff
        ]
        for job_id in stale:
            await self.update_job(job_id, status=JobStatus.FAILED.value, error_message=STALE_JOB_MESSAGE)
        return len(stale)


class BeanieJobStore(JobStore):
    """MongoDB-backed store using the beanie documents in ``models.job``."""

    def __init__(self):
        from ..models.job import ScrapeJob, ScrapeResult
        self._job_model = ScrapeJob
        self._result_model = ScrapeResult

    def _snapshot(self, doc) -> JobSnapshot:
        return JobSnapshot(
            id=str(doc.id),
            user_id=doc.user_id,
            mode=doc.mode,
            data_types=doc.data_types,
            status=doc.status,
            progress=doc.progress,
            error_message=doc.error_message,
            log_output=doc.log_output,
            batch_state=doc.batch_state,
            created_at=doc.created_at,
            updated_at=doc.updated_at,
        )

    async def create_job(self, user_id: str, mode: str, data_types: List[str]) -> JobSnapshot:
        doc = self._job_model(
            user_id=user_id,
            mode=mode,
            data_types=list(data_types),
            status=JobStatus.RUNNING.value,
        )
        await doc.insert()
        logger.info(f"Created scrape job {doc.id} for user {user_id}")
        return self._snapshot(doc)

    async def get_job(self, job_id: str) -> Optional[JobSnapshot]:
        try:
            doc = await self._job_model.get(job_id)
        except Exception as e:
            logger.warning(f"Invalid job id {job_id}: {e}")
            return None
        return self._snapshot(doc) if doc else None

    async def update_job(self, job_id: str, **fields) -> None:
        self._check_fields(fields)
        doc = await self._job_model.get(job_id)
        if doc is None:
            raise KeyError(f"Job {job_id} not found")
        await doc.set({**fields, "updated_at": datetime.utcnow()})

    async def list_jobs(self, user_id: str, limit: int = 50) -> List[JobSnapshot]:
        docs = await self._job_model.find(
            self._job_model.user_id == user_id
        ).sort(-self._job_model.created_at).limit(limit).to_list()
        return [self._snapshot(d) for d in docs]

    async def add_result(self, record: ResultRecord) -> None:
        doc = self._result_model(
            scrape_job_id=record.job_id,
            user_id=record.user_id,
            data_type=record.data_type,
            file_path=record.file_path,
            row_count=record.row_count,
        )
        await doc.insert()

    async def list_results(self, job_id: str) -> List[ResultRecord]:
        docs = await self._result_model.find(self._result_model.scrape_job_id == job_id).to_list()
        return [
            ResultRecord(
                job_id=d.scrape_job_id,
                user_id=d.user_id,
                data_type=d.data_type,
                file_path=d.file_path,
                row_count=d.row_count,
            )
            for d in docs
        ]

    async def reclaim_stale_jobs(self, user_id: str, older_than: timedelta) -> int:
        cutoff = datetime.utcnow() - older_than
        stale = await self._job_model.find(
            self._job_model.user_id == user_id,
            self._job_model.status == JobStatus.RUNNING.value,
            self._job_model.updated_at < cutoff,
        ).to_list()
        for doc in stale:
            await doc.set({
                "status": JobStatus.FAILED.value,
                "error_message": STALE_JOB_MESSAGE,
                "updated_at": datetime.utcnow(),
            })
        if stale:
            logger.info(f"Reclaimed {len(stale)} stale job(s) for user {user_id}")
        return len(stale)

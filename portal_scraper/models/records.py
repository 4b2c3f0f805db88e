"""Value types passed between engine components and over the wire."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Row = Dict[str, Any]


class Category(str, Enum):
    DEMOGRAPHICS = "demographics"
    APPOINTMENTS = "appointments"
    SOAP_NOTES = "soap_notes"
    FINANCIALS = "financials"

    @property
    def sheet_title(self) -> str:
        return {
            Category.DEMOGRAPHICS: "Demographics",
            Category.APPOINTMENTS: "Appointments",
            Category.SOAP_NOTES: "SOAP Notes",
            Category.FINANCIALS: "Financials",
        }[self]


# Categories that need one unit of work per patient
ITERATING_CATEGORIES = {Category.SOAP_NOTES}


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


class PortalCredentials(BaseModel):
    username: str
    password: str


class PatientRecord(BaseModel):
    """One roster entry. Some roster sources only yield names."""
    model_config = ConfigDict(frozen=True)

    patient_id: Optional[str] = None
    first_name: str = ""
    last_name: str = ""

    @property
    def search_name(self) -> str:
        return f"{self.last_name}, {self.first_name}"

    @property
    def sort_key(self):
        return (self.last_name.lower(), self.first_name.lower(), self.patient_id or "")


class Checkpoint(BaseModel):
    """Resumable progress for a run that ran out of time.

    Everything here must survive a JSON round-trip: it travels in the job
    record and in the continuation request body.
    """
    category: Category
    resume_index: int = 0
    counters: Dict[str, int] = Field(default_factory=dict)
    partial_rows: List[Row] = Field(default_factory=list)
    completed_results: Dict[str, List[Row]] = Field(default_factory=dict)


class CategoryResult(BaseModel):
    category: Category
    rows: List[Row] = Field(default_factory=list)
    strategy: Optional[str] = None

    @property
    def row_count(self) -> int:
        return len(self.rows)


class JobSnapshot(BaseModel):
    """Store-agnostic view of a scrape job."""
    id: str
    user_id: str
    mode: str = "scrape"
    data_types: List[str] = Field(default_factory=list)
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    error_message: Optional[str] = None
    log_output: Optional[str] = None
    batch_state: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class ResultRecord(BaseModel):
    job_id: str
    user_id: str
    data_type: str
    file_path: str
    row_count: int = 0


class ScrapeRequest(BaseModel):
    """Invocation body. The ``_continuation*`` fields only appear on
    self-triggered continuation calls."""
    model_config = ConfigDict(populate_by_name=True)

    mode: Literal["discover", "scrape"] = "scrape"
    data_types: List[str] = Field(default_factory=list, alias="dataTypes")
    date_from: Optional[str] = Field(None, alias="dateFrom")
    date_to: Optional[str] = Field(None, alias="dateTo")
    test_limit: Optional[int] = Field(None, alias="testLimit", ge=1)
    test_patient_name: Optional[str] = Field(None, alias="testPatientName")
    continuation_job_id: Optional[str] = Field(None, alias="_continuationJobId")
    continuation_checkpoint: Optional[Checkpoint] = Field(None, alias="_continuationCheckpoint")
    continuation_log: Optional[List[str]] = Field(None, alias="_continuationLog")

    @property
    def is_continuation(self) -> bool:
        return self.continuation_job_id is not None

    def continuation_payload(self, job_id: str, checkpoint: Checkpoint, log_lines: List[str]) -> Dict[str, Any]:
        """Original request parameters plus the handoff fields."""
        payload = self.model_dump(
            mode="json",
            by_alias=True,
            exclude_none=True,
            exclude={"continuation_job_id", "continuation_checkpoint", "continuation_log"},
        )
        payload["_continuationJobId"] = job_id
        payload["_continuationCheckpoint"] = checkpoint.model_dump(mode="json")
        payload["_continuationLog"] = list(log_lines)
        return payload


class RunOutcome(BaseModel):
    success: bool
    job_id: Optional[str] = None
    mode: str = "scrape"
    has_data: bool = False
    batching: bool = False
    error: Optional[str] = None
    status_code: int = 200

    def to_response(self) -> Dict[str, Any]:
        if not self.success:
            return {"error": self.error}
        body = {"success": True, "jobId": self.job_id, "mode": self.mode}
        if self.mode == "scrape":
            body["hasData"] = self.has_data
            body["batching"] = self.batching
        return body

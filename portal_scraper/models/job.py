from beanie import Document, Indexed
from typing import Optional, Dict, Any, List
from datetime import datetime
from pydantic import Field


class ScrapeJob(Document):
    user_id: Indexed(str)
    mode: str = "scrape"
    data_types: List[str] = Field(default_factory=list)
    status: str = "pending"  # pending, running, completed, failed, aborted
    progress: int = 0
    error_message: Optional[str] = None
    log_output: Optional[str] = None
    batch_state: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "scrape_jobs"


class ScrapeResult(Document):
    scrape_job_id: Indexed(str)
    user_id: str
    data_type: str
    file_path: str
    row_count: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "scraped_data_results"

"""Application configuration via environment variables."""

import os
import tempfile
from typing import Dict, List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Portal
    portal_base_url: str = "https://www.chirofusionlive.com"
    request_timeout: int = 30

    # Job / credential store
    mongodb_url: str = "mongodb://localhost:27017"
    database_name: str = "portal_scraper"
    job_store_backend: str = "mongo"  # "mongo" or "memory"
    credentials_key: Optional[str] = None

    # Object storage for workbooks and exported documents
    storage_dir: str = os.path.join(tempfile.gettempdir(), "portal_scraper_results")
    storage_public_base_url: Optional[str] = None

    # Continuation dispatch
    continuation_mode: str = "local"  # "local" or "http"
    continuation_url: str = "http://localhost:8000/scrape"
    continuation_token: Optional[str] = None

    # Run budget
    run_budget_seconds: float = 100.0
    stale_job_minutes: int = 60
    progress_every: int = 50

    # Pacing against the portal
    request_delay_min: float = 0.15
    request_delay_max: float = 0.3
    report_generation_delay: float = 20.0
    appointment_poll_attempts: int = 8
    appointment_poll_interval: float = 4.0

    # Financials
    statement_page_size: int = 100
    statement_max_rows: int = 50000

    # Endpoint variant overrides, e.g. {"patient_export": ["/Reports/ExportPatients"]}
    endpoint_overrides: Dict[str, List[str]] = {}

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()

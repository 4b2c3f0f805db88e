from fastapi import APIRouter, Body, Header, HTTPException
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from typing import Any, Dict, Optional
import hmac
import logging

from ..config import settings
from ..models.records import ScrapeRequest

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/scrape", tags=["scrape"])

engine = None
job_store = None


def set_engine(e):
    global engine
    engine = e


def set_job_store(store):
    global job_store
    job_store = store


def _validation_message(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"Invalid request: {location}: {first.get('msg')}" if location else f"Invalid request: {first.get('msg')}"


@router.post("")
async def scrape(
    payload: Dict[str, Any] = Body(...),
    user_id: str = Header(..., alias="X-User-Id"),
    continuation_token: Optional[str] = Header(None, alias="X-Continuation-Token"),
):
    """Start a discovery or scrape run, or continue a checkpointed one."""
    try:
        request = ScrapeRequest.model_validate(payload)
    except ValidationError as e:
        return JSONResponse(status_code=400, content={"error": _validation_message(e)})

    if request.is_continuation and settings.continuation_token:
        if not continuation_token or not hmac.compare_digest(continuation_token, settings.continuation_token):
            return JSONResponse(status_code=403, content={"error": "Invalid continuation token"})

    try:
        outcome = await engine.handle(user_id, request)
    except Exception as e:
        logger.exception("Scrape invocation failed")
        return JSONResponse(status_code=500, content={"error": str(e)})
    return JSONResponse(status_code=outcome.status_code, content=outcome.to_response())


@router.get("/jobs")
async def list_jobs(user_id: str = Header(..., alias="X-User-Id"), limit: int = 50):
    jobs = await job_store.list_jobs(user_id, limit=limit)
    return {"jobs": [job.model_dump(mode="json") for job in jobs]}


@router.get("/jobs/{job_id}")
async def get_job(job_id: str, user_id: str = Header(..., alias="X-User-Id")):
    job = await job_store.get_job(job_id)
    if not job or job.user_id != user_id:
        raise HTTPException(status_code=404, detail="Job not found")
    results = await job_store.list_results(job_id)
    return {
        "job": job.model_dump(mode="json"),
        "results": [r.model_dump(mode="json") for r in results],
    }

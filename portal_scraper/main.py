from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging

from .config import settings
from .routers import credentials, scrape
from .services.continuation import HttpContinuationQueue, InProcessContinuationQueue
from .services.engine import ExtractionEngine
from .services.job_store import BeanieJobStore, InMemoryJobStore
from .services.object_store import LocalObjectStore

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def build_engine():
    if settings.job_store_backend == "memory":
        job_store = InMemoryJobStore()
    else:
        job_store = BeanieJobStore()
    object_store = LocalObjectStore(settings.storage_dir, settings.storage_public_base_url)
    if settings.continuation_mode == "http":
        queue = HttpContinuationQueue(settings.continuation_url, settings.continuation_token)
    else:
        queue = InProcessContinuationQueue(lambda user_id, payload: engine.handle_payload(user_id, payload))
    engine = ExtractionEngine(
        job_store=job_store,
        object_store=object_store,
        credentials_provider=credentials.get_decrypted_credentials,
        continuation=queue,
        config=settings,
    )
    return engine, job_store


engine, job_store = build_engine()

# Set components in routers
scrape.set_engine(engine)
scrape.set_job_store(job_store)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect beanie when jobs and credentials live in MongoDB."""
    client = None
    if settings.job_store_backend != "memory":
        from beanie import init_beanie
        from pymongo import AsyncMongoClient
        from .models.credential import PortalCredential
        from .models.job import ScrapeJob, ScrapeResult

        client = AsyncMongoClient(settings.mongodb_url)
        await init_beanie(
            database=client[settings.database_name],
            document_models=[ScrapeJob, ScrapeResult, PortalCredential],
        )
        logger.info(f"Connected to MongoDB database {settings.database_name}")
    logger.info(f"Continuation mode: {settings.continuation_mode}; run budget {settings.run_budget_seconds:.0f}s")

    yield

    if client is not None:
        await client.close()


app = FastAPI(
    title="Practice Portal Extraction API",
    description="Authenticated extraction of demographics, appointments, documents and financials from a practice-management portal",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(scrape.router)
app.include_router(credentials.router)


@app.get("/")
async def root():
    return {
        "status": "online",
        "service": "Practice Portal Extraction API",
        "version": "1.0.0",
        "endpoints": {
            "scrape": "/scrape",
            "jobs": "/scrape/jobs",
            "credentials": "/credentials",
            "docs": "/docs"
        }
    }


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "portal": settings.portal_base_url,
        "job_store": settings.job_store_backend,
        "continuation_mode": settings.continuation_mode,
    }


def main():
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()

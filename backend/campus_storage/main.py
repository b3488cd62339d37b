"""Campus Storage sandbox backend.

A local stand-in for the production object-storage and leave services, so the
presigned upload saga can be run and tested end to end.

Modules:
    - storage: storage configs, presigned PUT/GET URLs, file objects
    - leave: leave requests, the business record attachments belong to
    - uploads: the client-side saga (not served, but driven against this app)

Run with:
    uvicorn campus_storage.main:app --app-dir backend --reload
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from campus_storage import __version__
from campus_storage.config import get_config
from campus_storage.leave.router import router as leave_router
from campus_storage.leave.service import LeaveRequestService
from campus_storage.storage.router import router as storage_router
from campus_storage.storage.service import ObjectStorageService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# httpx/httpcore log every connection and request line.
for _noisy in (
    "httpx",
    "httpcore",
    "httpcore.http11",
    "httpcore.connection",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    config = get_config()

    # `logging.level: "debug"` in campus_storage.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    storage = ObjectStorageService.get_instance(config.sandbox)
    LeaveRequestService.get_instance(config.sandbox)
    logger.info(
        "Sandbox ready: data_dir=%s configs=%s",
        config.sandbox.data_dir,
        [c.bucket_purpose for c in storage.list_storage_configs()],
    )

    yield  # Application runs here

    LeaveRequestService.reset_instance()
    ObjectStorageService.reset_instance()
    logger.info("Application shutdown complete")


app = FastAPI(
    title="Campus Storage API",
    description="Object-storage sandbox for presigned attachment uploads",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(storage_router)
app.include_router(leave_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}

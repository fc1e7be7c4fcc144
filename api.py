import logging
import secrets
from typing import Callable, Optional
from datetime import datetime
from fastapi import FastAPI, APIRouter, HTTPException, Request, status
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import sessionmaker
from starlette.routing import NoMatchFound

# Local imports
from cache import KeyValueStore, connect_cache
from config import Settings, settings as default_settings
from database import SessionLocal
from dispatcher import Dispatcher, RequestOrigin
from lifecycle import BackJob, JobTerminated
from monitor import BackJobMiddleware
from schemas import HealthResponse, JobStatusResponse, StartJobRequest, StartJobResponse
from store import JobStore
from utils import utcnow
from worker import router as actions_router

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/backjob")


@router.post("/jobs", response_model=StartJobResponse, status_code=status.HTTP_201_CREATED)
def start_job(payload: StartJobRequest, request: Request):
    """
    Start a background job running the route named ``payload.route``.
    Poll GET /api/backjob/jobs/{job_id} for its progress.
    """
    backjob: BackJob = request.app.state.backjob
    try:
        request.app.url_path_for(payload.route)
    except NoMatchFound:
        raise HTTPException(status_code=400, detail=f"Unknown route: {payload.route}")

    job_id = backjob.start(
        payload.route,
        payload.params,
        origin=RequestOrigin.from_request(request),
        as_current_user=payload.as_current_user,
        delay=payload.delay,
        method=payload.method,
        data=payload.data,
    )
    return StartJobResponse(job_id=job_id, status=backjob.read(job_id).status)


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
def get_status(job_id: int, request: Request):
    """Get status and progress of a job. Unknown jobs report as just started."""
    return request.app.state.backjob.public_status(job_id)


@router.get("/health", response_model=HealthResponse)
def health_check(request: Request):
    store: JobStore = request.app.state.backjob.store
    backends = {
        "cache": type(store.cache).__name__ if store.use_cache else "disabled",
        "database": "enabled" if store.use_db else "disabled",
    }
    status_msg = "healthy" if (store.use_cache or store.use_db) else "degraded"
    return {
        "status": status_msg,
        "message": f"Background jobs available. Cache: {backends['cache']}, database: {backends['database']}",
        "backends": backends,
    }


async def job_terminated_handler(request: Request, exc: JobTerminated):
    return PlainTextResponse(exc.status_text)


def create_app(
    settings: Optional[Settings] = None,
    cache: Optional[KeyValueStore] = None,
    session_factory: Optional[sessionmaker] = None,
    dispatcher: Optional[Dispatcher] = None,
    clock: Callable[[], datetime] = utcnow,
) -> FastAPI:
    settings = (settings or default_settings).model_copy()
    if not settings.secret_key:
        logger.warning("⚠️ BACKJOB_SECRET_KEY is not set. Using a random per-process key.")
        settings.secret_key = secrets.token_hex(32)

    if cache is None and settings.use_cache:
        cache = connect_cache(settings.redis_url)
    if session_factory is None and settings.use_db:
        session_factory = SessionLocal

    store = JobStore(settings, cache=cache, session_factory=session_factory, clock=clock)
    if settings.check_and_create_table:
        store.create_table()

    app = FastAPI(
        title="Background Jobs",
        version="1.0.0",
        description="Start long running actions in the background and poll their progress"
    )

    if dispatcher is None:
        dispatcher = Dispatcher(settings, app.url_path_for)
    backjob = BackJob(settings, store, dispatcher, clock=clock)
    app.state.backjob = backjob

    app.add_middleware(BackJobMiddleware, backjob=backjob, dispatcher=dispatcher)
    app.add_exception_handler(JobTerminated, job_terminated_handler)
    app.include_router(router)
    app.include_router(actions_router)

    logger.info(f"🔧 Background jobs ready (cache: {store.use_cache}, database: {store.use_db})")
    return app

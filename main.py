from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn
import logging
from contextlib import asynccontextmanager

from grade_engine.core.config import settings
from grade_engine.core.connectivity import ConnectivityMonitor
from grade_engine.core.database import AsyncSessionLocal, init_db
from grade_engine.core.errors import GradeEngineError
from grade_engine.api.v1 import grades, curves, sync
from grade_engine.services.aggregation import GradeAggregateCache, GradeAggregator
from grade_engine.services.curve_engine import CurveEngine
from grade_engine.services.curve_repository import CurveRepository
from grade_engine.services.sync import (
    HttpRemoteGradeStore,
    InMemoryRemoteGradeStore,
    PendingWriteQueue,
    ReconciledGradeStore,
)
from grade_engine.services.validation import ScoreValidator

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Initialize database
    await init_db()

    if settings.REMOTE_STORE_URL:
        remote = HttpRemoteGradeStore(settings.REMOTE_STORE_URL, timeout=settings.REMOTE_STORE_TIMEOUT)
    else:
        logger.warning("REMOTE_STORE_URL not set, using in-memory remote grade store")
        remote = InMemoryRemoteGradeStore()

    aggregator = GradeAggregator()
    connectivity = ConnectivityMonitor()
    store = ReconciledGradeStore(
        remote=remote,
        queue=PendingWriteQueue(AsyncSessionLocal),
        monitor=connectivity,
        cache=GradeAggregateCache(aggregator)
    )

    app.state.validator = ScoreValidator()
    app.state.aggregator = aggregator
    app.state.curve_engine = CurveEngine()
    app.state.curve_repository = CurveRepository(AsyncSessionLocal)
    app.state.connectivity = connectivity
    app.state.grade_store = store

    await store.start()

    yield

    await store.stop()
    await remote.close()


app = FastAPI(
    title=settings.APP_NAME,
    description="Grade validation, aggregation, curving and offline reconciliation",
    version="1.0.0",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routers
app.include_router(grades.router, prefix="/api/v1/grades", tags=["grades"])
app.include_router(curves.router, prefix="/api/v1/curves", tags=["curves"])
app.include_router(sync.router, prefix="/api/v1/sync", tags=["sync"])


@app.get("/")
async def root():
    return {"message": f"{settings.APP_NAME} API", "status": "running"}


@app.get("/health")
async def health_check():
    return {"status": "healthy", "version": "1.0.0"}


@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "status_code": exc.status_code}
    )


@app.exception_handler(GradeEngineError)
async def grade_engine_exception_handler(request, exc):
    logger.error(f"Unhandled grade engine error: {exc.message}")
    return JSONResponse(
        status_code=500,
        content={"detail": exc.message, "category": exc.category, "status_code": 500}
    )


@app.exception_handler(Exception)
async def general_exception_handler(request, exc):
    logger.error(f"Unhandled error: {exc}")
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "status_code": 500}
    )


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="info" if not settings.DEBUG else "debug"
    )

#!/usr/bin/env python3
"""
FastAPI server for the review ingestion pipeline.
Provides REST API endpoints to manage the sync queue, trigger syncs,
run bulk imports, and query businesses, reviews and import batches.
"""

import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Dict, Any, List, Optional

from fastapi import FastAPI, HTTPException, Query, Depends, Request, APIRouter
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from review_pipeline.bulk_import import import_rows, resolve_mapping
from review_pipeline.config import load_config
from review_pipeline.errors import (
    BatchAlreadyCompletedError, BatchNotFoundError, BusinessNotFoundError,
)
from review_pipeline.models import BatchStatus, BatchType, PlanTier, QueueState

# --- Load config for API settings ---
_config = load_config()
_api_config = _config.get("api", {})

API_VERSION = "1.0.0"

log = logging.getLogger("api_server")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown"""
    from review_pipeline.directory_db import DirectoryDB
    from review_pipeline.log_manager import setup_logging
    from review_pipeline.processor import QueueProcessor

    # Startup: structured logging
    setup_logging(
        level=_config.get("log_level", "INFO"),
        log_dir=_config.get("log_dir", "logs"),
        log_file=_config.get("log_file", "pipeline.log"),
    )
    log.info("Starting Review Ingestion API Server")

    db_path = _config.get("db_path", "directory.db")
    app.state.config = _config

    # Request-path reads share this connection on the event loop thread; writes
    # go through run_write() on their own connection
    app.state.directory_db = DirectoryDB(db_path)
    log.info("Directory database initialized")

    # Workers open their own connections
    app.state.processor = QueueProcessor(db_path, _config)

    yield

    # Shutdown
    log.info("Shutting down Review Ingestion API Server")
    if hasattr(app.state, "processor"):
        app.state.processor.shutdown()
    if hasattr(app.state, "directory_db"):
        app.state.directory_db.close()


# Initialize FastAPI app
app = FastAPI(
    title="Review Ingestion API",
    description="REST API for review synchronization, bulk import and the import ledger",
    version=API_VERSION,
    lifespan=lifespan
)

# --- Request Log Middleware ---

class RequestLogMiddleware(BaseHTTPMiddleware):
    """Log every request with its status and timing."""

    async def dispatch(self, request: Request, call_next) -> Response:
        start = time.monotonic()
        response = await call_next(request)
        elapsed_ms = int((time.monotonic() - start) * 1000)
        log.info(f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms} ms)")
        return response


app.add_middleware(RequestLogMiddleware)

# CORS: env var takes precedence, then config.yaml, then default "*".
_raw_origins = (
    os.environ.get("ALLOWED_ORIGINS", "")
    or _api_config.get("allowed_origins", "*")
)
_allowed_origins = [o.strip() for o in _raw_origins.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_credentials=_raw_origins != "*",
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

@app.exception_handler(BusinessNotFoundError)
@app.exception_handler(BatchNotFoundError)
async def _not_found_handler(request: Request, exc: Exception):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(BatchAlreadyCompletedError)
async def _already_completed_handler(request: Request, exc: Exception):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# Dependency helpers
# ---------------------------------------------------------------------------

def get_directory_db(request: Request):
    """Get DirectoryDB from app state."""
    db = getattr(request.app.state, "directory_db", None)
    if db is None:
        raise HTTPException(status_code=500, detail="Directory database not initialized")
    return db


def get_processor(request: Request):
    """Get QueueProcessor from app state."""
    processor = getattr(request.app.state, "processor", None)
    if processor is None:
        raise HTTPException(status_code=500, detail="Queue processor not initialized")
    return processor


def get_config(request: Request) -> Dict[str, Any]:
    return getattr(request.app.state, "config", _config)


def get_sync_queue(request: Request, db=Depends(get_directory_db)):
    """SyncQueue bound to the request-path connection."""
    from review_pipeline.sync_queue import SyncQueue
    return SyncQueue(db, get_config(request))


async def run_write(db, fn, *args, **kwargs):
    """
    Run fn(conn, *args, **kwargs) in a worker thread on its own connection.

    Writes take the BEGIN IMMEDIATE lock and may wait out busy_timeout;
    that wait must not hold up the event loop.
    """
    from review_pipeline.directory_db import DirectoryDB

    def _call():
        conn = DirectoryDB(db.db_path)
        try:
            return fn(conn, *args, **kwargs)
        finally:
            conn.close()

    return await asyncio.to_thread(_call)


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------

# --- Businesses ---
class BusinessRequest(BaseModel):
    """Request model for registering a directory business"""
    business_id: str = Field(..., min_length=1, description="Directory business ID")
    name: str = Field(..., min_length=1, description="Business name")
    place_id: Optional[str] = Field(None, description="External place identifier at the review source")
    plan_tier: PlanTier = Field(PlanTier.FREE, description="Plan tier: free, starter, pro, power")
    sync_enabled: bool = Field(True, description="Include in scheduled syncs")


class BusinessResponse(BaseModel):
    business_id: str
    name: str
    place_id: Optional[str] = None
    plan_tier: str
    review_count: int = 0
    average_rating: Optional[float] = None
    sync_status: str
    last_sync_at: Optional[str] = None
    last_sync_error: Optional[str] = None
    sync_enabled: bool = True


class SyncEnabledRequest(BaseModel):
    enabled: bool = Field(..., description="Include in scheduled syncs")


# --- Reviews ---
class ReviewResponse(BaseModel):
    review_id: str
    business_id: str
    rating: int
    text: str = ""
    author_name: str = "Anonymous"
    published_at: Optional[str] = None
    source: Optional[str] = None
    reply_text: Optional[str] = None
    verified: bool = False
    id_synthetic: bool = False
    accepted_at: Optional[str] = None
    updated_at: Optional[str] = None
    import_batch_id: Optional[str] = None


class PaginatedReviewsResponse(BaseModel):
    business_id: str
    total: int
    limit: int
    offset: int
    reviews: List[ReviewResponse]


class DuplicatePairResponse(BaseModel):
    primary: Dict[str, Any]
    duplicate: Dict[str, Any]
    score: float
    reason: str


class DuplicatesResponse(BaseModel):
    business_id: str
    count: int
    pairs: List[DuplicatePairResponse]


class RemovalActionResponse(BaseModel):
    action: str
    review_id: str
    source: Optional[str] = None
    reason: str


class DuplicateCleanupResponse(BaseModel):
    business_id: str
    dry_run: bool
    removed: int
    kept: int
    actions: List[RemovalActionResponse]


# --- Queue ---
class EnqueueRequest(BaseModel):
    """Request model for queueing syncs"""
    business_ids: List[str] = Field(default_factory=list, description="Businesses to queue")
    all: bool = Field(False, description="Queue every sync-enabled business with a place ID")
    priority: Optional[int] = Field(None, description="Fixed priority (default: computed per business)")


class EnqueueResponse(BaseModel):
    added: int
    already_queued: int
    skipped: List[str] = []


class QueueStatusResponse(BaseModel):
    pending_count: int
    processing_count: int
    recent_completed: int
    recent_failed: int
    retry_waiting_count: int
    drain_running: bool = False


class QueueItemResponse(BaseModel):
    item_id: int
    business_id: str
    place_id: Optional[str] = None
    priority: int
    state: str
    retry_count: int = 0
    last_error: Optional[str] = None
    requested_at: Optional[str] = None
    next_eligible_at: Optional[str] = None
    started_at: Optional[str] = None
    processed_at: Optional[str] = None
    results: Optional[Dict[str, Any]] = None
    business_name: Optional[str] = None


class DrainRequest(BaseModel):
    max_items: Optional[int] = Field(None, ge=1, description="Stop after this many items")


class RetryFailedRequest(BaseModel):
    business_ids: Optional[List[str]] = Field(None, description="Only these businesses (default: all)")


class RefillResponse(BaseModel):
    pending_count: int
    selected: int
    added: int
    already_queued: int


class SyncResponse(BaseModel):
    business_id: str
    status: str
    batch_id: Optional[str] = None
    tallies: Dict[str, int] = {}
    errors: List[str] = []


# --- Matching ---
class MatchRequest(BaseModel):
    name: str = Field(..., description="Business name as it appears in the source")
    place_id: Optional[str] = Field(None, description="Exact place identifier to try first")


class MatchAlternativeResponse(BaseModel):
    business_id: str
    name: str
    confidence: int


class MatchResponse(BaseModel):
    source_name: str
    business_id: Optional[str] = None
    confidence: int
    method: str
    alternatives: List[MatchAlternativeResponse] = []


# --- Imports ---
class ImportRequest(BaseModel):
    """Request model for a bulk review import"""
    rows: List[Dict[str, Any]] = Field(..., description="Parsed rows (column -> cell)")
    mapping: Optional[Dict[str, str]] = Field(None, description="Logical field -> column name")
    preset: Optional[str] = Field(None, description="Known export layout, e.g. yelp")
    source: Optional[str] = Field(None, description="Platform tag for rows without a source column")
    batch_type: BatchType = Field(BatchType.EXTERNAL_BULK, description="bulk-csv or external-bulk")
    batch_id: Optional[str] = Field(None, description="Reprocess this existing batch")
    force: bool = Field(False, description="Allow reprocessing a completed batch")


class BatchResponse(BaseModel):
    batch_id: str
    batch_type: str
    source: str
    status: str
    expected_count: int = 0
    tallies: Dict[str, int]
    processed_count: int = 0
    errors: List[str] = []
    metadata: Dict[str, Any] = {}
    force_reprocessed: int = 0
    created_at: Optional[str] = None
    completed_at: Optional[str] = None


# --- DB Stats ---
class DbStatsResponse(BaseModel):
    businesses_count: int = 0
    reviews_count: int = 0
    sync_queue_count: int = 0
    import_batches_count: int = 0
    queue_by_state: Dict[str, int] = {}
    db_size_bytes: int = 0


# ===========================================================================
# Routers
# ===========================================================================

# --- System Router ---
system_router = APIRouter(tags=["System"])


@system_router.get("/", summary="API Health Check")
async def root():
    """Health check endpoint"""
    return {
        "message": "Review Ingestion API is running",
        "status": "healthy",
        "version": API_VERSION
    }


@system_router.get("/db-stats", response_model=DbStatsResponse, summary="Database Statistics")
async def get_db_stats(db=Depends(get_directory_db)):
    """Get table counts, queue breakdown and db size."""
    stats = db.get_stats()
    return DbStatsResponse(
        businesses_count=stats.get("businesses_count", 0),
        reviews_count=stats.get("reviews_count", 0),
        sync_queue_count=stats.get("sync_queue_count", 0),
        import_batches_count=stats.get("import_batches_count", 0),
        queue_by_state=stats.get("queue_by_state", {}),
        db_size_bytes=stats.get("db_size_bytes", 0),
    )


# --- Queue Router ---
queue_router = APIRouter(prefix="/queue", tags=["Queue"])


@queue_router.get("/status", response_model=QueueStatusResponse, summary="Queue Status")
async def queue_status(queue=Depends(get_sync_queue), processor=Depends(get_processor)):
    """Queue depth and outcomes within the recent window."""
    return QueueStatusResponse(**queue.status(), drain_running=processor.is_running())


@queue_router.post("/enqueue", response_model=EnqueueResponse, summary="Queue Syncs")
async def enqueue(request: EnqueueRequest, db=Depends(get_directory_db),
                  config=Depends(get_config)):
    """
    Queue syncs for the given businesses (or all of them).

    Businesses that already have a pending or processing item are counted
    as already_queued; unknown businesses and those without a place ID are
    returned in skipped.
    """
    from review_pipeline.scheduler import enqueue_businesses
    from review_pipeline.sync_queue import SyncQueue

    if not request.all and not request.business_ids:
        raise HTTPException(status_code=400, detail="Give business_ids or set all")
    stale_after = config.get("scheduler", {}).get("stale_after_hours", 24)

    def _enqueue(conn):
        skipped: List[str] = []
        if request.all:
            businesses = [b for b in conn.list_businesses(sync_enabled_only=True) if b.place_id]
        else:
            businesses = []
            for business_id in request.business_ids:
                business = conn.get_business(business_id)
                if business is None or not business.place_id:
                    skipped.append(business_id)
                else:
                    businesses.append(business)

        queue = SyncQueue(conn, config)
        if request.priority is not None:
            return skipped, queue.enqueue_bulk(businesses, request.priority)
        return skipped, enqueue_businesses(queue, businesses, stale_after_hours=stale_after)

    skipped, result = await run_write(db, _enqueue)
    return EnqueueResponse(skipped=skipped, **result)


@queue_router.post("/drain", summary="Drain Queue in Background")
async def drain(request: Optional[DrainRequest] = None, processor=Depends(get_processor)):
    """Start a background drain. Only one drain runs at a time."""
    max_items = request.max_items if request else None
    if not processor.start_drain(max_items=max_items):
        raise HTTPException(status_code=409, detail="A queue drain is already running")
    log.info("Started background queue drain")
    return {"status": "started", "message": "Queue drain started"}


@queue_router.post("/refill", response_model=RefillResponse, summary="Refill Queue")
async def refill_queue(db=Depends(get_directory_db), config=Depends(get_config)):
    """Top up the queue from the directory when it is running low."""
    from review_pipeline.scheduler import refill
    from review_pipeline.sync_queue import SyncQueue

    result = await run_write(db, lambda conn: refill(SyncQueue(conn, config), conn, config=config))
    return RefillResponse(**result)


@queue_router.post("/release-stuck", summary="Release Stuck Items")
async def release_stuck(
    older_than_seconds: Optional[int] = Query(None, ge=1, description="Seconds in processing before an item counts as stuck"),
    db=Depends(get_directory_db),
    config=Depends(get_config),
):
    """Fail items left in processing by a dead worker as retryable."""
    from review_pipeline.sync_queue import SyncQueue

    if older_than_seconds is None:
        older_than_seconds = config.get("queue", {}).get("stuck_after_seconds", 300)
    released = await run_write(
        db, lambda conn: SyncQueue(conn, config).release_stuck(older_than_seconds))
    return {"released": released}


@queue_router.post("/retry-failed", summary="Retry Failed Items")
async def retry_failed(request: Optional[RetryFailedRequest] = None,
                       db=Depends(get_directory_db), config=Depends(get_config)):
    """Give terminally failed items a fresh set of retries."""
    from review_pipeline.sync_queue import SyncQueue

    ids = request.business_ids if request else None
    requeued = await run_write(db, lambda conn: SyncQueue(conn, config).retry_failed(ids))
    return {"requeued": requeued}


@queue_router.post("/purge", summary="Purge Finished Items")
async def purge_finished(
    older_than_hours: int = Query(168, ge=1, description="Hours since an item finished"),
    db=Depends(get_directory_db),
    config=Depends(get_config),
):
    """Delete completed and terminally failed items older than the cutoff."""
    from review_pipeline.sync_queue import SyncQueue

    purged = await run_write(
        db, lambda conn: SyncQueue(conn, config).purge_finished(older_than_hours))
    return {"purged": purged}


@queue_router.get("/items", response_model=List[QueueItemResponse], summary="List Queue Items")
async def list_queue_items(
    state: Optional[QueueState] = Query(None, description="Filter by state"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum number of items to return"),
    queue=Depends(get_sync_queue),
):
    """List queue items, highest priority first."""
    items = queue.list_items(state=state.value if state else None, limit=limit)
    return [QueueItemResponse(**item.to_dict()) for item in items]


@queue_router.get("/activity", response_model=List[QueueItemResponse], summary="Recent Sync Activity")
async def recent_activity(
    limit: int = Query(20, ge=1, le=500, description="Maximum number of items to return"),
    queue=Depends(get_sync_queue),
):
    """Completed and terminally failed syncs across all businesses, newest first."""
    return [QueueItemResponse(**item.to_dict()) for item in queue.recent_activity(limit)]


# --- Businesses Router ---
businesses_router = APIRouter(prefix="/businesses", tags=["Businesses"])


@businesses_router.post("", response_model=BusinessResponse, summary="Register Business")
async def add_business(request: BusinessRequest, db=Depends(get_directory_db)):
    """Register or update a directory business."""
    business = await run_write(
        db, lambda conn: conn.upsert_business(
            request.business_id, request.name,
            place_id=request.place_id,
            plan_tier=request.plan_tier,
            sync_enabled=request.sync_enabled,
        ))
    return BusinessResponse(**business.to_dict())


@businesses_router.get("", response_model=List[BusinessResponse], summary="List Businesses")
async def list_businesses(db=Depends(get_directory_db)):
    """List all directory businesses."""
    return [BusinessResponse(**b.to_dict()) for b in db.list_businesses()]


@businesses_router.get("/{business_id}", response_model=BusinessResponse, summary="Get Business")
async def get_business(business_id: str, db=Depends(get_directory_db)):
    """Get one business with its sync status and review aggregates."""
    return BusinessResponse(**db.require_business(business_id).to_dict())


@businesses_router.get("/{business_id}/reviews", response_model=PaginatedReviewsResponse,
                       summary="List Reviews for Business")
async def list_reviews(
    business_id: str,
    limit: int = Query(50, ge=1, le=1000, description="Reviews per page"),
    offset: int = Query(0, ge=0, description="Offset for pagination"),
    db=Depends(get_directory_db),
):
    """Get paginated accepted reviews for a business."""
    db.require_business(business_id)
    total = db.count_reviews(business_id)
    rows = db.get_reviews(business_id, limit=limit, offset=offset)
    return PaginatedReviewsResponse(
        business_id=business_id, total=total, limit=limit, offset=offset,
        reviews=[ReviewResponse(**r.to_dict()) for r in rows],
    )


@businesses_router.post("/{business_id}/sync", response_model=SyncResponse,
                        summary="Sync Business Now")
async def sync_business(business_id: str, db=Depends(get_directory_db),
                        processor=Depends(get_processor)):
    """
    Sync one business immediately. Goes through the queue, so a business
    that a worker is already syncing reports already_processing.
    """
    db.require_business(business_id)
    result = await asyncio.to_thread(processor.sync_now, business_id)
    return SyncResponse(**result)


@businesses_router.put("/{business_id}/sync-enabled", response_model=BusinessResponse,
                       summary="Turn Scheduled Sync On or Off")
async def set_sync_enabled(business_id: str, request: SyncEnabledRequest,
                           db=Depends(get_directory_db)):
    """Include or exclude a business from scheduled syncs."""
    business = await run_write(
        db, lambda conn: conn.set_sync_enabled(business_id, request.enabled))
    return BusinessResponse(**business.to_dict())


@businesses_router.get("/{business_id}/sync-history", response_model=List[QueueItemResponse],
                       summary="Sync History for Business")
async def sync_history(
    business_id: str,
    limit: int = Query(10, ge=1, le=500, description="Maximum number of items to return"),
    db=Depends(get_directory_db),
    queue=Depends(get_sync_queue),
):
    """A business's sync requests in every state, newest first."""
    db.require_business(business_id)
    return [QueueItemResponse(**item.to_dict()) for item in queue.history(business_id, limit)]


@businesses_router.get("/{business_id}/duplicates", response_model=DuplicatesResponse,
                       summary="Find Stored Duplicates")
async def find_duplicates(business_id: str, db=Depends(get_directory_db),
                          config=Depends(get_config)):
    """Stored reviews that the ingestion dedup rules would have merged."""
    from review_pipeline.ingest import ReviewIngestor

    pairs = ReviewIngestor(db, config).find_duplicates(business_id)
    return DuplicatesResponse(business_id=business_id, count=len(pairs),
                              pairs=[p.to_dict() for p in pairs])


@businesses_router.post("/{business_id}/duplicates/remove",
                        response_model=DuplicateCleanupResponse,
                        summary="Remove Stored Duplicates")
async def remove_duplicates(
    business_id: str,
    dry_run: bool = Query(True, description="Only report what would be removed"),
    db=Depends(get_directory_db),
    config=Depends(get_config),
):
    """Keep the most authoritative copy of each duplicate and delete the rest."""
    from review_pipeline.ingest import ReviewIngestor

    summary = await run_write(
        db, lambda conn: ReviewIngestor(conn, config).remove_duplicates(business_id, dry_run))
    return DuplicateCleanupResponse(**summary)


# --- Matching Router ---
match_router = APIRouter(tags=["Matching"])


@match_router.post("/match", response_model=MatchResponse, summary="Match Business Name")
async def match(request: MatchRequest, db=Depends(get_directory_db),
                config=Depends(get_config)):
    """Fuzzy-match a free-text business name against the directory."""
    from review_pipeline.matcher import match_business

    import_cfg = config.get("import", {})
    candidate = match_business(
        request.name, db.list_businesses(),
        place_id=request.place_id,
        auto_accept=import_cfg.get("auto_match_threshold", 0.70),
        floor=import_cfg.get("candidate_floor", 0.30),
        max_alternatives=import_cfg.get("max_alternatives", 5),
    )
    return MatchResponse(**candidate.to_dict())


# --- Imports Router ---
imports_router = APIRouter(prefix="/imports", tags=["Imports"])


@imports_router.post("", response_model=BatchResponse, summary="Run Bulk Import")
async def run_import(request: ImportRequest, db=Depends(get_directory_db),
                     config=Depends(get_config)):
    """
    Import rows as one ledger batch and return the completed batch.

    Bad mappings are rejected with 400 before any row is processed.
    """
    if request.batch_type not in (BatchType.BULK_CSV, BatchType.EXTERNAL_BULK):
        raise HTTPException(status_code=400, detail="batch_type must be bulk-csv or external-bulk")
    try:
        mapping, source = resolve_mapping(request.preset, request.mapping, request.source)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    batch = await asyncio.to_thread(
        import_rows, db.db_path, request.rows, mapping, config,
        source=source,
        batch_type=request.batch_type,
        batch_id=request.batch_id,
        force=request.force,
        metadata={"origin": "api"},
    )
    return BatchResponse(**batch.to_dict())


@imports_router.get("", response_model=List[BatchResponse], summary="List Import Batches")
async def list_imports(
    status: Optional[BatchStatus] = Query(None, description="Filter by batch status"),
    batch_type: Optional[BatchType] = Query(None, description="Filter by batch type"),
    limit: int = Query(50, ge=1, le=1000, description="Maximum number of batches to return"),
    db=Depends(get_directory_db),
):
    """List import batches, newest first."""
    from review_pipeline.ledger import ImportLedger

    batches = ImportLedger(db).list_batches(
        status=status.value if status else None,
        batch_type=batch_type.value if batch_type else None,
        limit=limit,
    )
    return [BatchResponse(**b.to_dict()) for b in batches]


@imports_router.get("/{batch_id}", response_model=BatchResponse, summary="Get Import Batch")
async def get_import(batch_id: str, db=Depends(get_directory_db)):
    """Get one import batch with tallies and errors."""
    from review_pipeline.ledger import ImportLedger
    return BatchResponse(**ImportLedger(db).require_batch(batch_id).to_dict())


# ===========================================================================
# Register all routers
# ===========================================================================
app.include_router(system_router)
app.include_router(queue_router)
app.include_router(businesses_router)
app.include_router(match_router)
app.include_router(imports_router)


if __name__ == "__main__":
    import uvicorn

    log.info("Starting FastAPI server...")
    uvicorn.run(
        "api_server:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )

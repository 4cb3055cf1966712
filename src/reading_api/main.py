"""
Reading API - FastAPI Application

REST surface for reading-interval ingestion and the top-books ranking.
Authentication happens upstream; the acting user arrives in ``X-User-Id``.
"""

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, UTC
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from common.errors import RateLimitedError, ReadingTrackerError
from common.metrics import REQUEST_COUNTER, REQUEST_LATENCY
from common.models import (
    BookCreate,
    BookRecord,
    BookUpdate,
    IntervalBatchSubmission,
    IntervalSubmission,
)
from common.redis_utils import RedisCache, close_redis_client, get_redis_client, ping
from common.settings import settings as S
from common.structured_logging import SERVICE_NAME, get_logger, request_id_var, set_request_context
from common.kafka_utils import close_producers
from reading_intervals.admission import AdmissionController
from reading_intervals.ingestion import IntervalIngestionService
from reading_intervals.jobs import RecomputeJobQueue
from reading_intervals.ranking import TopBooksService
from reading_intervals.read_pages import ReadPagesCalculator
from reading_intervals.store import IntervalStore, create_engine, create_session_factory

logger = get_logger(__name__)


@dataclass
class Services:
    store: IntervalStore
    ingestion: IntervalIngestionService
    ranking: TopBooksService
    read_pages: ReadPagesCalculator
    admission: AdmissionController
    engine: Optional[AsyncEngine] = None
    redis: Any = None


def build_services(
    store: IntervalStore,
    cache: Any,
    jobs: RecomputeJobQueue,
    admission: AdmissionController,
    engine: Optional[AsyncEngine] = None,
    redis_client: Any = None,
) -> Services:
    """Wire the core components together around the given collaborators."""
    ranking = TopBooksService(store, cache)
    return Services(
        store=store,
        ingestion=IntervalIngestionService(store, ranking, jobs),
        ranking=ranking,
        read_pages=ReadPagesCalculator(store),
        admission=admission,
        engine=engine,
        redis=redis_client,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage startup and shutdown tasks using FastAPI lifespan events."""
    if getattr(app.state, "services", None) is not None:
        # Collaborators were installed by the caller
        yield
        return

    logger.info("Starting up reading API")
    engine = create_engine()
    redis_client = get_redis_client()
    try:
        await IntervalStore.create_schema(engine)
    except Exception:
        logger.error("Failed to start up reading API", exc_info=True)
        raise
    if not await ping(redis_client):
        logger.warning("Redis not reachable at startup; ranking reads will compute live")

    app.state.services = build_services(
        store=IntervalStore(create_session_factory(engine)),
        cache=RedisCache(redis_client),
        jobs=RecomputeJobQueue(),
        admission=AdmissionController(),
        engine=engine,
        redis_client=redis_client,
    )

    # Application runs during this yield
    yield

    logger.info("Shutting down reading API")
    await close_producers()
    await close_redis_client()
    await engine.dispose()


app = FastAPI(
    title="Reading Intervals API",
    description="Tracks pages read per book and ranks books by unique pages read",
    version="1.0.0",
    lifespan=lifespan,
)


# --- request context / metrics middleware ------------------------------------
@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    request_id = set_request_context(
        request_id=request.headers.get("X-Request-ID"),
        user_id=request.headers.get("X-User-Id"),
    )
    started = time.perf_counter()
    response = await call_next(request)
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)
    REQUEST_COUNTER.labels(
        service=SERVICE_NAME,
        method=request.method,
        endpoint=endpoint,
        status_code=str(response.status_code),
    ).inc()
    REQUEST_LATENCY.labels(service=SERVICE_NAME, endpoint=endpoint).observe(time.perf_counter() - started)
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(ReadingTrackerError)
async def reading_tracker_error_handler(request: Request, exc: ReadingTrackerError):
    headers = {}
    if isinstance(exc, RateLimitedError) and exc.retry_after is not None:
        headers["Retry-After"] = str(exc.retry_after)
    if exc.http_status >= 500:
        logger.error("Request failed", extra={"error_code": exc.error_code, "path": request.url.path})
    return JSONResponse(
        status_code=exc.http_status,
        content={"error": exc.to_dict(), "request_id": request_id_var.get()},
        headers=headers,
    )


# --- dependencies ------------------------------------------------------------
def get_services(request: Request) -> Services:
    return request.app.state.services


async def admit(request: Request, services: Services = Depends(get_services)) -> None:
    """Fixed-window admission check, run before the ingestion handlers."""
    route = request.scope.get("route")
    path = getattr(route, "path", request.url.path)
    client_id = request.client.host if request.client else "unknown"
    await services.admission.check(client_id, path, request.method)


# --- response models ---------------------------------------------------------
class TopBookItem(BaseModel):
    book_id: str = Field(..., examples=["1"])
    book_name: str = Field(..., examples=["The Great Gatsby"])
    num_of_pages: str = Field(..., examples=["180"])
    num_of_read_pages: str = Field(..., examples=["50"])


class TopBooksResponse(BaseModel):
    books: List[TopBookItem]


class SubmitIntervalResponse(BaseModel):
    status_code: str = "success"
    created: bool


class ReadPagesResponse(BaseModel):
    book_id: int
    num_of_read_pages: int


def _now() -> str:
    return datetime.now(UTC).isoformat()


# --- endpoints ---------------------------------------------------------------
@app.get("/health")
async def health(request: Request):
    """Probe the database and Redis."""
    services: Optional[Services] = getattr(request.app.state, "services", None)
    health_status: Dict[str, Any] = {"status": "ok", "timestamp": time.time(), "components": {}}

    engine = services.engine if services else None
    if engine is None:
        health_status["components"]["database"] = {"status": "not_configured"}
    else:
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            health_status["components"]["database"] = {"status": "healthy"}
        except Exception as e:
            health_status["components"]["database"] = {"status": "unhealthy", "error": str(e)}
            health_status["status"] = "degraded"

    redis_client = services.redis if services else None
    if redis_client is None:
        health_status["components"]["redis"] = {"status": "not_configured"}
    elif await ping(redis_client):
        health_status["components"]["redis"] = {"status": "healthy"}
    else:
        # Ranking still works without Redis, only slower
        health_status["components"]["redis"] = {"status": "unavailable", "note": "Computing rankings live"}

    status_code = 200 if health_status["status"] == "ok" else 503
    return JSONResponse(content=health_status, status_code=status_code)


@app.get("/metrics")
async def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.post("/books", tags=["books"], status_code=201, response_model=BookRecord)
async def create_book(book: BookCreate, services: Services = Depends(get_services)):
    created = await services.store.create_book(book.title, book.number_of_pages)
    logger.info("Book created", extra={"book_id": created.id})
    return created


@app.patch("/books/{book_id}", tags=["books"], response_model=BookRecord)
async def update_book(book_id: int, changes: BookUpdate, services: Services = Depends(get_services)):
    updated = await services.store.update_book(book_id, **changes.model_dump(exclude_unset=True))
    # Title is a ranking tie-break
    await services.ranking.invalidate()
    return updated


@app.get(
    "/books/top",
    tags=["ranking"],
    summary="Books ranked by unique pages read",
    response_model=TopBooksResponse,
)
async def get_top_books(
    limit: int = Query(S.top_books_default_limit, description="Number of books to return (1-100)"),
    services: Services = Depends(get_services),
):
    ranked = await services.ranking.get_top_books(limit)
    return {
        "books": [
            {
                "book_id": str(r.book_id),
                "book_name": r.title,
                "num_of_pages": str(r.number_of_pages),
                "num_of_read_pages": str(r.unique_pages_read),
            }
            for r in ranked
        ]
    }


@app.get("/books/cache/stats", tags=["ranking"])
async def get_cache_stats(services: Services = Depends(get_services)):
    stats = services.ranking.get_cache_stats()
    return {
        "message": "Cache statistics retrieved successfully",
        "data": {
            "enabled": stats.enabled,
            "ttl": stats.ttl,
            "cacheKeyPrefix": stats.cache_key_prefix,
        },
        "timestamp": _now(),
    }


@app.delete("/books/cache", tags=["ranking"])
async def invalidate_ranking_cache(services: Services = Depends(get_services)):
    await services.ranking.invalidate()
    return {"message": "Top books cache cleared successfully", "timestamp": _now()}


@app.get("/books/{book_id}/read-pages", tags=["books"], response_model=ReadPagesResponse)
async def get_read_pages(book_id: int, services: Services = Depends(get_services)):
    """Unique pages read for one book, always computed from the stored intervals."""
    total = await services.read_pages.total_unique_pages(book_id)
    return {"book_id": book_id, "num_of_read_pages": total}


@app.post(
    "/books/reading-interval",
    tags=["intervals"],
    status_code=201,
    response_model=SubmitIntervalResponse,
    dependencies=[Depends(admit)],
)
async def submit_reading_interval(
    interval: IntervalSubmission,
    user_id: int = Header(..., alias="X-User-Id"),
    services: Services = Depends(get_services),
):
    result = await services.ingestion.submit(
        user_id, interval.book_id, interval.start_page, interval.end_page
    )
    return {"status_code": "success", "created": result.created}


@app.post(
    "/books/reading-intervals",
    tags=["intervals"],
    dependencies=[Depends(admit)],
)
async def submit_reading_intervals(
    batch: IntervalBatchSubmission,
    user_id: int = Header(..., alias="X-User-Id"),
    services: Services = Depends(get_services),
):
    result = await services.ingestion.submit_batch(user_id, batch.intervals)
    return {
        "successCount": result.success_count,
        "failedCount": result.failed_count,
        "errors": [e.model_dump() for e in result.errors],
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=S.reading_api_port)

"""
FastAPI web service wrapper for CourtWatch.
Runs the queue and monitor loops in the background and exposes the
collaborator entry points as JSON endpoints.
"""

import asyncio
import os
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Dict, Optional

import structlog
from fastapi import FastAPI, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from courtwatch.errors import AuthError, BookingError, CourtWatchError
from courtwatch.models.schemas import (
    BookingResult,
    CourtAvailability,
    DailyAvailability,
    Monitor,
    QueueEntry,
    ScanResult,
)
from courtwatch.observability.logfire_config import initialize_logfire
from courtwatch.runner import CourtWatch, setup_signal_handlers

logger = structlog.get_logger(__name__)

# Background task reference
courtwatch_task: Optional[asyncio.Task] = None
courtwatch_instance: Optional[CourtWatch] = None
start_time: datetime = datetime.now(timezone.utc)


class AvailabilityRequest(BaseModel):
    from_time: str = Field(..., pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    to_time: str = Field(..., pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    dates: list[date] = Field(default_factory=list)
    days_of_week: list[str] = Field(default_factory=list)


class ScanRequest(AvailabilityRequest):
    auto_book: bool = False
    recipient: Optional[str] = None


class MonitorRequest(AvailabilityRequest):
    chat_id: str
    description: Optional[str] = None


class QueueRequest(BaseModel):
    date: date
    time_from: str = Field(..., pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    time_to: str = Field(..., pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    chat_id: Optional[str] = None


class BookCourtRequest(BaseModel):
    date: date
    time: str = Field(..., pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    court_id: int


async def run_courtwatch_background():
    """Run the CourtWatch loops as a background task."""
    global courtwatch_instance

    logger.info("Starting CourtWatch background service...")

    try:
        courtwatch_instance = CourtWatch()
        setup_signal_handlers(courtwatch_instance)
        await courtwatch_instance.start()
    except Exception as e:
        logger.error("CourtWatch background task failed", error=str(e), exc_info=True)
        raise


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """
    Manage application lifespan: startup and shutdown.
    Starts CourtWatch as a background task during startup.
    """
    global courtwatch_task, start_time

    # Startup
    logger.info("FastAPI application starting...")
    initialize_logfire()

    start_time = datetime.now(timezone.utc)

    courtwatch_task = asyncio.create_task(run_courtwatch_background())
    logger.info("CourtWatch background task started")

    yield

    # Shutdown
    logger.info("FastAPI application shutting down...")

    if courtwatch_instance:
        courtwatch_instance.running = False

    if courtwatch_task and not courtwatch_task.done():
        logger.info("Cancelling CourtWatch task...")
        courtwatch_task.cancel()
        try:
            await courtwatch_task
        except asyncio.CancelledError:
            logger.info("CourtWatch task cancelled successfully")

    logger.info("Shutdown complete")


app = FastAPI(
    title="CourtWatch Service",
    description="Squash court availability monitor and auto-booker",
    version="1.0.0",
    lifespan=lifespan,
)


def get_instance() -> CourtWatch:
    if courtwatch_instance is None or courtwatch_instance.queue is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="CourtWatch is not initialized yet",
        )
    return courtwatch_instance


def to_http_error(e: CourtWatchError) -> HTTPException:
    if isinstance(e, AuthError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    if isinstance(e, BookingError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if e.retryable:
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))


@app.get("/", status_code=status.HTTP_200_OK)
async def root() -> JSONResponse:
    """
    Root endpoint - confirms service is alive.
    """
    uptime = (datetime.now(timezone.utc) - start_time).total_seconds()

    return JSONResponse(
        content={
            "status": "alive",
            "service": "CourtWatch",
            "uptime_seconds": round(uptime, 2),
            "message": "Court monitoring service is running",
        }
    )


@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check() -> JSONResponse:
    """
    Health check endpoint for monitoring and load balancers.
    Returns detailed service status.
    """
    uptime = (datetime.now(timezone.utc) - start_time).total_seconds()

    # Check if background task is running
    task_status = "unknown"
    if courtwatch_task is None:
        task_status = "not_started"
    elif courtwatch_task.done():
        if not courtwatch_task.cancelled() and courtwatch_task.exception():
            task_status = "failed"
        else:
            task_status = "completed"
    else:
        task_status = "running"

    is_healthy = task_status in ["running", "not_started"]

    health_data = {
        "status": "healthy" if is_healthy else "unhealthy",
        "uptime_seconds": round(uptime, 2),
        "background_task_status": task_status,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    if courtwatch_instance and courtwatch_instance.last_run_times:
        health_data["last_runs"] = {
            name: run_time.isoformat()
            for name, run_time in courtwatch_instance.last_run_times.items()
        }

    response_status = status.HTTP_200_OK if is_healthy else status.HTTP_503_SERVICE_UNAVAILABLE

    return JSONResponse(content=health_data, status_code=response_status)


@app.get("/ping", status_code=status.HTTP_200_OK)
async def ping() -> Dict[str, str]:
    """
    Simple ping endpoint for uptime monitoring services.
    """
    return {"ping": "pong"}


@app.post("/availability")
async def check_availability(request: AvailabilityRequest) -> list[DailyAvailability]:
    instance = get_instance()
    try:
        return await instance.check_availability(
            request.from_time,
            request.to_time,
            dates=request.dates,
            days_of_week=request.days_of_week,
        )
    except CourtWatchError as e:
        raise to_http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@app.post("/scan")
async def scan(request: ScanRequest) -> ScanResult:
    instance = get_instance()
    try:
        return await instance.scan(
            request.from_time,
            request.to_time,
            dates=request.dates,
            days_of_week=request.days_of_week,
            auto_book=request.auto_book,
            recipient=request.recipient,
        )
    except CourtWatchError as e:
        raise to_http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@app.post("/monitors", status_code=status.HTTP_201_CREATED)
async def create_monitor(request: MonitorRequest) -> Monitor:
    instance = get_instance()
    try:
        return await instance.create_monitor(
            request.chat_id,
            request.from_time,
            request.to_time,
            dates=request.dates,
            days_of_week=request.days_of_week,
            description=request.description,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@app.get("/queue")
async def list_queue(chat_id: Optional[str] = None) -> list[QueueEntry]:
    return await get_instance().list_queue(chat_id)


@app.post("/queue", status_code=status.HTTP_201_CREATED)
async def add_to_queue(request: QueueRequest) -> QueueEntry:
    instance = get_instance()
    try:
        return await instance.add_to_queue(
            request.date, request.time_from, request.time_to, chat_id=request.chat_id
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@app.delete("/queue/{entry_id}")
async def remove_from_queue(entry_id: int) -> Dict[str, bool]:
    removed = await get_instance().remove_from_queue(entry_id)
    if not removed:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No active queue entry {entry_id}",
        )
    return {"removed": True}


@app.post("/book")
async def book_court(request: BookCourtRequest) -> BookingResult:
    instance = get_instance()
    try:
        return await instance.book_court(request.date, request.time, request.court_id)
    except CourtWatchError as e:
        raise to_http_error(e)


@app.post("/book/slot")
async def book_slot(slot: CourtAvailability) -> BookingResult:
    return await get_instance().book_slot(slot)


@app.get("/reservations")
async def list_my_reservations(days: int = 8) -> list[CourtAvailability]:
    instance = get_instance()
    try:
        return await instance.list_my_reservations(days)
    except CourtWatchError as e:
        raise to_http_error(e)


if __name__ == "__main__":
    import uvicorn

    # Get port from environment variable
    port = int(os.getenv("PORT", "10000"))

    logger.info(f"Starting web service on port {port}...")

    uvicorn.run(
        app,
        host="0.0.0.0",
        port=port,
        log_level="info",
        access_log=True,
    )

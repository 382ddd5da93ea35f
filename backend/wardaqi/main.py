# backend/wardaqi/main.py
from fastapi.middleware.cors import CORSMiddleware
from typing import List, Optional
from datetime import datetime, timezone
from contextlib import asynccontextmanager
import logging
from fastapi import FastAPI, HTTPException, status, Path
from fastapi.responses import JSONResponse
from .models import ErrorResponse, FullWardReport, RefreshSegmentMessage, WardAQI, WardSummary
from .refresh import segment_for_slot
from .services import Services, open_services
from .config import get_settings

# Setup logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

API_PREFIX = "/api"

# Local dashboard dev servers
origins = [
    "http://localhost:3000",
    "localhost:3000",
    "http://localhost:5173",
    "localhost:5173",
    "http://127.0.0.1:5173",
]


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Builds the API. With `services` given (tests), the app uses them as is and
    the lifespan opens nothing; otherwise they are opened from settings at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if services is not None:
            app.state.services = services
            yield
            return
        logger.info("API Startup: Initializing resources...")
        async with open_services(get_settings()) as opened:
            app.state.services = opened
            logger.info(f"API Startup: {len(opened.resolver)} wards loaded, ready.")
            yield  # API is running
            logger.info("API Shutdown: Cleaning up resources...")
        logger.info("API Shutdown: Resource cleanup finished.")

    app = FastAPI(
        title="Ward AQI API",
        description="Per-ward air quality reports: index, pollutant history and forecast, and AI narrative analysis.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def get_services() -> Services:
        return app.state.services

    @app.get(
        f"{API_PREFIX}/ward-analysis/{{ward_id}}",
        response_model=FullWardReport,
        responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
        summary="Get Full Ward Report",
        description="Current index, raw pollutants, trailing 24h history, next 24h forecast and the narrative analysis for one ward.",
    )
    async def get_ward_analysis(ward_id: str = Path(..., description="Ward identifier from the boundary file.")):
        logger.info(f"Request for ward analysis: ward_id='{ward_id}'")
        result = await get_services().reports.handle_ward_request(ward_id)
        if isinstance(result, ErrorResponse):
            return JSONResponse(status_code=result.status_code, content=result.model_dump())
        return JSONResponse(content=result.to_json_dict())

    @app.get(
        f"{API_PREFIX}/wards",
        response_model=List[WardSummary],
        summary="List Wards",
        description="All known wards in canonical order.",
    )
    async def list_wards():
        return get_services().resolver.summaries()

    @app.get(
        f"{API_PREFIX}/wards/overview",
        response_model=List[WardAQI],
        summary="City-wide AQI Overview",
        description="Current index and category of every ward in canonical order. Wards without a usable index are listed with a null `aqi`.",
    )
    async def wards_overview():
        return await get_services().reports.city_overview()

    @app.get(f"{API_PREFIX}/health", summary="Health Check")
    async def health():
        influx_ok = await get_services().store.ping()
        return {
            "status": "ok" if influx_ok else "degraded",
            "influxdb": "connected" if influx_ok else "unavailable",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.post(
        f"{API_PREFIX}/refresh/slots/{{slot}}",
        status_code=status.HTTP_202_ACCEPTED,
        response_model=RefreshSegmentMessage,
        summary="Enqueue Bulk Narrative Refresh",
        description="Computes the ward segment of a daily refresh slot and queues it for the refresh worker.",
    )
    async def enqueue_refresh_slot(slot: int = Path(..., ge=0, description="Slot number within the day.")):
        services = get_services()
        try:
            start, count = segment_for_slot(slot, services.settings.refresh_slots_per_day, len(services.resolver))
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

        message = RefreshSegmentMessage(start=start, count=count)
        if services.queue is None or not await services.queue.publish(message):
            logger.error(f"Failed to enqueue refresh for slot {slot} (start={start}, count={count})")
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Failed to queue refresh segment. Please try again later.",
            )
        logger.info(f"Queued refresh for slot {slot}: start={start}, count={count}")
        return message

    @app.get("/", summary="Root Endpoint", description="Basic API information.")
    async def read_root():
        return {"message": "Welcome to the Ward AQI API", "docs": "/docs"}

    return app


app = create_app()

"""Analytics API routes for post-flight analysis."""

import asyncio

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from src.backend.core.dependencies import get_flight_analyzer, get_signal_store
from src.backend.core.exceptions import StoreIOError
from src.backend.models.database import SpatialSignalStore
from src.backend.services.flight_path_analyzer import (
    AreaOfInterest,
    FlightAnalysis,
    FlightPathAnalyzer,
    FlightPoint,
    SignalCapture,
    collect_signal_captures,
)
from src.backend.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api/analytics", tags=["analytics"])


class FlightAnalysisRequest(BaseModel):
    """Flight analysis request model.

    When ``signal_captures`` is omitted the captures are rebuilt from the
    signal store along the flight path.
    """

    flight_path: list[FlightPoint] = Field(default_factory=list)
    signal_captures: list[SignalCapture] | None = None
    area_of_interest: AreaOfInterest | None = None


@router.post("/flight", response_model=FlightAnalysis)
async def analyze_flight(
    request: FlightAnalysisRequest,
    analyzer: FlightPathAnalyzer = Depends(get_flight_analyzer),
    store: SpatialSignalStore = Depends(get_signal_store),
) -> FlightAnalysis:
    captures = request.signal_captures
    if captures is None:
        try:
            captures = await asyncio.to_thread(
                collect_signal_captures,
                store,
                request.flight_path,
                analyzer.config.ANALYTICS_CAPTURE_RADIUS_M,
                analyzer.config.ANALYTICS_CAPTURE_WINDOW_S,
            )
        except StoreIOError as e:
            logger.error(f"Failed to collect captures for flight analysis: {e}")
            raise HTTPException(status_code=503, detail=e.message)

    return await asyncio.to_thread(
        analyzer.analyze, request.flight_path, captures, request.area_of_interest
    )

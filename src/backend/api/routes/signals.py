"""Stored signal query API routes."""

import asyncio
import logging
import time
import uuid
from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from src.backend.core.dependencies import get_signal_store
from src.backend.core.exceptions import DataCorruptionError, StoreIOError
from src.backend.models.database import SpatialSignalStore
from src.backend.models.schemas import Bounds, SignalRecord, SpatialQuery

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/signals", tags=["signals"])


class SignalIn(BaseModel):
    """A signal observation submitted for storage."""

    id: str | None = None
    timestamp: float | None = None
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)
    power: float
    frequency: float = Field(..., gt=0)
    source: str = "hackrf"
    altitude: float = 0.0
    metadata: dict[str, Any] = Field(default_factory=dict)


class SignalBatch(BaseModel):
    signals: list[SignalIn] = Field(..., min_length=1)


class AreaRequest(BaseModel):
    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float
    since: float | None = None


class CleanupRequest(BaseModel):
    max_age_s: float = Field(3600.0, gt=0)
    source: str | None = None


def _store_error(e: StoreIOError) -> HTTPException:
    logger.error(f"Signal store request failed: {e}")
    return HTTPException(status_code=503, detail=e.message)


@router.post("")
async def store_signals(
    batch: SignalBatch, store: SpatialSignalStore = Depends(get_signal_store)
) -> dict[str, Any]:
    """Store a batch atomically. Duplicate ids are ignored."""
    now = time.time()
    records = [
        SignalRecord(
            id=s.id or uuid.uuid4().hex,
            timestamp=s.timestamp if s.timestamp is not None else now,
            lat=s.lat,
            lon=s.lon,
            power=s.power,
            frequency=s.frequency,
            source=s.source,
            altitude=s.altitude,
            metadata=s.metadata,
        )
        for s in batch.signals
    ]
    try:
        inserted = await asyncio.to_thread(store.store_signals_batch, records)
    except DataCorruptionError as e:
        raise HTTPException(status_code=422, detail=e.message)
    except StoreIOError as e:
        raise _store_error(e)
    return {"received": len(records), "inserted": inserted}


@router.get("/radius")
async def find_signals_in_radius(
    lat: float = Query(..., ge=-90, le=90),
    lon: float = Query(..., ge=-180, le=180),
    radius_m: float = Query(..., gt=0),
    start_time: float | None = None,
    end_time: float | None = None,
    limit: int = Query(1000, ge=1, le=10000),
    store: SpatialSignalStore = Depends(get_signal_store),
) -> dict[str, Any]:
    query = SpatialQuery(lat, lon, radius_m, start_time, end_time, limit)
    try:
        signals = await asyncio.to_thread(store.find_signals_in_radius, query)
    except StoreIOError as e:
        raise _store_error(e)
    return {"count": len(signals), "signals": [asdict(s) for s in signals]}


@router.post("/area")
async def get_devices_in_area(
    area: AreaRequest, store: SpatialSignalStore = Depends(get_signal_store)
) -> dict[str, Any]:
    if area.min_lat > area.max_lat or area.min_lon > area.max_lon:
        raise HTTPException(status_code=422, detail="Bounds minimum exceeds maximum")
    bounds = Bounds(area.min_lat, area.max_lat, area.min_lon, area.max_lon)
    try:
        devices = await asyncio.to_thread(store.get_devices_in_area, bounds, area.since)
    except StoreIOError as e:
        raise _store_error(e)
    return {"count": len(devices), "devices": [asdict(d) for d in devices]}


@router.get("/nearby")
async def find_devices_nearby(
    lat: float = Query(..., ge=-90, le=90),
    lon: float = Query(..., ge=-180, le=180),
    radius_m: float = Query(100.0, gt=0),
    since: float | None = None,
    limit: int = Query(100, ge=1, le=10000),
    store: SpatialSignalStore = Depends(get_signal_store),
) -> dict[str, Any]:
    """Devices heard near a point, by default during the last 5 minutes."""
    query = SpatialQuery(lat, lon, radius_m, start_time=since, limit=limit)
    try:
        devices = await asyncio.to_thread(store.find_devices_nearby, query)
    except StoreIOError as e:
        raise _store_error(e)
    return {"count": len(devices), "devices": [asdict(d) for d in devices]}


@router.get("/statistics")
async def get_statistics(
    time_window_s: float = Query(3600.0, gt=0),
    store: SpatialSignalStore = Depends(get_signal_store),
) -> dict[str, Any]:
    try:
        stats = await asyncio.to_thread(store.get_statistics, time_window_s)
    except StoreIOError as e:
        raise _store_error(e)
    return asdict(stats)


@router.get("/relationships")
async def get_relationships(
    device_ids: list[str] | None = Query(None),
    store: SpatialSignalStore = Depends(get_signal_store),
) -> dict[str, Any]:
    try:
        relationships = await asyncio.to_thread(store.get_relationships, device_ids)
    except StoreIOError as e:
        raise _store_error(e)
    return {"count": len(relationships), "relationships": [asdict(r) for r in relationships]}


@router.post("/cleanup")
async def cleanup_old_data(
    request: CleanupRequest, store: SpatialSignalStore = Depends(get_signal_store)
) -> dict[str, Any]:
    try:
        result = await asyncio.to_thread(store.cleanup_old_data, request.max_age_s, request.source)
    except StoreIOError as e:
        raise _store_error(e)
    return asdict(result)

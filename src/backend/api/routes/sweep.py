"""Sweep control API routes."""

import logging
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from src.backend.core.dependencies import get_signal_aggregator, get_sweep_manager
from src.backend.services.signal_aggregator import SignalAggregator
from src.backend.services.sweep_manager import SweepManager

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/sweep", tags=["sweep"])


class FrequencyEntry(BaseModel):
    value: float
    unit: Literal["Hz", "kHz", "MHz", "GHz"] = "MHz"


class StartSweepRequest(BaseModel):
    """Request to start a frequency cycle."""

    frequencies: list[float | FrequencyEntry] = Field(..., min_length=1)
    cycle_time_ms: float = Field(..., gt=0)


@router.get("/status")
async def get_sweep_status(
    sweep_manager: SweepManager = Depends(get_sweep_manager),
) -> dict[str, Any]:
    """Current sweep state and cycle configuration."""
    sweep_config = sweep_manager.get_sweep_config()
    return {
        "status": sweep_manager.get_status().to_dict(),
        "config": sweep_config.to_dict() if sweep_config else None,
        "restart": sweep_manager.backoff.get_status(),
    }


@router.post("/start")
async def start_sweep(
    request: StartSweepRequest,
    sweep_manager: SweepManager = Depends(get_sweep_manager),
) -> dict[str, Any]:
    """
    Start cycling the requested frequencies.

    Returns 409 when the sweep could not be started; the status carries the
    reason.
    """
    frequencies = [
        f.model_dump() if isinstance(f, FrequencyEntry) else f for f in request.frequencies
    ]
    started = await sweep_manager.start_cycle(frequencies, request.cycle_time_ms)
    status = sweep_manager.get_status().to_dict()
    if not started:
        logger.warning(f"Sweep start rejected in state {status['state']}")
        raise HTTPException(
            status_code=409,
            detail={"message": "Sweep not started", "status": status},
        )
    return {"success": True, "status": status}


@router.post("/stop")
async def stop_sweep(sweep_manager: SweepManager = Depends(get_sweep_manager)) -> dict[str, Any]:
    await sweep_manager.stop_sweep()
    return {"success": True, "status": sweep_manager.get_status().to_dict()}


@router.post("/cleanup")
async def force_cleanup(
    sweep_manager: SweepManager = Depends(get_sweep_manager),
) -> dict[str, Any]:
    """Kill every sweep process and return to idle, including from error."""
    await sweep_manager.force_cleanup()
    return {"success": True, "status": sweep_manager.get_status().to_dict()}


@router.get("/health")
async def sweep_health(sweep_manager: SweepManager = Depends(get_sweep_manager)) -> dict[str, Any]:
    result = await sweep_manager.check_health()
    return result.to_dict()


@router.get("/signals")
async def get_aggregated_signals(
    tolerance_mhz: float | None = None,
    aggregator: SignalAggregator = Depends(get_signal_aggregator),
) -> dict[str, Any]:
    """Live detections around the frequency currently being swept."""
    if tolerance_mhz is not None and tolerance_mhz <= 0:
        raise HTTPException(status_code=422, detail="tolerance_mhz must be positive")
    detections = aggregator.get_aggregated_signals(tolerance_mhz=tolerance_mhz)
    return {
        "target_frequency_mhz": aggregator.target_frequency_mhz,
        "signals": [
            {
                "frequency_mhz": d.frequency_mhz,
                "power": d.power,
                "first_seen": d.first_seen,
                "last_seen": d.last_seen,
                "count": d.count,
                "persistence_s": aggregator.get_signal_persistence(d),
            }
            for d in detections
        ],
    }

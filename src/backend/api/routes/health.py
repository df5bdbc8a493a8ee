"""
Health check endpoint for the service stack.
"""

import time
from datetime import UTC, datetime
from typing import Any

import psutil
from fastapi import APIRouter, HTTPException

from src.backend.core.dependencies import get_service_manager
from src.backend.core.exceptions import ArgosException
from src.backend.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
async def health_check() -> dict[str, Any]:
    """
    Overall system health check.

    Returns:
        Aggregated health status of all services.
    """
    try:
        service_manager = get_service_manager()
        manager_health = await service_manager.get_service_health()

        memory = psutil.virtual_memory()
        disk = psutil.disk_usage("/")
        cpu_percent = psutil.cpu_percent(interval=None)

        if cpu_percent > 90 or memory.percent > 90:
            manager_health["status"] = "degraded"

        return {
            "status": manager_health["status"],
            "timestamp": datetime.now(UTC).isoformat(),
            "initialized": manager_health["initialized"],
            "startup_time": manager_health["startup_time"],
            "system": {
                "cpu_percent": cpu_percent,
                "memory_percent": memory.percent,
                "disk_percent": disk.percent,
                "uptime": int(time.time() - psutil.boot_time()),
            },
            "services": manager_health["services"],
        }
    except ArgosException as e:
        logger.error(f"Health check failed: {e}")
        raise HTTPException(status_code=500, detail=str(e))

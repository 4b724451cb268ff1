import logging
from datetime import datetime, timezone
from typing import Any, Dict

import psutil
from fastapi import APIRouter, Depends, HTTPException

from ..db import DatabaseManager, get_db_manager

router = APIRouter(prefix="/api/health", tags=["health"])
logger = logging.getLogger(__name__)


def get_system_health() -> Dict[str, Any]:
    """Get system resource utilization"""
    try:
        memory = psutil.virtual_memory()
        disk = psutil.disk_usage('/')
        process = psutil.Process()

        return {
            'healthy': True,
            'cpu_percent': psutil.cpu_percent(interval=None),
            'memory': {
                'total': memory.total,
                'available': memory.available,
                'percent': memory.percent,
            },
            'disk': {
                'total': disk.total,
                'free': disk.free,
                'percent': disk.percent,
            },
            'process': {
                'pid': process.pid,
                'memory_mb': round(process.memory_info().rss / 1024 / 1024, 2),
                'num_threads': process.num_threads(),
            },
        }
    except Exception as e:
        logger.error(f"Failed to get system health: {str(e)}")
        return {
            'healthy': False,
            'error': str(e)
        }


@router.get("")
async def health():
    """Liveness check; never traced."""
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


@router.get("/database")
async def health_database(db: DatabaseManager = Depends(get_db_manager)):
    """Database-specific health check"""
    db_health = db.health_check()
    if not db_health['healthy']:
        raise HTTPException(status_code=503, detail=db_health)
    return db_health


@router.get("/system")
async def health_system():
    """System resources health check"""
    system_health = get_system_health()
    if not system_health['healthy']:
        raise HTTPException(status_code=503, detail=system_health)
    return system_health

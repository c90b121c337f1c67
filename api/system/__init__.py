"""System health endpoints."""

import logging
import os
import time
from datetime import datetime, timezone
from typing import Optional

import psutil
from fastapi import APIRouter
from pydantic import BaseModel

from database import get_pool

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(
    prefix="/system",
    tags=["System"]
)

_started_at = time.time()

class SystemHealth(BaseModel):
    """Model for system health data."""
    status: str
    uptime: float
    cpu_usage: float
    memory_usage: float
    process_memory_mb: float
    database_status: str
    schema_version: Optional[int] = None
    checked_at: datetime

async def check_database() -> dict:
    """Check database connectivity and report the applied schema version."""
    try:
        pool = await get_pool()
        async with pool.acquire() as conn:
            version = await conn.fetchval(
                'SELECT version FROM schema_version ORDER BY version DESC LIMIT 1'
            )
        return {'status': 'healthy', 'schema_version': version}
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return {'status': f'unhealthy: {e}', 'schema_version': None}

@router.get("/health", response_model=SystemHealth)
async def get_system_health():
    """Get service health: database reachability plus process statistics."""
    database = await check_database()
    process = psutil.Process(os.getpid())

    return SystemHealth(
        status='healthy' if database['status'] == 'healthy' else 'degraded',
        uptime=time.time() - _started_at,
        cpu_usage=psutil.cpu_percent(interval=None),
        memory_usage=psutil.virtual_memory().percent,
        process_memory_mb=process.memory_info().rss / (1024 * 1024),
        database_status=database['status'],
        schema_version=database['schema_version'],
        checked_at=datetime.now(timezone.utc)
    )

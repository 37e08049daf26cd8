from fastapi import APIRouter, HTTPException
from datetime import datetime
from pharmalink.db import get_db
from pharmalink.services.broadcast import broadcast_engine
from pharmalink.services.expiry_sweeper import expiry_sweeper
from pharmalink.utils.ws_manager import manager

router = APIRouter()


@router.get("/health")
async def health_check():
    """
    Basic health check endpoint for production monitoring
    """
    health_status = {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "version": "1.0.0",
        "checks": {}
    }

    # Database connectivity check
    try:
        started = datetime.utcnow()
        await get_db().command("ping")
        elapsed_ms = (datetime.utcnow() - started).total_seconds() * 1000
        health_status["checks"]["database"] = {"status": "healthy", "response_time_ms": round(elapsed_ms, 1)}
    except Exception as e:
        health_status["checks"]["database"] = {"status": "unhealthy", "error": str(e)}
        health_status["status"] = "degraded"

    health_status["checks"]["background"] = {
        "broadcast_engine": "running" if broadcast_engine.is_running else "stopped",
        "expiry_sweeper": "running" if expiry_sweeper.is_running else "stopped",
        "live_subscriptions": len(broadcast_engine.subscriptions),
    }
    if not (broadcast_engine.is_running and expiry_sweeper.is_running):
        health_status["status"] = "degraded"

    health_status["checks"]["websockets"] = {"status": "healthy", **manager.get_connection_stats()}

    # Degraded still answers 200 so the instance stays in rotation
    return health_status


@router.get("/health/ready")
async def readiness_check():
    """
    Kubernetes readiness probe endpoint
    """
    try:
        await get_db().command("ping")

        return {
            "status": "ready",
            "timestamp": datetime.utcnow().isoformat()
        }
    except Exception as e:
        raise HTTPException(
            status_code=503,
            detail={
                "status": "not_ready",
                "timestamp": datetime.utcnow().isoformat(),
                "error": str(e)
            }
        )


@router.get("/health/live")
async def liveness_check():
    """
    Kubernetes liveness probe endpoint
    """
    return {
        "status": "alive",
        "timestamp": datetime.utcnow().isoformat()
    }

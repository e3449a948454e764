"""Health check endpoints."""

from fastapi import APIRouter, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from auditchain.app.core.database import engine

router = APIRouter()


@router.get("/health")
async def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy"}


@router.get("/ready")
async def readiness_check(request: Request) -> Response:
    """
    Readiness check - verify dependencies are available.
    Fails if the ledger store is unreachable or the ledger was never initialized.
    """
    health_status = {
        "status": "ready",
        "checks": {
            "database": "unknown",
            "ledger": "unknown",
        }
    }

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["checks"]["database"] = "ok"
    except Exception as e:
        health_status["checks"]["database"] = f"failed: {str(e)}"
        health_status["status"] = "not_ready"

    ledger = getattr(request.app.state, "audit_ledger", None)
    if ledger is None:
        health_status["checks"]["ledger"] = "not initialized"
        health_status["status"] = "not_ready"
    else:
        health_status["checks"]["ledger"] = f"ok (last_sequence={ledger.allocator.last_sequence})"

    if health_status["status"] != "ready":
        return JSONResponse(content=health_status, status_code=status.HTTP_503_SERVICE_UNAVAILABLE)

    return JSONResponse(content=health_status)

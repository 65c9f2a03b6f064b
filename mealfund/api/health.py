"""
Health check endpoints.
/health always returns 200; ledger connectivity is reported, not enforced.
"""

from typing import Optional

from fastapi import APIRouter

from mealfund.config import settings
from mealfund.dependencies import get_ledger_store

router = APIRouter(tags=["health"])


async def _ledger_ok() -> tuple[bool, Optional[str]]:
    try:
        await get_ledger_store().list_reconciliation_items(limit=1)
        return True, None
    except Exception as e:
        return False, str(e)[:200]


@router.get("/health")
async def health_check():
    ledger_ok, ledger_error = await _ledger_ok()

    response = {
        "status": "healthy" if ledger_ok else "degraded",
        "version": settings.APP_VERSION,
        "ledger_backend": settings.LEDGER_BACKEND,
        "ledger": "connected" if ledger_ok else "unreachable",
        "settlement_rail": "http" if settings.SETTLEMENT_RAIL_URL else "stub",
    }
    if ledger_error:
        response["ledger_error"] = ledger_error

    return response


@router.get("/health/ready")
async def readiness_check():
    """Readiness check: ready only when the ledger answers."""
    ledger_ok, _ = await _ledger_ok()
    return {"ready": ledger_ok}

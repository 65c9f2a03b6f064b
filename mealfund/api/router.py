"""
Top-level API router.
Combines all sub-routers into a single router.
"""

from fastapi import APIRouter

from mealfund.api.deliveries import router as deliveries_router
from mealfund.api.escrow import router as escrow_router
from mealfund.api.health import router as health_router
from mealfund.api.issues import router as issues_router
from mealfund.api.reconciliation import router as reconciliation_router
from mealfund.api.scoring import router as scoring_router
from mealfund.api.verifications import router as verifications_router

api_router = APIRouter()

api_router.include_router(health_router)
api_router.include_router(deliveries_router)
api_router.include_router(verifications_router)
api_router.include_router(issues_router)
api_router.include_router(escrow_router)
api_router.include_router(reconciliation_router)
api_router.include_router(scoring_router)

"""
FastAPI dependency injection.
Provides the ledger store, settlement rail, advisor and core services, and
API key validation. The worker builds its services through the same getters.
"""

from typing import Optional

import structlog
from fastapi import Header, HTTPException, status

from mealfund.advisor.base import AIAdvisor
from mealfund.config import settings
from mealfund.ledger.base import LedgerStore
from mealfund.scoring.engine import UrgencyScoringEngine
from mealfund.services.escrow import EscrowCoordinator
from mealfund.services.issues import IssueTracker
from mealfund.services.lifecycle import DeliveryLifecycleManager
from mealfund.services.verification import VerificationProcessor
from mealfund.settlement.base import SettlementRail

logger = structlog.get_logger(__name__)


# ── Singleton instances ──────────────────────────────────────
_ledger_store: Optional[LedgerStore] = None
_settlement_rail: Optional[SettlementRail] = None
_advisor: Optional[AIAdvisor] = None
_advisor_checked = False


def get_ledger_store() -> LedgerStore:
    """Get or create the ledger store selected by LEDGER_BACKEND."""
    global _ledger_store
    if _ledger_store is None:
        if settings.LEDGER_BACKEND == "memory":
            from mealfund.ledger.memory import InMemoryLedgerStore
            logger.warning("ledger_backend_memory", detail="state is lost on restart")
            _ledger_store = InMemoryLedgerStore()
        elif settings.LEDGER_BACKEND == "sql":
            from mealfund.ledger.sql import SqlLedgerStore
            from mealfund.models.database import async_session_factory, engine
            _ledger_store = SqlLedgerStore(engine, async_session_factory)
        else:
            raise ValueError(f"Unknown LEDGER_BACKEND: {settings.LEDGER_BACKEND}")
    return _ledger_store


def get_settlement_rail() -> SettlementRail:
    """HTTP rail when SETTLEMENT_RAIL_URL is set, otherwise the in-process stub."""
    global _settlement_rail
    if _settlement_rail is None:
        if settings.SETTLEMENT_RAIL_URL:
            from mealfund.settlement.http import HttpSettlementRail
            _settlement_rail = HttpSettlementRail()
        else:
            from mealfund.settlement.stub import StubSettlementRail
            logger.warning("settlement_rail_stub", detail="SETTLEMENT_RAIL_URL not set")
            _settlement_rail = StubSettlementRail()
    return _settlement_rail


def get_advisor() -> Optional[AIAdvisor]:
    """LangChain advisor, or None when AI scoring is off or unconfigured."""
    global _advisor, _advisor_checked
    if not _advisor_checked:
        _advisor_checked = True
        if settings.AI_ADVISOR_ENABLED and settings.AI_API_KEY:
            from mealfund.advisor.langchain_advisor import LangChainAdvisor
            _advisor = LangChainAdvisor()
        else:
            logger.info("advisor_disabled", enabled=settings.AI_ADVISOR_ENABLED)
    return _advisor


# ── Services ─────────────────────────────────────────────────
def get_escrow_coordinator() -> EscrowCoordinator:
    return EscrowCoordinator(get_ledger_store(), get_settlement_rail())


def get_lifecycle_manager() -> DeliveryLifecycleManager:
    return DeliveryLifecycleManager(get_ledger_store(), get_escrow_coordinator())


def get_verification_processor() -> VerificationProcessor:
    escrow = get_escrow_coordinator()
    lifecycle = DeliveryLifecycleManager(get_ledger_store(), escrow)
    return VerificationProcessor(get_ledger_store(), lifecycle, escrow)


def get_issue_tracker() -> IssueTracker:
    return IssueTracker(get_ledger_store(), get_escrow_coordinator())


def get_scoring_engine() -> UrgencyScoringEngine:
    return UrgencyScoringEngine(get_ledger_store(), get_advisor())


async def verify_api_key(
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
) -> Optional[str]:
    """
    Verify API key if configured.
    If API_KEY is not set, all requests are allowed (dev mode).
    """
    if settings.API_KEY is None:
        return None

    if x_api_key is None or x_api_key != settings.API_KEY:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )
    return x_api_key

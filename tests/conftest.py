"""
Shared test fixtures.
Services run against the in-memory ledger and the stub settlement rail.
"""

import asyncio
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from mealfund.advisor.base import AIAdvisor
from mealfund.errors import AIProviderError
from mealfund.ledger.memory import InMemoryLedgerStore
from mealfund.models.enums import DeliveryStatus
from mealfund.services.escrow import EscrowCoordinator
from mealfund.services.issues import IssueTracker
from mealfund.services.lifecycle import DeliveryLifecycleManager
from mealfund.services.verification import VerificationProcessor
from mealfund.settlement.stub import StubSettlementRail

NOW = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class Services:
    def __init__(self, store, rail, clock):
        self.store = store
        self.rail = rail
        self.clock = clock
        self.escrow = EscrowCoordinator(store, rail, payer_ref="payer:test", clock=clock)
        self.lifecycle = DeliveryLifecycleManager(store, self.escrow, clock=clock, grace_days=1)
        self.verification = VerificationProcessor(store, self.lifecycle, self.escrow, clock=clock)
        self.issues = IssueTracker(store, self.escrow, clock=clock)

    async def new_delivery(self, school_id="school-1", portions=100, amount="1500000"):
        return await self.lifecycle.create(
            school_id=school_id,
            catering_id="catering-1",
            delivery_date=self.clock().date(),
            portions=portions,
            amount=Decimal(amount),
        )

    async def awaiting_lock(self, **kwargs):
        """Scheduled delivery whose escrow has not been locked yet."""
        delivery = await self.new_delivery(**kwargs)
        return await self.store.cas_delivery_status(
            delivery.delivery_id, DeliveryStatus.PENDING, DeliveryStatus.SCHEDULED
        )

    async def scheduled_delivery(self, **kwargs):
        delivery = await self.new_delivery(**kwargs)
        return await self.lifecycle.schedule(delivery.delivery_id)

    async def delivered_delivery(self, **kwargs):
        delivery = await self.scheduled_delivery(**kwargs)
        return await self.lifecycle.mark_delivered(delivery.delivery_id)


# ── Advisors ─────────────────────────────────────────────────

class ScriptedAdvisor(AIAdvisor):
    """Returns a fixed reply and records prompts."""

    def __init__(self, reply: str, delay: float = 0.0):
        self.reply = reply
        self.delay = delay
        self.prompts: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    @property
    def advisor_name(self) -> str:
        return "scripted"

    async def complete(self, prompt: str, max_tokens: int) -> str:
        self.prompts.append(prompt)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            return self.reply
        finally:
            self.in_flight -= 1


class FailingAdvisor(AIAdvisor):

    @property
    def advisor_name(self) -> str:
        return "failing"

    async def complete(self, prompt: str, max_tokens: int) -> str:
        raise AIProviderError("provider unavailable")


# ── Fixtures ─────────────────────────────────────────────────

@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def store():
    return InMemoryLedgerStore()


@pytest.fixture
def rail():
    return StubSettlementRail()


@pytest.fixture
def services(store, rail, clock):
    return Services(store, rail, clock)


@pytest.fixture
def today(clock) -> date:
    return clock().date()

"""
Stub settlement rail for tests and local runs.
Keeps custody state in memory and records every call it receives.
"""

import asyncio
import hashlib
from decimal import Decimal
from typing import Optional

from mealfund.errors import SettlementRailError
from mealfund.settlement.base import RailReceipt, SettlementRail


class StubSettlementRail(SettlementRail):
    """
    Fake rail that settles after `delay` seconds. fail_on lists operations
    to reject.
    """

    def __init__(self, fail_on: Optional[set[str]] = None, ambiguous: bool = False, delay: float = 0.0):
        self.fail_on = set(fail_on or ())
        self.ambiguous = ambiguous
        self.delay = delay
        self.calls: list[tuple[str, str]] = []
        self.custody: dict[str, Decimal] = {}
        self._block = 1000

    @property
    def rail_name(self) -> str:
        return "stub"

    def call_count(self, operation: str) -> int:
        return sum(1 for op, _ in self.calls if op == operation)

    def _receipt(self, operation: str, reference: str) -> RailReceipt:
        self._block += 1
        digest = hashlib.sha256(f"{operation}:{reference}:{self._block}".encode("utf-8"))
        return RailReceipt(external_tx_ref="0x" + digest.hexdigest(), external_block_ref=str(self._block))

    async def _check(self, operation: str, reference: str) -> None:
        self.calls.append((operation, reference))
        if self.delay:
            await asyncio.sleep(self.delay)
        if operation in self.fail_on:
            raise SettlementRailError(operation, "stub rail rejected the call", ambiguous=self.ambiguous)

    async def lock(self, reference: str, payer_ref: str, payee_ref: str, amount: Decimal) -> RailReceipt:
        await self._check("lock", reference)
        self.custody[reference] = amount
        return self._receipt("lock", reference)

    async def release(self, reference: str) -> RailReceipt:
        await self._check("release", reference)
        if self.custody.pop(reference, None) is None:
            raise SettlementRailError("release", f"no custody under {reference}")
        return self._receipt("release", reference)

    async def refund(self, reference: str) -> RailReceipt:
        await self._check("refund", reference)
        if self.custody.pop(reference, None) is None:
            raise SettlementRailError("refund", f"no custody under {reference}")
        return self._receipt("refund", reference)

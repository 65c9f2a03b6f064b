"""
Abstract settlement rail: the external system of record for fund movement.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel


class RailReceipt(BaseModel):
    """What the rail hands back for a successful call."""
    external_tx_ref: str
    external_block_ref: Optional[str] = None


class SettlementRail(ABC):
    """
    Every rail must:
    1. Key calls by `reference` (the escrow_id)
    2. Raise SettlementRailError on failure, with ambiguous=True when the
       call may have landed (timeouts, dropped connections after send)
    3. Never be cancelled mid-call by the caller
    """

    @property
    @abstractmethod
    def rail_name(self) -> str:
        ...

    @abstractmethod
    async def lock(
        self,
        reference: str,
        payer_ref: str,
        payee_ref: str,
        amount: Decimal,
    ) -> RailReceipt:
        """Move `amount` from the payer into custody under `reference`."""
        ...

    @abstractmethod
    async def release(self, reference: str) -> RailReceipt:
        """Pay out the custody held under `reference` to the payee."""
        ...

    @abstractmethod
    async def refund(self, reference: str) -> RailReceipt:
        """Return the custody held under `reference` to the payer."""
        ...

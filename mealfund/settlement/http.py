"""
HTTP settlement rail client.

POSTs JSON to {SETTLEMENT_RAIL_URL}/escrow/{lock|release|refund}. Calls run in
a worker thread; they are not wrapped in asyncio timeouts because a
cancelled call whose effect landed would diverge from the ledger. The HTTP
timeout is the only bound, and a timeout is reported as ambiguous.
"""

import asyncio
from decimal import Decimal
from typing import Any, Optional

import requests
import structlog

from mealfund.config import settings
from mealfund.errors import SettlementRailError
from mealfund.observability.metrics import settlement_calls_total, settlement_latency_seconds
from mealfund.settlement.base import RailReceipt, SettlementRail

logger = structlog.get_logger(__name__)


class HttpSettlementRail(SettlementRail):
    """Client for a JSON-over-HTTP custody provider."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or settings.SETTLEMENT_RAIL_URL or "").rstrip("/")
        if not self.base_url:
            raise ValueError("SETTLEMENT_RAIL_URL must be set for the HTTP settlement rail")
        self.api_key = api_key or settings.SETTLEMENT_RAIL_API_KEY
        self.timeout_seconds = timeout_seconds or settings.SETTLEMENT_TIMEOUT_SECONDS
        self._session = session or requests.Session()

    @property
    def rail_name(self) -> str:
        return "http"

    async def lock(self, reference: str, payer_ref: str, payee_ref: str, amount: Decimal) -> RailReceipt:
        return await self._call("lock", {
            "reference": reference,
            "payer_ref": payer_ref,
            "payee_ref": payee_ref,
            "amount": str(amount),
        })

    async def release(self, reference: str) -> RailReceipt:
        return await self._call("release", {"reference": reference})

    async def refund(self, reference: str) -> RailReceipt:
        return await self._call("refund", {"reference": reference})

    async def _call(self, operation: str, payload: dict[str, Any]) -> RailReceipt:
        with settlement_latency_seconds.labels(operation=operation).time():
            try:
                receipt = await asyncio.to_thread(self._post, operation, payload)
            except SettlementRailError as e:
                outcome = "ambiguous" if e.ambiguous else "failed"
                settlement_calls_total.labels(operation=operation, outcome=outcome).inc()
                logger.warning(
                    "settlement_call_failed",
                    operation=operation,
                    reference=payload.get("reference"),
                    ambiguous=e.ambiguous,
                    error=e.message,
                )
                raise
        settlement_calls_total.labels(operation=operation, outcome="ok").inc()
        return receipt

    def _post(self, operation: str, payload: dict[str, Any]) -> RailReceipt:
        url = f"{self.base_url}/escrow/{operation}"
        headers = {"X-API-Key": self.api_key} if self.api_key else {}

        try:
            response = self._session.post(
                url, json=payload, headers=headers, timeout=self.timeout_seconds
            )
        except requests.Timeout:
            raise SettlementRailError(operation, "timeout", ambiguous=True)
        except requests.ConnectionError as e:
            # The request may have reached the rail before the connection dropped
            raise SettlementRailError(operation, f"connection error: {str(e)[:200]}", ambiguous=True)
        except requests.RequestException as e:
            raise SettlementRailError(operation, str(e)[:200])

        if response.status_code >= 500:
            raise SettlementRailError(operation, f"http_{response.status_code}", ambiguous=True)
        if response.status_code >= 400:
            raise SettlementRailError(operation, f"http_{response.status_code}: {response.text[:200]}")

        try:
            body = response.json()
        except ValueError:
            raise SettlementRailError(operation, "non-JSON response", ambiguous=True)

        tx_ref = body.get("external_tx_ref") or body.get("tx_hash")
        if not tx_ref:
            raise SettlementRailError(operation, "response missing external_tx_ref", ambiguous=True)

        block_ref = body.get("external_block_ref") or body.get("block_number")
        return RailReceipt(
            external_tx_ref=str(tx_ref),
            external_block_ref=str(block_ref) if block_ref is not None else None,
        )

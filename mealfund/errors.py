"""
Error kinds raised by the escrow core.

Every error carries a human message and a stable error_code so the HTTP
layer and the job runner can report them without string matching.
"""

from typing import Any, Optional


class EscrowCoreError(Exception):
    """Base class for all core errors."""

    error_code = "ERR_CORE"

    def __init__(self, message: str, error_code: Optional[str] = None):
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        super().__init__(message)


class ValidationError(EscrowCoreError):
    """Bad input. Never retried."""
    error_code = "ERR_VALIDATION"


class NotFound(EscrowCoreError):
    error_code = "ERR_NOT_FOUND"


class InvalidTransition(EscrowCoreError):
    """State-machine guard violation."""
    error_code = "ERR_INVALID_TRANSITION"

    def __init__(self, entity: str, entity_id: str, current: Optional[str], target: str):
        self.entity = entity
        self.entity_id = entity_id
        self.current = current
        self.target = target
        super().__init__(f"{entity} {entity_id}: cannot move from {current} to {target}")


class InvalidDeliveryState(EscrowCoreError):
    error_code = "ERR_INVALID_DELIVERY_STATE"


class DuplicateVerification(EscrowCoreError):
    error_code = "ERR_DUPLICATE_VERIFICATION"


class AlreadyLocked(EscrowCoreError):
    """Lock on a delivery that already has an escrow. Carries the existing record."""
    error_code = "ERR_ALREADY_LOCKED"

    def __init__(self, escrow: Any):
        self.escrow = escrow
        super().__init__(f"Escrow already exists for delivery {escrow.delivery_id}")


class AlreadyReleased(EscrowCoreError):
    """Second release for the same delivery. Carries the existing record."""
    error_code = "ERR_ALREADY_RELEASED"

    def __init__(self, escrow: Any):
        self.escrow = escrow
        super().__init__(f"Escrow {escrow.escrow_id} already released")


class NotLocked(EscrowCoreError):
    error_code = "ERR_NOT_LOCKED"


class BlockedByDispute(EscrowCoreError):
    """Release held by unresolved high/critical issues."""
    error_code = "ERR_BLOCKED_BY_DISPUTE"

    def __init__(self, delivery_id: str, issue_ids: list[str]):
        self.delivery_id = delivery_id
        self.issue_ids = issue_ids
        super().__init__(
            f"Release for delivery {delivery_id} held by {len(issue_ids)} unresolved issue(s)"
        )


class SettlementRailError(EscrowCoreError):
    """
    Settlement rail call failed.
    ambiguous=True means the call may have landed (e.g. timeout) and the
    outcome has to be reconciled out-of-band.
    """
    error_code = "ERR_SETTLEMENT_RAIL"

    def __init__(self, operation: str, message: str, ambiguous: bool = False):
        self.operation = operation
        self.ambiguous = ambiguous
        super().__init__(f"[{operation}] {message}")


class AIProviderError(EscrowCoreError):
    error_code = "ERR_AI_PROVIDER"

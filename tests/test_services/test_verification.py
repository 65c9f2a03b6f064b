"""
Tests for the verification processor.
"""

import asyncio

import pytest

from mealfund.errors import DuplicateVerification, InvalidDeliveryState, NotFound, ValidationError
from mealfund.models.enums import DeliveryStatus, EscrowStatus, VerificationStatus
from mealfund.services.outcomes import PAYMENT_PENDING, PAYMENT_RELEASED


def submit(services, delivery_id, school_id="school-1", portions=100, rating=4, **kwargs):
    return asyncio.run(services.verification.submit(
        delivery_id=delivery_id,
        school_id=school_id,
        portions_received=portions,
        quality_rating=rating,
        verified_by=kwargs.pop("verified_by", "staff@school-1"),
        **kwargs,
    ))


class TestValidation:

    @pytest.mark.parametrize("portions,rating", [(-1, 3), (10, 0), (10, 6)])
    def test_bad_values(self, services, portions, rating):
        delivery = asyncio.run(services.delivered_delivery())
        with pytest.raises(ValidationError):
            submit(services, delivery.delivery_id, portions=portions, rating=rating)
        assert services.store.verifications == []

    def test_wrong_school(self, services):
        delivery = asyncio.run(services.delivered_delivery())
        with pytest.raises(ValidationError):
            submit(services, delivery.delivery_id, school_id="school-2")

    def test_unknown_delivery(self, services):
        with pytest.raises(NotFound):
            submit(services, "missing")

    def test_pending_delivery_rejected(self, services):
        delivery = asyncio.run(services.new_delivery())
        with pytest.raises(InvalidDeliveryState):
            submit(services, delivery.delivery_id)

    def test_cancelled_delivery_rejected(self, services):
        delivery = asyncio.run(services.scheduled_delivery())
        asyncio.run(services.lifecycle.cancel(delivery.delivery_id, "closed"))
        with pytest.raises(InvalidDeliveryState):
            submit(services, delivery.delivery_id)


class TestSubmit:

    def test_verifies_and_releases(self, services):
        delivery = asyncio.run(services.delivered_delivery())
        outcome = submit(services, delivery.delivery_id, photo_ref="photos/1.jpg")

        assert outcome.payment_state == PAYMENT_RELEASED
        assert outcome.settlement_reference is not None
        assert outcome.verification.status == VerificationStatus.APPROVED
        assert outcome.verification.photo_ref == "photos/1.jpg"
        assert services.store.deliveries[delivery.delivery_id].status == DeliveryStatus.VERIFIED
        assert services.store.escrows[delivery.delivery_id].status == EscrowStatus.RELEASED

    def test_scheduled_delivery_can_be_verified(self, services):
        delivery = asyncio.run(services.scheduled_delivery())
        outcome = submit(services, delivery.delivery_id)
        assert outcome.released

    def test_shortfall_recorded(self, services):
        delivery = asyncio.run(services.delivered_delivery())
        outcome = submit(services, delivery.delivery_id, portions=95)
        assert outcome.verification.portions_shortfall == 5
        assert outcome.released

    def test_duplicate_rejected(self, services):
        delivery = asyncio.run(services.scheduled_delivery())
        submit(services, delivery.delivery_id)
        # Delivery is verified now, so the state guard fires before the duplicate check
        with pytest.raises((DuplicateVerification, InvalidDeliveryState)):
            submit(services, delivery.delivery_id)
        assert len(services.store.verifications) == 1
        assert services.rail.call_count("release") == 1

    def test_concurrent_submissions_one_approved(self, services):
        delivery = asyncio.run(services.delivered_delivery())

        async def race():
            return await asyncio.gather(
                *(
                    services.verification.submit(
                        delivery_id=delivery.delivery_id,
                        school_id="school-1",
                        portions_received=100,
                        quality_rating=5,
                        verified_by=f"staff-{n}",
                    )
                    for n in range(4)
                ),
                return_exceptions=True,
            )

        results = asyncio.run(race())
        successes = [r for r in results if not isinstance(r, Exception)]
        assert len(successes) == 1
        assert all(
            isinstance(r, (DuplicateVerification, InvalidDeliveryState))
            for r in results if isinstance(r, Exception)
        )
        assert len(services.store.verifications) == 1
        assert services.rail.call_count("release") == 1

    def test_release_failure_keeps_verification(self, services):
        delivery = asyncio.run(services.delivered_delivery())
        services.rail.fail_on.add("release")

        outcome = submit(services, delivery.delivery_id)

        assert outcome.payment_state == PAYMENT_PENDING
        assert outcome.release_error_code == "ERR_SETTLEMENT_RAIL"
        assert services.store.deliveries[delivery.delivery_id].status == DeliveryStatus.VERIFIED
        assert services.store.escrows[delivery.delivery_id].status == EscrowStatus.LOCKED
        assert len(services.store.verifications) == 1

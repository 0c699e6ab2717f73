"""
Scenario 3 - the payment provider misbehaves

Covers:
- a capture that timed out: the booking is frozen until reconciliation settles it
- the admin sweep finishes the capture and the delivery carries on
- a refused payout: the parcel stays delivered and an admin retries the transfer
"""
import pytest

from app.core.exceptions import PaymentOutcomeUnknown, PaymentProviderError


async def _confirmed(api, sender, traveler, trip_id: int) -> int:
    booking_id = await api.book(sender, trip_id)
    await api.post(traveler, f"/bookings/{booking_id}/accept")
    await api.post(sender, f"/bookings/{booking_id}/confirm-payment", {"payment_method_id": "pm_card_visa"})
    return booking_id


@pytest.mark.scenario
class TestCaptureTimeout:

    @pytest.mark.asyncio
    async def test_sweep_finishes_the_capture(self, api, sender, traveler, trip, fake_provider, admin_key_headers):
        booking_id = await _confirmed(api, sender, traveler, trip.id)

        # --- the provider captured, but the answer never came back ---
        fake_provider.fail(
            "capture_payment_intent",
            PaymentOutcomeUnknown("capture_payment_intent", "timeout", 15.0),
            after_apply=True,
        )
        unknown = await api.post(traveler, f"/bookings/{booking_id}/capture")
        assert unknown.status_code == 202
        assert unknown.json()["error"]["code"] == "payment_outcome_unknown"

        booking = await api.booking(sender, booking_id)
        assert booking["status"] == "payment_confirmed"
        assert booking["payment_status"] == "reconciliation_required"

        # --- nobody may act on the booking meanwhile ---
        retry = await api.post(traveler, f"/bookings/{booking_id}/capture")
        assert retry.status_code == 409
        assert retry.json()["error"]["code"] == "payment_reconciliation_pending"
        cancel = await api.post(sender, f"/bookings/{booking_id}/cancel")
        assert cancel.json()["error"]["code"] == "payment_reconciliation_pending"

        # --- the sweep asks the provider and applies what it says ---
        sweep = await api.post(None, "/admin/payments/reconcile", **admin_key_headers)
        assert sweep.json() == {"success": True, "processed": 1, "succeeded": 1, "failed": 0, "skipped": 0}

        booking = await api.booking(sender, booking_id)
        assert booking["status"] == "paid"
        assert booking["payment_status"] == "captured"
        assert len(fake_provider.calls_of("capture_payment_intent")) == 1

        # --- codes were issued by the sweep, so the hand-over works ---
        pickup_code = await api.code(sender, booking_id, "pickup_code")
        picked = await api.post(traveler, f"/bookings/{booking_id}/pickup/validate", {"code": pickup_code})
        assert picked.json()["booking"]["status"] == "in_transit"

        delivery_code = await api.code(traveler, booking_id, "delivery_code")
        delivered = await api.post(sender, f"/bookings/{booking_id}/delivery/validate", {"code": delivery_code})
        assert delivered.json()["booking"]["status"] == "completed"
        assert [t.amount_cents for t in fake_provider.transfers] == [8500]

    @pytest.mark.asyncio
    async def test_sweep_restores_an_unapplied_capture(self, api, sender, traveler, trip, fake_provider, admin_key_headers):
        booking_id = await _confirmed(api, sender, traveler, trip.id)
        fake_provider.fail("capture_payment_intent", PaymentOutcomeUnknown("capture_payment_intent", "timeout", 15.0))
        await api.post(traveler, f"/bookings/{booking_id}/capture")

        await api.post(None, "/admin/payments/reconcile", **admin_key_headers)

        booking = await api.booking(sender, booking_id)
        assert booking["status"] == "payment_confirmed"
        assert booking["payment_status"] == "confirmed"

        # The capture can simply be asked for again
        paid = await api.post(traveler, f"/bookings/{booking_id}/capture")
        assert paid.json()["booking"]["status"] == "paid"


@pytest.mark.scenario
class TestRefusedPayout:

    @pytest.mark.asyncio
    async def test_admin_retries_the_transfer(
        self, api, sender, traveler, trip, fake_provider, admin_key_headers, ledger, outbox_events
    ):
        booking_id = await _confirmed(api, sender, traveler, trip.id)
        await api.post(traveler, f"/bookings/{booking_id}/capture")
        pickup_code = await api.code(sender, booking_id, "pickup_code")
        await api.post(traveler, f"/bookings/{booking_id}/pickup/validate", {"code": pickup_code})
        delivery_code = await api.code(traveler, booking_id, "delivery_code")

        # --- the provider refuses the payout; the parcel is still delivered ---
        fake_provider.fail("create_transfer", PaymentProviderError("account_closed"))
        delivered = await api.post(sender, f"/bookings/{booking_id}/delivery/validate", {"code": delivery_code})
        assert delivered.status_code == 200
        assert delivered.json()["booking"]["status"] == "delivered"
        assert delivered.json()["booking"]["payment_status"] == "transfer_failed"
        assert (await outbox_events(traveler))[-1] == "payout_failed"

        # --- an admin retries on a fresh idempotency key ---
        retried = await api.post(None, f"/admin/bookings/{booking_id}/force-transfer", **admin_key_headers)
        assert retried.status_code == 200
        assert retried.json()["booking"]["status"] == "completed"
        assert retried.json()["escrow"]["status"] == "fully_released"

        keys = [c["idempotency_key"] for c in fake_provider.calls_of("create_transfer")]
        assert keys == [f"payout-{booking_id}-0", f"payout-{booking_id}-1"]
        transfers = [(status, amount) for kind, status, amount in await ledger(booking_id) if kind == "transfer"]
        assert transfers == [("failed", "85.00"), ("completed", "85.00")]

        # --- a second retry finds nothing left to pay ---
        again = await api.post(None, f"/admin/bookings/{booking_id}/force-transfer", **admin_key_headers)
        assert again.status_code == 409

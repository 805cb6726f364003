"""
Payment reconciliation: client confirmation, webhooks, and the race between them.
"""

import asyncio

import pytest

from conftest import USER_ID, sign_payment, webhook
from errors import ConflictError, InvalidSignatureError, NotFoundError, ValidationError
from schemas.orders import Actor, OrderStatus, PaymentMethod, PaymentStatus
from schemas.payments import AttemptSource, AttemptStatus, IntentState
from services.notifications import NotificationType


def count(notifier, event_type):
    return sum(1 for _, t, _ in notifier.sent if t == event_type)


class TestClientConfirmation:

    @pytest.mark.asyncio
    async def test_valid_signature_confirms_order(self, service, notifier, place_online_order):
        placed = await place_online_order()
        intent_id = placed.payment_intent.intent_id

        order = await service.confirm_client_payment(
            placed.order.order_id, intent_id, "ch_1", sign_payment(intent_id, "ch_1"), user_id=USER_ID
        )

        assert order.status == OrderStatus.CONFIRMED
        assert order.payment_status == PaymentStatus.PAID
        assert len(order.status_history) == len(placed.order.status_history) + 1
        assert order.status_history[-1].actor == Actor.user(USER_ID)
        assert order.gateway.payment_id == "ch_1"
        assert order.paid_at is not None
        assert count(notifier, NotificationType.PAYMENT_CONFIRMED) == 1

    @pytest.mark.asyncio
    async def test_confirming_twice_is_a_no_op(self, service, notifier, paid_order):
        order = await paid_order()
        intent_id = order.gateway.intent_id

        again = await service.confirm_client_payment(
            order.order_id, intent_id, "ch_1", sign_payment(intent_id, "ch_1")
        )

        assert again.version == order.version
        assert len(again.status_history) == 2
        assert count(notifier, NotificationType.PAYMENT_CONFIRMED) == 1

    @pytest.mark.asyncio
    async def test_bad_signature_is_recorded_and_rejected(self, service, notifier, place_online_order):
        placed = await place_online_order()

        with pytest.raises(InvalidSignatureError):
            await service.confirm_client_payment(
                placed.order.order_id, placed.payment_intent.intent_id, "ch_1", "forged"
            )

        order = await service.get_order(placed.order.order_id)
        assert order.status == OrderStatus.PLACED
        attempts = await service.get_payment_attempts(order.order_id)
        assert len(attempts) == 1
        assert attempts[0].status == AttemptStatus.FAILED
        assert attempts[0].error_code == "invalid_signature"
        assert notifier.sent[-1][2]["attempts_remaining"] == 2

    @pytest.mark.asyncio
    async def test_signature_for_other_payment_is_rejected(self, service, place_online_order):
        placed = await place_online_order()
        intent_id = placed.payment_intent.intent_id
        with pytest.raises(InvalidSignatureError):
            await service.confirm_client_payment(
                placed.order.order_id, intent_id, "ch_2", sign_payment(intent_id, "ch_1")
            )

    @pytest.mark.asyncio
    async def test_intent_mismatch(self, service, place_online_order):
        placed = await place_online_order()

        with pytest.raises(ValidationError):
            await service.confirm_client_payment(
                placed.order.order_id, "pi_other", "ch_1", sign_payment("pi_other", "ch_1")
            )
        assert await service.get_payment_attempts(placed.order.order_id) == []

    @pytest.mark.asyncio
    async def test_other_users_order_is_not_found(self, service, place_online_order):
        placed = await place_online_order()
        intent_id = placed.payment_intent.intent_id
        with pytest.raises(NotFoundError):
            await service.confirm_client_payment(
                placed.order.order_id, intent_id, "ch_1", sign_payment(intent_id, "ch_1"), user_id="user-2"
            )

    @pytest.mark.asyncio
    async def test_cod_order_rejected(self, service, fill_cart):
        fill_cart(("rice", "rice-5kg", 1))
        order = (await service.place_order(USER_ID, "addr-home", PaymentMethod.COD)).order
        with pytest.raises(ConflictError):
            await service.confirm_client_payment(order.order_id, "pi_1", "ch_1", sign_payment("pi_1", "ch_1"))


class TestWebhooks:

    @pytest.mark.asyncio
    async def test_capture_after_client_confirmation_is_a_no_op(self, service, notifier, paid_order):
        order = await paid_order()

        payload, signature = webhook("evt_1", "captured", intent_id=order.gateway.intent_id, payment_id="ch_1")
        result = await service.handle_gateway_webhook(payload, signature)

        after = await service.get_order(order.order_id)
        assert result["status"] == "processed"
        assert result["order_status"] == "CONFIRMED"
        assert after.status_history == order.status_history
        assert after.version == order.version
        assert count(notifier, NotificationType.PAYMENT_CONFIRMED) == 1

    @pytest.mark.asyncio
    async def test_capture_confirms_placed_order(self, service, place_online_order):
        placed = await place_online_order()

        payload, signature = webhook(
            "evt_1", "captured", intent_id=placed.payment_intent.intent_id, payment_id="ch_7"
        )
        await service.handle_gateway_webhook(payload, signature)

        order = await service.get_order(placed.order.order_id)
        assert order.status == OrderStatus.CONFIRMED
        assert order.gateway.payment_id == "ch_7"
        assert order.status_history[-1].actor == Actor.gateway()

    @pytest.mark.asyncio
    async def test_redelivered_event_is_ledgered_once(self, service, notifier, place_online_order):
        placed = await place_online_order()
        payload, signature = webhook(
            "evt_1", "captured", intent_id=placed.payment_intent.intent_id, payment_id="ch_7"
        )

        await service.handle_gateway_webhook(payload, signature)
        await service.handle_gateway_webhook(payload, signature)

        attempts = await service.get_payment_attempts(placed.order.order_id)
        assert [a.source for a in attempts] == [AttemptSource.WEBHOOK]
        assert count(notifier, NotificationType.PAYMENT_CONFIRMED) == 1
        assert len((await service.get_order(placed.order.order_id)).status_history) == 2

    @pytest.mark.asyncio
    async def test_invalid_signature_rejected_before_parsing(self, service, place_online_order):
        placed = await place_online_order()
        payload, _ = webhook("evt_1", "captured", intent_id=placed.payment_intent.intent_id, payment_id="ch_7")

        with pytest.raises(InvalidSignatureError):
            await service.handle_gateway_webhook(payload, "not-a-signature")

        order = await service.get_order(placed.order.order_id)
        assert order.status == OrderStatus.PLACED
        assert await service.get_payment_attempts(order.order_id) == []

    @pytest.mark.asyncio
    async def test_unknown_intent_is_not_found(self, service):
        payload, signature = webhook("evt_1", "captured", intent_id="pi_ghost", payment_id="ch_1")
        with pytest.raises(NotFoundError):
            await service.handle_gateway_webhook(payload, signature)

    @pytest.mark.asyncio
    async def test_unsupported_event_is_ignored(self, service):
        payload, signature = webhook("evt_1", "customer.created")
        assert await service.handle_gateway_webhook(payload, signature) == {"status": "ignored"}


class TestConcurrentConfirmation:

    @pytest.mark.asyncio
    async def test_client_and_webhook_race_confirms_once(self, service, notifier, place_online_order):
        placed = await place_online_order()
        intent_id = placed.payment_intent.intent_id
        payload, signature = webhook("evt_1", "captured", intent_id=intent_id, payment_id="ch_1")

        results = await asyncio.gather(
            service.confirm_client_payment(
                placed.order.order_id, intent_id, "ch_1", sign_payment(intent_id, "ch_1")
            ),
            service.handle_gateway_webhook(payload, signature),
        )

        order = await service.get_order(placed.order.order_id)
        assert order.status == OrderStatus.CONFIRMED
        assert order.payment_status == PaymentStatus.PAID
        assert len(order.status_history) == 2
        assert order.version == placed.order.version + 1
        assert count(notifier, NotificationType.PAYMENT_CONFIRMED) == 1
        assert results[0].status == OrderStatus.CONFIRMED
        assert results[1]["order_status"] == "CONFIRMED"

    @pytest.mark.asyncio
    async def test_many_duplicate_webhooks(self, service, notifier, place_online_order):
        placed = await place_online_order()
        intent_id = placed.payment_intent.intent_id
        deliveries = [
            webhook(f"evt_{i}", "captured", intent_id=intent_id, payment_id="ch_1") for i in range(5)
        ]

        await asyncio.gather(*(service.handle_gateway_webhook(p, s) for p, s in deliveries))

        order = await service.get_order(placed.order.order_id)
        assert len(order.status_history) == 2
        assert count(notifier, NotificationType.PAYMENT_CONFIRMED) == 1


class TestPaymentFailures:

    async def fail(self, service, intent_id, event_id):
        payload, signature = webhook(event_id, "failed", intent_id=intent_id, error_code="card_declined")
        return await service.handle_gateway_webhook(payload, signature)

    @pytest.mark.asyncio
    async def test_failures_below_limit_keep_order_open(self, service, notifier, catalog, place_online_order):
        placed = await place_online_order()
        intent_id = placed.payment_intent.intent_id

        await self.fail(service, intent_id, "evt_f1")
        await self.fail(service, intent_id, "evt_f2")

        order = await service.get_order(placed.order.order_id)
        assert order.status == OrderStatus.PLACED
        assert order.payment_status == PaymentStatus.PENDING
        assert catalog.stock_of("rice", "rice-5kg") == 8
        remaining = [p["attempts_remaining"] for _, t, p in notifier.sent if t == NotificationType.PAYMENT_FAILED]
        assert remaining == [2, 1]

    @pytest.mark.asyncio
    async def test_limit_reached_fails_order_and_releases_stock(
        self, service, notifier, catalog, place_online_order
    ):
        placed = await place_online_order()
        intent_id = placed.payment_intent.intent_id

        for event_id in ("evt_f1", "evt_f2", "evt_f3"):
            await self.fail(service, intent_id, event_id)

        order = await service.get_order(placed.order.order_id)
        assert order.status == OrderStatus.PAYMENT_FAILED
        assert order.payment_status == PaymentStatus.FAILED
        assert order.stock_reserved is False
        assert catalog.stock_of("rice", "rice-5kg") == 10
        assert catalog.stock_of("dal", "dal-1kg") == 5
        assert notifier.sent[-1][2]["attempts_remaining"] == 0

    @pytest.mark.asyncio
    async def test_redelivered_failure_counts_once(self, service, place_online_order):
        placed = await place_online_order()
        intent_id = placed.payment_intent.intent_id

        for _ in range(3):
            await self.fail(service, intent_id, "evt_f1")

        order = await service.get_order(placed.order.order_id)
        assert order.status == OrderStatus.PLACED
        assert len(await service.get_payment_attempts(order.order_id)) == 1

    @pytest.mark.asyncio
    async def test_failure_after_capture_is_ignored(self, service, paid_order):
        order = await paid_order()
        for event_id in ("evt_f1", "evt_f2", "evt_f3"):
            await self.fail(service, order.gateway.intent_id, event_id)

        after = await service.get_order(order.order_id)
        assert after.status == OrderStatus.CONFIRMED
        assert after.payment_status == PaymentStatus.PAID

    @pytest.mark.asyncio
    async def test_cancelling_failed_order_does_not_restock_twice(self, service, catalog, place_online_order):
        placed = await place_online_order()
        for event_id in ("evt_f1", "evt_f2", "evt_f3"):
            await self.fail(service, placed.payment_intent.intent_id, event_id)

        order = await service.cancel_order(placed.order.order_id, Actor.admin("a1"), "Abandoned")

        assert order.status == OrderStatus.CANCELLED
        assert catalog.stock_of("rice", "rice-5kg") == 10
        assert catalog.stock_of("dal", "dal-1kg") == 5

    @pytest.mark.asyncio
    async def test_late_capture_on_failed_order_is_recorded(self, service, place_online_order):
        placed = await place_online_order()
        intent_id = placed.payment_intent.intent_id
        for event_id in ("evt_f1", "evt_f2", "evt_f3"):
            await self.fail(service, intent_id, event_id)
        failed = await service.get_order(placed.order.order_id)

        payload, signature = webhook("evt_late", "captured", intent_id=intent_id, payment_id="ch_late")
        await service.handle_gateway_webhook(payload, signature)

        order = await service.get_order(placed.order.order_id)
        assert order.status == OrderStatus.PAYMENT_FAILED
        assert order.payment_status == PaymentStatus.PAID
        assert order.gateway.payment_id == "ch_late"
        assert order.status_history == failed.status_history


class TestRefundWebhook:

    @pytest.mark.asyncio
    async def test_refund_processed_completes_refund(self, service, notifier, paid_order):
        order = await paid_order()
        await service.cancel_order(order.order_id, Actor.user(USER_ID), "Ordered by mistake")

        payload, signature = webhook(
            "evt_r1", "refund_processed", payment_id="ch_1", refund_id="re_1", amount=125000
        )
        await service.handle_gateway_webhook(payload, signature)

        refunded = await service.get_order(order.order_id)
        assert refunded.status == OrderStatus.REFUNDED
        assert refunded.payment_status == PaymentStatus.REFUNDED
        assert refunded.refund.refunded_at is not None
        assert count(notifier, NotificationType.REFUND_COMPLETED) == 1

        await service.handle_gateway_webhook(payload, signature)
        again = await service.get_order(order.order_id)
        assert again.version == refunded.version
        assert count(notifier, NotificationType.REFUND_COMPLETED) == 1

    @pytest.mark.asyncio
    async def test_refund_event_for_active_order_changes_nothing(self, service, paid_order):
        order = await paid_order()
        payload, signature = webhook("evt_r1", "refund_processed", payment_id="ch_1", amount=1000)

        await service.handle_gateway_webhook(payload, signature)

        after = await service.get_order(order.order_id)
        assert after.status == OrderStatus.CONFIRMED
        assert after.version == order.version

    @pytest.mark.asyncio
    async def test_unknown_payment_is_not_found(self, service):
        payload, signature = webhook("evt_r1", "refund_processed", payment_id="ch_ghost", amount=1000)
        with pytest.raises(NotFoundError):
            await service.handle_gateway_webhook(payload, signature)


class TestSyncPaymentStatus:

    @pytest.mark.asyncio
    async def test_picks_up_capture_reported_by_gateway(self, service, gateway, place_online_order):
        placed = await place_online_order()
        intent_id = placed.payment_intent.intent_id
        gateway.intent_states[intent_id] = IntentState(
            intent_id=intent_id, captured=True, payment_id="ch_sync", amount=125000
        )

        order = await service.sync_payment_status(placed.order.order_id)

        assert order.status == OrderStatus.CONFIRMED
        assert order.gateway.payment_id == "ch_sync"
        attempts = await service.get_payment_attempts(order.order_id)
        assert attempts[-1].source == AttemptSource.SYNC

    @pytest.mark.asyncio
    async def test_uncaptured_intent_leaves_order_alone(self, service, place_online_order):
        placed = await place_online_order()
        order = await service.sync_payment_status(placed.order.order_id)
        assert order.status == OrderStatus.PLACED
        assert order.version == placed.order.version

    @pytest.mark.asyncio
    async def test_repeated_sync_ledgers_once(self, service, gateway, place_online_order):
        placed = await place_online_order()
        intent_id = placed.payment_intent.intent_id
        gateway.intent_states[intent_id] = IntentState(intent_id=intent_id, captured=True, payment_id="ch_s")

        await service.sync_payment_status(placed.order.order_id)
        await service.sync_payment_status(placed.order.order_id)

        assert len(await service.get_payment_attempts(placed.order.order_id)) == 1

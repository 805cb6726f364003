"""
Checkout: cart -> reserved stock -> PLACED order with a payment intent.
"""

from datetime import timedelta

import pytest

from conftest import FAR_ADDRESS_ID, NEAR_ADDRESS_ID, USER_ID
from errors import ConflictError, GatewayError, NotFoundError, ValidationError
from schemas.orders import ActorKind, OrderStatus, PaymentMethod, PaymentStatus
from schemas.payments import IntentState
from services.notifications import NotificationType


def sent_types(notifier):
    return [event_type for _, event_type, _ in notifier.sent]


class TestPlaceOrder:

    @pytest.mark.asyncio
    async def test_two_item_cart_places_order(self, service, catalog, gateway, place_online_order, clock):
        result = await place_online_order()
        order = result.order

        assert order.status == OrderStatus.PLACED
        assert order.payment_status == PaymentStatus.PENDING
        assert order.order_number == "SH202610170001"
        assert catalog.stock_of("rice", "rice-5kg") == 8
        assert catalog.stock_of("dal", "dal-1kg") == 4
        assert catalog.sales_of("rice") == 2

        assert result.payment_intent is not None
        assert result.payment_intent.amount == order.total == 125000
        assert order.gateway.intent_id == result.payment_intent.intent_id
        assert order.payment_expires_at == clock() + timedelta(minutes=30)

        stored = await service.get_order(order.order_id)
        assert stored.gateway.intent_id == result.payment_intent.intent_id

    @pytest.mark.asyncio
    async def test_line_items_snapshot_catalog_prices(self, place_online_order):
        order = (await place_online_order()).order

        rice = next(i for i in order.items if i.variant_id == "rice-5kg")
        assert rice.unit_price == 60000
        assert rice.selling_price == 55000
        assert rice.quantity == 2
        assert rice.subtotal == 110000
        assert order.subtotal == 125000
        assert order.delivery_charge == 0

    @pytest.mark.asyncio
    async def test_history_starts_with_placed_by_user(self, place_online_order):
        order = (await place_online_order()).order
        assert len(order.status_history) == 1
        assert order.status_history[0].status == OrderStatus.PLACED
        assert order.status_history[0].actor.kind == ActorKind.USER
        assert order.status_history[0].actor.id == USER_ID

    @pytest.mark.asyncio
    async def test_small_order_pays_delivery(self, service, fill_cart):
        fill_cart(("dal", "dal-1kg", 2))
        order = (await service.place_order(USER_ID, NEAR_ADDRESS_ID, PaymentMethod.ONLINE)).order
        assert order.subtotal == 30000
        assert order.delivery_charge == 4000
        assert order.total == 34000

    @pytest.mark.asyncio
    async def test_discount_reduces_total(self, service, fill_cart):
        fill_cart(("rice", "rice-5kg", 1))
        order = (await service.place_order(
            USER_ID, NEAR_ADDRESS_ID, PaymentMethod.ONLINE, discount=5000
        )).order
        assert order.total == 50000

    @pytest.mark.asyncio
    async def test_cod_order_has_no_intent(self, service, gateway, fill_cart):
        fill_cart(("rice", "rice-5kg", 1))
        result = await service.place_order(USER_ID, NEAR_ADDRESS_ID, PaymentMethod.COD, notes="Ring twice")

        assert result.payment_intent is None
        assert result.order.payment_expires_at is None
        assert result.order.notes == "Ring twice"
        assert gateway.intents == {}

    @pytest.mark.asyncio
    async def test_cart_is_cleared_and_user_notified(self, carts, notifier, place_online_order):
        order = (await place_online_order()).order
        assert await carts.get_items(USER_ID) == []
        assert notifier.sent[-1] == (USER_ID, NotificationType.ORDER_PLACED, {
            "order_id": order.order_id,
            "order_number": order.order_number,
            "total": 125000,
        })

    @pytest.mark.asyncio
    async def test_sequential_orders_get_next_number(self, service, fill_cart, place_online_order):
        await place_online_order()
        fill_cart(("rice", "rice-5kg", 1))
        second = (await service.place_order(USER_ID, NEAR_ADDRESS_ID, PaymentMethod.ONLINE)).order
        assert second.order_number == "SH202610170002"


class TestCheckoutRejections:

    @pytest.mark.asyncio
    async def test_out_of_stock_item_rejects_whole_checkout(self, service, catalog, fill_cart, orders):
        fill_cart(("rice", "rice-5kg", 2), ("ghee", "ghee-500ml", 1))

        with pytest.raises(ValidationError) as exc:
            await service.place_order(USER_ID, NEAR_ADDRESS_ID, PaymentMethod.ONLINE)

        assert "Cow Ghee" in str(exc.value)
        assert catalog.stock_of("rice", "rice-5kg") == 10
        assert catalog.stock_of("ghee", "ghee-500ml") == 0
        assert await orders.highest_sequence_for_day("SH20261017") == 0

    @pytest.mark.asyncio
    async def test_unknown_address(self, service, fill_cart):
        fill_cart(("rice", "rice-5kg", 1))
        with pytest.raises(NotFoundError):
            await service.place_order(USER_ID, "addr-missing", PaymentMethod.ONLINE)

    @pytest.mark.asyncio
    async def test_another_users_address(self, service, fill_cart):
        fill_cart(("rice", "rice-5kg", 1), user_id="user-2")
        with pytest.raises(NotFoundError):
            await service.place_order("user-2", NEAR_ADDRESS_ID, PaymentMethod.ONLINE)

    @pytest.mark.asyncio
    async def test_address_outside_delivery_radius(self, service, catalog, fill_cart):
        fill_cart(("rice", "rice-5kg", 1))
        with pytest.raises(ValidationError) as exc:
            await service.place_order(USER_ID, FAR_ADDRESS_ID, PaymentMethod.ONLINE)

        assert "25 km" in str(exc.value)
        assert exc.value.details["distance_km"] > 25
        assert catalog.stock_of("rice", "rice-5kg") == 10

    @pytest.mark.asyncio
    async def test_cod_disabled(self, service, config, fill_cart):
        config.COD_ENABLED = False
        fill_cart(("rice", "rice-5kg", 1))
        with pytest.raises(ValidationError, match="Cash on delivery"):
            await service.place_order(USER_ID, NEAR_ADDRESS_ID, PaymentMethod.COD)

    @pytest.mark.asyncio
    async def test_empty_cart(self, service):
        with pytest.raises(ValidationError, match="Cart is empty"):
            await service.place_order(USER_ID, NEAR_ADDRESS_ID, PaymentMethod.ONLINE)

    @pytest.mark.asyncio
    async def test_below_minimum_order_value(self, service, catalog, fill_cart):
        fill_cart(("salt", "salt-1kg", 4))
        with pytest.raises(ValidationError) as exc:
            await service.place_order(USER_ID, NEAR_ADDRESS_ID, PaymentMethod.ONLINE)

        assert exc.value.details["shortfall"] == 10000
        assert catalog.stock_of("salt", "salt-1kg") == 100

    @pytest.mark.asyncio
    async def test_discount_larger_than_bill_is_rejected(self, service, catalog, orders, fill_cart):
        fill_cart(("rice", "rice-5kg", 1))
        with pytest.raises(ValidationError) as exc:
            await service.place_order(USER_ID, NEAR_ADDRESS_ID, PaymentMethod.ONLINE, discount=200000)

        assert exc.value.details["discount"] == 200000
        assert catalog.stock_of("rice", "rice-5kg") == 10
        assert await orders.highest_sequence_for_day("SH20261017") == 0

    @pytest.mark.asyncio
    async def test_negative_discount_is_rejected(self, service, fill_cart):
        fill_cart(("rice", "rice-5kg", 1))
        with pytest.raises(ValidationError):
            await service.place_order(USER_ID, NEAR_ADDRESS_ID, PaymentMethod.ONLINE, discount=-1)


class TestCheckoutCompensation:

    @pytest.mark.asyncio
    async def test_intent_failure_cancels_order_and_restores_stock(
        self, service, gateway, catalog, notifier, carts, place_online_order
    ):
        gateway.create_error = GatewayError("gateway unavailable", retryable=True)

        with pytest.raises(GatewayError):
            await place_online_order()

        assert catalog.stock_of("rice", "rice-5kg") == 10
        assert catalog.stock_of("dal", "dal-1kg") == 5

        cancelled = [payload for _, t, payload in notifier.sent if t == NotificationType.ORDER_CANCELLED]
        assert len(cancelled) == 1
        order = await service.get_order(cancelled[0]["order_id"])
        assert order.status == OrderStatus.CANCELLED
        assert order.stock_reserved is False
        assert order.cancellation.reason == "Payment initiation failed"
        # The user can retry with the same cart
        assert len(await carts.get_items(USER_ID)) == 2

    @pytest.mark.asyncio
    async def test_expired_reservation_cancels_order(self, service, catalog, notifier, fill_cart, monkeypatch):
        async def commit_lost(reservation_id):
            return False

        monkeypatch.setattr(service.stock, "commit", commit_lost)
        fill_cart(("rice", "rice-5kg", 1))

        with pytest.raises(ConflictError, match="reserved stock was released"):
            await service.place_order(USER_ID, NEAR_ADDRESS_ID, PaymentMethod.ONLINE)

        cancelled = [payload for _, t, payload in notifier.sent if t == NotificationType.ORDER_CANCELLED]
        order = await service.get_order(cancelled[0]["order_id"])
        assert order.status == OrderStatus.CANCELLED
        assert order.stock_reserved is False


class TestRetryPayment:

    @pytest.mark.asyncio
    async def test_issues_fresh_intent(self, service, place_online_order, clock):
        first = await place_online_order()
        clock.advance(minutes=5)

        retried = await service.retry_payment(first.order.order_id, USER_ID)

        assert retried.payment_intent.intent_id != first.payment_intent.intent_id
        assert retried.order.gateway.intent_id == retried.payment_intent.intent_id
        assert retried.order.payment_expires_at == clock() + timedelta(minutes=30)
        assert retried.order.status == OrderStatus.PLACED

    @pytest.mark.asyncio
    async def test_confirms_instead_of_charging_twice(self, service, gateway, place_online_order):
        first = await place_online_order()
        intent_id = first.payment_intent.intent_id
        gateway.intent_states[intent_id] = IntentState(
            intent_id=intent_id, captured=True, payment_id="ch_9", amount=125000
        )

        with pytest.raises(ConflictError, match="already paid"):
            await service.retry_payment(first.order.order_id, USER_ID)

        order = await service.get_order(first.order.order_id)
        assert order.status == OrderStatus.CONFIRMED
        assert order.gateway.payment_id == "ch_9"
        assert len(gateway.intents) == 1

    @pytest.mark.asyncio
    async def test_cod_order_cannot_retry(self, service, fill_cart):
        fill_cart(("rice", "rice-5kg", 1))
        order = (await service.place_order(USER_ID, NEAR_ADDRESS_ID, PaymentMethod.COD)).order
        with pytest.raises(ConflictError):
            await service.retry_payment(order.order_id, USER_ID)

    @pytest.mark.asyncio
    async def test_other_user_sees_not_found(self, service, place_online_order):
        order = (await place_online_order()).order
        with pytest.raises(NotFoundError):
            await service.retry_payment(order.order_id, "user-2")


class TestGetOrder:

    @pytest.mark.asyncio
    async def test_owner_scoped_lookup(self, service, place_online_order):
        order = (await place_online_order()).order
        assert (await service.get_order(order.order_id, USER_ID)).order_id == order.order_id
        with pytest.raises(NotFoundError):
            await service.get_order(order.order_id, "user-2")

    @pytest.mark.asyncio
    async def test_unknown_order(self, service):
        with pytest.raises(NotFoundError):
            await service.get_order("nope")

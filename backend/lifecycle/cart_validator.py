"""Cart snapshot validation against the authoritative catalog. Read-only."""

from typing import List

import structlog

from errors import ValidationError
from schemas.orders import (
    CartItem,
    CartValidation,
    InvalidLine,
    InvalidReason,
    LineItem,
    ValidatedLine,
)
from services.catalog import ICatalog
from services.delivery import DeliveryPolicy

logger = structlog.get_logger().bind(component="cart_validator")


class CartSnapshotValidator:

    def __init__(self, catalog: ICatalog, delivery: DeliveryPolicy):
        self.catalog = catalog
        self.delivery = delivery

    async def validate(self, items: List[CartItem]) -> CartValidation:
        """Re-fetch price and stock per line and partition into valid / invalid."""
        result = CartValidation()
        for item in items:
            variant = await self.catalog.get_variant(item.product_id, item.variant_id)

            if variant is None:
                reason = InvalidReason.DELETED
            elif not variant.is_active:
                reason = InvalidReason.DEACTIVATED
            elif variant.stock < item.quantity:
                reason = InvalidReason.INSUFFICIENT_STOCK
            else:
                result.valid.append(ValidatedLine(
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    product_name=variant.product_name,
                    variant_label=variant.variant_label,
                    unit_price=variant.price,
                    selling_price=variant.selling_price,
                    quantity=item.quantity,
                    available_stock=variant.stock,
                ))
                continue

            result.invalid.append(InvalidLine(
                product_id=item.product_id,
                variant_id=item.variant_id,
                product_name=variant.product_name if variant else None,
                reason=reason,
                requested=item.quantity,
                available_stock=variant.stock if variant else 0,
            ))

        if result.invalid:
            logger.info("cart_has_invalid_lines", invalid=len(result.invalid), valid=len(result.valid))
        return result

    async def validate_or_raise(self, items: List[CartItem]) -> CartValidation:
        """
        Validate and reject the checkout if any line is unusable.

        Raises:
            ValidationError: empty cart, one or more invalid lines (all listed),
                or a subtotal below the minimum order value
        """
        if not items:
            raise ValidationError("Cart is empty")

        result = await self.validate(items)
        if result.invalid:
            problems = [line.describe() for line in result.invalid]
            raise ValidationError(
                "Some items in your cart are unavailable: " + "; ".join(problems),
                details={"invalid_items": [line.model_dump(mode="json") for line in result.invalid]},
            )
        if not result.valid:
            raise ValidationError("Cart has no purchasable items")

        minimum = self.delivery.meets_minimum_order_value(result.subtotal)
        if not minimum.is_valid:
            raise ValidationError(
                f"Minimum order value is {minimum.min_required}. "
                f"Add items worth {minimum.shortfall} more",
                details={"min_required": minimum.min_required, "shortfall": minimum.shortfall},
            )
        return result

    @staticmethod
    def to_line_items(result: CartValidation) -> List[LineItem]:
        """Freeze validated lines into order line-item snapshots."""
        return [
            LineItem(
                product_id=line.product_id,
                variant_id=line.variant_id,
                product_name=line.product_name,
                variant_label=line.variant_label,
                unit_price=line.unit_price,
                selling_price=line.selling_price,
                quantity=line.quantity,
                subtotal=line.subtotal,
            )
            for line in result.valid
        ]

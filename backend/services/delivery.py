"""Delivery eligibility: service radius, delivery charge, minimum order value."""

import math

from schemas.orders import MinimumOrderCheck, ServiceAreaCheck
from settings import Settings, settings as default_settings

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two coordinates in kilometres"""
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


class DeliveryPolicy:
    """Store-centred delivery rules driven by settings"""

    def __init__(self, config: Settings = default_settings):
        self.config = config

    def is_within_service_area(self, lat: float, lng: float) -> ServiceAreaCheck:
        distance = haversine_km(self.config.STORE_LAT, self.config.STORE_LNG, lat, lng)
        return ServiceAreaCheck(
            deliverable=distance <= self.config.DELIVERY_RADIUS_KM,
            distance_km=round(distance, 2),
            max_radius_km=self.config.DELIVERY_RADIUS_KM,
        )

    def calculate_delivery_charge(self, subtotal: int) -> int:
        if subtotal >= self.config.FREE_DELIVERY_THRESHOLD:
            return 0
        return self.config.DELIVERY_CHARGE

    def meets_minimum_order_value(self, subtotal: int) -> MinimumOrderCheck:
        is_valid = subtotal >= self.config.MIN_ORDER_VALUE
        return MinimumOrderCheck(
            is_valid=is_valid,
            min_required=self.config.MIN_ORDER_VALUE,
            shortfall=0 if is_valid else self.config.MIN_ORDER_VALUE - subtotal,
        )

"""
Money and distance rules for orders and rider payouts.
"""

import math
from typing import Iterable, Optional

import config


def money(value: float) -> float:
    return round(float(value), 2)


def items_subtotal(items: Iterable) -> float:
    """Sum of quantity x (unit price + add-ons) over the order lines."""
    subtotal = 0.0
    for it in items:
        add_ons = sum(a.price for a in it.add_ons)
        subtotal += it.quantity * (it.unit_price + add_ons)
    return money(subtotal)


def order_total(subtotal: float, delivery_fee: float = 0, tax: float = 0, service_fee: float = 0,
                discount: float = 0) -> float:
    return money(subtotal + delivery_fee + tax + service_fee - discount)


def calculate_delivery_fee(distance_km: float) -> float:
    """Customer delivery fee by distance tier."""
    if distance_km < 3:
        return 79.0
    if distance_km < 6:
        return 99.0
    if distance_km < 9:
        return 129.0
    return 149.0


def round_half_up(value: float) -> float:
    """Whole-rupee rounding with halves going up, not to even."""
    return float(math.floor(value + 0.5))


def calculate_rider_earning(distance_km: float) -> dict:
    gross = config.BASE_RIDER_PAY + distance_km * config.PER_KM_RATE
    net = gross - config.PLATFORM_FEE
    return {
        "gross_earning": round_half_up(gross),
        "platform_fee": float(config.PLATFORM_FEE),
        "net_earning": round_half_up(net),
    }


def commission(total: float, rate: float) -> float:
    return money(total * rate)


def restaurant_share(total: float, rate: float) -> float:
    return money(total - commission(total, rate))


def as_point(p) -> Optional[tuple]:
    if not p:
        return None
    try:
        lat, lng = float(p["lat"]), float(p["lng"])
    except (KeyError, TypeError, ValueError):
        return None
    # (0, 0) is what unset locations default to
    if not lat or not lng:
        return None
    return lat, lng


def distance_km(a, b) -> float:
    """Haversine distance in km between two {lat, lng} points, 1 decimal.

    Falls back to DEFAULT_DISTANCE_KM when either point is missing.
    """
    pa, pb = as_point(a), as_point(b)
    if pa is None or pb is None:
        return config.DEFAULT_DISTANCE_KM
    lat1, lng1 = map(math.radians, pa)
    lat2, lng2 = map(math.radians, pb)
    d_lat = lat2 - lat1
    d_lng = lng2 - lng1
    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    return round(6371 * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h)), 1)

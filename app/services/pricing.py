"""
Fare estimation and great-circle distance helpers.

The lifecycle only depends on the ``FareFunction`` signature, so a real
pricing engine can be plugged in without touching the state machine.
"""
from decimal import Decimal, ROUND_HALF_UP
from math import radians, sin, cos, sqrt, atan2
from typing import Callable, Optional

EARTH_RADIUS_M = 6_371_000

# ---------------------------------------------------------------------------
# Tier rates (INR)
# ---------------------------------------------------------------------------
BASE_FEE: dict[str, float] = {"standard": 30, "premium": 60, "xl": 80}
RATE_PER_KM: dict[str, float] = {"standard": 10, "premium": 15, "xl": 20}

FareFunction = Callable[[Optional[str], float], Decimal]


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in metres."""
    phi1, phi2 = radians(lat1), radians(lat2)
    dphi = radians(lat2 - lat1)
    dlambda = radians(lng2 - lng1)
    a = sin(dphi / 2) ** 2 + cos(phi1) * cos(phi2) * sin(dlambda / 2) ** 2
    return 2 * EARTH_RADIUS_M * atan2(sqrt(a), sqrt(1 - a))


def calculate_fare(tier: Optional[str], distance_m: float) -> Decimal:
    """
    Deterministic fare: tier base fee + per-km rate.
    Unknown or missing tiers fall back to standard rates.
    """
    tier = tier or "standard"
    distance_km = distance_m / 1000
    total = BASE_FEE.get(tier, 30) + RATE_PER_KM.get(tier, 10) * distance_km
    return Decimal(str(round(total, 2))).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

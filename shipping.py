"""Shipping cost per origin country and transport mode."""
from typing import Dict

# XAF per kilogram
SHIPPING_RATES: Dict[str, Dict[str, int]] = {
    "china": {"air": 9000, "sea": 1000},
    "nigeria": {"land": 1000},
}

TRANSIT_TIMES = {
    ("china", "air"): "14 days",
    ("china", "sea"): "60 days",
    ("nigeria", "land"): "9 days",
}


class ShippingError(ValueError):
    pass


def shipping_rate(country: str, method: str) -> int:
    rates = SHIPPING_RATES.get(country.lower())
    if rates is None:
        raise ShippingError(f"We do not ship from {country}")
    if method.lower() not in rates:
        raise ShippingError(f"{method} shipping is not available from {country}")
    return rates[method.lower()]


def calculate_shipping(weight: float, country: str, method: str) -> float:
    if weight < 0:
        raise ShippingError("Weight cannot be negative")
    return float(round(weight * shipping_rate(country, method)))


def shipping_options():
    options = []
    for country, rates in SHIPPING_RATES.items():
        for method, rate in rates.items():
            options.append({
                "country": country,
                "method": method,
                "rate_per_kg": rate,
                "transit_time": TRANSIT_TIMES.get((country, method)),
            })
    return options

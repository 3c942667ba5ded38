"""
Numeric-safety helpers.

Every division that can see a zero denominator (zero entry price, zero
average volume, zero total weight, zero loss sum) goes through here so the
result is always a defined number, never NaN and never a ZeroDivisionError.
"""

import math


def safe_ratio(numerator: float, denominator: float, default: float = 0.0) -> float:
    """numerator / denominator, or ``default`` when the denominator is zero or not finite."""
    if denominator == 0 or not math.isfinite(denominator):
        return default
    result = numerator / denominator
    if math.isnan(result):
        return default
    return result


def safe_pct(numerator: float, denominator: float, default: float = 0.0) -> float:
    """Same as safe_ratio but scaled to percent."""
    if denominator == 0 or not math.isfinite(denominator):
        return default
    return safe_ratio(numerator, denominator, default) * 100


def long_profit_ratio(entry_price: float, current_price: float) -> float:
    """Unrealized profit ratio of a long position (0 when entry is not positive)."""
    if entry_price <= 0:
        return 0.0
    return (current_price - entry_price) / entry_price


def short_profit_ratio(entry_price: float, current_price: float) -> float:
    """Unrealized profit ratio of a short position (0 when entry is not positive)."""
    if entry_price <= 0:
        return 0.0
    return (entry_price - current_price) / entry_price

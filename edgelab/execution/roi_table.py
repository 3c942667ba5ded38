"""
ROI table - time-decaying minimum profit exits.

The table maps "held for at least N minutes" to the profit ratio required to
exit. The longer a position is held, the lower the bar:

    minimal_roi:
      "0":   0.08    # fresh position: wait for 8%
      "60":  0.04    # after 1h: 4% is enough
      "120": 0.02
      "480": 0.0     # after 8h: any non-negative profit exits

Lookup picks the greatest key <= elapsed minutes. Before the smallest key
nothing applies and no exit is signalled.
"""

from typing import Dict, Optional


def _sorted_keys(roi_table: Dict[str, float]) -> list:
    return sorted(float(k) for k in roi_table)


def _lookup(roi_table: Dict[str, float], key: float) -> float:
    # keys may be written "60" or "60.0"
    for raw, value in roi_table.items():
        if float(raw) == key:
            return value
    raise KeyError(key)


def get_minimal_roi_threshold(roi_table: Dict[str, float], held_minutes: float) -> Optional[float]:
    """Required profit ratio after ``held_minutes``, or None if no stage applies yet."""
    if not roi_table:
        return None
    applicable = [k for k in _sorted_keys(roi_table) if k <= held_minutes]
    if not applicable:
        return None
    return _lookup(roi_table, applicable[-1])


def check_minimal_roi(roi_table: Dict[str, float], held_minutes: float, profit_ratio: float) -> bool:
    """True when ``profit_ratio`` meets the stage in force after ``held_minutes``."""
    threshold = get_minimal_roi_threshold(roi_table, held_minutes)
    if threshold is None:
        return False
    return profit_ratio >= threshold


def format_roi_table(roi_table: Dict[str, float]) -> str:
    """
    Human-readable summary for logs.

    >>> format_roi_table({"0": 0.08, "60": 0.04})
    '0min→8.0%  60min→4.0%'
    """
    parts = []
    for key in _sorted_keys(roi_table):
        label = int(key) if key.is_integer() else key
        parts.append(f"{label}min→{_lookup(roi_table, key) * 100:.1f}%")
    return "  ".join(parts)

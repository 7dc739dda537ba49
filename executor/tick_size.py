"""
Tick size quantization for order execution.
Ensures prices conform to market tick sizes before order placement.
"""

from __future__ import annotations

from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal


def round_to_tick(price: float, tick_size: str = "0.01") -> float:
    """
    Round a price to the nearest valid tick (half up).

    Args:
        price: The desired price.
        tick_size: The minimum price increment as a string (e.g. "0.01" or "0.001").

    Raises:
        ValueError: If tick_size is not positive.
    """
    tick = Decimal(tick_size)
    if tick <= 0:
        raise ValueError(f"tick_size must be positive, got {tick_size}")
    steps = (Decimal(str(price)) / tick).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return float(steps * tick)


def floor_to(value: float, step: float = 0.01) -> float:
    """Floor a share quantity to *step* (balances are never rounded up)."""
    if step <= 0:
        raise ValueError(f"step must be positive, got {step}")
    d_step = Decimal(str(step))
    floored = (Decimal(str(value)) / d_step).to_integral_value(rounding=ROUND_FLOOR) * d_step
    return float(floored)

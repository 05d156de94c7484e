"""
Number and delta formatting shared by the executors and the fallback formatter.
"""
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union

Number = Union[int, float]


def round_half_up(value: Number, digits: int = 0) -> Number:
    """
    Round halves away from zero (2.5 -> 3) instead of Python's banker's rounding.

    Returns an int when digits == 0.

    Example:
        >>> round_half_up(2.5)
        3
        >>> round_half_up(0.25, 1)
        0.3
    """
    quantum = Decimal(1).scaleb(-digits)
    rounded = Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP)
    return int(rounded) if digits == 0 else float(rounded)


def clean_number(value: Optional[Number]) -> Optional[Number]:
    """Drop float noise (0.1 + 0.2) and render whole floats as ints."""
    if value is None:
        return None
    if isinstance(value, float):
        value = round(value, 2)
        if value.is_integer():
            return int(value)
    return value


def signed(value: Number) -> str:
    return f"+{value}" if value > 0 else f"{value}"


def format_percentage(delta: Number, baseline: Number) -> str:
    """
    '+12.5%' / '-3.0%', or 'N/A' when the baseline is exactly zero.

    Pass the unrounded delta; rounding happens only on the rendered percentage.
    """
    if baseline == 0:
        return "N/A"
    pct = round_half_up(delta / baseline * 100, 1)
    if pct == 0:
        return "0.0%"
    return f"{'+' if pct > 0 else ''}{pct:.1f}%"


def format_delta(current: Number, baseline: Number) -> str:
    """
    Render a field delta as '<signed abs> (<signed pct>)'.

    The percentage is taken from the raw difference, so small ratios
    (0.067 against 0.1) are not distorted by the rounded absolute value.

    Example:
        >>> format_delta(45, 40)
        '+5 (+12.5%)'
        >>> format_delta(3, 0)
        '+3 (N/A)'
        >>> format_delta(0.067, 0.1)
        '-0.03 (-33.0%)'
    """
    diff = current - baseline
    return f"{signed(clean_number(diff))} ({format_percentage(diff, baseline)})"


def format_number(value: Optional[Number]) -> str:
    """Human-friendly number for response text (thousands separators)."""
    if value is None:
        return "无数据"
    value = clean_number(value)
    if isinstance(value, int):
        return f"{value:,}"
    return f"{value:,.2f}"

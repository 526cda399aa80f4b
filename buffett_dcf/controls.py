import math
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Optional

# Slider units are percentages except the base cash flow, which is in 亿.
DEFAULT_PARAMS: Dict[str, float] = {
    "fcf": 10.0,
    "growth": 15.0,
    "discount": 10.0,
    "perpetual": 3.0,
}

SLIDER_BOUNDS: Dict[str, Dict[str, float]] = {
    "growth": {"min": 0.0, "max": 50.0, "step": 1.0},
    "discount": {"min": 5.0, "max": 20.0, "step": 1.0},
    "perpetual": {"min": 0.0, "max": 5.0, "step": 0.1},
}

CASH_FLOW_PRESETS = (1, 50, 100, 500)

# Base cash flow track: 0-40 covers 0-10 linearly, 40-100 covers 10-500.
TRACK_MAX = 100.0
TRACK_KNEE = 40.0
VALUE_KNEE = 10.0
VALUE_MAX = 500.0


def _round_half_up(value: float, quantum: str) -> float:
    # Same result as JS toFixed on the exact binary value (0.25 -> 0.3).
    return float(Decimal(value).quantize(Decimal(quantum), rounding=ROUND_HALF_UP))


def slider_to_cash_flow(position: float) -> float:
    """Map a 0-100 track position to a base cash flow."""
    position = max(0.0, min(float(position), TRACK_MAX))
    if position <= TRACK_KNEE:
        return _round_half_up(position / (TRACK_KNEE / VALUE_KNEE), "0.1")
    span = (position - TRACK_KNEE) / (TRACK_MAX - TRACK_KNEE)
    return _round_half_up(VALUE_KNEE + span * (VALUE_MAX - VALUE_KNEE), "1")


def cash_flow_to_slider(value: float) -> float:
    """Inverse of slider_to_cash_flow; values above 500 pin the track."""
    if value >= VALUE_MAX:
        return TRACK_MAX
    if value <= VALUE_KNEE:
        return value * (TRACK_KNEE / VALUE_KNEE)
    return TRACK_KNEE + (value - VALUE_KNEE) / (VALUE_MAX - VALUE_KNEE) * (TRACK_MAX - TRACK_KNEE)


def parse_cash_flow_input(text: str) -> Optional[float]:
    """Return the typed base cash flow, or None to keep the previous value."""
    try:
        value = float(str(text).strip())
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value) or value < 0:
        return None
    return value


def format_cash_flow(value: float) -> str:
    if value < 1:
        return f"{value * 10000:.0f}万"
    text = f"{value:,.3f}".rstrip("0").rstrip(".")
    return f"{text} 亿"

from __future__ import annotations

import math

SIP_RATES_OZ_PER_SECOND = {"small": 0.4, "medium": 0.6, "large": 0.85}

MIN_OUNCES = 0.5
MAX_OUNCES = 128.0


def smart_round(value: float) -> float:
    """Round to the nearest whole or half ounce (.25 / .75 thresholds)."""
    whole = math.floor(value)
    decimal = value - whole

    if decimal >= 0.75:
        return float(whole + 1)
    if decimal >= 0.25:
        return whole + 0.5
    return float(whole)


def hydration_percentage(liquid_type: str | None) -> float:
    """Share of a drink's volume that counts as water intake."""
    if not liquid_type:
        return 1.0
    t = liquid_type.lower().strip()

    if "water" in t or "sparkling" in t or "seltzer" in t:
        return 1.0
    if ("diet" in t or "zero" in t) and "soda" in t:
        return 0.9
    if "soda" in t or "coke" in t or "pepsi" in t:
        return 0.75
    if "gatorade" in t or "powerade" in t:
        return 0.7
    if "energy" in t or "red bull" in t:
        return 0.65
    if "coffee" in t or "tea" in t:
        return 0.8
    if "milk" in t or "dairy" in t:
        return 0.75
    if "juice" in t:
        return 0.7
    if "smoothie" in t or "protein" in t:
        return 0.65
    if "beer" in t or "wine" in t or "alcohol" in t:
        return 0.0

    return 1.0


def parse_duration_seconds(duration: str) -> int:
    # "12 seconds" -> 12
    head = str(duration).strip().split(" ")[0]
    try:
        return int(float(head))
    except ValueError:
        raise ValueError(f"invalid duration: {duration!r}") from None


def duration_ounces(duration: str, sip_size: str | None) -> float:
    seconds = parse_duration_seconds(duration)
    rate = SIP_RATES_OZ_PER_SECOND.get(sip_size or "", SIP_RATES_OZ_PER_SECOND["medium"])
    return seconds * rate


def percentage_ounces(container_ounces: float, percentage: float) -> float:
    return container_ounces * percentage / 100.0


def clamp_ounces(ounces: float) -> float:
    rounded = math.floor(ounces * 2 + 0.5) / 2
    return max(MIN_OUNCES, min(rounded, MAX_OUNCES))

from __future__ import annotations

from typing import Any


COUNTER_COLUMNS = (
    "total_enrolled",
    "total_sent",
    "total_delivered",
    "total_opened",
    "total_clicked",
    "total_replied",
)


def _ratio(numerator: int, denominator: int) -> float:
    return round((numerator / denominator) * 100, 2) if denominator > 0 else 0.0


def read_counters(instance: dict[str, Any]) -> dict[str, int]:
    return {column: int(instance.get(column) or 0) for column in COUNTER_COLUMNS}


def compute_rates(counters: dict[str, int]) -> dict[str, float]:
    """Derived rates as percentages.

    Open and reply rates are measured against delivered messages, click-through
    against opens. A zero denominator yields 0.0.
    """
    sent = counters.get("total_sent", 0)
    delivered = counters.get("total_delivered", 0)
    opened = counters.get("total_opened", 0)
    clicked = counters.get("total_clicked", 0)
    replied = counters.get("total_replied", 0)
    return {
        "delivery_rate": _ratio(delivered, sent),
        "open_rate": _ratio(opened, delivered),
        "click_through_rate": _ratio(clicked, opened),
        "reply_rate": _ratio(replied, delivered),
    }


def delivery_exceeds_sent(counters: dict[str, int]) -> bool:
    return counters.get("total_delivered", 0) > counters.get("total_sent", 0)

from __future__ import annotations

from typing import Dict, Optional

from pydantic import BaseModel, Field

ACTION_BUY = "buy"
ACTION_SELL = "sell"
ACTION_HOLD = "hold"

DEFAULT_THRESHOLDS: Dict[str, int] = {
    "extreme_fear_max": 25,
    "fear_max": 45,
    "neutral_max": 54,
    "greed_max": 75,
}


class Decision(BaseModel):
    action: str
    percentage: float = Field(ge=0.0, le=100.0)
    reason: str

    @property
    def is_hold(self) -> bool:
        return self.action == ACTION_HOLD


def decide(
    score: int,
    thresholds: Optional[Dict[str, int]] = None,
    strong_pct: float = 5.0,
    mild_pct: float = 2.5,
) -> Decision:
    """Map a 0-100 sentiment score to a trading decision.

    Fear accumulates (buys the target with the funding asset), greed reduces
    (sells the target back). The mapping is total over integer scores.
    """
    limits = {**DEFAULT_THRESHOLDS, **(thresholds or {})}
    if score <= limits["extreme_fear_max"]:
        return Decision(action=ACTION_BUY, percentage=strong_pct, reason=f"Extreme Fear ({score})")
    if score <= limits["fear_max"]:
        return Decision(action=ACTION_BUY, percentage=mild_pct, reason=f"Fear ({score})")
    if score <= limits["neutral_max"]:
        return Decision(action=ACTION_HOLD, percentage=0.0, reason=f"Neutral ({score})")
    if score <= limits["greed_max"]:
        return Decision(action=ACTION_SELL, percentage=mild_pct, reason=f"Greed ({score})")
    return Decision(action=ACTION_SELL, percentage=strong_pct, reason=f"Extreme Greed ({score})")


__all__ = ["ACTION_BUY", "ACTION_HOLD", "ACTION_SELL", "DEFAULT_THRESHOLDS", "Decision", "decide"]

"""Position sizing helpers used while recording a new buy.

Everything here is advisory: nothing is stored, and the journal accepts any
valid lot size regardless of what the sizing suggested.

RISK FLOW:
==========

equity (initial, or initial + realized P/L when sizing dynamically)
  -> risk budget = equity * risk_percent / 100
  -> adjusted by setup rating: S risks 2x, A+ risks 1x, A risks 0.5x
  -> lots = floor(adjusted budget / ((buy_price - stop_loss_price) * 100))

Example: 10,000 equity at 2% risk is a 200 budget. An A+ setup buying at 10.00
with a stop at 9.50 risks 0.50 * 100 = 50 per lot, so 4 lots.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Any, Final

from .ledger import LOT_UNITS, Rating

RISK_MULTIPLIERS: Final[dict[str, float]] = {"S": 2.0, "A+": 1.0, "A": 0.5}

# risk multiples offered for auto-calculated profit targets
R_CHOICES: Final = (1, 1.5, 2, 3, 4, 5)


def _number(value: Any) -> float | None:
    """Parse user input as a finite float, or None if it isn't one."""
    if isinstance(value, bool) or value is None:
        return None

    try:
        result = float(value)
    except (TypeError, ValueError):
        return None

    if not math.isfinite(result):
        return None

    return result


def compute_risk(equity: Any, risk_percent: Any) -> float:
    """Monetary risk budget for one trade.

    Returns 0 when equity isn't positive, risk_percent is negative, or either
    value isn't a number."""
    eq = _number(equity)
    pct = _number(risk_percent)

    if eq is None or pct is None or eq <= 0 or pct < 0:
        return 0.0

    return eq * (pct / 100)


def sizing_equity(initial_equity: Any, current_equity: Any, dynamic: bool) -> float:
    """Equity used for risk sizing: current equity when sizing dynamically."""
    chosen = _number(current_equity if dynamic else initial_equity)
    return chosen if chosen is not None else 0.0


def risk_multiplier(rating: Rating | str) -> float:
    try:
        return RISK_MULTIPLIERS[rating]
    except KeyError:
        raise ValueError(
            f"Unknown setup rating: {rating} (expected one of {list(RISK_MULTIPLIERS)})"
        )


def suggested_lot_size(
    risk_amount: Any, buy_price: Any, stop_loss_price: Any, setup_rating: Rating | str
) -> int:
    """Whole lots to buy so hitting the stop loses the rating-adjusted risk budget.

    Returns 0 if the stop isn't below the buy price (sizing is undefined)."""
    budget = _number(risk_amount)
    buy = _number(buy_price)
    stop = _number(stop_loss_price)

    if budget is None or buy is None or stop is None or budget <= 0:
        return 0

    per_unit = buy - stop
    if per_unit <= 0:
        return 0

    adjusted = budget * risk_multiplier(setup_rating)
    return int(math.floor(adjusted / (per_unit * LOT_UNITS)))


def parse_r(r: Any) -> float | None:
    """Accept a risk multiple as a number or as text like '2R' / '1.5r'."""
    if isinstance(r, str):
        if not (found := re.fullmatch(r"\s*(\d+(?:\.\d+)?)\s*[rR]?\s*", r)):
            return None

        return float(found.group(1))

    return _number(r)


def profit_target(buy_price: Any, stop_loss_price: Any, r: Any) -> float | None:
    """Price 'r' risk-multiples above the buy price.

    Only defined when buy_price > stop_loss_price > 0."""
    buy = _number(buy_price)
    stop = _number(stop_loss_price)
    multiple = parse_r(r)

    if buy is None or stop is None or multiple is None:
        return None

    if not (buy > stop > 0):
        return None

    return round(buy + multiple * (buy - stop), 3)


@dataclass(slots=True)
class RiskPlan:
    """Risk/reward breakdown for a prospective buy.

    All derived fields are 0 when their inputs don't describe a valid long
    setup (stop below entry, target above entry)."""

    buy_price: float
    stop_loss_price: float
    profit_target: float | None = None

    risk_per_unit: float = field(init=False)
    reward_per_unit: float = field(init=False)
    reward_risk_ratio: float = field(init=False)
    stop_loss_pct: float = field(init=False)
    profit_target_pct: float = field(init=False)

    def __post_init__(self):
        buy = _number(self.buy_price) or 0.0
        stop = _number(self.stop_loss_price) or 0.0
        target = _number(self.profit_target) or 0.0

        self.risk_per_unit = buy - stop if buy > 0 and stop > 0 and buy > stop else 0.0
        self.reward_per_unit = (
            target - buy if buy > 0 and target > 0 and target > buy else 0.0
        )

        if self.risk_per_unit > 0 and self.reward_per_unit > 0:
            self.reward_risk_ratio = self.reward_per_unit / self.risk_per_unit
        else:
            self.reward_risk_ratio = 0.0

        self.stop_loss_pct = self.risk_per_unit / buy * 100 if buy > 0 else 0.0
        self.profit_target_pct = self.reward_per_unit / buy * 100 if buy > 0 else 0.0

    def lots(self, risk_amount: float, setup_rating: Rating | str) -> int:
        return suggested_lot_size(
            risk_amount, self.buy_price, self.stop_loss_price, setup_rating
        )

    def risk_for(self, lot_size: int) -> float:
        """Money lost if 'lot_size' lots get stopped out."""
        return self.risk_per_unit * lot_size * LOT_UNITS

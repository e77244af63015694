"""Positions, their buy/sell lots, and the accounting derived from them.

A journal is a list of Positions. Each Position is one ticker's history between
being opened and being fully closed, holding every partial buy and partial sell
recorded against it.

We need to distinguish between "transactions", "positions", and "stats" first.

- BuyTransaction / SellTransaction are single journal entries with a lot size,
  unit price, date, and the trader's reasoning.
  - e.g. bought 10 lots of MSFT at 450.50 with a stop at 445.
- Position is every transaction for one ticker while it stays open.
  - e.g. bought 10, bought 5 more, sold 15: one closed Position.
- PositionStats is what we derive from a Position on demand: lots bought, lots
  sold, open/closed, and realized P/L.

CRITICAL ACCOUNTING PRINCIPLES:
===============================

1. LOTS:
   - 1 lot is 100 units, so every total is (unit price * lot size * 100).
   - Lot sizes are positive for both buys and sells. Direction comes from which
     list a transaction lives in, never from a sign.

2. COST BASIS:
   - All buys of a position blend into ONE weighted average cost:
       avg_buy_price = sum(total_buy_price) / (total_lots_bought * 100)
   - Every sell is measured against that same blended cost. There is no FIFO or
     specific-lot matching, so adding a later buy moves the basis used for
     earlier sells too.

3. DERIVED VALUES:
   - Totals, ratings, averages, P/L and closed state are properties computed on
     every access. Nothing derived is ever stored on the objects, so editing a
     price or lot size can never leave a stale total behind.

4. DEFENSIVE MATH:
   - Stored data may come from an old export with missing or mistyped fields.
     Every number read for accounting goes through num(), which turns garbage
     into 0 instead of raising.

SCENARIO:
=========

BUY 10 lots @ 450.50 (stop 445) ->
  total_buy_price=450500.00, avg_buy_price=450.50, is_closed=False
SELL 10 lots @ 465.20 ->
  total_sell_price=465200.00, realized_pl=465200.00 - 450500.00 = 14700.00, is_closed=True
"""

from __future__ import annotations

import datetime
import math
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Final, Literal, TypeAlias

import arrow  # type: ignore

# units per lot
LOT_UNITS: Final = 100

Rating: TypeAlias = Literal["S", "A+", "A"]
SellReason: TypeAlias = Literal["TP", "Cut Loss"]

SELL_REASONS: Final = ("TP", "Cut Loss")

# Setup catalog offered when recording a buy. Any other string is still a valid tag.
SETUPS: Final = (
    "Breakout Setup 1: Standard B/O -> 52W/ATH/CWH",
    "Breakout Setup 2: Ranges at Cheat B/O",
    "Breakout Setup 3: DTL B/O",
    "Breakout Setup 4: IPO B/O",
    "Pullback Setup 5: Pullback EMA Cloud B/O",
    "Pullback Setup 6: Pullback Recent 52W/ATH/CWH B/O",
    "VCP Candlestick",
)


def new_id() -> str:
    return uuid.uuid4().hex


def num(value: Any) -> float:
    """Return 'value' as a finite number, or 0 if it isn't one.

    Integers stay integers so lot counts keep comparing cleanly."""
    if isinstance(value, bool):
        return 0

    if isinstance(value, int):
        return value

    try:
        result = float(value)
    except (TypeError, ValueError):
        return 0.0

    if not math.isfinite(result):
        return 0.0

    return result


def as_date(when: Any) -> datetime.date | None:
    """Normalize a transaction date: datetimes drop their time, ISO strings are parsed."""
    if when is None or when == "":
        return None

    if isinstance(when, datetime.datetime):
        return when.date()

    if isinstance(when, datetime.date):
        return when

    return arrow.get(str(when)).date()


def setup_rating(tags: Iterable[str]) -> Rating:
    """Rate a setup by how many tags agreed on the entry: 3+ is S, 2 is A+, else A."""
    count = len(set(tags))
    if count >= 3:
        return "S"

    if count == 2:
        return "A+"

    return "A"


@dataclass(slots=True)
class BuyTransaction:
    """One buy entry.

    'buy_reason' is the list of setup tags the trader selected. The rating is
    always derived from it, so a stored rating can never disagree with the tags.
    """

    lot_size: int
    buy_price: float
    stop_loss_price: float
    buy_date: datetime.date | None
    buy_reason: list[str] = field(default_factory=list)
    profit_target: float | None = None
    notes: str | None = None
    buy_chart_image: str | None = None
    id: str = field(default_factory=new_id)

    def __post_init__(self):
        self.buy_date = as_date(self.buy_date)

    @property
    def setup_rating(self) -> Rating:
        return setup_rating(self.buy_reason)

    @property
    def total_buy_price(self) -> float:
        return num(self.buy_price) * num(self.lot_size) * LOT_UNITS


@dataclass(slots=True)
class SellTransaction:
    """One sell entry. A sell price of zero is allowed (worthless exit)."""

    lot_size: int
    sell_price: float
    sell_date: datetime.date | None
    sell_reason: SellReason | None = None
    notes: str | None = None
    sell_chart_image: str | None = None
    id: str = field(default_factory=new_id)

    def __post_init__(self):
        self.sell_date = as_date(self.sell_date)

    @property
    def total_sell_price(self) -> float:
        return num(self.sell_price) * num(self.lot_size) * LOT_UNITS


@dataclass(slots=True, frozen=True)
class PositionStats:
    is_closed: bool
    realized_pl: float
    total_lots_bought: float
    total_lots_sold: float


@dataclass(slots=True)
class Position:
    """All buys and sells for one ticker from opening until fully closed.

    POSITION LIFECYCLE:
    - Created by the first buy of a ticker with no open position.
    - Grows by more buys while open; shrinks by sells bounded by remaining lots.
    - Once closed it stays closed: the next buy of the ticker starts a new Position.
    """

    ticker: str
    buys: list[BuyTransaction] = field(default_factory=list)
    sells: list[SellTransaction] = field(default_factory=list)
    id: str = field(default_factory=new_id)

    def __post_init__(self):
        self.ticker = str(self.ticker or "").strip().upper()

    @property
    def total_lots_bought(self) -> float:
        return sum([num(buy.lot_size) for buy in self.buys])

    @property
    def total_lots_sold(self) -> float:
        return sum([num(sell.lot_size) for sell in self.sells])

    @property
    def remaining_lots(self) -> float:
        return self.total_lots_bought - self.total_lots_sold

    @property
    def avg_buy_price(self) -> float:
        """Weighted average unit cost across every buy, 0 if nothing was bought."""
        lots = self.total_lots_bought
        if not lots:
            return 0.0

        return sum([buy.total_buy_price for buy in self.buys]) / (lots * LOT_UNITS)

    @property
    def is_closed(self) -> bool:
        bought = self.total_lots_bought
        return bought > 0 and self.total_lots_sold >= bought

    @property
    def cost_of_lots_sold(self) -> float:
        return self.avg_buy_price * self.total_lots_sold * LOT_UNITS

    @property
    def realized_pl(self) -> float:
        """Sell proceeds minus the blended cost of the lots sold.

        A position with no sells (or no buys) has realized nothing."""
        if not self.total_lots_bought:
            return 0.0

        proceeds = sum([sell.total_sell_price for sell in self.sells])
        return proceeds - self.cost_of_lots_sold

    @property
    def avg_sell_price(self) -> float | None:
        lots = self.total_lots_sold
        if not lots:
            return None

        return sum([sell.total_sell_price for sell in self.sells]) / (lots * LOT_UNITS)

    @property
    def pl_percent(self) -> float:
        cost = self.cost_of_lots_sold
        if cost <= 0:
            return 0.0

        return self.realized_pl / cost * 100

    @property
    def setups(self) -> set[str]:
        """Union of setup tags across every buy of this position."""
        result: set[str] = set()
        for buy in self.buys:
            result |= set(buy.buy_reason or [])

        return result

    @property
    def opened_on(self) -> datetime.date | None:
        """Most recent buy date (the sort key for listing positions)."""
        dates = [buy.buy_date for buy in self.buys if buy.buy_date]
        return max(dates) if dates else None

    @property
    def started_on(self) -> datetime.date | None:
        dates = [buy.buy_date for buy in self.buys if buy.buy_date]
        return min(dates) if dates else None

    @property
    def closed_on(self) -> datetime.date | None:
        """Date of the realizing sell, only once the position is closed."""
        if not self.is_closed:
            return None

        dates = [sell.sell_date for sell in self.sells if sell.sell_date]
        return max(dates) if dates else None

    def transaction_dates(self) -> list[datetime.date]:
        return [buy.buy_date for buy in self.buys if buy.buy_date] + [
            sell.sell_date for sell in self.sells if sell.sell_date
        ]

    def cost_basis_at(self, when: datetime.date | None) -> float:
        """Average unit cost of buys dated on or before 'when'.

        Buys without a date always count. If no buy qualifies (bad dates), the
        blended average of the whole position is used instead."""
        if when is None:
            return self.avg_buy_price

        eligible = [b for b in self.buys if b.buy_date is None or b.buy_date <= when]
        lots = sum([num(b.lot_size) for b in eligible])
        if not lots:
            return self.avg_buy_price

        return sum([b.total_buy_price for b in eligible]) / (lots * LOT_UNITS)

    def sell_pl(self, sell: SellTransaction, basis: float | None = None) -> float:
        """P/L contributed by a single sell against 'basis' (default: blended average)."""
        if basis is None:
            basis = self.avg_buy_price

        return sell.total_sell_price - basis * num(sell.lot_size) * LOT_UNITS

    def buy(self, buy_id: str) -> BuyTransaction:
        for buy in self.buys:
            if buy.id == buy_id:
                return buy

        raise KeyError(f"No buy {buy_id} in position {self.ticker} ({self.id})")

    def sell(self, sell_id: str) -> SellTransaction:
        for sell in self.sells:
            if sell.id == sell_id:
                return sell

        raise KeyError(f"No sell {sell_id} in position {self.ticker} ({self.id})")

    def stats(self) -> PositionStats:
        return compute_stats(self)


def compute_stats(position: Position) -> PositionStats:
    """Derive lots, closed state, and realized P/L for one position.

    Pure function of the position's buys and sells. Never raises: a position
    without bought lots reports open with zero P/L."""
    bought = position.total_lots_bought
    if not bought:
        return PositionStats(
            is_closed=False, realized_pl=0.0, total_lots_bought=0, total_lots_sold=0
        )

    sold = position.total_lots_sold
    return PositionStats(
        is_closed=sold >= bought,
        realized_pl=position.realized_pl,
        total_lots_bought=bought,
        total_lots_sold=sold,
    )

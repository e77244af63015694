"""Performance metrics over a (usually filtered) list of positions.

Everything here is recomputed from positions on every call. Two families of
numbers come out:

- Per-position results (summary, key metrics, drawdown): only CLOSED positions
  count. An open position contributes nothing, even if it was partially sold.
- Per-sell results (daily/monthly buckets, yearly equity curve): every sell
  contributes on its own sell date, including partial sells of still-open
  positions, measured against the position's cost basis.

CALENDAR COST BASIS:
====================

A sell's bucketed P/L is (sell.total_sell_price - basis * sell.lot_size * 100).

- CostBasis.BLENDED (default): basis is the position's current blended average
  of ALL buys. This matches the position's realized P/L exactly, but a buy added
  after a sell changes the historical figure reported for that earlier sell.
- CostBasis.POINT_IN_TIME: basis only includes buys dated on or before the sell,
  so historical buckets never move when later buys arrive. Bucket totals then no
  longer have to add up to the position's realized P/L.
"""

from __future__ import annotations

import calendar
import datetime
from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Literal

from .ledger import Position, PositionStats, num

# profit factor has no finite value when nothing was lost
Unbounded = Enum("Unbounded", "INFINITE")

CostBasis = Enum("CostBasis", "BLENDED POINT_IN_TIME")


def mn(val: float) -> str:
    """format numeric input as money"""
    return f"${val:,.2f}".replace("$-", "-$")


@dataclass(slots=True)
class PLSummary:
    total_pl: float = 0.0
    win_rate: float = 0.0
    avg_pl: float = 0.0
    winners: int = 0
    losers: int = 0
    total_trades: int = 0
    has_data: bool = False


@dataclass(slots=True)
class KeyMetrics:
    """Closed-trade quality metrics.

    profit_factor is gross_profit / gross_loss, or Unbounded.INFINITE when
    there were profits and no losses at all."""

    total_trades: int = 0
    avg_pl: float = 0.0
    profit_factor: float | Unbounded = 0.0
    max_drawdown: float = 0.0
    gross_profit: float = 0.0
    gross_loss: float = 0.0
    has_data: bool = False

    @property
    def profit_factor_display(self) -> str:
        if self.profit_factor is Unbounded.INFINITE:
            return "∞"

        return f"{self.profit_factor:.2f}"


@dataclass(slots=True)
class DayPL:
    day: int
    pl: float = 0.0


@dataclass(slots=True)
class DailyPL:
    year: int
    month: int
    days: list[DayPL] = field(default_factory=list)
    total: float = 0.0
    has_data: bool = False


@dataclass(slots=True)
class MonthPL:
    month: int
    name: str
    pl: float = 0.0


@dataclass(slots=True)
class MonthlyPL:
    year: int
    months: list[MonthPL] = field(default_factory=list)
    total: float = 0.0
    has_data: bool = False


@dataclass(slots=True)
class EquityPoint:
    when: datetime.date
    equity: float


@dataclass(slots=True)
class EquityCurve:
    year: int
    initial_equity: float
    points: list[EquityPoint] = field(default_factory=list)
    final_equity: float = 0.0
    total_pl: float = 0.0
    has_data: bool = False


@dataclass(slots=True)
class TradeStats:
    summary: PLSummary
    metrics: KeyMetrics
    daily_pl: DailyPL
    monthly_pl: MonthlyPL
    equity_curve: EquityCurve


@dataclass(slots=True)
class RealizedSell:
    """P/L contributed by one sell on its own date."""

    position_id: str
    ticker: str
    when: datetime.date
    pl: float


@dataclass(slots=True)
class TransactionRecord:
    """One row of the flattened buy/sell history."""

    id: str
    position_id: str
    ticker: str
    kind: Literal["buy", "sell"]
    when: datetime.date | None
    lot_size: float
    price: float
    total_value: float
    reason: str


def closed_trades(positions: Iterable[Position]) -> list[tuple[Position, PositionStats]]:
    result = []
    for position in positions:
        stats = position.stats()
        if stats.is_closed:
            result.append((position, stats))

    return result


def realization_curve(
    positions: Iterable[Position], initial_equity: float
) -> list[float]:
    """Equity after each closed position, in the order they were realized.

    Positions are ordered by their closing (latest) sell date. Ties, and closed
    positions missing a sell date (which sort last), keep their input order."""
    closed = closed_trades(positions)
    closed.sort(
        key=lambda ps: (ps[0].closed_on is None, ps[0].closed_on or datetime.date.min)
    )

    curve = [num(initial_equity)]
    for _, stats in closed:
        curve.append(curve[-1] + stats.realized_pl)

    return curve


def max_drawdown(curve: Sequence[float]) -> float:
    """Largest peak-to-trough decline of 'curve' as a percentage of the peak.

    Points under a non-positive peak count as zero drawdown."""
    peak = float("-inf")
    worst = 0.0
    for point in curve:
        if point > peak:
            peak = point

        drawdown = (peak - point) / peak * 100 if peak > 0 else 0.0
        if drawdown > worst:
            worst = drawdown

    return worst


def summarize(positions: Iterable[Position]) -> PLSummary:
    pls = [stats.realized_pl for _, stats in closed_trades(positions)]
    if not pls:
        return PLSummary()

    total = len(pls)
    winners = len([pl for pl in pls if pl > 0])
    total_pl = sum(pls)

    return PLSummary(
        total_pl=total_pl,
        win_rate=winners / total * 100,
        avg_pl=total_pl / total,
        winners=winners,
        losers=total - winners,
        total_trades=total,
        has_data=True,
    )


def key_metrics(positions: Iterable[Position], initial_equity: float) -> KeyMetrics:
    positions = list(positions)
    pls = [stats.realized_pl for _, stats in closed_trades(positions)]
    if not pls:
        return KeyMetrics()

    gross_profit = sum([pl for pl in pls if pl > 0])

    # breakeven trades are losses, so they sit in this bucket (adding nothing)
    gross_loss = abs(sum([pl for pl in pls if pl <= 0]))

    profit_factor: float | Unbounded
    if gross_loss > 0:
        profit_factor = gross_profit / gross_loss
    elif gross_profit > 0:
        profit_factor = Unbounded.INFINITE
    else:
        profit_factor = 0.0

    return KeyMetrics(
        total_trades=len(pls),
        avg_pl=sum(pls) / len(pls),
        profit_factor=profit_factor,
        max_drawdown=max_drawdown(realization_curve(positions, initial_equity)),
        gross_profit=gross_profit,
        gross_loss=gross_loss,
        has_data=True,
    )


def realized_sells(
    positions: Iterable[Position], cost_basis: CostBasis = CostBasis.BLENDED
) -> list[RealizedSell]:
    """Every dated sell with its own P/L contribution.

    Positions without buys or without sells contribute nothing."""
    result = []
    for position in positions:
        if not position.buys or not position.sells:
            continue

        for sell in position.sells:
            if not sell.sell_date:
                continue

            if cost_basis is CostBasis.POINT_IN_TIME:
                basis = position.cost_basis_at(sell.sell_date)
            else:
                basis = position.avg_buy_price

            result.append(
                RealizedSell(
                    position_id=position.id,
                    ticker=position.ticker,
                    when=sell.sell_date,
                    pl=position.sell_pl(sell, basis),
                )
            )

    return result


def daily_pl(
    positions: Iterable[Position],
    year: int,
    month: int,
    cost_basis: CostBasis = CostBasis.BLENDED,
) -> DailyPL:
    """Realized P/L for each calendar day of one month."""
    by_day: dict[int, float] = defaultdict(float)
    for rs in realized_sells(positions, cost_basis):
        if rs.when.year == year and rs.when.month == month:
            by_day[rs.when.day] += rs.pl

    _, ndays = calendar.monthrange(year, month)
    days = [DayPL(day=d, pl=by_day.get(d, 0.0)) for d in range(1, ndays + 1)]

    return DailyPL(
        year=year,
        month=month,
        days=days,
        total=sum([d.pl for d in days]),
        has_data=bool(by_day),
    )


def monthly_pl(
    positions: Iterable[Position],
    year: int,
    cost_basis: CostBasis = CostBasis.BLENDED,
) -> MonthlyPL:
    """Realized P/L for each month of one year."""
    by_month: dict[int, float] = defaultdict(float)
    for rs in realized_sells(positions, cost_basis):
        if rs.when.year == year:
            by_month[rs.when.month] += rs.pl

    months = [
        MonthPL(month=m, name=calendar.month_abbr[m], pl=by_month.get(m, 0.0))
        for m in range(1, 13)
    ]

    return MonthlyPL(
        year=year,
        months=months,
        total=sum([m.pl for m in months]),
        has_data=bool(by_month),
    )


def equity_curve(
    positions: Iterable[Position],
    initial_equity: float,
    year: int,
    cost_basis: CostBasis = CostBasis.BLENDED,
) -> EquityCurve:
    """Running equity through one year, one point per sell.

    The curve always starts at Jan 1 of 'year' at 'initial_equity'."""
    initial_equity = num(initial_equity)
    sells = [rs for rs in realized_sells(positions, cost_basis) if rs.when.year == year]
    sells.sort(key=lambda rs: rs.when)

    running = initial_equity
    points = [EquityPoint(when=datetime.date(year, 1, 1), equity=running)]
    for rs in sells:
        running += rs.pl
        points.append(EquityPoint(when=rs.when, equity=running))

    has_data = len(points) > 1
    final = points[-1].equity

    return EquityCurve(
        year=year,
        initial_equity=initial_equity,
        points=points,
        final_equity=final,
        total_pl=final - initial_equity,
        has_data=has_data,
    )


def compute_stats(
    positions: Iterable[Position],
    initial_equity: float,
    when: datetime.date | None = None,
    cost_basis: CostBasis = CostBasis.BLENDED,
) -> TradeStats:
    """Compute every aggregate for 'positions' as viewed at 'when' (default today).

    'when' picks the month for daily buckets and the year for monthly buckets
    and the equity curve."""
    positions = list(positions)
    if when is None:
        when = datetime.date.today()

    return TradeStats(
        summary=summarize(positions),
        metrics=key_metrics(positions, initial_equity),
        daily_pl=daily_pl(positions, when.year, when.month, cost_basis),
        monthly_pl=monthly_pl(positions, when.year, cost_basis),
        equity_curve=equity_curve(positions, initial_equity, when.year, cost_basis),
    )


def current_equity(positions: Iterable[Position], initial_equity: float) -> float:
    """Starting equity plus realized P/L of every closed position."""
    return num(initial_equity) + summarize(positions).total_pl


def transaction_history(positions: Iterable[Position]) -> list[TransactionRecord]:
    """All buys and sells flattened into one list, newest first (undated last)."""
    records = []
    for p in positions:
        for b in p.buys:
            records.append(
                TransactionRecord(
                    id=b.id,
                    position_id=p.id,
                    ticker=p.ticker,
                    kind="buy",
                    when=b.buy_date,
                    lot_size=num(b.lot_size),
                    price=num(b.buy_price),
                    total_value=b.total_buy_price,
                    reason=", ".join(b.buy_reason or []),
                )
            )

        for s in p.sells:
            records.append(
                TransactionRecord(
                    id=s.id,
                    position_id=p.id,
                    ticker=p.ticker,
                    kind="sell",
                    when=s.sell_date,
                    lot_size=num(s.lot_size),
                    price=num(s.sell_price),
                    total_value=s.total_sell_price,
                    reason=s.sell_reason or "",
                )
            )

    return sorted(
        records,
        key=lambda r: (r.when is not None, r.when or datetime.date.min),
        reverse=True,
    )


@dataclass
class JournalReporter:
    """Generate text reports for a list of positions.

    Usage:
        reporter = JournalReporter(journal.snapshot())
        print(reporter.position_table())
        print(reporter.performance_report(initial_equity=10_000))
    """

    positions: list[Position]

    def position_table(self) -> str:
        """Generate a formatted table of all positions."""
        if not self.positions:
            return "No positions found."

        headers = [
            "Ticker",
            "Status",
            "Bought",
            "Sold",
            "Avg Buy",
            "Avg Sell",
            "Realized P/L",
            "P/L %",
            "Opened",
        ]

        col_widths = [len(h) for h in headers]

        rows = []
        for p in self.positions:
            avg_sell = p.avg_sell_price
            row = [
                p.ticker,
                "CLOSED" if p.is_closed else "OPEN",
                f"{p.total_lots_bought:,}",
                f"{p.total_lots_sold:,}",
                mn(p.avg_buy_price),
                mn(avg_sell) if avg_sell is not None else "-",
                mn(p.realized_pl) if p.sells else "-",
                f"{p.pl_percent:+.2f}%" if p.sells else "-",
                p.opened_on.isoformat() if p.opened_on else "-",
            ]
            rows.append(row)

            for i, cell in enumerate(row):
                col_widths[i] = max(col_widths[i], len(cell))

        separator = "+" + "+".join("-" * (w + 2) for w in col_widths) + "+"

        lines = [separator]
        lines.append(
            "|"
            + "|".join(f" {headers[i]:<{col_widths[i]}} " for i in range(len(headers)))
            + "|"
        )
        lines.append(separator)

        for row in rows:
            lines.append(
                "|"
                + "|".join(f" {row[i]:<{col_widths[i]}} " for i in range(len(row)))
                + "|"
            )

        lines.append(separator)

        return "\n".join(lines)

    def performance_report(self, initial_equity: float) -> str:
        """Generate a summary report of closed-trade performance."""
        summary = summarize(self.positions)
        metrics = key_metrics(self.positions, initial_equity)

        if not summary.has_data:
            return "No closed trades to summarize."

        return "\n".join(
            [
                "PERFORMANCE SUMMARY",
                "=" * 50,
                "",
                f"  Closed Trades: {summary.total_trades}",
                f"  Winners / Losers: {summary.winners} / {summary.losers}",
                f"  Win Rate: {summary.win_rate:.1f}%",
                f"  Total Realized P/L: {mn(summary.total_pl)}",
                f"  Avg P/L per Trade: {mn(summary.avg_pl)}",
                f"  Profit Factor: {metrics.profit_factor_display}",
                f"  Max Drawdown: {metrics.max_drawdown:.2f}%",
                "",
                "EQUITY:",
                f"  Starting Equity: {mn(num(initial_equity))}",
                f"  Current Equity: {mn(num(initial_equity) + summary.total_pl)}",
            ]
        )

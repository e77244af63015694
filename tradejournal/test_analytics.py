import datetime

import pytest

from tradejournal.analytics import (
    CostBasis,
    JournalReporter,
    Unbounded,
    compute_stats,
    current_equity,
    daily_pl,
    equity_curve,
    key_metrics,
    max_drawdown,
    mn,
    monthly_pl,
    realization_curve,
    summarize,
    transaction_history,
)
from tradejournal.ledger import BuyTransaction, Position, SellTransaction


def closed(ticker, buy_price, sell_price, lots=10, bought="2024-03-01", sold="2024-03-05"):
    """A single-buy single-sell closed position."""
    return Position(
        ticker,
        [BuyTransaction(lots, buy_price, buy_price * 0.9, bought, ["VCP Candlestick"])],
        [SellTransaction(lots, sell_price, sold, "TP" if sell_price > buy_price else "Cut Loss")],
    )


def test_max_drawdown():
    assert max_drawdown([10000, 10500, 9800, 10200]) == pytest.approx(6.6667, abs=1e-3)
    assert max_drawdown([10000, 11000, 12000]) == 0
    assert max_drawdown([]) == 0
    assert max_drawdown([0, -100]) == 0


def test_summary_and_metrics():
    positions = [
        closed("WIN", 10, 12, sold="2024-03-05"),  # +2000
        closed("LOSS", 10, 9, sold="2024-03-06"),  # -1000
        closed("EVEN", 10, 10, sold="2024-03-07"),  # 0 counts as a loss
        Position("OPEN", [BuyTransaction(10, 10, 9, "2024-03-01", ["a"])]),
    ]

    s = summarize(positions)
    assert s.total_trades == 3
    assert s.winners == 1
    assert s.losers == 2
    assert s.total_pl == pytest.approx(1000)
    assert s.win_rate == pytest.approx(100 / 3)
    assert s.avg_pl == pytest.approx(1000 / 3)
    assert s.has_data

    m = key_metrics(positions, 10_000)
    assert m.gross_profit == pytest.approx(2000)
    assert m.gross_loss == pytest.approx(1000)
    assert m.profit_factor == pytest.approx(2)
    assert m.profit_factor_display == "2.00"

    # curve: 10000 -> 12000 -> 11000 -> 11000
    assert realization_curve(positions, 10_000) == pytest.approx([10000, 12000, 11000, 11000])
    assert m.max_drawdown == pytest.approx(1000 / 12000 * 100)


def test_profit_factor_infinite():
    m = key_metrics([closed("A", 10, 11), closed("B", 10, 12)], 10_000)
    assert m.gross_loss == 0
    assert m.profit_factor is Unbounded.INFINITE
    assert m.profit_factor_display == "∞"


def test_profit_factor_all_breakeven():
    m = key_metrics([closed("A", 10, 10)], 10_000)
    assert m.profit_factor == 0.0
    assert m.has_data


def test_no_closed_trades():
    positions = [Position("OPEN", [BuyTransaction(10, 10, 9, "2024-03-01", ["a"])])]
    s = summarize(positions)
    assert not s.has_data
    assert s.win_rate == 0
    assert s.avg_pl == 0

    m = key_metrics(positions, 10_000)
    assert not m.has_data
    assert m.profit_factor == 0


def test_curve_orders_by_close_date():
    late = closed("LATE", 10, 8, sold="2024-05-01")  # -2000
    early = closed("EARLY", 10, 11, sold="2024-04-01")  # +1000
    assert realization_curve([late, early], 10_000) == pytest.approx([10000, 11000, 9000])


def test_daily_and_monthly_buckets():
    # partial sells of an open position still land in the calendar
    p = Position(
        "CAL",
        [BuyTransaction(20, 10, 9, "2024-03-01", ["a"])],
        [
            SellTransaction(5, 11, "2024-03-04"),  # +500
            SellTransaction(5, 12, "2024-03-04"),  # +1000
            SellTransaction(5, 9, "2024-04-10"),  # -500
        ],
    )

    d = daily_pl([p], 2024, 3)
    assert len(d.days) == 31
    assert d.days[3].day == 4
    assert d.days[3].pl == pytest.approx(1500)
    assert d.total == pytest.approx(1500)
    assert d.has_data

    assert not daily_pl([p], 2024, 2).has_data
    assert len(daily_pl([p], 2024, 2).days) == 29

    mo = monthly_pl([p], 2024)
    assert [m.name for m in mo.months][:4] == ["Jan", "Feb", "Mar", "Apr"]
    assert mo.months[2].pl == pytest.approx(1500)
    assert mo.months[3].pl == pytest.approx(-500)
    assert mo.total == pytest.approx(1000)
    assert not monthly_pl([p], 2023).has_data


def test_bucket_cost_basis_choice():
    # a later buy raises the blended basis for the earlier sell
    p = Position(
        "BASIS",
        [
            BuyTransaction(10, 10, 9, "2024-03-01", ["a"]),
            BuyTransaction(10, 20, 19, "2024-03-20", ["a"]),
        ],
        [SellTransaction(10, 12, "2024-03-10")],
    )

    blended = monthly_pl([p], 2024).months[2].pl
    pit = monthly_pl([p], 2024, CostBasis.POINT_IN_TIME).months[2].pl
    assert blended == pytest.approx(12000 - 15000)
    assert pit == pytest.approx(12000 - 10000)


def test_equity_curve():
    positions = [
        closed("A", 10, 12, sold="2024-02-01"),  # +2000
        closed("B", 10, 9, sold="2024-01-15"),  # -1000
        closed("C", 10, 20, sold="2023-12-31"),  # other year
    ]

    curve = equity_curve(positions, 10_000, 2024)
    assert [pt.when for pt in curve.points] == [
        datetime.date(2024, 1, 1),
        datetime.date(2024, 1, 15),
        datetime.date(2024, 2, 1),
    ]
    assert [pt.equity for pt in curve.points] == pytest.approx([10000, 9000, 11000])
    assert curve.final_equity == pytest.approx(11000)
    assert curve.total_pl == pytest.approx(1000)
    assert curve.has_data

    empty = equity_curve([], 10_000, 2024)
    assert not empty.has_data
    assert empty.final_equity == 10_000


def test_compute_stats_bundle():
    positions = [closed("A", 10, 12, sold="2024-02-01")]
    stats = compute_stats(positions, 10_000, datetime.date(2024, 2, 15))
    assert stats.summary.total_pl == pytest.approx(2000)
    assert stats.daily_pl.month == 2
    assert stats.monthly_pl.year == 2024
    assert stats.equity_curve.final_equity == pytest.approx(12000)

    assert current_equity(positions, 10_000) == pytest.approx(12000)


def test_transaction_history_newest_first():
    p = closed("HIST", 10, 12, bought="2024-03-01", sold="2024-03-05")
    history = transaction_history([p])
    assert [r.kind for r in history] == ["sell", "buy"]
    assert history[0].total_value == pytest.approx(12000)
    assert history[1].reason == "VCP Candlestick"
    assert history[0].reason == "TP"


def test_reporter():
    positions = [closed("WIN", 10, 12), closed("LOSS", 10, 9)]
    reporter = JournalReporter(positions)

    table = reporter.position_table()
    assert "WIN" in table
    assert "CLOSED" in table
    assert mn(2000) in table

    report = reporter.performance_report(10_000)
    assert "Win Rate: 50.0%" in report
    assert "Profit Factor: 2.00" in report

    assert JournalReporter([]).position_table() == "No positions found."


def test_money_format():
    assert mn(1234.5) == "$1,234.50"
    assert mn(-3) == "-$3.00"

import datetime

import pytest

from tradejournal.ledger import (
    BuyTransaction,
    Position,
    PositionStats,
    SellTransaction,
    as_date,
    compute_stats,
    num,
    setup_rating,
)

D1 = datetime.date(2024, 7, 24)
D2 = datetime.date(2024, 7, 26)


def test_buy_then_full_sell():
    p = Position("msft", [BuyTransaction(10, 450.50, 445, D1, ["VCP Candlestick"])])
    assert p.ticker == "MSFT"

    assert p.buys[0].total_buy_price == pytest.approx(450500)
    assert p.avg_buy_price == pytest.approx(450.50)
    assert not p.is_closed
    assert p.realized_pl == 0

    p.sells.append(SellTransaction(10, 465.20, D2, "TP"))
    assert p.sells[0].total_sell_price == pytest.approx(465200)
    assert p.realized_pl == pytest.approx(14700)
    assert p.is_closed
    assert p.closed_on == D2


def test_partial_sell_stays_open():
    p = Position(
        "XYZ",
        [BuyTransaction(20, 210, 200, D1, ["VCP Candlestick"])],
        [SellTransaction(10, 220, D2)],
    )

    stats = compute_stats(p)
    assert stats == PositionStats(
        is_closed=False, realized_pl=pytest.approx(10000), total_lots_bought=20, total_lots_sold=10
    )
    assert p.remaining_lots == 10
    assert p.closed_on is None


def test_blended_cost_basis():
    # 10 @ 10 plus 10 @ 12 blends to 11
    p = Position(
        "ABC",
        [
            BuyTransaction(10, 10, 9, D1, ["a"]),
            BuyTransaction(10, 12, 11, D2, ["a"]),
        ],
        [SellTransaction(20, 11.5, D2)],
    )

    assert p.avg_buy_price == pytest.approx(11)
    assert p.realized_pl == pytest.approx(0.5 * 20 * 100)
    assert p.pl_percent == pytest.approx(0.5 / 11 * 100)
    assert p.opened_on == D2
    assert p.started_on == D1


def test_no_buys_is_open_and_flat():
    p = Position("EMPTY", [], [SellTransaction(5, 10, D2)])
    assert compute_stats(p) == PositionStats(False, 0.0, 0, 0)
    assert not p.is_closed


def test_oversold_counts_as_closed():
    p = Position(
        "OVR",
        [BuyTransaction(5, 10, 9, D1, ["a"])],
        [SellTransaction(6, 10, D2)],
    )
    assert p.is_closed


def test_malformed_numbers_count_as_zero():
    p = Position(
        "BAD",
        [
            BuyTransaction("garbage", 10, 9, D1, ["a"]),  # type: ignore[arg-type]
            BuyTransaction(5, float("nan"), 9, D1, ["a"]),
        ],
    )

    assert p.total_lots_bought == 5
    assert p.buys[1].total_buy_price == 0
    assert compute_stats(p).realized_pl == 0

    assert num(None) == 0
    assert num("3.5") == 3.5
    assert num(True) == 0
    assert num(float("inf")) == 0


def test_setup_rating():
    assert setup_rating([]) == "A"
    assert setup_rating(["a"]) == "A"
    assert setup_rating(["a", "a"]) == "A"
    assert setup_rating(["a", "b"]) == "A+"
    assert setup_rating(["a", "b", "c", "d"]) == "S"

    assert BuyTransaction(1, 2, 1, D1, ["x", "y"]).setup_rating == "A+"


def test_dates_normalize():
    assert as_date(None) is None
    assert as_date("") is None
    assert as_date("2024-07-24") == D1
    assert as_date(datetime.datetime(2024, 7, 24, 15, 30)) == D1

    sell = SellTransaction(1, 1, "2024-07-26")
    assert sell.sell_date == D2


def test_point_in_time_basis():
    p = Position(
        "PIT",
        [
            BuyTransaction(10, 10, 9, D1, ["a"]),
            BuyTransaction(10, 20, 19, D2, ["a"]),
        ],
    )

    assert p.cost_basis_at(D1) == pytest.approx(10)
    assert p.cost_basis_at(D2) == pytest.approx(15)
    assert p.cost_basis_at(None) == pytest.approx(15)

    # nothing bought before the sell falls back to the blended average
    assert p.cost_basis_at(datetime.date(2020, 1, 1)) == pytest.approx(15)

    sell = SellTransaction(5, 12, D1)
    assert p.sell_pl(sell, p.cost_basis_at(D1)) == pytest.approx(1000)
    assert p.sell_pl(sell) == pytest.approx(-1500)


def test_lookup_by_id():
    b = BuyTransaction(1, 2, 1, D1, ["a"])
    p = Position("IDS", [b])
    assert p.buy(b.id) is b

    with pytest.raises(KeyError, match="No sell"):
        p.sell("missing")

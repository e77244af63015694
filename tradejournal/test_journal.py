import asyncio
import copy

import pytest

from tradejournal.journal import (
    AddBuy,
    AddSell,
    DeletePosition,
    EditBuy,
    EditSell,
    Journal,
    ReplaceAll,
    ValidationError,
)
from tradejournal import codec
from tradejournal.ledger import BuyTransaction, SellTransaction
from tradejournal.storage import MemoryStore, SaveResult

VCP = "VCP Candlestick"


def buy(lots=10, price=450.5, stop=445, when="2024-07-24", **kwargs):
    return BuyTransaction(lots, price, stop, when, kwargs.pop("reasons", [VCP]), **kwargs)


def sell(lots=10, price=465.2, when="2024-07-26", **kwargs):
    return SellTransaction(lots, price, when, **kwargs)


def test_buy_then_sell():
    with Journal.temp() as j:
        p = j.apply(AddBuy("msft", buy()))
        assert p.ticker == "MSFT"
        assert len(j.positions) == 1

        p = j.apply(AddSell(p.id, sell()))
        assert p.is_closed
        assert p.realized_pl == pytest.approx(14700)

        stats = j.stats(10_000)
        assert stats.summary.total_pl == pytest.approx(14700)
        assert j.current_equity(10_000) == pytest.approx(24700)


def test_buys_scale_into_open_position():
    with Journal.temp() as j:
        first = j.apply(AddBuy("XYZ", buy(20, 210, 200)))
        again = j.apply(AddBuy("xyz", buy(5, 220, 210)))
        assert first.id == again.id
        assert again.total_lots_bought == 25
        assert len(j.positions) == 1


def test_closed_position_starts_new_one():
    with Journal.temp() as j:
        p = j.apply(AddBuy("XYZ", buy(10)))
        j.apply(AddSell(p.id, sell(10)))

        fresh = j.apply(AddBuy("XYZ", buy(5, when="2024-08-01")))
        assert fresh.id != p.id

        # newest position goes first
        assert [x.id for x in j.positions] == [fresh.id, p.id]


def test_partial_sell():
    with Journal.temp() as j:
        p = j.apply(AddBuy("XYZ", buy(20, 210, 200)))
        p = j.apply(AddSell(p.id, sell(10, 220)))
        assert p.remaining_lots == 10
        assert not p.is_closed
        assert p.realized_pl == pytest.approx(10000)


def test_oversell_rejected_without_changes():
    with Journal.temp() as j:
        p = j.apply(AddBuy("XYZ", buy(10)))
        before = j.snapshot()

        with pytest.raises(ValidationError, match="Cannot sell more than 10") as e:
            j.apply(AddSell(p.id, sell(15)))

        assert "lot_size" in e.value.errors
        assert j.snapshot() == before


def test_sell_of_closed_position_rejected():
    with Journal.temp() as j:
        p = j.apply(AddBuy("XYZ", buy(10)))
        j.apply(AddSell(p.id, sell(10)))

        with pytest.raises(ValidationError):
            j.apply(AddSell(p.id, sell(1)))


def test_buy_validation():
    with Journal.temp() as j:
        with pytest.raises(ValidationError) as e:
            j.apply(
                AddBuy(
                    " ",
                    BuyTransaction(0, 10, 11, None, [], profit_target=9),
                )
            )

        assert set(e.value.errors) == {
            "ticker",
            "lot_size",
            "stop_loss_price",
            "profit_target",
            "buy_date",
            "buy_reason",
        }
        assert j.positions == []


def test_sell_validation():
    with Journal.temp() as j:
        p = j.apply(AddBuy("XYZ", buy()))
        with pytest.raises(ValidationError) as e:
            j.apply(AddSell(p.id, SellTransaction(0, -1, None)))

        assert set(e.value.errors) == {"lot_size", "sell_price", "sell_date"}

        # worthless exit is fine
        j.apply(AddSell(p.id, sell(price=0)))


def test_edit_sell_counts_own_lots():
    with Journal.temp() as j:
        p = j.apply(AddBuy("XYZ", buy(10)))
        p = j.apply(AddSell(p.id, sell(6)))
        existing = p.sells[0]

        # 4 remain, but the edited sell already holds 6, so 10 is allowed
        edited = copy.deepcopy(existing)
        edited.lot_size = 10
        p = j.apply(EditSell(p.id, edited))
        assert p.is_closed
        assert len(p.sells) == 1

        edited.lot_size = 11
        with pytest.raises(ValidationError):
            j.apply(EditSell(p.id, edited))


def test_edit_buy_cannot_drop_below_sold():
    with Journal.temp() as j:
        p = j.apply(AddBuy("XYZ", buy(10)))
        p = j.apply(AddSell(p.id, sell(8)))

        edited = copy.deepcopy(p.buys[0])
        edited.lot_size = 5
        with pytest.raises(ValidationError, match="already sold 8"):
            j.apply(EditBuy(p.id, edited))

        edited.lot_size = 8
        edited.buy_price = 440
        edited.stop_loss_price = 430
        p = j.apply(EditBuy(p.id, edited))
        assert p.is_closed
        assert p.avg_buy_price == pytest.approx(440)


def test_edits_cannot_reopen_alongside_open_position():
    with Journal.temp() as j:
        old = j.apply(AddBuy("XYZ", buy(10)))
        old = j.apply(AddSell(old.id, sell(10)))
        fresh = j.apply(AddBuy("XYZ", buy(5, when="2024-08-01")))
        before = j.snapshot()

        smaller = copy.deepcopy(old.sells[0])
        smaller.lot_size = 4
        with pytest.raises(ValidationError, match="reopen XYZ") as e:
            j.apply(EditSell(old.id, smaller))

        assert "lot_size" in e.value.errors

        bigger = copy.deepcopy(old.buys[0])
        bigger.lot_size = 12
        with pytest.raises(ValidationError, match="reopen XYZ"):
            j.apply(EditBuy(old.id, bigger))

        assert j.snapshot() == before
        assert [p.id for p in j.positions if not p.is_closed] == [fresh.id]

        # once the newer position closes, reopening the old one is fine
        j.apply(AddSell(fresh.id, sell(5)))
        assert not j.apply(EditSell(old.id, smaller)).is_closed


def test_fractional_lots_rejected():
    with Journal.temp() as j:
        with pytest.raises(ValidationError, match="whole number") as e:
            j.apply(AddBuy("XYZ", buy(2.5)))

        assert set(e.value.errors) == {"lot_size"}
        assert j.positions == []

        p = j.apply(AddBuy("XYZ", buy(10.0)))
        with pytest.raises(ValidationError, match="whole number"):
            j.apply(AddSell(p.id, sell(0.5)))

        assert p.remaining_lots == 10


def test_unknown_ids():
    with Journal.temp() as j:
        p = j.apply(AddBuy("XYZ", buy()))

        with pytest.raises(KeyError):
            j.apply(AddSell("missing", sell()))

        with pytest.raises(KeyError, match="No buy"):
            j.apply(EditBuy(p.id, buy()))

        with pytest.raises(KeyError):
            j.apply(DeletePosition("missing"))


def test_delete_position():
    with Journal.temp() as j:
        a = j.apply(AddBuy("AAA", buy()))
        b = j.apply(AddBuy("BBB", buy()))
        j.apply(DeletePosition(a.id))
        assert [p.id for p in j.positions] == [b.id]


def test_sold_never_exceeds_bought():
    with Journal.temp() as j:
        p = j.apply(AddBuy("XYZ", buy(5)))
        for lots in (2, 4, 2, 1, 3):
            try:
                j.apply(AddSell(p.id, sell(lots)))
            except ValidationError:
                pass

            current = j.position(p.id)
            assert current.total_lots_sold <= current.total_lots_bought

        assert j.position(p.id).total_lots_sold == 5


def test_snapshot_is_independent():
    with Journal.temp() as j:
        p = j.apply(AddBuy("XYZ", buy()))
        snap = j.snapshot()
        snap[0].buys.clear()
        assert j.position(p.id).buys

        # the caller's transaction object isn't shared with the journal
        mine = buy(3)
        j.apply(AddBuy("XYZ", mine))
        mine.lot_size = 1000
        assert j.position(p.id).total_lots_bought == 13


def test_import_export():
    with Journal.temp() as j:
        p = j.apply(AddBuy("XYZ", buy()))
        j.apply(AddSell(p.id, sell()))
        exported = j.export_json()

    with Journal.temp() as other:
        other.apply(AddBuy("OLD", buy()))
        assert other.import_json(exported) == 1
        assert [x.ticker for x in other.positions] == ["XYZ"]
        assert other.export_json() == exported

        with pytest.raises(codec.CodecError):
            other.import_json(b"{}")

        assert len(other.positions) == 1


def test_replace_all():
    with Journal.temp() as j:
        j.apply(AddBuy("OLD", buy()))
        assert j.apply(ReplaceAll([])) is None
        assert j.positions == []


def test_sync_and_load():
    async def run():
        store = MemoryStore()
        j = Journal(store)
        p = j.apply(AddBuy("XYZ", buy()))
        result = await j.sync()
        assert result.ok
        assert result.positions == 1

        await j.save_settings(theme="dark")

        reloaded = Journal(store)
        assert await reloaded.load()
        assert reloaded.positions[0].id == p.id
        assert reloaded.settings == {"theme": "dark"}

    asyncio.run(run())


class BrokenStore(MemoryStore):
    async def save(self, positions):
        return SaveResult(False, "disk full")


def test_failed_sync_keeps_memory():
    async def run():
        j = Journal(BrokenStore())
        j.apply(AddBuy("XYZ", buy()))
        result = await j.sync()
        assert not result.ok
        assert result.error == "disk full"
        assert len(j.positions) == 1

    asyncio.run(run())


def test_unreadable_store_starts_empty():
    async def run():
        store = MemoryStore({"trading_journal_positions": b"{not json"})
        j = Journal(store)
        assert not await j.load()
        assert j.positions == []

    asyncio.run(run())

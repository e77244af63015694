"""The in-memory journal and the only sanctioned ways of changing it.

Callers never edit Position lists directly. They describe a change as a
mutation (AddBuy, AddSell, EditBuy, EditSell, DeletePosition, ReplaceAll) and
hand it to Journal.apply(), which:
  - copies the current positions
  - validates and runs the mutation against the copy
  - swaps the copy in only if the whole mutation succeeded

So a rejected mutation (ValidationError, KeyError) leaves the journal exactly
as it was. Persisting is a separate step: `await journal.sync()` saves the
current state and reports how it went, and a failed save never undoes the
in-memory change.

Usage:
    with Journal.temp() as j:
        pos = j.apply(AddBuy("msft", BuyTransaction(10, 450.50, 445, "2024-07-24", ["VCP Candlestick"])))
        j.apply(AddSell(pos.id, SellTransaction(10, 465.20, "2024-07-26", "TP")))
        j.stats(10_000).summary.total_pl  # 14700.0
"""

from __future__ import annotations

import copy
from collections.abc import Iterable
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, TypeAlias

from loguru import logger

from . import analytics, codec
from .ledger import BuyTransaction, Position, SellTransaction, num
from .storage import MemoryStore, Store, StoreError


class ValidationError(ValueError):
    """User input was rejected. 'errors' maps field name to message."""

    def __init__(self, errors: dict[str, str]):
        self.errors = errors
        super().__init__("; ".join(f"{k}: {v}" for k, v in errors.items()))


@dataclass(slots=True, frozen=True)
class SyncResult:
    ok: bool
    error: str | None = None
    positions: int = 0


def _lots_error(lots: float) -> str | None:
    if lots <= 0:
        return "Lot size must be a positive number."

    if not float(lots).is_integer():
        return "Lot size must be a whole number of lots."

    return None


def validate_buy(buy: BuyTransaction, ticker: str | None = None) -> dict[str, str]:
    """Field errors for a buy entry (empty dict if valid).

    'ticker' is only checked when given (new buys); edits keep their position's ticker."""
    errors: dict[str, str] = {}

    if ticker is not None and not ticker.strip():
        errors["ticker"] = "Ticker is required."

    if problem := _lots_error(num(buy.lot_size)):
        errors["lot_size"] = problem

    price = num(buy.buy_price)
    if price <= 0:
        errors["buy_price"] = "Buy price must be a positive number."

    stop = num(buy.stop_loss_price)
    if stop <= 0:
        errors["stop_loss_price"] = "Stop loss must be a positive number."
    elif price > 0 and stop >= price:
        errors["stop_loss_price"] = "Stop loss must be below the buy price."

    if buy.profit_target is not None and price > 0:
        if num(buy.profit_target) <= price:
            errors["profit_target"] = "Profit target must be above the buy price."

    if not buy.buy_date:
        errors["buy_date"] = "Buy date is required."

    if not buy.buy_reason:
        errors["buy_reason"] = "Select at least one setup."

    return errors


def validate_sell(sell: SellTransaction, available: float) -> dict[str, str]:
    """Field errors for a sell entry against 'available' remaining lots."""
    errors: dict[str, str] = {}

    lots = num(sell.lot_size)
    if problem := _lots_error(lots):
        errors["lot_size"] = problem
    elif lots > available:
        errors["lot_size"] = f"Cannot sell more than {available:g} remaining lots."

    if num(sell.sell_price) < 0:
        errors["sell_price"] = "Sell price cannot be negative."

    if not sell.sell_date:
        errors["sell_date"] = "Sell date is required."

    return errors


def find_position(positions: Iterable[Position], position_id: str) -> Position:
    for position in positions:
        if position.id == position_id:
            return position

    raise KeyError(f"No position with id {position_id}")


def open_position_for(positions: Iterable[Position], ticker: str) -> Position | None:
    """The single open position for 'ticker', if any."""
    ticker = ticker.strip().upper()
    for position in positions:
        if position.ticker == ticker and not position.is_closed:
            return position

    return None


def check_reopen(positions: Iterable[Position], position: Position) -> None:
    """Reject 'position' being open while another open position holds its ticker."""
    if position.is_closed:
        return

    for other in positions:
        if other is position or other.is_closed:
            continue

        if other.ticker == position.ticker:
            raise ValidationError(
                {
                    "lot_size": f"This edit would reopen {position.ticker} while "
                    "another position for it is still open."
                }
            )


@dataclass(slots=True)
class AddBuy:
    """Buy into the open position for 'ticker', or open a new position."""

    ticker: str
    buy: BuyTransaction

    def run(self, positions: list[Position]) -> Position:
        if errors := validate_buy(self.buy, self.ticker):
            raise ValidationError(errors)

        if found := open_position_for(positions, self.ticker):
            found.buys.append(self.buy)
            return found

        created = Position(self.ticker, [self.buy], [])
        positions.insert(0, created)
        return created


@dataclass(slots=True)
class AddSell:
    position_id: str
    sell: SellTransaction

    def run(self, positions: list[Position]) -> Position:
        found = find_position(positions, self.position_id)
        if errors := validate_sell(self.sell, found.remaining_lots):
            raise ValidationError(errors)

        found.sells.append(self.sell)
        return found


@dataclass(slots=True)
class EditBuy:
    """Replace the buy having 'buy.id' inside position 'position_id'."""

    position_id: str
    buy: BuyTransaction

    def run(self, positions: list[Position]) -> Position:
        found = find_position(positions, self.position_id)
        previous = found.buy(self.buy.id)

        errors = validate_buy(self.buy)
        bought = found.total_lots_bought - num(previous.lot_size) + num(self.buy.lot_size)
        if "lot_size" not in errors and bought < found.total_lots_sold:
            errors["lot_size"] = (
                f"Position already sold {found.total_lots_sold:g} lots; "
                f"buys can't drop to {bought:g}."
            )

        if errors:
            raise ValidationError(errors)

        found.buys[found.buys.index(previous)] = self.buy
        check_reopen(positions, found)
        return found


@dataclass(slots=True)
class EditSell:
    """Replace the sell having 'sell.id' inside position 'position_id'."""

    position_id: str
    sell: SellTransaction

    def run(self, positions: list[Position]) -> Position:
        found = find_position(positions, self.position_id)
        previous = found.sell(self.sell.id)

        # the sell being edited gives its own lots back before re-checking
        available = found.remaining_lots + num(previous.lot_size)
        if errors := validate_sell(self.sell, available):
            raise ValidationError(errors)

        found.sells[found.sells.index(previous)] = self.sell
        check_reopen(positions, found)
        return found


@dataclass(slots=True)
class DeletePosition:
    position_id: str

    def run(self, positions: list[Position]) -> Position:
        found = find_position(positions, self.position_id)
        positions.remove(found)
        return found


@dataclass(slots=True)
class ReplaceAll:
    """Throw away every position and use 'positions' instead (bulk import)."""

    positions: list[Position]

    def run(self, positions: list[Position]) -> None:
        positions[:] = copy.deepcopy(self.positions)


Mutation: TypeAlias = AddBuy | AddSell | EditBuy | EditSell | DeletePosition | ReplaceAll


@dataclass(slots=True)
class Journal:
    """Owns the authoritative position list for one trader."""

    store: Store = field(default_factory=MemoryStore)
    positions: list[Position] = field(default_factory=list)
    settings: dict[str, Any] = field(default_factory=dict)

    @classmethod
    @contextmanager
    def temp(cls, positions: list[Position] | None = None):
        """Create an isolated in-memory journal for tests and scratch work."""
        yield cls(MemoryStore(), copy.deepcopy(positions or []))

    async def load(self) -> bool:
        """Replace in-memory state with what the store holds.

        Returns False (and starts empty) if stored data couldn't be read."""
        try:
            self.positions = await self.store.load()
            self.settings = await self.store.load_settings()
        except StoreError as e:
            logger.warning("Starting with an empty journal: {}", e)
            self.positions = []
            self.settings = {}
            return False

        logger.info("Loaded {} positions", len(self.positions))
        return True

    def snapshot(self) -> list[Position]:
        """Independent copy of every position, safe to read while the journal changes."""
        return copy.deepcopy(self.positions)

    def position(self, position_id: str) -> Position:
        return copy.deepcopy(find_position(self.positions, position_id))

    def apply(self, mutation: Mutation) -> Position | None:
        """Run 'mutation' all-or-nothing and return the position it touched.

        Raises ValidationError for rejected input and KeyError for unknown ids.
        The returned position is a copy. ReplaceAll returns None."""
        staged = self.snapshot()

        # the journal must not share objects with the caller
        mutation = copy.deepcopy(mutation)
        touched = mutation.run(staged)
        self.positions = staged

        match mutation:
            case AddBuy():
                logger.info(
                    "[{}] Bought {} lots @ {}",
                    mutation.ticker.strip().upper(),
                    mutation.buy.lot_size,
                    mutation.buy.buy_price,
                )
            case AddSell():
                logger.info(
                    "[{}] Sold {} lots @ {}",
                    touched.ticker,  # type: ignore[union-attr]
                    mutation.sell.lot_size,
                    mutation.sell.sell_price,
                )
            case DeletePosition():
                logger.info("[{}] Deleted position {}", touched.ticker, touched.id)  # type: ignore[union-attr]
            case ReplaceAll():
                logger.info("Replaced journal with {} positions", len(staged))
            case _:
                logger.info("[{}] {} applied", touched.ticker, type(mutation).__name__)  # type: ignore[union-attr]

        return copy.deepcopy(touched)

    async def sync(self) -> SyncResult:
        """Save the current positions. Memory is kept even if saving fails."""
        current = self.snapshot()
        result = await self.store.save(current)
        if not result.ok:
            logger.error("Journal not saved: {}", result.error)

        return SyncResult(result.ok, result.error, len(current))

    async def save_settings(self, **updates) -> SyncResult:
        self.settings = {**self.settings, **updates}
        result = await self.store.save_settings(self.settings)
        if not result.ok:
            logger.error("Settings not saved: {}", result.error)

        return SyncResult(result.ok, result.error, len(self.positions))

    def export_json(self) -> bytes:
        return codec.dumps(self.positions)

    def import_json(self, data: bytes | str) -> int:
        """Replace the entire journal with the positions in 'data'.

        Raises codec.CodecError (leaving the journal untouched) if 'data' isn't
        a position array. Returns the number of positions imported."""
        imported = codec.loads(data)
        self.apply(ReplaceAll(imported))
        return len(imported)

    def current_equity(self, initial_equity: float) -> float:
        return analytics.current_equity(self.positions, initial_equity)

    def stats(self, initial_equity: float, when=None, **kwargs) -> analytics.TradeStats:
        """Analytics over a snapshot of the journal (see analytics.compute_stats)."""
        return analytics.compute_stats(self.snapshot(), initial_equity, when, **kwargs)

"""JSON wire format for positions (storage blobs, import files, export files).

The wire format keeps the camelCase keys journals have always been exported
with, so old backups import cleanly:

    [
      {
        "id": "1721832901308",
        "ticker": "MSFT",
        "buys": [{"id": "...", "lotSize": 10, "buyPrice": 450.5, "stopLossPrice": 445,
                  "profitTarget": 470, "setupRating": "A+", "totalBuyPrice": 450500,
                  "buyDate": "2024-07-24", "buyReason": ["VCP Candlestick", ...],
                  "notes": null, "buyChartImage": null}],
        "sells": [{"id": "...", "lotSize": 10, "sellPrice": 465.2, "totalSellPrice": 465200,
                   "sellDate": "2024-07-26", "sellReason": "TP", "notes": null,
                   "sellChartImage": null}]
      }
    ]

Encoding writes 'totalBuyPrice', 'totalSellPrice' and 'setupRating' for
readers that expect them. Decoding ignores those stored values and recomputes
them from their inputs.

Decoding is forgiving because imports may come from older schema versions:
numbers that don't parse become 0, unparseable dates become None, a single
string 'buyReason' becomes a one-tag list, lists that arrive as anything
else become empty, and missing ids are generated.
"""

from __future__ import annotations

import datetime
from typing import Any

import arrow  # type: ignore
import orjson
from loguru import logger

from .ledger import (
    SELL_REASONS,
    BuyTransaction,
    Position,
    SellTransaction,
    as_date,
    new_id,
    num,
)


class CodecError(ValueError):
    """Input is not a journal document at all."""


def _date_out(when: datetime.date | None) -> str | None:
    return when.isoformat() if when else None


def _date_in(value: Any, where: str) -> datetime.date | None:
    try:
        return as_date(value)
    except (arrow.ParserError, ValueError, TypeError):
        logger.warning("[{}] Unreadable date {!r}, storing as missing", where, value)
        return None


def _lots_in(value: Any) -> int | float:
    lots = num(value)
    if isinstance(lots, float) and lots.is_integer():
        return int(lots)

    return lots


def _text_in(value: Any) -> str | None:
    if value is None:
        return None

    text = str(value)
    return text if text else None


def _list_in(value: Any, name: str) -> list[Any]:
    if value is None:
        return []

    if not isinstance(value, list):
        logger.warning("Ignoring {} of type {}", name, type(value).__name__)
        return []

    return value


def buy_to_dict(buy: BuyTransaction) -> dict[str, Any]:
    result: dict[str, Any] = {
        "id": buy.id,
        "lotSize": buy.lot_size,
        "buyPrice": buy.buy_price,
        "stopLossPrice": buy.stop_loss_price,
        "setupRating": buy.setup_rating,
        "totalBuyPrice": buy.total_buy_price,
        "buyDate": _date_out(buy.buy_date),
        "buyReason": list(buy.buy_reason),
        "notes": buy.notes,
        "buyChartImage": buy.buy_chart_image,
    }

    # absent target is omitted rather than null, matching older exports
    if buy.profit_target is not None:
        result["profitTarget"] = buy.profit_target

    return result


def sell_to_dict(sell: SellTransaction) -> dict[str, Any]:
    return {
        "id": sell.id,
        "lotSize": sell.lot_size,
        "sellPrice": sell.sell_price,
        "totalSellPrice": sell.total_sell_price,
        "sellDate": _date_out(sell.sell_date),
        "sellReason": sell.sell_reason,
        "notes": sell.notes,
        "sellChartImage": sell.sell_chart_image,
    }


def position_to_dict(position: Position) -> dict[str, Any]:
    return {
        "id": position.id,
        "ticker": position.ticker,
        "buys": [buy_to_dict(b) for b in position.buys],
        "sells": [sell_to_dict(s) for s in position.sells],
    }


def buy_from_dict(data: dict[str, Any]) -> BuyTransaction:
    reason = data.get("buyReason")
    if isinstance(reason, str):
        reason = [reason] if reason else []

    target = data.get("profitTarget")

    return BuyTransaction(
        id=str(data.get("id") or new_id()),
        lot_size=_lots_in(data.get("lotSize")),  # type: ignore[arg-type]
        buy_price=num(data.get("buyPrice")),
        stop_loss_price=num(data.get("stopLossPrice")),
        profit_target=num(target) if target not in (None, "") else None,
        buy_date=_date_in(data.get("buyDate"), "buyDate"),
        buy_reason=[str(tag) for tag in _list_in(reason, "buyReason")],
        notes=_text_in(data.get("notes")),
        buy_chart_image=_text_in(data.get("buyChartImage")),
    )


def sell_from_dict(data: dict[str, Any]) -> SellTransaction:
    reason = data.get("sellReason")
    if reason is not None and reason not in SELL_REASONS:
        logger.warning("Unknown sell reason {!r}, storing as missing", reason)
        reason = None

    return SellTransaction(
        id=str(data.get("id") or new_id()),
        lot_size=_lots_in(data.get("lotSize")),  # type: ignore[arg-type]
        sell_price=num(data.get("sellPrice")),
        sell_date=_date_in(data.get("sellDate"), "sellDate"),
        sell_reason=reason,
        notes=_text_in(data.get("notes")),
        sell_chart_image=_text_in(data.get("sellChartImage")),
    )


def position_from_dict(data: dict[str, Any]) -> Position:
    return Position(
        id=str(data.get("id") or new_id()),
        ticker=str(data.get("ticker") or ""),
        buys=[
            buy_from_dict(b)
            for b in _list_in(data.get("buys"), "buys")
            if isinstance(b, dict)
        ],
        sells=[
            sell_from_dict(s)
            for s in _list_in(data.get("sells"), "sells")
            if isinstance(s, dict)
        ],
    )


def dumps(positions: list[Position]) -> bytes:
    """Serialize positions as an indented JSON array."""
    return orjson.dumps(
        [position_to_dict(p) for p in positions], option=orjson.OPT_INDENT_2
    )


def loads(data: bytes | str) -> list[Position]:
    """Parse a JSON array of positions.

    Raises CodecError if 'data' isn't JSON or isn't an array. Entries that
    aren't objects are skipped."""
    try:
        parsed = orjson.loads(data)
    except orjson.JSONDecodeError as e:
        raise CodecError(f"Not a JSON document: {e}")

    if not isinstance(parsed, list):
        raise CodecError("Invalid data format. Expected an array of positions.")

    positions = []
    for idx, entry in enumerate(parsed):
        if not isinstance(entry, dict):
            logger.warning("Skipping entry {} of type {}", idx, type(entry).__name__)
            continue

        positions.append(position_from_dict(entry))

    return positions


def dumps_settings(settings: dict[str, Any]) -> bytes:
    return orjson.dumps(settings)


def loads_settings(data: bytes | str) -> dict[str, Any]:
    try:
        parsed = orjson.loads(data)
    except orjson.JSONDecodeError as e:
        raise CodecError(f"Not a JSON document: {e}")

    if not isinstance(parsed, dict):
        raise CodecError("Invalid data format. Expected a settings object.")

    return parsed


def export_filename(today: datetime.date | None = None) -> str:
    """Default backup file name, e.g. trading_journal_backup_2024-07-26.json"""
    when = arrow.get(today) if today else arrow.now()
    return f"trading_journal_backup_{when.format('YYYY-MM-DD')}.json"

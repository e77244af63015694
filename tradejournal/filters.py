"""Select which positions are visible for listing and analytics.

Filtering is a pure function of (positions, Filters): the same Filters applied
to the same positions always yields the same list, and nothing is cached.
"""

from __future__ import annotations

import datetime
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Literal, TypeAlias

from .ledger import Position, as_date, compute_stats

Status: TypeAlias = Literal["all", "open", "closed"]
PLStatus: TypeAlias = Literal["all", "profit", "loss"]

STATUSES = {"all", "open", "closed"}
PL_STATUSES = {"all", "profit", "loss"}


@dataclass(slots=True)
class Filters:
    """Criteria for narrowing down the journal.

    Empty or "all" criteria match everything. 'date_from' and 'date_to' accept
    dates, datetimes, or ISO date strings and are both inclusive ('date_to'
    covers the whole day)."""

    ticker: str = ""
    status: Status = "all"
    pl_status: PLStatus = "all"
    date_from: Any = None
    date_to: Any = None
    setups: list[str] = field(default_factory=list)

    def __post_init__(self):
        if self.status not in STATUSES:
            raise ValueError(
                f"Unknown status filter: {self.status} (expected one of {sorted(STATUSES)})"
            )

        if self.pl_status not in PL_STATUSES:
            raise ValueError(
                f"Unknown P/L filter: {self.pl_status} (expected one of {sorted(PL_STATUSES)})"
            )

        self.date_from = as_date(self.date_from)
        self.date_to = as_date(self.date_to)

    @property
    def is_default(self) -> bool:
        return active_filter_count(self) == 0


def active_filter_count(filters: Filters) -> int:
    """Number of criteria actually narrowing the result (for a filter badge)."""
    count = 0
    for value in (filters.ticker, filters.date_from, filters.date_to):
        if value:
            count += 1

    for value in (filters.status, filters.pl_status):
        if value != "all":
            count += 1

    if filters.setups:
        count += 1

    return count


def in_range(
    when: datetime.date, start: datetime.date | None, end: datetime.date | None
) -> bool:
    if start and when < start:
        return False

    if end and when > end:
        return False

    return True


def matches(position: Position, filters: Filters) -> bool:
    """Return True if 'position' passes every criterion in 'filters'."""
    stats = compute_stats(position)

    if needle := filters.ticker.strip().lower():
        if needle not in position.ticker.lower():
            return False

    if filters.status == "open" and stats.is_closed:
        return False

    if filters.status == "closed" and not stats.is_closed:
        return False

    if filters.pl_status != "all":
        # P/L only means something once the position is fully closed,
        # so open positions never match a profit/loss filter.
        if not stats.is_closed:
            return False

        # breakeven counts as a loss
        if filters.pl_status == "profit" and stats.realized_pl <= 0:
            return False

        if filters.pl_status == "loss" and stats.realized_pl > 0:
            return False

    if filters.date_from or filters.date_to:
        if not any(
            in_range(when, filters.date_from, filters.date_to)
            for when in position.transaction_dates()
        ):
            return False

    if filters.setups:
        if not set(filters.setups) <= position.setups:
            return False

    return True


def apply_filters(positions: Iterable[Position], filters: Filters) -> list[Position]:
    """Return positions matching 'filters', most recently opened first.

    The sort is stable, so positions opened on the same day keep their input order.
    Positions without any dated buy sort last."""
    found = [p for p in positions if matches(p, filters)]

    # sorting on (has_date, date) descending puts undated positions at the end
    return sorted(
        found,
        key=lambda p: (p.opened_on is not None, p.opened_on or datetime.date.min),
        reverse=True,
    )

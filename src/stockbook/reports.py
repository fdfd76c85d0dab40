"""Read-only projections of the stock ledger.

Two groups of functions live here:

* the query layer: bounded, filtered listings of ledger rows and movement
  counts for dashboards;
* the aggregation engine: revenue and profit rolled up by day, by date
  range, and by product category.

Every function works on a :func:`~stockbook.core_logic.ledger_snapshot`, so a
report never sees half of a unit of work and never writes to the workbook.

Revenue and profit are priced with each product's *current* selling and
purchase prices. Reports over periods in which prices changed are therefore
approximate; no price-at-sale value is stored in the ledger.
"""

from __future__ import annotations

import re
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

from . import core_logic, data_manager, log
from .constants import (
    ALL_TRANSACTIONS_LIMIT,
    SALE_MARKER,
    UNCATEGORIZED,
    OutReason,
    TransactionType,
)


ZERO = Decimal("0")
RECENT_WINDOW_DAYS = 7

DateLike = Union[date, datetime, str]

_REASON_PATTERN = re.compile(
    r"^(%s)" % "|".join(re.escape(reason.value) for reason in OutReason)
)
_REASON_PREFIX = re.compile(
    r"^(%s)\s*-?\s*" % "|".join(re.escape(reason.value) for reason in OutReason)
)


@dataclass(frozen=True)
class LedgerEntry:
    """A ledger row joined with the name of its product.

    ``product_name`` is ``None`` when the product has since been removed
    from the catalog.
    """

    transaction: data_manager.TransactionRow
    product_name: Optional[str]


@dataclass(frozen=True)
class TransactionStats:
    total_in: int
    total_out: int
    today_in: int
    today_out: int
    recent_count: int


@dataclass(frozen=True)
class FinancialStats:
    total_revenue: Decimal
    total_profit: Decimal
    today_revenue: Decimal
    today_profit: Decimal


@dataclass(frozen=True)
class RangeStats:
    total_revenue: Decimal
    total_profit: Decimal
    transaction_count: int


@dataclass(frozen=True)
class DailyFigures:
    day: date
    revenue: Decimal
    profit: Decimal
    transaction_count: int


@dataclass(frozen=True)
class CategoryFigures:
    category: str
    revenue: Decimal
    profit: Decimal
    product_count: int
    transaction_count: int


@dataclass(frozen=True)
class OutReasonInfo:
    reason: OutReason
    additional_notes: str


@dataclass(frozen=True)
class SaleFigures:
    revenue: Decimal
    cost: Decimal
    profit: Decimal
    margin_percent: Decimal

    @property
    def is_profitable(self) -> bool:
        return self.profit >= 0


@dataclass(frozen=True)
class SeriesSummary:
    total: Decimal
    average: Decimal
    highest: Decimal
    lowest: Decimal
    trend_percent: Decimal


# ---------------------------------------------------------------------------
# Query layer
# ---------------------------------------------------------------------------


def _as_date(value: DateLike) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(value[:10])


def _require_limit(limit: int) -> None:
    if limit < 0:
        raise ValueError("limit must be zero or positive")


def _newest_first(transactions: Iterable[data_manager.TransactionRow]) -> List[data_manager.TransactionRow]:
    return sorted(transactions, key=core_logic.ledger_sort_key, reverse=True)


def _join_names(
    snapshot: core_logic.LedgerSnapshot,
    transactions: Iterable[data_manager.TransactionRow],
) -> List[LedgerEntry]:
    entries = []
    for transaction in transactions:
        product = snapshot.products.get(transaction.product_id)
        entries.append(LedgerEntry(
            transaction=transaction,
            product_name=product.product_name if product else None,
        ))
    return entries


def transactions_for_product(
    context: core_logic.RuntimeContext,
    product_id: str,
    limit: int = 50,
) -> List[LedgerEntry]:
    """Return up to ``limit`` ledger rows of one product, newest first."""
    _require_limit(limit)
    snapshot = core_logic.ledger_snapshot(context)
    rows = _newest_first(t for t in snapshot.transactions if t.product_id == product_id)
    return _join_names(snapshot, rows[:limit])


def all_transactions(
    context: core_logic.RuntimeContext,
    date_from: Optional[DateLike] = None,
    date_to: Optional[DateLike] = None,
    transaction_type: Optional[Union[TransactionType, str]] = None,
) -> List[LedgerEntry]:
    """Return ledger rows filtered by calendar dates and type, newest first.

    Both date bounds are inclusive and compare the local calendar day of each
    row. At most :data:`ALL_TRANSACTIONS_LIMIT` rows are returned.

    Raises:
        ValueError: If ``transaction_type`` is not a :class:`TransactionType`.
    """
    wanted_type = TransactionType(transaction_type) if transaction_type is not None else None
    start = _as_date(date_from) if date_from is not None else None
    end = _as_date(date_to) if date_to is not None else None

    snapshot = core_logic.ledger_snapshot(context)
    matches = []
    for transaction in snapshot.transactions:
        day = core_logic.transaction_day(transaction)
        if start is not None and day < start:
            continue
        if end is not None and day > end:
            continue
        if wanted_type is not None and transaction.transaction_type is not wanted_type:
            continue
        matches.append(transaction)

    return _join_names(snapshot, _newest_first(matches)[:ALL_TRANSACTIONS_LIMIT])


def recent_transactions(context: core_logic.RuntimeContext, limit: int = 10) -> List[LedgerEntry]:
    """Return the latest ``limit`` ledger rows across all products."""
    _require_limit(limit)
    snapshot = core_logic.ledger_snapshot(context)
    return _join_names(snapshot, _newest_first(snapshot.transactions)[:limit])


def transaction_stats(context: core_logic.RuntimeContext, *, today: Optional[date] = None) -> TransactionStats:
    """Count ``IN``/``OUT`` movements overall and for today.

    ``recent_count`` covers every row dated on or after ``today`` minus
    :data:`RECENT_WINDOW_DAYS` days, whatever its type.
    """
    today = today or date.today()
    recent_start = today - timedelta(days=RECENT_WINDOW_DAYS)
    total_in = total_out = today_in = today_out = recent = 0

    for transaction in core_logic.ledger_snapshot(context).transactions:
        day = core_logic.transaction_day(transaction)
        if transaction.transaction_type is TransactionType.IN:
            total_in += 1
            if day == today:
                today_in += 1
        elif transaction.transaction_type is TransactionType.OUT:
            total_out += 1
            if day == today:
                today_out += 1
        if day >= recent_start:
            recent += 1

    return TransactionStats(
        total_in=total_in,
        total_out=total_out,
        today_in=today_in,
        today_out=today_out,
        recent_count=recent,
    )


# ---------------------------------------------------------------------------
# Aggregation engine
# ---------------------------------------------------------------------------


def is_sale(transaction: data_manager.TransactionRow) -> bool:
    """True for ``OUT`` rows whose notes start with the sale marker, ignoring case."""
    return (
        transaction.transaction_type is TransactionType.OUT
        and bool(transaction.notes)
        and transaction.notes[: len(SALE_MARKER)].lower() == SALE_MARKER.lower()
    )


def sale_amounts(
    transaction: data_manager.TransactionRow,
    product: Optional[data_manager.ProductRow],
) -> Tuple[Decimal, Decimal]:
    """Revenue and profit of one sale at the product's current prices.

    A sale whose product was removed contributes nothing.
    """
    if product is None:
        return ZERO, ZERO
    revenue = transaction.quantity * product.selling_price
    profit = transaction.quantity * (product.selling_price - product.purchase_price)
    return revenue, profit


def _sales_between(
    snapshot: core_logic.LedgerSnapshot,
    start: Optional[date],
    end: Optional[date],
) -> Iterable[Tuple[date, data_manager.TransactionRow]]:
    for transaction in snapshot.transactions:
        if not is_sale(transaction):
            continue
        day = core_logic.transaction_day(transaction)
        if start is not None and day < start:
            continue
        if end is not None and day > end:
            continue
        yield day, transaction


def financial_stats(context: core_logic.RuntimeContext, *, today: Optional[date] = None) -> FinancialStats:
    """All-time and today's revenue and profit from sales."""
    today = today or date.today()
    snapshot = core_logic.ledger_snapshot(context)
    total_revenue = total_profit = today_revenue = today_profit = ZERO

    for day, transaction in _sales_between(snapshot, None, None):
        revenue, profit = sale_amounts(transaction, snapshot.products.get(transaction.product_id))
        total_revenue += revenue
        total_profit += profit
        if day == today:
            today_revenue += revenue
            today_profit += profit

    return FinancialStats(
        total_revenue=total_revenue,
        total_profit=total_profit,
        today_revenue=today_revenue,
        today_profit=today_profit,
    )


def financial_stats_for_range(
    context: core_logic.RuntimeContext,
    start: DateLike,
    end: DateLike,
) -> RangeStats:
    """Revenue, profit and number of sales between two inclusive dates."""
    snapshot = core_logic.ledger_snapshot(context)
    total_revenue = total_profit = ZERO
    count = 0
    for _, transaction in _sales_between(snapshot, _as_date(start), _as_date(end)):
        revenue, profit = sale_amounts(transaction, snapshot.products.get(transaction.product_id))
        total_revenue += revenue
        total_profit += profit
        count += 1
    return RangeStats(total_revenue=total_revenue, total_profit=total_profit, transaction_count=count)


def daily_breakdown(
    context: core_logic.RuntimeContext,
    start: DateLike,
    end: DateLike,
) -> List[DailyFigures]:
    """One row per calendar day that had at least one sale, oldest first.

    Days without sales are omitted; see :func:`fill_daily_gaps`.
    """
    snapshot = core_logic.ledger_snapshot(context)
    revenue_by_day: Dict[date, Decimal] = defaultdict(lambda: ZERO)
    profit_by_day: Dict[date, Decimal] = defaultdict(lambda: ZERO)
    count_by_day: Dict[date, int] = defaultdict(int)

    for day, transaction in _sales_between(snapshot, _as_date(start), _as_date(end)):
        revenue, profit = sale_amounts(transaction, snapshot.products.get(transaction.product_id))
        revenue_by_day[day] += revenue
        profit_by_day[day] += profit
        count_by_day[day] += 1

    return [
        DailyFigures(
            day=day,
            revenue=revenue_by_day[day],
            profit=profit_by_day[day],
            transaction_count=count_by_day[day],
        )
        for day in sorted(count_by_day)
    ]


def fill_daily_gaps(rows: Sequence[DailyFigures], start: DateLike, end: DateLike) -> List[DailyFigures]:
    """Return a row for every day from ``start`` to ``end``, zero-filling gaps."""
    first, last = _as_date(start), _as_date(end)
    by_day = {row.day: row for row in rows}
    filled = []
    day = first
    while day <= last:
        filled.append(by_day.get(day) or DailyFigures(day=day, revenue=ZERO, profit=ZERO, transaction_count=0))
        day += timedelta(days=1)
    return filled


def category_breakdown(
    context: core_logic.RuntimeContext,
    start: DateLike,
    end: DateLike,
) -> List[CategoryFigures]:
    """Sales between two inclusive dates grouped by product category.

    Products without a category, and sales whose product was removed, fall
    under :data:`UNCATEGORIZED`. Rows are ordered by revenue, highest first.
    """
    snapshot = core_logic.ledger_snapshot(context)
    revenue_by: Dict[str, Decimal] = defaultdict(lambda: ZERO)
    profit_by: Dict[str, Decimal] = defaultdict(lambda: ZERO)
    products_by: Dict[str, Set[str]] = defaultdict(set)
    count_by: Dict[str, int] = defaultdict(int)

    for _, transaction in _sales_between(snapshot, _as_date(start), _as_date(end)):
        product = snapshot.products.get(transaction.product_id)
        category = (product.category if product else None) or UNCATEGORIZED
        revenue, profit = sale_amounts(transaction, product)
        revenue_by[category] += revenue
        profit_by[category] += profit
        products_by[category].add(transaction.product_id)
        count_by[category] += 1

    rows = [
        CategoryFigures(
            category=category,
            revenue=revenue_by[category],
            profit=profit_by[category],
            product_count=len(products_by[category]),
            transaction_count=count_by[category],
        )
        for category in count_by
    ]
    rows.sort(key=lambda row: (-row.revenue, row.category))
    log.debug("Built category breakdown with %d categories", len(rows))
    return rows


def parse_out_reason(notes: Optional[str], transaction_type: Union[TransactionType, str]) -> Optional[OutReasonInfo]:
    """Split ``OUT`` notes of the form ``"<Reason> - free text"``.

    Non-``OUT`` rows have no reason. Notes that are empty or start with an
    unknown word map to :attr:`OutReason.OTHER` and keep their full text.
    """
    if TransactionType(transaction_type) is not TransactionType.OUT:
        return None
    if not notes:
        return OutReasonInfo(reason=OutReason.OTHER, additional_notes="")

    match = _REASON_PATTERN.match(notes)
    if match is None:
        return OutReasonInfo(reason=OutReason.OTHER, additional_notes=notes)
    return OutReasonInfo(
        reason=OutReason(match.group(1)),
        additional_notes=_REASON_PREFIX.sub("", notes, count=1),
    )


def sale_figures(
    transaction: data_manager.TransactionRow,
    product: Optional[data_manager.ProductRow],
) -> Optional[SaleFigures]:
    """Revenue, cost, profit and margin of one sale, or ``None`` for non-sales."""
    if not is_sale(transaction):
        return None
    selling = product.selling_price if product else ZERO
    purchase = product.purchase_price if product else ZERO
    revenue = transaction.quantity * selling
    cost = transaction.quantity * purchase
    profit = revenue - cost
    margin = (profit / revenue * 100).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP) if revenue > 0 else ZERO
    return SaleFigures(revenue=revenue, cost=cost, profit=profit, margin_percent=margin)


def summarize_series(values: Sequence[Decimal]) -> SeriesSummary:
    """Total, mean, extremes and trend of a daily revenue or profit series.

    The trend is the percentage change of the mean of the second half of the
    series over the mean of the first half; it is zero when the first half
    is empty or averages zero or less.
    """
    if not values:
        return SeriesSummary(total=ZERO, average=ZERO, highest=ZERO, lowest=ZERO, trend_percent=ZERO)

    total = sum(values, ZERO)
    midpoint = len(values) // 2
    first_half, second_half = values[:midpoint], values[midpoint:]
    trend = ZERO
    if first_half:
        first_avg = sum(first_half, ZERO) / len(first_half)
        second_avg = sum(second_half, ZERO) / len(second_half)
        if first_avg > 0:
            trend = (second_avg - first_avg) / first_avg * 100

    return SeriesSummary(
        total=total,
        average=total / len(values),
        highest=max(values),
        lowest=min(values),
        trend_percent=trend,
    )

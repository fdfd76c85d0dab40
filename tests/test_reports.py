"""Tests for the ledger query layer and the revenue/profit aggregation."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

import pytest

from stockbook import core_logic, data_manager, reports
from stockbook.constants import UNCATEGORIZED, OutReason, TransactionType

from conftest import at, movement

IN = TransactionType.IN
OUT = TransactionType.OUT
ADJUST = TransactionType.ADJUST

# (day, hour, product, type, quantity, notes)
SHOP_LEDGER = [
    ("2024-01-14", 10, "P1", OUT, 2, "Sold"),
    ("2024-01-14", 11, "P2", OUT, 5, "Sold - walk-in"),
    ("2024-01-14", 12, "P1", OUT, 1, "Damaged - dropped"),
    ("2024-01-15", 9, "P2", IN, 10, "Delivery"),
    ("2024-01-15", 10, "P1", OUT, 3, "Sold"),
    ("2024-01-15", 11, "P3", OUT, 4, "Sold"),
    ("2024-01-17", 10, "P2", OUT, 1, "Sold"),
]


@pytest.fixture
def shop(memory_context, seed_product) -> core_logic.RuntimeContext:
    """A small shop with three products and a week of movements."""

    stock = Decimal("50")
    seed_product(memory_context, "P1", product_name="Cola", category="Drinks", current_stock=stock,
                 selling_price=Decimal("100"), purchase_price=Decimal("60"))
    seed_product(memory_context, "P2", product_name="Chips", category="Snacks", current_stock=stock,
                 selling_price=Decimal("30"), purchase_price=Decimal("20"))
    seed_product(memory_context, "P3", product_name="Soap", current_stock=stock,
                 selling_price=Decimal("10"), purchase_price=Decimal("4"))
    for day, hour, product_id, transaction_type, quantity, notes in SHOP_LEDGER:
        core_logic.record_transaction(
            memory_context, movement(product_id, transaction_type, quantity, when=at(day, hour), notes=notes)
        ).unwrap()
    return memory_context


def _ids(entries: list) -> list:
    return [entry.transaction.transaction_id for entry in entries]


# ---------------------------------------------------------------------------
# Query layer
# ---------------------------------------------------------------------------


def test_transactions_for_product_is_newest_first_and_bounded(shop):
    entries = reports.transactions_for_product(shop, "P1", limit=2)

    assert _ids(entries) == [5, 3]
    assert {entry.product_name for entry in entries} == {"Cola"}


def test_transactions_for_unknown_product_is_empty(shop):
    assert reports.transactions_for_product(shop, "P404") == []


def test_recent_transactions_spans_products(shop):
    assert _ids(reports.recent_transactions(shop, limit=3)) == [7, 6, 5]
    assert reports.recent_transactions(shop, limit=0) == []


def test_negative_limits_are_rejected(shop):
    with pytest.raises(ValueError):
        reports.recent_transactions(shop, limit=-1)
    with pytest.raises(ValueError):
        reports.transactions_for_product(shop, "P1", limit=-1)


def test_all_transactions_filters_by_inclusive_days_and_type(shop):
    assert _ids(reports.all_transactions(shop, "2024-01-15", "2024-01-15")) == [6, 5, 4]
    assert _ids(reports.all_transactions(shop, date(2024, 1, 15), None, OUT)) == [7, 6, 5]
    assert _ids(reports.all_transactions(shop, transaction_type="IN")) == [4]
    assert _ids(reports.all_transactions(shop, date_to="2024-01-14")) == [3, 2, 1]


def test_all_transactions_rejects_unknown_types(shop):
    with pytest.raises(ValueError):
        reports.all_transactions(shop, transaction_type="MOVE")


def test_all_transactions_is_capped(memory_context, seed_product):
    seed_product(memory_context, current_stock=Decimal("0"))
    for index in range(105):
        core_logic.record_transaction(
            memory_context, movement("P001", IN, 1, when=at("2024-01-15", index // 60, index % 60))
        ).unwrap()

    entries = reports.all_transactions(memory_context)

    assert len(entries) == 100
    assert entries[0].transaction.transaction_id == 105
    assert entries[-1].transaction.transaction_id == 6


def test_entries_for_removed_products_have_no_name(shop):
    data_manager.delete_row(shop.workbook, data_manager.PRODUCTS_SHEET, 4)
    core_logic._invalidate_cache(shop, "products")

    entry = reports.all_transactions(shop, "2024-01-15", "2024-01-15")[0]

    assert entry.transaction.product_id == "P3"
    assert entry.product_name is None


def test_transaction_stats_counts_today_and_trailing_week(memory_context, seed_product):
    seed_product(memory_context)
    for day, transaction_type in (
        ("2024-01-07", OUT),
        ("2024-01-08", IN),
        ("2024-01-15", IN),
        ("2024-01-15", OUT),
        ("2024-01-15", ADJUST),
    ):
        core_logic.record_transaction(memory_context, movement("P001", transaction_type, 1, when=at(day))).unwrap()

    stats = reports.transaction_stats(memory_context, today=date(2024, 1, 15))

    assert stats == reports.TransactionStats(total_in=2, total_out=2, today_in=1, today_out=1, recent_count=4)


# ---------------------------------------------------------------------------
# Aggregation engine
# ---------------------------------------------------------------------------


def test_only_sold_out_rows_are_sales(shop):
    sales = [row.transaction_id for row in core_logic.list_transactions(shop) if reports.is_sale(row)]
    assert sales == [1, 2, 5, 6, 7]


def test_revenue_and_profit_of_two_sales(shop):
    """Two sales of 2 and 3 units at 100/60 make 500 revenue and 200 profit."""

    drinks = reports.category_breakdown(shop, "2024-01-01", "2024-01-31")[0]

    assert drinks.category == "Drinks"
    assert drinks.revenue == Decimal("500")
    assert drinks.profit == Decimal("200")
    assert drinks.transaction_count == 2
    assert drinks.product_count == 1


def test_financial_stats_splits_today(shop):
    stats = reports.financial_stats(shop, today=date(2024, 1, 15))

    assert stats == reports.FinancialStats(
        total_revenue=Decimal("720"),
        total_profit=Decimal("284"),
        today_revenue=Decimal("340"),
        today_profit=Decimal("144"),
    )


def test_financial_stats_for_range_is_inclusive(shop):
    assert reports.financial_stats_for_range(shop, "2024-01-15", "2024-01-15") == reports.RangeStats(
        total_revenue=Decimal("340"), total_profit=Decimal("144"), transaction_count=2
    )
    assert reports.financial_stats_for_range(shop, date(2024, 1, 16), date(2024, 1, 16)).transaction_count == 0


def test_range_bounds_accept_datetimes(shop):
    """Datetime bounds cover their whole calendar day."""

    same_day = reports.financial_stats_for_range(shop, datetime(2024, 1, 15, 23, 59), datetime(2024, 1, 15, 0, 5))

    assert same_day == reports.financial_stats_for_range(shop, "2024-01-15", "2024-01-15")
    assert _ids(reports.all_transactions(shop, date_from=datetime(2024, 1, 17, 18))) == [7]


def test_sale_marker_ignores_case(memory_context, seed_product):
    seed_product(memory_context)
    for hour, notes in ((9, "sold - walk-in"), (10, "SOLD"), (11, "Damaged")):
        core_logic.record_transaction(
            memory_context, movement("P001", OUT, 1, when=at("2024-01-15", hour), notes=notes)
        ).unwrap()

    assert reports.financial_stats_for_range(memory_context, "2024-01-15", "2024-01-15") == reports.RangeStats(
        total_revenue=Decimal("200"), total_profit=Decimal("80"), transaction_count=2
    )


def test_daily_breakdown_omits_quiet_days_and_sums_to_range(shop):
    rows = reports.daily_breakdown(shop, "2024-01-14", "2024-01-17")
    totals = reports.financial_stats_for_range(shop, "2024-01-14", "2024-01-17")

    assert [(row.day, row.revenue, row.profit, row.transaction_count) for row in rows] == [
        (date(2024, 1, 14), Decimal("350"), Decimal("130"), 2),
        (date(2024, 1, 15), Decimal("340"), Decimal("144"), 2),
        (date(2024, 1, 17), Decimal("30"), Decimal("10"), 1),
    ]
    assert sum((row.revenue for row in rows), Decimal("0")) == totals.total_revenue
    assert sum((row.profit for row in rows), Decimal("0")) == totals.total_profit
    assert sum(row.transaction_count for row in rows) == totals.transaction_count


def test_fill_daily_gaps_adds_zero_rows(shop):
    rows = reports.fill_daily_gaps(reports.daily_breakdown(shop, "2024-01-14", "2024-01-17"), "2024-01-13", "2024-01-17")

    assert [row.day.day for row in rows] == [13, 14, 15, 16, 17]
    assert rows[0] == reports.DailyFigures(day=date(2024, 1, 13), revenue=Decimal("0"), profit=Decimal("0"),
                                           transaction_count=0)
    assert rows[3].transaction_count == 0


def test_category_breakdown_groups_uncategorized_and_sums_to_range(shop):
    rows = reports.category_breakdown(shop, "2024-01-14", "2024-01-17")
    totals = reports.financial_stats_for_range(shop, "2024-01-14", "2024-01-17")

    assert [(row.category, row.revenue, row.profit, row.transaction_count) for row in rows] == [
        ("Drinks", Decimal("500"), Decimal("200"), 2),
        ("Snacks", Decimal("180"), Decimal("60"), 2),
        (UNCATEGORIZED, Decimal("40"), Decimal("24"), 1),
    ]
    assert sum((row.revenue for row in rows), Decimal("0")) == totals.total_revenue
    assert sum((row.profit for row in rows), Decimal("0")) == totals.total_profit


def test_reports_use_current_prices(shop):
    """A price change re-prices past sales."""

    data_manager.update_product(shop.workbook, "P1", field_values={"SellingPrice": Decimal("120")})
    core_logic._invalidate_cache(shop, "products")

    drinks = reports.category_breakdown(shop, "2024-01-14", "2024-01-17")[0]

    assert drinks.revenue == Decimal("600")
    assert drinks.profit == Decimal("300")


def test_sales_of_removed_products_count_without_money(shop):
    data_manager.delete_row(shop.workbook, data_manager.PRODUCTS_SHEET, 4)
    core_logic._invalidate_cache(shop, "products")

    totals = reports.financial_stats_for_range(shop, "2024-01-14", "2024-01-17")
    uncategorized = reports.category_breakdown(shop, "2024-01-14", "2024-01-17")[-1]

    assert totals == reports.RangeStats(total_revenue=Decimal("680"), total_profit=Decimal("260"), transaction_count=5)
    assert uncategorized == reports.CategoryFigures(
        category=UNCATEGORIZED, revenue=Decimal("0"), profit=Decimal("0"), product_count=1, transaction_count=1
    )


def test_reports_do_not_mutate_the_workbook(shop):
    before = (core_logic.list_products(shop), core_logic.list_transactions(shop))

    reports.financial_stats(shop, today=date(2024, 1, 15))
    reports.daily_breakdown(shop, "2024-01-01", "2024-01-31")
    reports.category_breakdown(shop, "2024-01-01", "2024-01-31")
    reports.transaction_stats(shop, today=date(2024, 1, 15))

    assert (core_logic.list_products(shop), core_logic.list_transactions(shop)) == before
    assert data_manager.read_sequence(shop.workbook) == len(SHOP_LEDGER) + 1


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "notes, expected_reason, expected_notes",
    [
        ("Sold - customer A", OutReason.SOLD, "customer A"),
        ("Damaged", OutReason.DAMAGED, ""),
        ("Expired-batch L4", OutReason.EXPIRED, "batch L4"),
        ("broken bottle", OutReason.OTHER, "broken bottle"),
        (None, OutReason.OTHER, ""),
    ],
)
def test_parse_out_reason(notes, expected_reason, expected_notes):
    info = reports.parse_out_reason(notes, OUT)
    assert info == reports.OutReasonInfo(reason=expected_reason, additional_notes=expected_notes)


def test_parse_out_reason_ignores_other_types():
    assert reports.parse_out_reason("Sold", IN) is None
    assert reports.parse_out_reason("Sold", "ADJUST") is None


def test_sale_figures_reports_margin(shop):
    transaction = core_logic.get_transaction(shop, 1).unwrap()
    product = core_logic.get_product(shop, "P1").unwrap()

    figures = reports.sale_figures(transaction, product)

    assert figures == reports.SaleFigures(
        revenue=Decimal("200"), cost=Decimal("120"), profit=Decimal("80"), margin_percent=Decimal("40.0")
    )
    assert figures.is_profitable
    assert reports.sale_figures(core_logic.get_transaction(shop, 3).unwrap(), product) is None


def test_summarize_series():
    summary = reports.summarize_series([Decimal("10"), Decimal("10"), Decimal("20"), Decimal("20")])

    assert summary.total == Decimal("60")
    assert summary.average == Decimal("15")
    assert summary.highest == Decimal("20")
    assert summary.lowest == Decimal("10")
    assert summary.trend_percent == Decimal("100")


def test_summarize_series_edge_cases():
    assert reports.summarize_series([]).total == Decimal("0")
    single = reports.summarize_series([Decimal("5")])
    assert single.average == Decimal("5")
    assert single.trend_percent == Decimal("0")

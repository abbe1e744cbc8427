from datetime import date, datetime
from decimal import Decimal
from pathlib import Path

import pytest
from conftest import make_customer, make_product, ship
from openpyxl import Workbook, load_workbook

from iom.domain.errors import NotFoundError, UnauthorizedError, ValidationError
from iom.services.reporting_service import day_window


@pytest.fixture
def sales_history(container, actor, clock):
    """Two orders inside 2024-03-15..2024-03-20, one just after, one never shipped."""
    alice = make_customer(container, actor, "C-A")
    bob = make_customer(container, actor, "C-B")
    make_product(container, actor, "SKU-R", stock=10, cost="60.00")

    ship(container, actor, alice, [{"sku": "SKU-R", "quantity": 2, "unit_price": "100.00"}])
    clock.set(datetime(2024, 3, 20, 23, 59, 59, 999999))
    ship(container, actor, bob, [{"sku": "SKU-R", "quantity": 1, "unit_price": "100.00"}])
    clock.set(datetime(2024, 3, 21, 0, 0, 0))
    ship(container, actor, alice, [{"sku": "SKU-R", "quantity": 1, "unit_price": "100.00"}])
    container.sales.create_sales_order(actor, alice, [{"sku": "SKU-R", "quantity": 1, "unit_price": "100.00"}])
    return alice, bob


def test_day_window_is_inclusive_of_both_days():
    start, end = day_window("2024-03-15", date(2024, 3, 20))
    assert start == datetime(2024, 3, 15, 0, 0, 0)
    assert end == datetime(2024, 3, 20, 23, 59, 59, 999999)

    with pytest.raises(ValidationError):
        day_window("2024-03-21", "2024-03-20")
    with pytest.raises(ValidationError):
        day_window("not-a-date", "2024-03-20")


def test_summary_covers_completed_orders_shipped_in_window(container, sales_history):
    s = container.reporting.summarize_completed_sales("2024-03-15", "2024-03-20")

    assert s.order_count == 2
    assert s.total_sales == Decimal("300.00")
    assert s.total_cost == Decimal("180.00")
    assert s.gross_profit == Decimal("120.00")
    assert s.gross_margin == Decimal("40.00")
    assert all(o.status.value == "completed" for o in s.orders)


def test_summary_of_empty_window_has_zero_margin(container, sales_history):
    s = container.reporting.summarize_completed_sales("2024-01-01", "2024-01-31")

    assert s.order_count == 0
    assert s.total_sales == Decimal("0.00")
    assert s.gross_margin == Decimal("0.00")
    assert s.orders == []


def test_gross_margin_rounds_half_up(container, actor):
    customer = make_customer(container, actor)
    make_product(container, actor, "SKU-M", stock=3, cost="2.00")

    ship(container, actor, customer, [{"sku": "SKU-M", "quantity": 1, "unit_price": "3.00"}])

    # 1.00 / 3.00 = 33.333...%
    assert container.reporting.summarize_completed_sales("2024-03-15", "2024-03-15").gross_margin == Decimal("33.33")


def test_customer_statement_filters_by_customer(container, sales_history):
    alice, bob = sales_history

    statement = container.reporting.customer_statement(bob, "2024-03-01", "2024-03-31")
    assert statement.order_count == 1
    assert statement.total_sales == Decimal("100.00")
    assert container.reporting.customer_statement(alice, "2024-03-01", "2024-03-31").order_count == 2
    with pytest.raises(NotFoundError):
        container.reporting.customer_statement(999, "2024-03-01", "2024-03-31")


def test_low_stock_products_ordered_by_headroom(container, actor):
    make_product(container, actor, "SKU-PLENTY", stock=50, cost="1.00", low_stock_threshold=5)
    make_product(container, actor, "SKU-SHORT", stock=1, cost="1.00", low_stock_threshold=10)
    make_product(container, actor, "SKU-EDGE", stock=4, cost="1.00", low_stock_threshold=4)

    assert [p.sku for p in container.reporting.low_stock_products(limit=2)] == ["SKU-SHORT", "SKU-EDGE"]


def test_export_financial_summary_excel(container, sales_history, tmp_path: Path):
    path = tmp_path / "summary.xlsx"

    summary = container.reporting.export_financial_summary_excel(str(path), "2024-03-15", "2024-03-20")

    assert summary.order_count == 2
    wb = load_workbook(path)
    assert wb.sheetnames == ["Summary", "Order Detail"]
    ws = wb["Summary"]
    assert ws["B3"].value == "2024-03-15  ->  2024-03-20"
    assert ws["B5"].value == 2
    assert ws["B6"].value == pytest.approx(300.0)
    assert ws["B8"].value == pytest.approx(120.0)

    detail = list(wb["Order Detail"].iter_rows(min_row=2, values_only=True))
    assert len(detail) == 2
    assert detail[0][3] == "SKU-R"
    assert detail[0][7] == pytest.approx(60.0)
    assert detail[0][9] == pytest.approx(80.0)


# ---------- stocktake import ----------
def _workbook(tmp_path: Path, rows, header=("sku", "counted_stock", "note")) -> str:
    wb = Workbook()
    ws = wb.active
    ws.append(list(header))
    for row in rows:
        ws.append(list(row))
    path = tmp_path / "stocktake.xlsx"
    wb.save(path)
    return str(path)


def test_stocktake_import_adjusts_and_counts_skips(container, actor, tmp_path: Path):
    a = make_product(container, actor, "SKU-A", stock=10, cost="1.00")
    b = make_product(container, actor, "SKU-B", stock=3, cost="1.00")
    path = _workbook(
        tmp_path,
        [
            ("SKU-A", 8, "shelf 4"),
            ("SKU-GHOST", 1, None),
            ("SKU-B", None, None),
            ("SKU-B", -2, None),
            ("SKU-B", 2.5, None),
            (None, 5, None),
            ("SKU-B", 6.0, None),
        ],
    )

    result = container.excel.import_stocktake_excel(actor, path)

    assert result.skipped == 5
    assert result.applied == 2
    assert container.inventory.get_product(a).current_stock == 8
    assert container.inventory.get_product(b).current_stock == 6
    latest = container.ledger.history_for_product(a)[0]
    assert latest.change == -2
    assert latest.note == "shelf 4"
    assert container.ledger.history_for_product(b)[0].note == "Stocktake import"


def test_stocktake_import_requires_headers_and_actor(container, actor, tmp_path: Path):
    make_product(container, actor, "SKU-A")

    with pytest.raises(ValidationError, match="counted_stock"):
        container.excel.import_stocktake_excel(actor, _workbook(tmp_path, [("SKU-A", 1)], header=("sku", "qty")))
    with pytest.raises(UnauthorizedError):
        container.excel.import_stocktake_excel(None, _workbook(tmp_path, [("SKU-A", 1)]))


def test_stocktake_import_without_usable_rows(container, actor, tmp_path: Path):
    result = container.excel.import_stocktake_excel(actor, _workbook(tmp_path, [("SKU-NONE", 1)]))

    assert result.results == []
    assert result.skipped == 1

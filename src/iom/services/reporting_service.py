from __future__ import annotations

import logging
import sqlite3
from datetime import date, datetime, time
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from openpyxl import Workbook
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.table import Table, TableStyleInfo

from iom.domain.errors import NotFoundError, ValidationError
from iom.domain.models import FinancialSummary, Product, SalesOrder
from iom.domain.money import CENT

log = logging.getLogger(__name__)

DateLike = date | datetime | str


def _as_date(value: DateLike) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError as exc:
        raise ValidationError(f"Invalid date: {value!r}") from exc


def day_window(start_date: DateLike, end_date: DateLike) -> tuple[datetime, datetime]:
    """[start 00:00:00, end 23:59:59.999999], both days inclusive."""
    start, end = _as_date(start_date), _as_date(end_date)
    if start > end:
        raise ValidationError("Start date must not be after end date.")
    return datetime.combine(start, time.min), datetime.combine(end, time.max)


def summarize(orders: list[SalesOrder]) -> FinancialSummary:
    total_sales = sum((o.total_amount for o in orders), Decimal("0.00"))
    total_cost = sum((o.total_cost or Decimal("0.00") for o in orders), Decimal("0.00"))
    gross_profit = total_sales - total_cost
    if total_sales:
        margin = (gross_profit / total_sales * 100).quantize(CENT, rounding=ROUND_HALF_UP)
    else:
        margin = Decimal("0.00")
    return FinancialSummary(
        total_sales=total_sales,
        total_cost=total_cost,
        gross_profit=gross_profit,
        gross_margin=margin,
        order_count=len(orders),
        orders=orders,
    )


class ReportingService:
    def __init__(self, repo):
        self.repo = repo

    def _completed_between(self, start_date: DateLike, end_date: DateLike, customer_id: Optional[int] = None) -> list[SalesOrder]:
        start, end = day_window(start_date, end_date)
        try:
            return self.repo.list_completed_sales_between(start, end, customer_id)
        except sqlite3.Error:
            log.exception("completed_sales_read_failed start=%s end=%s", start, end)
            return []

    def summarize_completed_sales(self, start_date: DateLike, end_date: DateLike) -> FinancialSummary:
        """Completed orders whose shipment falls inside the window."""
        summary = summarize(self._completed_between(start_date, end_date))
        log.info(
            "financial_summary start=%s end=%s orders=%s total_sales=%s gross_profit=%s",
            start_date,
            end_date,
            summary.order_count,
            summary.total_sales,
            summary.gross_profit,
        )
        return summary

    def customer_statement(self, customer_id: int, start_date: DateLike, end_date: DateLike) -> FinancialSummary:
        if not self.repo.get_customer(int(customer_id)):
            raise NotFoundError("Customer not found.")
        return summarize(self._completed_between(start_date, end_date, int(customer_id)))

    def low_stock_products(self, limit: int = 10) -> list[Product]:
        try:
            return self.repo.list_low_stock(limit)
        except sqlite3.Error:
            log.exception("low_stock_read_failed")
            return []

    def export_financial_summary_excel(self, path: str, start_date: DateLike, end_date: DateLike) -> FinancialSummary:
        summary = self.summarize_completed_sales(start_date, end_date)
        start, end = day_window(start_date, end_date)
        wb = Workbook()

        def money(cell):
            cell.number_format = "#,##0.00"

        def bold_row(ws, r):
            for c in ws[r]:
                c.font = Font(bold=True)

        def set_widths(ws, widths: dict[str, int]):
            for col, w in widths.items():
                ws.column_dimensions[col].width = w

        # -------- 1) Summary --------
        ws = wb.active
        ws.title = "Summary"
        ws["A1"] = "Financial Summary"
        ws["A1"].font = Font(bold=True, size=14)

        ws["A3"] = "Window"
        ws["B3"] = f"{start.date().isoformat()}  ->  {end.date().isoformat()}"

        rows = [
            ("Completed orders", summary.order_count, "int"),
            ("Total sales", float(summary.total_sales), "money"),
            ("Total cost", float(summary.total_cost), "money"),
            ("Gross profit", float(summary.gross_profit), "money"),
            ("Gross margin %", float(summary.gross_margin), "money"),
        ]
        for i, (label, val, kind) in enumerate(rows):
            r = 5 + i
            ws[f"A{r}"] = label
            ws[f"B{r}"] = val
            if kind == "money":
                money(ws[f"B{r}"])
        set_widths(ws, {"A": 24, "B": 34})

        # -------- 2) Order Detail --------
        ws2 = wb.create_sheet("Order Detail")
        ws2.append([
            "Order", "Shipped At", "Customer",
            "SKU", "Product Name", "Qty",
            "Unit Price", "Unit Cost", "Line Total", "Line Profit",
        ])
        bold_row(ws2, 1)

        out_row = 2
        for o in summary.orders:
            for it in o.items:
                unit_cost = it.unit_cost or Decimal("0.00")
                ws2.append([
                    o.order_number,
                    o.shipped_at.isoformat(sep=" ", timespec="seconds") if o.shipped_at else "",
                    o.customer_info.name,
                    it.sku, it.name, int(it.quantity),
                    float(it.unit_price), float(unit_cost),
                    float(it.subtotal), float(it.subtotal - unit_cost * it.quantity),
                ])
                for col in "GHIJ":
                    money(ws2[f"{col}{out_row}"])
                out_row += 1

        ws2.freeze_panes = "A2"
        set_widths(ws2, {
            "A": 20, "B": 20, "C": 26,
            "D": 14, "E": 34, "F": 6,
            "G": 14, "H": 14, "I": 14, "J": 14,
        })
        if ws2.max_row >= 2:
            tab = Table(displayName="OrderDetail", ref=f"A1:{get_column_letter(10)}{ws2.max_row}")
            tab.tableStyleInfo = TableStyleInfo(name="TableStyleMedium9", showRowStripes=True, showColumnStripes=False)
            ws2.add_table(tab)

        wb.save(path)
        log.info("financial_summary_exported path=%s orders=%s", path, summary.order_count)
        return summary

from __future__ import annotations

import logging
import sqlite3
from collections import Counter
from decimal import Decimal
from typing import Callable, Iterable, Mapping, Optional

from iom.config import RetryPolicy
from iom.domain.errors import InsufficientStockError, NotFoundError, ValidationError
from iom.domain.models import Actor, Address, Product, SalesOrder
from iom.domain.money import to_cents, to_money
from iom.domain.status import HistoryType, PaymentStatus, PriceTier, SalesOrderStatus, ensure_editable, ensure_transition
from iom.domain.validation import parse_amount, parse_quantity, parse_sku
from iom.repositories.unit_of_work import SqliteUnitOfWork, UnitOfWork
from iom.services.concurrency import require_actor, run_with_retry
from iom.services.ledger_service import StockLedger

log = logging.getLogger("iom.sales")


def _address(value: Address | Mapping | None) -> Optional[Address]:
    if value is None or isinstance(value, Address):
        return value
    try:
        return Address(**value)
    except TypeError as exc:
        raise ValidationError(f"Invalid shipping address: {exc}") from exc


_NOTE_FIELDS = ("invoice_number", "shipping_note", "internal_note")


def _parse_lines(items: Iterable[dict]) -> list[tuple[str, int, Optional[Decimal]]]:
    lines = []
    for it in items:
        price = it.get("unit_price")
        lines.append(
            (
                parse_sku(it.get("sku")),
                parse_quantity(it.get("quantity")),
                None if price is None else parse_amount(price, "Unit price"),
            )
        )
    if not lines:
        raise ValidationError("Sales order has no items.")
    return lines


def _snapshot_lines(uow: UnitOfWork, lines, level: PriceTier) -> tuple[list[dict], Decimal]:
    """Item rows priced at ``level`` where no unit price was given, plus their total."""
    rows = []
    total = Decimal("0.00")
    for sku, qty, unit_price in lines:
        product = uow.get_product_by_sku(sku)
        if not product:
            raise NotFoundError(f"Product not found: {sku}")
        if unit_price is None:
            unit_price = product.prices.for_tier(level)
        subtotal = to_money(unit_price * qty)
        total += subtotal
        rows.append(
            {
                "sku": product.sku,
                "name": product.name,
                "spec": product.spec,
                "quantity": qty,
                "unit_price_cents": to_cents(unit_price),
                "subtotal_cents": to_cents(subtotal),
            }
        )
    return rows, total


def _ship_columns(address: Address) -> dict:
    return {
        "ship_zip": address.zip_code,
        "ship_city": address.city,
        "ship_district": address.district,
        "ship_street": address.street,
    }


class SalesService:
    def __init__(
        self,
        repo,
        ledger: StockLedger,
        uow_factory: Callable[[], UnitOfWork] | None = None,
        retry_policy: RetryPolicy | None = None,
    ):
        self.repo = repo
        self.ledger = ledger
        self.uow_factory = uow_factory or (lambda: SqliteUnitOfWork(repo))
        self.retry_policy = retry_policy or RetryPolicy()

    def create_sales_order(
        self,
        actor: Actor | None,
        customer_id: int,
        items: Iterable[dict],
        shipping_address: Address | Mapping | None = None,
        *,
        invoice_number: Optional[str] = None,
        shipping_note: Optional[str] = None,
        internal_note: Optional[str] = None,
    ) -> int:
        """
        items: [{sku, quantity, unit_price?}]

        Without ``unit_price`` the product's price for the customer's tier is
        used. Stock is not reserved; it is checked again at shipment.
        """
        actor = require_actor(actor)
        lines = _parse_lines(items)
        address = _address(shipping_address)

        def _op() -> tuple[int, str]:
            with self.uow_factory() as uow:
                customer = uow.get_customer(int(customer_id))
                if not customer:
                    raise NotFoundError("Customer not found.")
                rows, total = _snapshot_lines(uow, lines, customer.level)

                number = uow.next_order_number("SO", "sales_orders")
                order_id = uow.insert_sales_order(
                    {
                        "order_number": number,
                        "customer_id": customer.id,
                        "customer_name": customer.name,
                        "customer_level": customer.level.value,
                        "customer_tax_id": customer.tax_id,
                        **_ship_columns(address or customer.address),
                        "status": SalesOrderStatus.PENDING_APPROVAL.value,
                        "payment_status": PaymentStatus.UNPAID.value,
                        "total_amount_cents": to_cents(total),
                        "invoice_number": invoice_number,
                        "shipping_note": shipping_note,
                        "internal_note": internal_note,
                        "created_by": actor.user_id,
                    },
                    rows,
                )
                return order_id, number

        order_id, number = run_with_retry(_op, self.retry_policy)
        log.info("sales_order_created order=%s items=%s actor=%s", number, len(lines), actor.user_id)
        return order_id

    def update_sales_order(
        self,
        actor: Actor | None,
        order_id: int,
        items: Optional[Iterable[dict]] = None,
        shipping_address: Address | Mapping | None = None,
        **notes,
    ) -> SalesOrder:
        """
        Edits an order still pending approval. New ``items`` replace every
        line and are re-snapshotted from the catalog at the customer's tier;
        ``notes`` may set invoice_number, shipping_note and internal_note.
        """
        actor = require_actor(actor)
        unknown = set(notes) - set(_NOTE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown sales order fields: {sorted(unknown)}")
        lines = None if items is None else _parse_lines(items)
        address = _address(shipping_address)

        def _op() -> SalesOrder:
            with self.uow_factory() as uow:
                order = uow.get_sales_order(int(order_id))
                if not order:
                    raise NotFoundError("Sales order not found.")
                ensure_editable("Sales order", order.status, SalesOrderStatus.PENDING_APPROVAL)

                fields = dict(notes)
                if address is not None:
                    fields.update(_ship_columns(address))
                if lines is not None:
                    rows, total = _snapshot_lines(uow, lines, order.customer_info.level)
                    uow.replace_sales_order_items(order.id, rows)
                    fields["total_amount_cents"] = to_cents(total)
                uow.update_sales_order(order.id, fields)
                return uow.get_sales_order(order.id)

        order = run_with_retry(_op, self.retry_policy)
        log.info("sales_order_updated order=%s items=%s actor=%s", order.order_number, len(order.items), actor.user_id)
        return order

    def _move(self, actor: Actor, order_id: int, target: SalesOrderStatus, stamp: str) -> SalesOrder:
        def _op() -> SalesOrder:
            with self.uow_factory() as uow:
                order = uow.get_sales_order(int(order_id))
                if not order:
                    raise NotFoundError("Sales order not found.")
                ensure_transition("Sales order", order.status, target)
                uow.update_sales_order(
                    order.id,
                    {"status": target.value, f"{stamp}_by": actor.user_id, f"{stamp}_at": uow.now()},
                )
                return uow.get_sales_order(order.id)

        return run_with_retry(_op, self.retry_policy)

    def approve_sales_order(self, actor: Actor | None, order_id: int) -> SalesOrder:
        actor = require_actor(actor)
        order = self._move(actor, order_id, SalesOrderStatus.PENDING_SHIPMENT, "approved")
        log.info("sales_order_approved order=%s actor=%s", order.order_number, actor.user_id)
        return order

    def cancel_sales_order(self, actor: Actor | None, order_id: int) -> SalesOrder:
        actor = require_actor(actor)
        order = self._move(actor, order_id, SalesOrderStatus.CANCELLED, "cancelled")
        log.info("sales_order_cancelled order=%s actor=%s", order.order_number, actor.user_id)
        return order

    def ship_sales_order(self, actor: Actor | None, order_id: int) -> SalesOrder:
        """
        Deducts every line from stock and freezes unit costs, totals and
        gross profit on the order. All lines are checked before any write.
        """
        actor = require_actor(actor)

        def _op() -> SalesOrder:
            with self.uow_factory() as uow:
                order = uow.get_sales_order(int(order_id))
                if not order:
                    raise NotFoundError("Sales order not found.")
                ensure_transition("Sales order", order.status, SalesOrderStatus.COMPLETED)

                # Aggregate repeated skus so two lines cannot oversell together
                needed: Counter[str] = Counter()
                for item in order.items:
                    needed[item.sku] += item.quantity

                products: dict[str, Product] = {}
                for sku, qty in needed.items():
                    product = uow.get_product_by_sku(sku)
                    if not product:
                        raise NotFoundError(f"Product not found: {sku}")
                    if product.current_stock < qty:
                        raise InsufficientStockError(sku, product.current_stock, qty)
                    products[sku] = product

                total_cost = Decimal("0.00")
                unit_costs = []
                for line_no, item in enumerate(order.items, start=1):
                    product = products[item.sku]
                    self.ledger.apply(
                        uow,
                        product.id,
                        -item.quantity,
                        HistoryType.SALES_OUT,
                        actor=actor,
                        note=f"Shipped sales order {order.order_number}",
                        related_doc_id=order.id,
                    )
                    unit_costs.append((line_no, to_cents(product.average_cost)))
                    total_cost += product.average_cost * item.quantity

                total_cost = to_money(total_cost)
                uow.set_sales_item_unit_costs(order.id, unit_costs)
                uow.update_sales_order(
                    order.id,
                    {
                        "status": SalesOrderStatus.COMPLETED.value,
                        "total_cost_cents": to_cents(total_cost),
                        "gross_profit_cents": to_cents(order.total_amount - total_cost),
                        "shipped_by": actor.user_id,
                        "shipped_at": uow.now(),
                    },
                )
                return uow.get_sales_order(order.id)

        shipped = run_with_retry(_op, self.retry_policy)
        log.info(
            "sales_order_shipped order=%s total=%s total_cost=%s gross_profit=%s actor=%s",
            shipped.order_number,
            shipped.total_amount,
            shipped.total_cost,
            shipped.gross_profit,
            actor.user_id,
        )
        return shipped

    def update_payment_status(self, actor: Actor | None, order_id: int, payment_status: PaymentStatus | str) -> SalesOrder:
        actor = require_actor(actor)
        try:
            status = PaymentStatus(payment_status)
        except ValueError as exc:
            raise ValidationError(f"Unknown payment status: {payment_status}") from exc

        def _op() -> SalesOrder:
            with self.uow_factory() as uow:
                order = uow.get_sales_order(int(order_id))
                if not order:
                    raise NotFoundError("Sales order not found.")
                if order.status == SalesOrderStatus.CANCELLED:
                    raise ValidationError("Cancelled orders cannot take payments.")
                uow.update_sales_order(order.id, {"payment_status": status.value})
                return uow.get_sales_order(order.id)

        order = run_with_retry(_op, self.retry_policy)
        log.info("payment_status_updated order=%s status=%s actor=%s", order.order_number, status.value, actor.user_id)
        return order

    def list_sales_orders(self) -> list[SalesOrder]:
        try:
            return self.repo.list_sales_orders()
        except sqlite3.Error:
            log.exception("sales_orders_read_failed")
            return []

    def get_sales_order(self, order_id: int) -> SalesOrder:
        order = self.repo.get_sales_order(int(order_id))
        if not order:
            raise NotFoundError("Sales order not found.")
        return order

from __future__ import annotations

import logging
import sqlite3
from decimal import Decimal
from typing import Callable, Iterable, Optional

from iom.config import RetryPolicy
from iom.domain.errors import NotFoundError, ValidationError
from iom.domain.models import Actor, PurchaseOrder
from iom.domain.money import to_cents, to_money
from iom.domain.status import HistoryType, PurchaseOrderStatus, ensure_editable, ensure_transition
from iom.domain.validation import parse_amount, parse_quantity, parse_sku
from iom.repositories.unit_of_work import SqliteUnitOfWork, UnitOfWork
from iom.services.concurrency import require_actor, run_with_retry
from iom.services.ledger_service import StockLedger

log = logging.getLogger(__name__)


def _parse_lines(items: Iterable[dict]) -> list[tuple[str, int, Decimal]]:
    lines = [
        (parse_sku(it.get("sku")), parse_quantity(it.get("quantity")), parse_amount(it.get("unit_cost"), "Unit cost"))
        for it in items
    ]
    if not lines:
        raise ValidationError("Purchase order has no items.")
    return lines


def _snapshot_lines(uow: UnitOfWork, lines) -> tuple[list[dict], Decimal]:
    rows = []
    total = Decimal("0.00")
    for sku, qty, unit_cost in lines:
        product = uow.get_product_by_sku(sku)
        if not product:
            raise NotFoundError(f"Product not found: {sku}")
        subtotal = to_money(unit_cost * qty)
        total += subtotal
        rows.append(
            {
                "sku": product.sku,
                "name": product.name,
                "spec": product.spec,
                "quantity": qty,
                "unit_cost_cents": to_cents(unit_cost),
                "subtotal_cents": to_cents(subtotal),
            }
        )
    return rows, total


class PurchaseService:
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

    def create_purchase_order(
        self,
        actor: Actor | None,
        supplier_id: int,
        items: Iterable[dict],
        notes: Optional[str] = None,
    ) -> int:
        """
        items: [{sku, quantity, unit_cost}]

        Stock is untouched until the order is received.
        """
        actor = require_actor(actor)
        lines = _parse_lines(items)

        def _op() -> tuple[int, str]:
            with self.uow_factory() as uow:
                supplier = uow.get_supplier(int(supplier_id))
                if not supplier:
                    raise NotFoundError("Supplier not found.")
                rows, total = _snapshot_lines(uow, lines)

                number = uow.next_order_number("PO", "purchase_orders")
                order_id = uow.insert_purchase_order(
                    {
                        "order_number": number,
                        "supplier_id": supplier.id,
                        "supplier_name": supplier.name,
                        "supplier_tax_id": supplier.tax_id,
                        "status": PurchaseOrderStatus.PENDING_RECEIPT.value,
                        "total_amount_cents": to_cents(total),
                        "notes": notes,
                        "created_by": actor.user_id,
                    },
                    rows,
                )
                return order_id, number

        order_id, number = run_with_retry(_op, self.retry_policy)
        log.info("purchase_order_created order=%s items=%s actor=%s", number, len(lines), actor.user_id)
        return order_id

    def update_purchase_order(
        self,
        actor: Actor | None,
        order_id: int,
        items: Optional[Iterable[dict]] = None,
        notes: Optional[str] = None,
    ) -> PurchaseOrder:
        """Replaces lines and/or notes of an order still pending receipt."""
        actor = require_actor(actor)
        lines = None if items is None else _parse_lines(items)

        def _op() -> PurchaseOrder:
            with self.uow_factory() as uow:
                order = uow.get_purchase_order(int(order_id))
                if not order:
                    raise NotFoundError("Purchase order not found.")
                ensure_editable("Purchase order", order.status, PurchaseOrderStatus.PENDING_RECEIPT)

                fields = {} if notes is None else {"notes": notes}
                if lines is not None:
                    rows, total = _snapshot_lines(uow, lines)
                    uow.replace_purchase_order_items(order.id, rows)
                    fields["total_amount_cents"] = to_cents(total)
                uow.update_purchase_order(order.id, fields)
                return uow.get_purchase_order(order.id)

        order = run_with_retry(_op, self.retry_policy)
        log.info("purchase_order_updated order=%s items=%s actor=%s", order.order_number, len(order.items), actor.user_id)
        return order

    def receive_purchase_order(self, actor: Actor | None, order_id: int) -> PurchaseOrder:
        """
        Books every line as purchase-in and recomputes the weighted average
        cost per product. One missing product aborts the whole receipt.
        """
        actor = require_actor(actor)

        def _op() -> PurchaseOrder:
            with self.uow_factory() as uow:
                order = uow.get_purchase_order(int(order_id))
                if not order:
                    raise NotFoundError("Purchase order not found.")
                ensure_transition("Purchase order", order.status, PurchaseOrderStatus.COMPLETED)

                for item in order.items:
                    product = uow.get_product_by_sku(item.sku)
                    if not product:
                        raise NotFoundError(f"Product not found: {item.sku}")
                    self.ledger.apply(
                        uow,
                        product.id,
                        item.quantity,
                        HistoryType.PURCHASE_IN,
                        actor=actor,
                        note=f"Received purchase order {order.order_number}",
                        related_doc_id=order.id,
                        receive_unit_cost=item.unit_cost,
                    )

                uow.update_purchase_order(
                    order.id,
                    {
                        "status": PurchaseOrderStatus.COMPLETED.value,
                        "received_by": actor.user_id,
                        "received_at": uow.now(),
                    },
                )
                return uow.get_purchase_order(order.id)

        received = run_with_retry(_op, self.retry_policy)
        log.info(
            "purchase_order_received order=%s total=%s actor=%s",
            received.order_number,
            received.total_amount,
            actor.user_id,
        )
        return received

    def cancel_purchase_order(self, actor: Actor | None, order_id: int) -> PurchaseOrder:
        actor = require_actor(actor)

        def _op() -> PurchaseOrder:
            with self.uow_factory() as uow:
                order = uow.get_purchase_order(int(order_id))
                if not order:
                    raise NotFoundError("Purchase order not found.")
                ensure_transition("Purchase order", order.status, PurchaseOrderStatus.CANCELLED)
                uow.update_purchase_order(
                    order.id,
                    {
                        "status": PurchaseOrderStatus.CANCELLED.value,
                        "cancelled_by": actor.user_id,
                        "cancelled_at": uow.now(),
                    },
                )
                return uow.get_purchase_order(order.id)

        cancelled = run_with_retry(_op, self.retry_policy)
        log.info("purchase_order_cancelled order=%s actor=%s", cancelled.order_number, actor.user_id)
        return cancelled

    def list_purchase_orders(self) -> list[PurchaseOrder]:
        try:
            return self.repo.list_purchase_orders()
        except sqlite3.Error:
            log.exception("purchase_orders_read_failed")
            return []

    def get_purchase_order(self, order_id: int) -> PurchaseOrder:
        order = self.repo.get_purchase_order(int(order_id))
        if not order:
            raise NotFoundError("Purchase order not found.")
        return order

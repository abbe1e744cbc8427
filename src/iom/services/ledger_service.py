from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional

from iom.config import RetryPolicy
from iom.domain.errors import InsufficientStockError, NotFoundError, ValidationError
from iom.domain.models import Actor, InventoryHistory
from iom.domain.money import weighted_average_cost
from iom.domain.status import HistoryType
from iom.domain.validation import parse_amount
from iom.repositories.unit_of_work import SqliteUnitOfWork, UnitOfWork
from iom.services.concurrency import require_actor, run_with_retry

log = logging.getLogger("iom.ledger")


@dataclass(frozen=True)
class LedgerCheck:
    product_id: int
    sku: str
    current_stock: int
    history_sum: int
    entries: int

    @property
    def consistent(self) -> bool:
        return self.current_stock == self.history_sum and self.current_stock >= 0


class StockLedger:
    """
    The only code path that changes ``current_stock`` / ``average_cost``.

    ``apply`` works inside a caller's unit of work so fulfillment flows can
    bundle many stock changes with their order update; ``apply_stock_change``
    is the standalone operation with its own transaction.
    """

    def __init__(
        self,
        repo,
        uow_factory: Callable[[], UnitOfWork] | None = None,
        retry_policy: RetryPolicy | None = None,
    ):
        self.repo = repo
        self.uow_factory = uow_factory or (lambda: SqliteUnitOfWork(repo))
        self.retry_policy = retry_policy or RetryPolicy()

    def apply(
        self,
        uow: UnitOfWork,
        product_id: int,
        delta: int,
        history_type: HistoryType,
        *,
        actor: Actor,
        note: Optional[str] = None,
        related_doc_id: Optional[int] = None,
        receive_unit_cost: Decimal | None = None,
    ) -> InventoryHistory:
        product = uow.get_product(product_id)
        if not product:
            raise NotFoundError(f"Product not found: {product_id}")

        new_stock = product.current_stock + int(delta)
        if new_stock < 0:
            raise InsufficientStockError(product.sku, product.current_stock, -int(delta))

        cost_before = product.average_cost
        if receive_unit_cost is None:
            cost_after = cost_before
        else:
            cost_after = weighted_average_cost(product.current_stock, cost_before, int(delta), receive_unit_cost)

        uow.write_product_stock(product, new_stock, cost_after)
        entry = uow.append_history(
            product,
            history_type,
            int(delta),
            new_stock,
            user_id=actor.user_id,
            note=note,
            cost_before=cost_before,
            cost_after=cost_after,
            related_doc_id=related_doc_id,
        )
        log.info(
            "stock_changed sku=%s type=%s change=%s stock_after=%s cost_after=%s actor=%s",
            product.sku,
            entry.type.value,
            entry.change,
            new_stock,
            cost_after,
            actor.user_id,
        )
        return entry

    def apply_stock_change(
        self,
        actor: Actor | None,
        product_id: int,
        delta: int,
        history_type: HistoryType | str,
        note: Optional[str] = None,
        related_doc_id: Optional[int] = None,
        receive_unit_cost=None,
    ) -> InventoryHistory:
        """
        Standalone stock change in its own transaction. ``purchase-in`` must
        carry ``receive_unit_cost`` so the average cost follows the receipt;
        every other type leaves the average cost untouched.
        """
        actor = require_actor(actor)
        try:
            kind = HistoryType(history_type)
        except ValueError as exc:
            raise ValidationError(f"Unknown history type: {history_type}") from exc
        if isinstance(delta, bool) or not isinstance(delta, int):
            raise ValidationError("Stock change must be an integer.")
        unit_cost = None
        if kind == HistoryType.PURCHASE_IN:
            if receive_unit_cost is None:
                raise ValidationError("Receiving needs a unit cost.")
            if delta <= 0:
                raise ValidationError("Received quantity must be > 0.")
            unit_cost = parse_amount(receive_unit_cost, "Unit cost")
        elif receive_unit_cost is not None:
            raise ValidationError("Only purchase-in changes the average cost.")

        def _op() -> InventoryHistory:
            with self.uow_factory() as uow:
                return self.apply(
                    uow,
                    product_id,
                    delta,
                    kind,
                    actor=actor,
                    note=note,
                    related_doc_id=related_doc_id,
                    receive_unit_cost=unit_cost,
                )

        return run_with_retry(_op, self.retry_policy)

    # ---------- Reads ----------
    def list_history(self, limit: int | None = None) -> list[InventoryHistory]:
        try:
            return self.repo.list_history(limit)
        except sqlite3.Error:
            log.exception("history_read_failed")
            return []

    def history_for_product(self, product_id: int) -> list[InventoryHistory]:
        try:
            return self.repo.history_for_product(product_id)
        except sqlite3.Error:
            log.exception("history_read_failed product_id=%s", product_id)
            return []

    def verify_product(self, product_id: int) -> LedgerCheck:
        product = self.repo.get_product_by_id(product_id, include_inactive=True)
        if not product:
            raise NotFoundError("Product not found.")
        total, count = self.repo.history_change_sum(product.id)
        return LedgerCheck(
            product_id=product.id,
            sku=product.sku,
            current_stock=product.current_stock,
            history_sum=total,
            entries=count,
        )

    def verify_all(self) -> list[LedgerCheck]:
        checks = [self.verify_product(p.id) for p in self.repo.list_products(include_inactive=True)]
        broken = [c.sku for c in checks if not c.consistent]
        if broken:
            log.error("ledger_inconsistent skus=%s", ",".join(broken))
        return checks

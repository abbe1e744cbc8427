from __future__ import annotations

import logging
import sqlite3
from dataclasses import replace
from typing import Callable, Iterable, Mapping, Optional

from iom.config import RetryPolicy
from iom.domain.errors import AppError, NotFoundError, ValidationError
from iom.domain.models import Actor, AdjustmentResult, InventoryHistory, PriceList, Product
from iom.domain.money import to_cents
from iom.domain.status import HistoryType, PriceTier
from iom.domain.validation import parse_amount
from iom.repositories.unit_of_work import SqliteUnitOfWork, UnitOfWork
from iom.services.concurrency import require_actor, run_with_retry
from iom.services.ledger_service import StockLedger

log = logging.getLogger(__name__)

DEFAULT_ADJUSTMENT_NOTE = "Stocktake adjustment"

_EDITABLE_FIELDS = {
    "name",
    "brand",
    "spec",
    "unit",
    "category",
    "description",
    "barcode",
    "prices",
    "low_stock_threshold",
    "supplier_id",
}


def _price_columns(prices: PriceList | Mapping | None, base: PriceList | None = None) -> dict[str, int]:
    """Tiers missing from a mapping keep their ``base`` price."""
    base = base or PriceList()
    if prices is None:
        prices = base
    if isinstance(prices, Mapping):
        unknown = set(prices) - {t.value for t in PriceTier}
        if unknown:
            raise ValidationError(f"Unknown price tiers: {sorted(unknown)}")
        prices = replace(base, **{k: parse_amount(v, "Price") for k, v in prices.items()})
    columns = {}
    for tier in PriceTier:
        amount = parse_amount(prices.for_tier(tier), "Price")
        columns[f"price_{tier.value}_cents"] = to_cents(amount)
    return columns


def _adjustment_fields(item) -> tuple[int, int, Optional[str]]:
    if isinstance(item, Mapping):
        return int(item["product_id"]), item["new_stock"], item.get("note")
    product_id, new_stock, *rest = item
    return int(product_id), new_stock, (rest[0] if rest else None)


class InventoryService:
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

    # ---------- Catalog ----------
    def list_products(self, include_inactive: bool = False) -> list[Product]:
        try:
            return self.repo.list_products(include_inactive=include_inactive)
        except sqlite3.Error:
            log.exception("products_read_failed")
            return []

    def get_product(self, product_id: int) -> Product:
        p = self.repo.get_product_by_id(int(product_id))
        if not p:
            raise NotFoundError("Product not found.")
        return p

    def get_product_by_sku(self, sku: str) -> Product:
        p = self.repo.get_product_by_sku((sku or "").strip())
        if not p:
            raise NotFoundError("Product not found.")
        return p

    def create_product(
        self,
        actor: Actor | None,
        sku: str,
        name: str,
        *,
        brand: str = "",
        spec: str = "",
        unit: str = "",
        prices: PriceList | Mapping | None = None,
        category: str = "",
        description: str = "",
        barcode: Optional[str] = None,
        low_stock_threshold: int = 0,
        supplier_id: Optional[int] = None,
        opening_stock: int = 0,
        opening_cost=0,
    ) -> int:
        """
        Registers a product with zero stock. A non-zero opening stock is booked
        through the ledger in the same transaction so history explains it.
        """
        actor = require_actor(actor)
        sku = (sku or "").strip()
        name = (name or "").strip()
        if not sku or not name:
            raise ValidationError("SKU and Name are required.")
        if int(opening_stock) < 0 or int(low_stock_threshold) < 0:
            raise ValidationError("Stock values must be >= 0.")
        cost = parse_amount(opening_cost, "Opening cost")

        values = {
            "sku": sku,
            "name": name,
            "brand": brand,
            "spec": spec,
            "unit": unit,
            "category": category,
            "description": description,
            "barcode": barcode,
            "low_stock_threshold": int(low_stock_threshold),
            "supplier_id": supplier_id,
            **_price_columns(prices),
        }

        def _op() -> int:
            with self.uow_factory() as uow:
                if uow.sku_exists(sku):
                    raise ValidationError(f"SKU already exists: {sku}")
                if supplier_id is not None and not uow.get_supplier(int(supplier_id)):
                    raise NotFoundError("Supplier not found.")
                new_id = uow.insert_product(values)
                if int(opening_stock) > 0:
                    self.ledger.apply(
                        uow,
                        new_id,
                        int(opening_stock),
                        HistoryType.ADJUSTMENT,
                        actor=actor,
                        note="Opening stock",
                        receive_unit_cost=cost,
                    )
                return new_id

        product_id = run_with_retry(_op, self.retry_policy)
        log.info("product_created sku=%s id=%s opening_stock=%s actor=%s", sku, product_id, opening_stock, actor.user_id)
        return product_id

    def update_product(self, actor: Actor | None, product_id: int, **fields) -> None:
        """Partial update; a partial ``prices`` mapping leaves other tiers as stored."""
        actor = require_actor(actor)
        if "sku" in fields:
            raise ValidationError("SKU is immutable.")
        if {"current_stock", "average_cost"} & set(fields):
            raise ValidationError("Stock and average cost are maintained by the stock ledger.")
        unknown = set(fields) - _EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown product fields: {sorted(unknown)}")

        columns = {k: v for k, v in fields.items() if k != "prices"}
        if "name" in columns and not (columns["name"] or "").strip():
            raise ValidationError("Name is required.")
        if "low_stock_threshold" in columns and int(columns["low_stock_threshold"]) < 0:
            raise ValidationError("Low stock threshold must be >= 0.")

        def _op() -> str:
            with self.uow_factory() as uow:
                product = uow.get_product(int(product_id))
                if not product:
                    raise NotFoundError("Product not found.")
                if columns.get("supplier_id") is not None and not uow.get_supplier(int(columns["supplier_id"])):
                    raise NotFoundError("Supplier not found.")
                if "prices" in fields:
                    columns.update(_price_columns(fields["prices"], base=product.prices))
                uow.update_product_details(product.id, columns)
                return product.sku

        sku = run_with_retry(_op, self.retry_policy)
        log.info("product_updated sku=%s fields=%s actor=%s", sku, ",".join(sorted(fields)), actor.user_id)

    def delete_product(self, actor: Actor | None, product_id: int) -> str:
        """Hard delete for unreferenced products, soft delete otherwise."""
        actor = require_actor(actor)
        outcome = self.repo.remove_product(int(product_id))
        if outcome is None:
            raise NotFoundError("Product not found.")
        log.info("product_removed id=%s outcome=%s actor=%s", product_id, outcome, actor.user_id)
        return outcome

    # ---------- Manual adjustment ----------
    def _adjust_in(self, uow: UnitOfWork, actor: Actor, product_id: int, new_stock, note: Optional[str]) -> InventoryHistory:
        # a negative target surfaces as InsufficientStockError from the ledger
        if isinstance(new_stock, bool) or not isinstance(new_stock, int):
            raise ValidationError("New stock must be an integer.")
        product = uow.get_product(product_id)
        if not product:
            raise NotFoundError(f"Product not found: {product_id}")
        return self.ledger.apply(
            uow,
            product.id,
            new_stock - product.current_stock,
            HistoryType.ADJUSTMENT,
            actor=actor,
            note=note or DEFAULT_ADJUSTMENT_NOTE,
        )

    def adjust_stock(self, actor: Actor | None, product_id: int, new_stock: int, note: Optional[str] = None) -> InventoryHistory:
        actor = require_actor(actor)

        def _op() -> InventoryHistory:
            with self.uow_factory() as uow:
                return self._adjust_in(uow, actor, int(product_id), new_stock, note)

        return run_with_retry(_op, self.retry_policy)

    def adjust_stock_batch(
        self,
        actor: Actor | None,
        adjustments: Iterable[Mapping | tuple],
        atomic: bool = False,
    ) -> list[AdjustmentResult]:
        """
        adjustments: [{product_id, new_stock, note?}] or (product_id, new_stock[, note])

        Best-effort by default: each item commits on its own and failures are
        reported per item. With ``atomic=True`` one failure rolls back all.
        """
        actor = require_actor(actor)
        items = [_adjustment_fields(it) for it in adjustments]
        if not items:
            raise ValidationError("No adjustments given.")

        if atomic:
            def _op() -> list[AdjustmentResult]:
                with self.uow_factory() as uow:
                    entries = [self._adjust_in(uow, actor, pid, stock, note) for pid, stock, note in items]
                return [AdjustmentResult(product_id=pid, ok=True, new_stock=e.stock_after) for (pid, _, _), e in zip(items, entries)]

            return run_with_retry(_op, self.retry_policy)

        results: list[AdjustmentResult] = []
        for pid, stock, note in items:
            try:
                entry = self.adjust_stock(actor, pid, stock, note)
                results.append(AdjustmentResult(product_id=pid, ok=True, new_stock=entry.stock_after))
            except AppError as exc:
                log.warning("batch_adjustment_failed product_id=%s error=%s", pid, exc)
                results.append(AdjustmentResult(product_id=pid, ok=False, error=str(exc)))
        return results

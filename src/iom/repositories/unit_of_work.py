from __future__ import annotations

import secrets
import sqlite3
import string
from contextlib import AbstractContextManager
from datetime import datetime, timedelta
from typing import Iterable, Optional, Protocol

from iom.domain.errors import ConflictError, InsufficientStockError
from iom.domain.models import (
    Customer,
    InventoryHistory,
    Product,
    PurchaseOrder,
    SalesOrder,
    Supplier,
)
from iom.domain.money import to_cents
from iom.domain.status import HistoryType
from iom.repositories.sqlite_repo import (
    PRODUCT_DETAIL_COLUMNS,
    SqliteRepository,
    customer_from_row,
    from_db_ts,
    load_purchase_order,
    load_sales_order,
    product_from_row,
    supplier_from_row,
    to_db_ts,
)

_ORDER_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


class UnitOfWork(Protocol):
    def __enter__(self) -> "UnitOfWork": ...
    def __exit__(self, exc_type, exc, tb) -> Optional[bool]: ...
    def now(self) -> datetime: ...
    def get_product(self, product_id: int, active_only: bool = True) -> Optional[Product]: ...
    def get_product_by_sku(self, sku: str, active_only: bool = True) -> Optional[Product]: ...
    def write_product_stock(self, product: Product, new_stock: int, average_cost) -> None: ...
    def append_history(self, product: Product, history_type: HistoryType, change: int, stock_after: int, **kwargs) -> InventoryHistory: ...


class SqliteUnitOfWork:
    """Unit of Work over one SQLite write transaction.

    Everything done between ``__enter__`` and ``__exit__`` commits together
    or not at all; an exception leaving the block rolls the whole set back.
    """

    def __init__(self, repo: SqliteRepository):
        self.repo = repo
        self._scope: AbstractContextManager[sqlite3.Connection] | None = None
        self.conn: sqlite3.Connection | None = None
        self.cur: sqlite3.Cursor | None = None

    def __enter__(self) -> "SqliteUnitOfWork":
        self._scope = self.repo.transaction()
        self.conn = self._scope.__enter__()
        self.cur = self.conn.cursor()
        return self

    def __exit__(self, exc_type, exc, tb) -> Optional[bool]:
        scope, self._scope = self._scope, None
        self.cur = None
        self.conn = None
        return scope.__exit__(exc_type, exc, tb)

    def now(self) -> datetime:
        return self.repo.now()

    # ---------- Products ----------
    def get_product(self, product_id: int, active_only: bool = True) -> Optional[Product]:
        self.cur.execute(
            "SELECT * FROM products WHERE id=? AND (is_active=1 OR ?)",
            (int(product_id), int(not active_only)),
        )
        r = self.cur.fetchone()
        return product_from_row(r) if r else None

    def get_product_by_sku(self, sku: str, active_only: bool = True) -> Optional[Product]:
        self.cur.execute(
            "SELECT * FROM products WHERE sku=? AND (is_active=1 OR ?)",
            (sku, int(not active_only)),
        )
        r = self.cur.fetchone()
        return product_from_row(r) if r else None

    def sku_exists(self, sku: str) -> bool:
        self.cur.execute("SELECT EXISTS(SELECT 1 FROM products WHERE sku=?)", (sku,))
        return bool(self.cur.fetchone()[0])

    def insert_product(self, values: dict) -> int:
        now = to_db_ts(self.now())
        data = {**values, "current_stock": 0, "average_cost_cents": 0, "version": 0}
        columns = ", ".join([*data, "created_at", "updated_at"])
        placeholders = ", ".join("?" for _ in range(len(data) + 2))
        self.cur.execute(
            f"INSERT INTO products ({columns}) VALUES ({placeholders})",
            (*data.values(), now, now),
        )
        return int(self.cur.lastrowid)

    def update_product_details(self, product_id: int, fields: dict) -> None:
        unknown = set(fields) - set(PRODUCT_DETAIL_COLUMNS)
        if unknown:
            raise ValueError(f"Not updatable product fields: {sorted(unknown)}")
        if not fields:
            return
        assignments = ", ".join(f"{col}=?" for col in fields)
        self.cur.execute(
            f"UPDATE products SET {assignments}, updated_at=? WHERE id=? AND is_active=1",
            (*fields.values(), to_db_ts(self.now()), int(product_id)),
        )

    def write_product_stock(self, product: Product, new_stock: int, average_cost) -> None:
        """Version-checked write of the ledger-maintained product fields."""
        try:
            self.cur.execute(
                """
                UPDATE products
                SET current_stock=?, average_cost_cents=?, version=version+1, updated_at=?
                WHERE id=? AND version=?
                """,
                (int(new_stock), to_cents(average_cost), to_db_ts(self.now()), product.id, product.version),
            )
        except sqlite3.IntegrityError as exc:
            # CHECK(current_stock >= 0)
            raise InsufficientStockError(product.sku, product.current_stock, product.current_stock - int(new_stock)) from exc
        if self.cur.rowcount == 0:
            raise ConflictError(f"Product {product.sku} was modified concurrently.")

    # ---------- Ledger ----------
    def _next_history_timestamp(self) -> datetime:
        now = self.now()
        self.cur.execute("SELECT MAX(timestamp) FROM inventory_history")
        last = from_db_ts(self.cur.fetchone()[0])
        if last is not None and now <= last:
            return last + timedelta(microseconds=1)
        return now

    def append_history(
        self,
        product: Product,
        history_type: HistoryType,
        change: int,
        stock_after: int,
        *,
        user_id: int,
        note: Optional[str] = None,
        cost_before=None,
        cost_after=None,
        related_doc_id: Optional[int] = None,
    ) -> InventoryHistory:
        ts = self._next_history_timestamp()
        self.cur.execute(
            """
            INSERT INTO inventory_history (
                product_id, product_sku, product_name, type, change, stock_after,
                cost_before_cents, cost_after_cents, related_doc_id, note, user_id, timestamp
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                product.id,
                product.sku,
                product.name,
                HistoryType(history_type).value,
                int(change),
                int(stock_after),
                to_cents(cost_before) if cost_before is not None else None,
                to_cents(cost_after) if cost_after is not None else None,
                related_doc_id,
                note,
                int(user_id),
                to_db_ts(ts),
            ),
        )
        return InventoryHistory(
            id=int(self.cur.lastrowid),
            product_id=product.id,
            product_sku=product.sku,
            product_name=product.name,
            type=HistoryType(history_type),
            change=int(change),
            stock_after=int(stock_after),
            cost_before=cost_before,
            cost_after=cost_after,
            related_doc_id=related_doc_id,
            note=note,
            user_id=int(user_id),
            timestamp=ts,
        )

    # ---------- Parties ----------
    def get_customer(self, customer_id: int) -> Optional[Customer]:
        self.cur.execute("SELECT * FROM customers WHERE id=? AND is_active=1", (int(customer_id),))
        r = self.cur.fetchone()
        return customer_from_row(r) if r else None

    def get_supplier(self, supplier_id: int) -> Optional[Supplier]:
        self.cur.execute("SELECT * FROM suppliers WHERE id=? AND is_active=1", (int(supplier_id),))
        r = self.cur.fetchone()
        return supplier_from_row(r) if r else None

    # ---------- Orders ----------
    def next_order_number(self, prefix: str, table: str) -> str:
        """PREFIX-YYYYMMDD-XXXX, unique within ``table``."""
        day = self.now().strftime("%Y%m%d")
        while True:
            suffix = "".join(secrets.choice(_ORDER_SUFFIX_ALPHABET) for _ in range(4))
            number = f"{prefix}-{day}-{suffix}"
            self.cur.execute(f"SELECT EXISTS(SELECT 1 FROM {table} WHERE order_number=?)", (number,))
            if not self.cur.fetchone()[0]:
                return number

    def _insert_items(self, item_table: str, order_id: int, items: Iterable[dict]) -> None:
        for line_no, item in enumerate(items, start=1):
            row = {"order_id": order_id, "line_no": line_no, **item}
            self.cur.execute(
                f"INSERT INTO {item_table} ({', '.join(row)}) VALUES ({', '.join('?' for _ in row)})",
                tuple(row.values()),
            )

    def _insert_order(self, table: str, item_table: str, header: dict, items: Iterable[dict]) -> int:
        now = to_db_ts(self.now())
        columns = ", ".join([*header, "created_at", "updated_at"])
        placeholders = ", ".join("?" for _ in range(len(header) + 2))
        self.cur.execute(f"INSERT INTO {table} ({columns}) VALUES ({placeholders})", (*header.values(), now, now))
        order_id = int(self.cur.lastrowid)
        self._insert_items(item_table, order_id, items)
        return order_id

    def _replace_items(self, item_table: str, order_id: int, items: Iterable[dict]) -> None:
        self.cur.execute(f"DELETE FROM {item_table} WHERE order_id=?", (int(order_id),))
        self._insert_items(item_table, int(order_id), items)

    def insert_sales_order(self, header: dict, items: Iterable[dict]) -> int:
        return self._insert_order("sales_orders", "sales_order_items", header, items)

    def insert_purchase_order(self, header: dict, items: Iterable[dict]) -> int:
        return self._insert_order("purchase_orders", "purchase_order_items", header, items)

    def replace_sales_order_items(self, order_id: int, items: Iterable[dict]) -> None:
        self._replace_items("sales_order_items", order_id, items)

    def replace_purchase_order_items(self, order_id: int, items: Iterable[dict]) -> None:
        self._replace_items("purchase_order_items", order_id, items)

    def get_sales_order(self, order_id: int) -> Optional[SalesOrder]:
        return load_sales_order(self.cur, order_id)

    def get_purchase_order(self, order_id: int) -> Optional[PurchaseOrder]:
        return load_purchase_order(self.cur, order_id)

    def _update_order(self, table: str, order_id: int, fields: dict) -> None:
        values = {k: (to_db_ts(v) if isinstance(v, datetime) else v) for k, v in fields.items()}
        assignments = ", ".join([*(f"{col}=?" for col in values), "updated_at=?"])
        self.cur.execute(
            f"UPDATE {table} SET {assignments} WHERE id=?",
            (*values.values(), to_db_ts(self.now()), int(order_id)),
        )

    def update_sales_order(self, order_id: int, fields: dict) -> None:
        self._update_order("sales_orders", order_id, fields)

    def update_purchase_order(self, order_id: int, fields: dict) -> None:
        self._update_order("purchase_orders", order_id, fields)

    def set_sales_item_unit_costs(self, order_id: int, unit_costs: Iterable[tuple[int, int]]) -> None:
        """unit_costs: [(line_no, unit_cost_cents)]"""
        self.cur.executemany(
            "UPDATE sales_order_items SET unit_cost_cents=? WHERE order_id=? AND line_no=?",
            [(int(cents), int(order_id), int(line_no)) for line_no, cents in unit_costs],
        )

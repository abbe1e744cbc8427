from __future__ import annotations

import hashlib
import hmac
import logging
import os
import secrets
import shutil
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterator, Optional

from iom.domain.errors import ConflictError, StoreUnavailableError
from iom.domain.models import (
    Address,
    Customer,
    CustomerSnapshot,
    InventoryHistory,
    PriceList,
    Product,
    PurchaseOrder,
    PurchaseOrderItem,
    SalesOrder,
    SalesOrderItem,
    Supplier,
    SupplierSnapshot,
    User,
)
from iom.domain.money import from_cents
from iom.domain.status import HistoryType, PaymentStatus, PriceTier, PurchaseOrderStatus, SalesOrderStatus

log = logging.getLogger(__name__)


def to_db_ts(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return dt.isoformat(sep=" ", timespec="microseconds")


def from_db_ts(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(str(value))


# ---------- Row mappers ----------
def product_from_row(r: sqlite3.Row) -> Product:
    return Product(
        id=int(r["id"]),
        sku=str(r["sku"]),
        name=str(r["name"]),
        brand=str(r["brand"]),
        spec=str(r["spec"]),
        unit=str(r["unit"]),
        prices=PriceList(
            retail=from_cents(r["price_retail_cents"]),
            bronze=from_cents(r["price_bronze_cents"]),
            silver=from_cents(r["price_silver_cents"]),
            gold=from_cents(r["price_gold_cents"]),
        ),
        current_stock=int(r["current_stock"]),
        average_cost=from_cents(r["average_cost_cents"]),
        is_active=bool(r["is_active"]),
        category=str(r["category"]),
        description=str(r["description"]),
        barcode=r["barcode"],
        low_stock_threshold=int(r["low_stock_threshold"]),
        supplier_id=(int(r["supplier_id"]) if r["supplier_id"] is not None else None),
        version=int(r["version"]),
        created_at=from_db_ts(r["created_at"]),
        updated_at=from_db_ts(r["updated_at"]),
    )


def _address_from_row(r: sqlite3.Row, prefix: str) -> Address:
    return Address(
        zip_code=r[f"{prefix}_zip"] or "",
        city=r[f"{prefix}_city"] or "",
        district=r[f"{prefix}_district"] or "",
        street=r[f"{prefix}_street"] or "",
    )


def customer_from_row(r: sqlite3.Row) -> Customer:
    return Customer(
        id=int(r["id"]),
        customer_code=str(r["customer_code"]),
        name=str(r["name"]),
        level=PriceTier(r["level"]),
        contact_person=r["contact_person"],
        phone=r["phone"],
        email=r["email"],
        tax_id=r["tax_id"],
        address=_address_from_row(r, "address"),
        payment_terms=r["payment_terms"],
        notes=r["notes"],
        is_active=bool(r["is_active"]),
        created_at=from_db_ts(r["created_at"]),
        updated_at=from_db_ts(r["updated_at"]),
    )


def supplier_from_row(r: sqlite3.Row) -> Supplier:
    return Supplier(
        id=int(r["id"]),
        supplier_code=str(r["supplier_code"]),
        name=str(r["name"]),
        contact_person=r["contact_person"],
        phone=r["phone"],
        email=r["email"],
        tax_id=r["tax_id"],
        address=_address_from_row(r, "address"),
        payment_terms=r["payment_terms"],
        notes=r["notes"],
        is_active=bool(r["is_active"]),
        created_at=from_db_ts(r["created_at"]),
        updated_at=from_db_ts(r["updated_at"]),
    )


def history_from_row(r: sqlite3.Row) -> InventoryHistory:
    return InventoryHistory(
        id=int(r["id"]),
        product_id=int(r["product_id"]),
        product_sku=str(r["product_sku"]),
        product_name=str(r["product_name"]),
        type=HistoryType(r["type"]),
        change=int(r["change"]),
        stock_after=int(r["stock_after"]),
        cost_before=from_cents(r["cost_before_cents"]),
        cost_after=from_cents(r["cost_after_cents"]),
        related_doc_id=(int(r["related_doc_id"]) if r["related_doc_id"] is not None else None),
        note=r["note"],
        user_id=int(r["user_id"]),
        timestamp=from_db_ts(r["timestamp"]),
    )


def load_sales_order(cur: sqlite3.Cursor, order_id: int) -> Optional[SalesOrder]:
    cur.execute("SELECT * FROM sales_orders WHERE id=?", (int(order_id),))
    r = cur.fetchone()
    if not r:
        return None
    cur.execute(
        """
        SELECT sku, name, spec, quantity, unit_price_cents, subtotal_cents, unit_cost_cents
        FROM sales_order_items
        WHERE order_id=?
        ORDER BY line_no
        """,
        (int(order_id),),
    )
    items = tuple(
        SalesOrderItem(
            sku=str(i["sku"]),
            name=str(i["name"]),
            spec=str(i["spec"]),
            quantity=int(i["quantity"]),
            unit_price=from_cents(i["unit_price_cents"]),
            subtotal=from_cents(i["subtotal_cents"]),
            unit_cost=from_cents(i["unit_cost_cents"]),
        )
        for i in cur.fetchall()
    )
    return SalesOrder(
        id=int(r["id"]),
        order_number=str(r["order_number"]),
        customer_id=int(r["customer_id"]),
        customer_info=CustomerSnapshot(
            name=str(r["customer_name"]),
            level=PriceTier(r["customer_level"]),
            tax_id=r["customer_tax_id"] or "",
        ),
        shipping_address=_address_from_row(r, "ship"),
        items=items,
        total_amount=from_cents(r["total_amount_cents"]),
        status=SalesOrderStatus(r["status"]),
        payment_status=PaymentStatus(r["payment_status"]),
        created_by=int(r["created_by"]),
        created_at=from_db_ts(r["created_at"]),
        updated_at=from_db_ts(r["updated_at"]),
        total_cost=from_cents(r["total_cost_cents"]),
        gross_profit=from_cents(r["gross_profit_cents"]),
        invoice_number=r["invoice_number"],
        shipping_note=r["shipping_note"],
        internal_note=r["internal_note"],
        approved_by=r["approved_by"],
        approved_at=from_db_ts(r["approved_at"]),
        shipped_by=r["shipped_by"],
        shipped_at=from_db_ts(r["shipped_at"]),
        cancelled_by=r["cancelled_by"],
        cancelled_at=from_db_ts(r["cancelled_at"]),
    )


def load_purchase_order(cur: sqlite3.Cursor, order_id: int) -> Optional[PurchaseOrder]:
    cur.execute("SELECT * FROM purchase_orders WHERE id=?", (int(order_id),))
    r = cur.fetchone()
    if not r:
        return None
    cur.execute(
        """
        SELECT sku, name, spec, quantity, unit_cost_cents, subtotal_cents
        FROM purchase_order_items
        WHERE order_id=?
        ORDER BY line_no
        """,
        (int(order_id),),
    )
    items = tuple(
        PurchaseOrderItem(
            sku=str(i["sku"]),
            name=str(i["name"]),
            spec=str(i["spec"]),
            quantity=int(i["quantity"]),
            unit_cost=from_cents(i["unit_cost_cents"]),
            subtotal=from_cents(i["subtotal_cents"]),
        )
        for i in cur.fetchall()
    )
    return PurchaseOrder(
        id=int(r["id"]),
        order_number=str(r["order_number"]),
        supplier_id=int(r["supplier_id"]),
        supplier_info=SupplierSnapshot(name=str(r["supplier_name"]), tax_id=r["supplier_tax_id"] or ""),
        items=items,
        total_amount=from_cents(r["total_amount_cents"]),
        status=PurchaseOrderStatus(r["status"]),
        created_by=int(r["created_by"]),
        created_at=from_db_ts(r["created_at"]),
        updated_at=from_db_ts(r["updated_at"]),
        notes=r["notes"],
        received_by=r["received_by"],
        received_at=from_db_ts(r["received_at"]),
        cancelled_by=r["cancelled_by"],
        cancelled_at=from_db_ts(r["cancelled_at"]),
    )


_PARTY_COLUMNS = (
    "name",
    "contact_person",
    "phone",
    "email",
    "tax_id",
    "address_zip",
    "address_city",
    "address_district",
    "address_street",
    "payment_terms",
    "notes",
)

PRODUCT_DETAIL_COLUMNS = (
    "name",
    "brand",
    "spec",
    "unit",
    "category",
    "description",
    "barcode",
    "price_retail_cents",
    "price_bronze_cents",
    "price_silver_cents",
    "price_gold_cents",
    "low_stock_threshold",
    "supplier_id",
)


class SqliteRepository:
    def __init__(
        self,
        db_path: Path | str,
        clock: Callable[[], datetime] | None = None,
        busy_timeout: float = 5.0,
    ):
        self.db_path = str(db_path)
        self.clock = clock or datetime.now
        self.busy_timeout = float(busy_timeout)

    def now(self) -> datetime:
        return self.clock()

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """All-or-nothing write scope.

        BEGIN IMMEDIATE takes the write lock up front, so every read done
        inside the block sees state no other writer can change before commit.
        """
        try:
            conn = self._conn()
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"Could not open database: {exc}") from exc
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except sqlite3.OperationalError as exc:
            conn.rollback()
            message = str(exc).lower()
            if "locked" in message or "busy" in message:
                raise ConflictError("Database is busy with a concurrent write. Retry the operation.") from exc
            raise StoreUnavailableError(f"Database operation failed: {exc}") from exc
        except sqlite3.IntegrityError:
            conn.rollback()
            raise
        except sqlite3.Error as exc:
            conn.rollback()
            raise StoreUnavailableError(f"Database operation failed: {exc}") from exc
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def init_db(self) -> None:
        self.run_migrations()
        self._ensure_bootstrap_admin()

    def run_migrations(self) -> None:
        conn = self._conn()
        backup_path = self._create_pre_migration_backup()
        try:
            cur = conn.cursor()
            cur.execute("BEGIN")
            cur.execute("CREATE TABLE IF NOT EXISTS schema_migrations (version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)")
            cur.execute("SELECT COALESCE(MAX(version), 0) FROM schema_migrations")
            current_version = int(cur.fetchone()[0])

            migrations = [
                (1, self._migration_v1_users_and_catalog),
                (2, self._migration_v2_orders_and_ledger),
                (3, self._migration_v3_ledger_guards),
            ]

            for version, migration in migrations:
                if version <= current_version:
                    continue
                migration(cur)
                cur.execute(
                    "INSERT INTO schema_migrations (version, applied_at) VALUES (?, datetime('now'))",
                    (version,),
                )
                log.info("migration_applied version=%s db=%s", version, self.db_path)
            conn.commit()
        except Exception as exc:
            conn.rollback()
            self._restore_pre_migration_backup(backup_path)
            raise RuntimeError(
                "Database migration failed. Original database restored from automatic backup."
            ) from exc
        finally:
            conn.close()

    def _create_pre_migration_backup(self) -> Path | None:
        db_file = Path(self.db_path)
        if not db_file.exists() or db_file.stat().st_size == 0:
            return None
        backup_file = db_file.with_name(f"{db_file.stem}.pre_migration_{datetime.now().strftime('%Y%m%d%H%M%S')}.bak")
        shutil.copy2(db_file, backup_file)
        return backup_file

    def _restore_pre_migration_backup(self, backup_path: Path | None) -> None:
        if backup_path is None or not backup_path.exists():
            return
        shutil.copy2(backup_path, self.db_path)

    def _migration_v1_users_and_catalog(self, cur: sqlite3.Cursor) -> None:
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                username TEXT NOT NULL UNIQUE,
                pin TEXT NOT NULL,
                active INTEGER NOT NULL DEFAULT 1 CHECK(active IN (0,1)),
                failed_attempts INTEGER NOT NULL DEFAULT 0,
                locked_until TEXT,
                must_change_pin INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL DEFAULT (datetime('now'))
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS suppliers (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                supplier_code TEXT NOT NULL UNIQUE,
                name TEXT NOT NULL,
                contact_person TEXT,
                phone TEXT,
                email TEXT,
                tax_id TEXT,
                address_zip TEXT,
                address_city TEXT,
                address_district TEXT,
                address_street TEXT,
                payment_terms TEXT,
                notes TEXT,
                is_active INTEGER NOT NULL DEFAULT 1 CHECK(is_active IN (0,1)),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS customers (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                customer_code TEXT NOT NULL UNIQUE,
                name TEXT NOT NULL,
                level TEXT NOT NULL CHECK(level IN ('retail','bronze','silver','gold')),
                contact_person TEXT,
                phone TEXT,
                email TEXT,
                tax_id TEXT,
                address_zip TEXT,
                address_city TEXT,
                address_district TEXT,
                address_street TEXT,
                payment_terms TEXT,
                notes TEXT,
                is_active INTEGER NOT NULL DEFAULT 1 CHECK(is_active IN (0,1)),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS products (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                sku TEXT NOT NULL UNIQUE,
                name TEXT NOT NULL,
                brand TEXT NOT NULL DEFAULT '',
                spec TEXT NOT NULL DEFAULT '',
                unit TEXT NOT NULL DEFAULT '',
                category TEXT NOT NULL DEFAULT '',
                description TEXT NOT NULL DEFAULT '',
                barcode TEXT,
                price_retail_cents INTEGER NOT NULL DEFAULT 0 CHECK(price_retail_cents >= 0),
                price_bronze_cents INTEGER NOT NULL DEFAULT 0 CHECK(price_bronze_cents >= 0),
                price_silver_cents INTEGER NOT NULL DEFAULT 0 CHECK(price_silver_cents >= 0),
                price_gold_cents INTEGER NOT NULL DEFAULT 0 CHECK(price_gold_cents >= 0),
                current_stock INTEGER NOT NULL DEFAULT 0 CHECK(current_stock >= 0),
                average_cost_cents INTEGER NOT NULL DEFAULT 0 CHECK(average_cost_cents >= 0),
                low_stock_threshold INTEGER NOT NULL DEFAULT 0 CHECK(low_stock_threshold >= 0),
                supplier_id INTEGER REFERENCES suppliers(id) ON DELETE SET NULL,
                is_active INTEGER NOT NULL DEFAULT 1 CHECK(is_active IN (0,1)),
                version INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )

    def _migration_v2_orders_and_ledger(self, cur: sqlite3.Cursor) -> None:
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS purchase_orders (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                order_number TEXT NOT NULL UNIQUE,
                supplier_id INTEGER NOT NULL REFERENCES suppliers(id),
                supplier_name TEXT NOT NULL,
                supplier_tax_id TEXT,
                status TEXT NOT NULL CHECK(status IN ('pending-receipt','completed','cancelled')),
                total_amount_cents INTEGER NOT NULL CHECK(total_amount_cents >= 0),
                notes TEXT,
                created_by INTEGER NOT NULL REFERENCES users(id),
                received_by INTEGER REFERENCES users(id),
                cancelled_by INTEGER REFERENCES users(id),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                received_at TEXT,
                cancelled_at TEXT
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS purchase_order_items (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                order_id INTEGER NOT NULL REFERENCES purchase_orders(id) ON DELETE CASCADE,
                line_no INTEGER NOT NULL,
                sku TEXT NOT NULL,
                name TEXT NOT NULL,
                spec TEXT NOT NULL DEFAULT '',
                quantity INTEGER NOT NULL CHECK(quantity > 0),
                unit_cost_cents INTEGER NOT NULL CHECK(unit_cost_cents >= 0),
                subtotal_cents INTEGER NOT NULL CHECK(subtotal_cents >= 0),
                UNIQUE(order_id, line_no)
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS sales_orders (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                order_number TEXT NOT NULL UNIQUE,
                customer_id INTEGER NOT NULL REFERENCES customers(id),
                customer_name TEXT NOT NULL,
                customer_level TEXT NOT NULL,
                customer_tax_id TEXT,
                ship_zip TEXT,
                ship_city TEXT,
                ship_district TEXT,
                ship_street TEXT,
                status TEXT NOT NULL CHECK(status IN (
                    'pending-approval','pending-shipment','completed','cancelled','partially-shipped'
                )),
                payment_status TEXT NOT NULL CHECK(payment_status IN ('unpaid','partially-paid','paid')),
                total_amount_cents INTEGER NOT NULL CHECK(total_amount_cents >= 0),
                total_cost_cents INTEGER,
                gross_profit_cents INTEGER,
                invoice_number TEXT,
                shipping_note TEXT,
                internal_note TEXT,
                created_by INTEGER NOT NULL REFERENCES users(id),
                approved_by INTEGER REFERENCES users(id),
                shipped_by INTEGER REFERENCES users(id),
                cancelled_by INTEGER REFERENCES users(id),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                approved_at TEXT,
                shipped_at TEXT,
                cancelled_at TEXT
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS sales_order_items (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                order_id INTEGER NOT NULL REFERENCES sales_orders(id) ON DELETE CASCADE,
                line_no INTEGER NOT NULL,
                sku TEXT NOT NULL,
                name TEXT NOT NULL,
                spec TEXT NOT NULL DEFAULT '',
                quantity INTEGER NOT NULL CHECK(quantity > 0),
                unit_price_cents INTEGER NOT NULL CHECK(unit_price_cents >= 0),
                subtotal_cents INTEGER NOT NULL CHECK(subtotal_cents >= 0),
                unit_cost_cents INTEGER CHECK(unit_cost_cents IS NULL OR unit_cost_cents >= 0),
                UNIQUE(order_id, line_no)
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS inventory_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                product_id INTEGER NOT NULL REFERENCES products(id),
                product_sku TEXT NOT NULL,
                product_name TEXT NOT NULL,
                type TEXT NOT NULL CHECK(type IN (
                    'purchase-in','sales-out','adjustment','customer-return','supplier-return'
                )),
                change INTEGER NOT NULL,
                stock_after INTEGER NOT NULL CHECK(stock_after >= 0),
                cost_before_cents INTEGER,
                cost_after_cents INTEGER,
                related_doc_id INTEGER,
                note TEXT,
                user_id INTEGER NOT NULL REFERENCES users(id),
                timestamp TEXT NOT NULL
            )
            """
        )

    def _migration_v3_ledger_guards(self, cur: sqlite3.Cursor) -> None:
        cur.execute(
            """
            CREATE TRIGGER IF NOT EXISTS inventory_history_no_update
            BEFORE UPDATE ON inventory_history
            BEGIN
                SELECT RAISE(ABORT, 'inventory_history is append-only');
            END
            """
        )
        cur.execute(
            """
            CREATE TRIGGER IF NOT EXISTS inventory_history_no_delete
            BEFORE DELETE ON inventory_history
            BEGIN
                SELECT RAISE(ABORT, 'inventory_history is append-only');
            END
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS ix_history_timestamp ON inventory_history(timestamp)")
        cur.execute("CREATE INDEX IF NOT EXISTS ix_history_product ON inventory_history(product_id, timestamp)")
        cur.execute("CREATE INDEX IF NOT EXISTS ix_sales_orders_shipped ON sales_orders(status, shipped_at)")
        cur.execute("CREATE INDEX IF NOT EXISTS ix_sales_order_items_sku ON sales_order_items(sku)")
        cur.execute("CREATE INDEX IF NOT EXISTS ix_purchase_order_items_sku ON purchase_order_items(sku)")

    def _ensure_bootstrap_admin(self) -> None:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("SELECT COUNT(*) FROM users WHERE active=1")
        active_users = int(cur.fetchone()[0])
        if active_users > 0:
            conn.close()
            return

        bootstrap_pin = os.environ.get("IOM_BOOTSTRAP_ADMIN_PIN", "").strip() or secrets.token_urlsafe(12)
        cur.execute(
            """
            INSERT INTO users (username, pin, active, must_change_pin)
            VALUES ('admin', ?, 1, 1)
            """,
            (self._hash_pin(bootstrap_pin),),
        )
        conn.commit()
        conn.close()

        # One-time bootstrap PIN goes to a local file readable only by the owner.
        pin_file = Path(self.db_path).parent / ".admin_bootstrap_pin"
        pin_file.write_text(bootstrap_pin + "\n", encoding="utf-8")
        try:
            pin_file.chmod(0o600)
        except OSError:
            log.warning("bootstrap_pin_chmod_failed path=%s", pin_file)

    # ---------- Users ----------
    def list_users(self) -> list[User]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("SELECT id, username, active, must_change_pin FROM users WHERE active=1 ORDER BY username")
        rows = cur.fetchall()
        conn.close()
        return [
            User(id=int(r[0]), username=str(r[1]), active=int(r[2]), must_change_pin=int(r[3]))
            for r in rows
        ]

    def _get_user_row(self, cur: sqlite3.Cursor, username: str):
        cur.execute(
            """
            SELECT id, username, active, pin, failed_attempts, locked_until, must_change_pin
            FROM users
            WHERE active=1 AND username=?
            """,
            (username,),
        )
        return cur.fetchone()

    def get_user_security_state(self, username: str) -> tuple[int, Optional[str]] | None:
        conn = self._conn()
        cur = conn.cursor()
        row = self._get_user_row(cur, username)
        conn.close()
        if not row:
            return None
        return int(row["failed_attempts"]), (str(row["locked_until"]) if row["locked_until"] is not None else None)

    def record_login_failure(self, username: str, max_attempts: int, lockout_seconds: int) -> tuple[int, Optional[str]]:
        conn = self._conn()
        cur = conn.cursor()
        row = self._get_user_row(cur, username)
        if not row:
            conn.close()
            return 0, None

        attempts = int(row["failed_attempts"]) + 1
        locked_until = None
        if attempts >= int(max_attempts):
            attempts = 0
            cur.execute(
                "UPDATE users SET failed_attempts=?, locked_until=datetime('now', ?) WHERE id=?",
                (attempts, f"+{int(lockout_seconds)} seconds", int(row["id"])),
            )
            cur.execute("SELECT locked_until FROM users WHERE id=?", (int(row["id"]),))
            locked_until = str(cur.fetchone()[0])
        else:
            cur.execute("UPDATE users SET failed_attempts=? WHERE id=?", (attempts, int(row["id"])))
        conn.commit()
        conn.close()
        return attempts, locked_until

    def clear_login_guard(self, user_id: int) -> None:
        conn = self._conn()
        conn.execute("UPDATE users SET failed_attempts=0, locked_until=NULL WHERE id=?", (int(user_id),))
        conn.commit()
        conn.close()

    def authenticate_user(self, username: str, pin: str) -> Optional[User]:
        conn = self._conn()
        cur = conn.cursor()
        row = self._get_user_row(cur, username)
        if row and self._verify_pin(str(row["pin"]), pin):
            cur.execute("UPDATE users SET failed_attempts=0, locked_until=NULL WHERE id=?", (int(row["id"]),))
            conn.commit()
            conn.close()
            return User(
                id=int(row["id"]),
                username=str(row["username"]),
                active=int(row["active"]),
                must_change_pin=int(row["must_change_pin"]),
            )
        conn.close()
        return None

    def create_user(self, username: str, pin: str, must_change_pin: int = 0) -> int:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            "INSERT INTO users (username, pin, active, must_change_pin) VALUES (?, ?, 1, ?)",
            (username, self._hash_pin(pin), int(must_change_pin)),
        )
        uid = int(cur.lastrowid)
        conn.commit()
        conn.close()
        return uid

    def change_user_pin(self, user_id: int, current_pin: str, new_pin: str) -> bool:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("SELECT pin FROM users WHERE id=? AND active=1", (int(user_id),))
        row = cur.fetchone()
        if not row or not self._verify_pin(str(row[0]), current_pin):
            conn.close()
            return False

        cur.execute(
            "UPDATE users SET pin=?, must_change_pin=0 WHERE id=?",
            (self._hash_pin(new_pin), int(user_id)),
        )
        conn.commit()
        conn.close()
        return True

    # ---------- Products ----------
    def list_products(self, include_inactive: bool = False) -> list[Product]:
        conn = self._conn()
        cur = conn.cursor()
        where = "" if include_inactive else "WHERE is_active = 1"
        cur.execute(f"SELECT * FROM products {where} ORDER BY created_at, id")
        rows = cur.fetchall()
        conn.close()
        return [product_from_row(r) for r in rows]

    def list_low_stock(self, limit: int = 10) -> list[Product]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            """
            SELECT *
            FROM products
            WHERE is_active=1
            ORDER BY (current_stock - low_stock_threshold) ASC, name ASC
            LIMIT ?
            """,
            (int(limit),),
        )
        rows = cur.fetchall()
        conn.close()
        return [product_from_row(r) for r in rows]

    def get_product_by_id(self, product_id: int, include_inactive: bool = False) -> Optional[Product]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            "SELECT * FROM products WHERE id=? AND (is_active=1 OR ?)",
            (int(product_id), int(include_inactive)),
        )
        r = cur.fetchone()
        conn.close()
        return product_from_row(r) if r else None

    def get_product_by_sku(self, sku: str, include_inactive: bool = False) -> Optional[Product]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            "SELECT * FROM products WHERE sku=? AND (is_active=1 OR ?)",
            (sku, int(include_inactive)),
        )
        r = cur.fetchone()
        conn.close()
        return product_from_row(r) if r else None

    def remove_product(self, product_id: int) -> str | None:
        """Hard-deletes an unreferenced product, otherwise deactivates it.

        The reference check and the delete share one write transaction, so no
        order line can be added for the sku in between.
        """
        with self.transaction() as conn:
            cur = conn.cursor()
            cur.execute("SELECT sku FROM products WHERE id=? AND is_active=1", (int(product_id),))
            row = cur.fetchone()
            if not row:
                return None
            sku = str(row[0])
            cur.execute(
                """
                SELECT EXISTS(SELECT 1 FROM inventory_history WHERE product_id=?)
                    OR EXISTS(SELECT 1 FROM sales_order_items WHERE sku=?)
                    OR EXISTS(SELECT 1 FROM purchase_order_items WHERE sku=?)
                """,
                (int(product_id), sku, sku),
            )
            if bool(cur.fetchone()[0]):
                cur.execute(
                    "UPDATE products SET is_active=0, updated_at=? WHERE id=?",
                    (to_db_ts(self.now()), int(product_id)),
                )
                return "deactivated"
            cur.execute("DELETE FROM products WHERE id=?", (int(product_id),))
            return "deleted"

    # ---------- Customers / Suppliers ----------
    def _insert_party(self, table: str, code_column: str, code: str, values: dict, extra: dict | None = None) -> int:
        now = to_db_ts(self.now())
        data = {code_column: code, **{k: values.get(k) for k in _PARTY_COLUMNS}, **(extra or {})}
        columns = ", ".join([*data, "created_at", "updated_at"])
        placeholders = ", ".join("?" for _ in range(len(data) + 2))
        with self.transaction() as conn:
            cur = conn.execute(
                f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
                (*data.values(), now, now),
            )
            return int(cur.lastrowid)

    def _update_party(self, table: str, party_id: int, values: dict) -> bool:
        assignments = ", ".join(f"{col}=?" for col in values)
        with self.transaction() as conn:
            cur = conn.execute(
                f"UPDATE {table} SET {assignments}, updated_at=? WHERE id=?",
                (*values.values(), to_db_ts(self.now()), int(party_id)),
            )
            return cur.rowcount > 0

    def _get_party(self, table: str, party_id: int):
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(f"SELECT * FROM {table} WHERE id=?", (int(party_id),))
        r = cur.fetchone()
        conn.close()
        return r

    def _list_party(self, table: str, include_inactive: bool):
        conn = self._conn()
        cur = conn.cursor()
        where = "" if include_inactive else "WHERE is_active = 1"
        cur.execute(f"SELECT * FROM {table} {where} ORDER BY name, id")
        rows = cur.fetchall()
        conn.close()
        return rows

    def _remove_party(self, table: str, order_table: str, fk_column: str, party_id: int) -> str | None:
        """Hard-deletes when no order points at the party, otherwise deactivates."""
        with self.transaction() as conn:
            cur = conn.cursor()
            cur.execute(f"SELECT id FROM {table} WHERE id=?", (int(party_id),))
            if not cur.fetchone():
                return None
            cur.execute(f"SELECT EXISTS(SELECT 1 FROM {order_table} WHERE {fk_column}=?)", (int(party_id),))
            if bool(cur.fetchone()[0]):
                cur.execute(
                    f"UPDATE {table} SET is_active=0, updated_at=? WHERE id=?",
                    (to_db_ts(self.now()), int(party_id)),
                )
                return "deactivated"
            cur.execute(f"DELETE FROM {table} WHERE id=?", (int(party_id),))
            return "deleted"

    def add_customer(self, customer_code: str, level: str, values: dict) -> int:
        return self._insert_party("customers", "customer_code", customer_code, values, {"level": level})

    def update_customer(self, customer_id: int, values: dict) -> bool:
        return self._update_party("customers", customer_id, values)

    def get_customer(self, customer_id: int) -> Optional[Customer]:
        r = self._get_party("customers", customer_id)
        return customer_from_row(r) if r else None

    def list_customers(self, include_inactive: bool = False) -> list[Customer]:
        return [customer_from_row(r) for r in self._list_party("customers", include_inactive)]

    def remove_customer(self, customer_id: int) -> str | None:
        return self._remove_party("customers", "sales_orders", "customer_id", customer_id)

    def add_supplier(self, supplier_code: str, values: dict) -> int:
        return self._insert_party("suppliers", "supplier_code", supplier_code, values)

    def update_supplier(self, supplier_id: int, values: dict) -> bool:
        return self._update_party("suppliers", supplier_id, values)

    def get_supplier(self, supplier_id: int) -> Optional[Supplier]:
        r = self._get_party("suppliers", supplier_id)
        return supplier_from_row(r) if r else None

    def list_suppliers(self, include_inactive: bool = False) -> list[Supplier]:
        return [supplier_from_row(r) for r in self._list_party("suppliers", include_inactive)]

    def remove_supplier(self, supplier_id: int) -> str | None:
        return self._remove_party("suppliers", "purchase_orders", "supplier_id", supplier_id)

    # ---------- Orders ----------
    def get_sales_order(self, order_id: int) -> Optional[SalesOrder]:
        conn = self._conn()
        try:
            return load_sales_order(conn.cursor(), order_id)
        finally:
            conn.close()

    def list_sales_orders(self) -> list[SalesOrder]:
        conn = self._conn()
        try:
            cur = conn.cursor()
            cur.execute("SELECT id FROM sales_orders ORDER BY created_at DESC, id DESC")
            ids = [int(r[0]) for r in cur.fetchall()]
            return [load_sales_order(cur, oid) for oid in ids]
        finally:
            conn.close()

    def list_completed_sales_between(
        self, start: datetime, end: datetime, customer_id: int | None = None
    ) -> list[SalesOrder]:
        conn = self._conn()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT id
                FROM sales_orders
                WHERE status = 'completed'
                  AND shipped_at >= ? AND shipped_at <= ?
                  AND (? IS NULL OR customer_id = ?)
                ORDER BY shipped_at, id
                """,
                (to_db_ts(start), to_db_ts(end), customer_id, customer_id),
            )
            ids = [int(r[0]) for r in cur.fetchall()]
            return [load_sales_order(cur, oid) for oid in ids]
        finally:
            conn.close()

    def get_purchase_order(self, order_id: int) -> Optional[PurchaseOrder]:
        conn = self._conn()
        try:
            return load_purchase_order(conn.cursor(), order_id)
        finally:
            conn.close()

    def list_purchase_orders(self) -> list[PurchaseOrder]:
        conn = self._conn()
        try:
            cur = conn.cursor()
            cur.execute("SELECT id FROM purchase_orders ORDER BY created_at DESC, id DESC")
            ids = [int(r[0]) for r in cur.fetchall()]
            return [load_purchase_order(cur, oid) for oid in ids]
        finally:
            conn.close()

    # ---------- Inventory history ----------
    def list_history(self, limit: int | None = None) -> list[InventoryHistory]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            "SELECT * FROM inventory_history ORDER BY timestamp DESC, id DESC LIMIT ?",
            (-1 if limit is None else int(limit),),
        )
        rows = cur.fetchall()
        conn.close()
        return [history_from_row(r) for r in rows]

    def history_for_product(self, product_id: int) -> list[InventoryHistory]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            "SELECT * FROM inventory_history WHERE product_id=? ORDER BY timestamp DESC, id DESC",
            (int(product_id),),
        )
        rows = cur.fetchall()
        conn.close()
        return [history_from_row(r) for r in rows]

    def history_change_sum(self, product_id: int) -> tuple[int, int]:
        """(sum of changes, entry count) for one product."""
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            "SELECT COALESCE(SUM(change), 0), COUNT(*) FROM inventory_history WHERE product_id=?",
            (int(product_id),),
        )
        total, count = cur.fetchone()
        conn.close()
        return int(total), int(count)

    def integrity_check(self) -> str:
        """``PRAGMA integrity_check`` result; "ok" for a healthy file."""
        conn = self._conn()
        try:
            rows = conn.execute("PRAGMA integrity_check").fetchall()
        finally:
            conn.close()
        return "; ".join(str(r[0]) for r in rows) if rows else "unknown"

    @staticmethod
    def _hash_pin(pin: str, *, rounds: int = 200_000, salt: str | None = None) -> str:
        salt = salt or secrets.token_hex(16)
        digest = hashlib.pbkdf2_hmac("sha256", pin.encode("utf-8"), bytes.fromhex(salt), rounds).hex()
        return f"pbkdf2_sha256${rounds}${salt}${digest}"

    @staticmethod
    def _verify_pin(stored: str, provided: str) -> bool:
        if not stored.startswith("pbkdf2_sha256$"):
            return False
        try:
            _algo, rounds_s, salt, digest = stored.split("$", 3)
            candidate = hashlib.pbkdf2_hmac(
                "sha256",
                provided.encode("utf-8"),
                bytes.fromhex(salt),
                int(rounds_s),
            ).hex()
        except ValueError:
            return False
        return hmac.compare_digest(candidate, digest)

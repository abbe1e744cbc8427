import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


def set_admin_pin(repo, pin: str = "Admin#1234") -> str:
    from iom.repositories.sqlite_repo import SqliteRepository

    conn = repo._conn()
    cur = conn.cursor()
    cur.execute(
        "UPDATE users SET pin=?, must_change_pin=0 WHERE username='admin'",
        (SqliteRepository._hash_pin(pin),),
    )
    conn.commit()
    conn.close()
    return pin


class FixedClock:
    """Settable clock; every call returns the same instant until advanced."""

    def __init__(self, start: datetime = datetime(2024, 3, 15, 10, 0, 0)):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta) -> None:
        self.current += timedelta(**delta)

    def set(self, value: datetime) -> None:
        self.current = value


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def container(tmp_path: Path, clock: FixedClock):
    from iom.application.container import build_container
    from iom.config import RetryPolicy

    return build_container(tmp_path / "iom.db", clock=clock, retry_policy=RetryPolicy(attempts=3, backoff_base=0.0))


@pytest.fixture
def actor(container):
    pin = set_admin_pin(container.repo)
    return container.auth.login("admin", pin)


def make_product(container, actor, sku: str = "SKU-1", *, stock: int = 0, cost="0", prices=None, **fields) -> int:
    return container.inventory.create_product(
        actor,
        sku,
        fields.pop("name", f"Product {sku}"),
        prices=prices or {"retail": "150.00", "bronze": "140.00", "silver": "130.00", "gold": "120.00"},
        opening_stock=stock,
        opening_cost=cost,
        **fields,
    )


def make_customer(container, actor, code: str = "C-001", level: str = "retail", **details) -> int:
    details.setdefault("address", {"zip_code": "100", "city": "Taipei", "district": "Zhongzheng", "street": "1 Main St"})
    return container.customers.create_customer(actor, code, details.pop("name", f"Customer {code}"), level, **details)


def make_supplier(container, actor, code: str = "S-001", **details) -> int:
    return container.suppliers.create_supplier(actor, code, details.pop("name", f"Supplier {code}"), **details)


def receive(container, actor, supplier_id: int, items: list[dict]):
    po_id = container.purchases.create_purchase_order(actor, supplier_id, items)
    return container.purchases.receive_purchase_order(actor, po_id)


def ship(container, actor, customer_id: int, items: list[dict]):
    so_id = container.sales.create_sales_order(actor, customer_id, items)
    container.sales.approve_sales_order(actor, so_id)
    return container.sales.ship_sales_order(actor, so_id)

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional

from iom.domain.status import (
    HistoryType,
    PaymentStatus,
    PriceTier,
    PurchaseOrderStatus,
    SalesOrderStatus,
)


@dataclass(frozen=True)
class Actor:
    """Authenticated user on whose behalf a write runs."""

    user_id: int
    username: str


@dataclass(frozen=True)
class Address:
    zip_code: str = ""
    city: str = ""
    district: str = ""
    street: str = ""


@dataclass(frozen=True)
class PriceList:
    retail: Decimal = Decimal("0.00")
    bronze: Decimal = Decimal("0.00")
    silver: Decimal = Decimal("0.00")
    gold: Decimal = Decimal("0.00")

    def for_tier(self, tier: PriceTier) -> Decimal:
        return getattr(self, PriceTier(tier).value)


@dataclass(frozen=True)
class Product:
    id: int
    sku: str
    name: str
    brand: str
    spec: str
    unit: str
    prices: PriceList
    current_stock: int
    average_cost: Decimal
    is_active: bool = True
    category: str = ""
    description: str = ""
    barcode: Optional[str] = None
    low_stock_threshold: int = 0
    supplier_id: Optional[int] = None
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class Customer:
    id: int
    customer_code: str
    name: str
    level: PriceTier
    contact_person: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    tax_id: Optional[str] = None
    address: Address = field(default_factory=Address)
    payment_terms: Optional[str] = None
    notes: Optional[str] = None
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class Supplier:
    id: int
    supplier_code: str
    name: str
    contact_person: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    tax_id: Optional[str] = None
    address: Address = field(default_factory=Address)
    payment_terms: Optional[str] = None
    notes: Optional[str] = None
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class CustomerSnapshot:
    name: str
    level: PriceTier
    tax_id: str = ""


@dataclass(frozen=True)
class SupplierSnapshot:
    name: str
    tax_id: str = ""


@dataclass(frozen=True)
class SalesOrderItem:
    sku: str
    name: str
    spec: str
    quantity: int
    unit_price: Decimal
    subtotal: Decimal
    unit_cost: Optional[Decimal] = None


@dataclass(frozen=True)
class SalesOrder:
    id: int
    order_number: str
    customer_id: int
    customer_info: CustomerSnapshot
    shipping_address: Address
    items: tuple[SalesOrderItem, ...]
    total_amount: Decimal
    status: SalesOrderStatus
    payment_status: PaymentStatus
    created_by: int
    created_at: datetime
    updated_at: datetime
    total_cost: Optional[Decimal] = None
    gross_profit: Optional[Decimal] = None
    invoice_number: Optional[str] = None
    shipping_note: Optional[str] = None
    internal_note: Optional[str] = None
    approved_by: Optional[int] = None
    approved_at: Optional[datetime] = None
    shipped_by: Optional[int] = None
    shipped_at: Optional[datetime] = None
    cancelled_by: Optional[int] = None
    cancelled_at: Optional[datetime] = None


@dataclass(frozen=True)
class PurchaseOrderItem:
    sku: str
    name: str
    spec: str
    quantity: int
    unit_cost: Decimal
    subtotal: Decimal


@dataclass(frozen=True)
class PurchaseOrder:
    id: int
    order_number: str
    supplier_id: int
    supplier_info: SupplierSnapshot
    items: tuple[PurchaseOrderItem, ...]
    total_amount: Decimal
    status: PurchaseOrderStatus
    created_by: int
    created_at: datetime
    updated_at: datetime
    notes: Optional[str] = None
    received_by: Optional[int] = None
    received_at: Optional[datetime] = None
    cancelled_by: Optional[int] = None
    cancelled_at: Optional[datetime] = None


@dataclass(frozen=True)
class InventoryHistory:
    id: int
    product_id: int
    product_sku: str
    product_name: str
    type: HistoryType
    change: int
    stock_after: int
    cost_before: Optional[Decimal]
    cost_after: Optional[Decimal]
    related_doc_id: Optional[int]
    note: Optional[str]
    user_id: int
    timestamp: datetime


@dataclass(frozen=True)
class User:
    id: int
    username: str
    active: int = 1
    must_change_pin: int = 0


@dataclass(frozen=True)
class FinancialSummary:
    total_sales: Decimal
    total_cost: Decimal
    gross_profit: Decimal
    gross_margin: Decimal
    order_count: int
    orders: list[SalesOrder]


@dataclass(frozen=True)
class AdjustmentResult:
    product_id: int
    ok: bool
    new_stock: Optional[int] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class StocktakeImportResult:
    results: list[AdjustmentResult]
    skipped: int

    @property
    def applied(self) -> int:
        return sum(1 for r in self.results if r.ok)

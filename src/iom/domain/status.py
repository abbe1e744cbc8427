from __future__ import annotations

from enum import Enum

from iom.domain.errors import InvalidStateTransitionError


class HistoryType(str, Enum):
    PURCHASE_IN = "purchase-in"
    SALES_OUT = "sales-out"
    ADJUSTMENT = "adjustment"
    CUSTOMER_RETURN = "customer-return"
    SUPPLIER_RETURN = "supplier-return"


class PriceTier(str, Enum):
    RETAIL = "retail"
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PARTIALLY_PAID = "partially-paid"
    PAID = "paid"


class SalesOrderStatus(str, Enum):
    PENDING_APPROVAL = "pending-approval"
    PENDING_SHIPMENT = "pending-shipment"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    # reserved, nothing transitions here yet
    PARTIALLY_SHIPPED = "partially-shipped"

    def can_transition_to(self, target: "SalesOrderStatus") -> bool:
        return target in _SALES_TRANSITIONS[self]


class PurchaseOrderStatus(str, Enum):
    PENDING_RECEIPT = "pending-receipt"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    def can_transition_to(self, target: "PurchaseOrderStatus") -> bool:
        return target in _PURCHASE_TRANSITIONS[self]


_SALES_TRANSITIONS: dict[SalesOrderStatus, frozenset[SalesOrderStatus]] = {
    SalesOrderStatus.PENDING_APPROVAL: frozenset({SalesOrderStatus.PENDING_SHIPMENT, SalesOrderStatus.CANCELLED}),
    SalesOrderStatus.PENDING_SHIPMENT: frozenset({SalesOrderStatus.COMPLETED, SalesOrderStatus.CANCELLED}),
    SalesOrderStatus.COMPLETED: frozenset(),
    SalesOrderStatus.CANCELLED: frozenset(),
    SalesOrderStatus.PARTIALLY_SHIPPED: frozenset(),
}

_PURCHASE_TRANSITIONS: dict[PurchaseOrderStatus, frozenset[PurchaseOrderStatus]] = {
    PurchaseOrderStatus.PENDING_RECEIPT: frozenset({PurchaseOrderStatus.COMPLETED, PurchaseOrderStatus.CANCELLED}),
    PurchaseOrderStatus.COMPLETED: frozenset(),
    PurchaseOrderStatus.CANCELLED: frozenset(),
}


def ensure_transition(entity: str, current, target) -> None:
    if not current.can_transition_to(target):
        raise InvalidStateTransitionError(entity, current.value, target.value)


def ensure_editable(entity: str, current, editable) -> None:
    """Order lines and header may only change while the order is in ``editable``."""
    if current != editable:
        raise InvalidStateTransitionError(entity, current.value, editable.value)

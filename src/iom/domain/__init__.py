from .models import (
    Actor,
    AdjustmentResult,
    Address,
    Customer,
    CustomerSnapshot,
    FinancialSummary,
    InventoryHistory,
    PriceList,
    Product,
    PurchaseOrder,
    PurchaseOrderItem,
    SalesOrder,
    SalesOrderItem,
    StocktakeImportResult,
    Supplier,
    SupplierSnapshot,
    User,
)
from .errors import (
    AppError,
    ConflictError,
    InsufficientStockError,
    InvalidStateTransitionError,
    NotFoundError,
    StoreUnavailableError,
    UnauthorizedError,
    ValidationError,
)
from .status import HistoryType, PaymentStatus, PriceTier, PurchaseOrderStatus, SalesOrderStatus

__all__ = [
    "Actor",
    "AdjustmentResult",
    "Address",
    "Customer",
    "CustomerSnapshot",
    "FinancialSummary",
    "InventoryHistory",
    "PriceList",
    "Product",
    "PurchaseOrder",
    "PurchaseOrderItem",
    "SalesOrder",
    "SalesOrderItem",
    "StocktakeImportResult",
    "Supplier",
    "SupplierSnapshot",
    "User",
    "AppError",
    "ConflictError",
    "InsufficientStockError",
    "InvalidStateTransitionError",
    "NotFoundError",
    "StoreUnavailableError",
    "UnauthorizedError",
    "ValidationError",
    "HistoryType",
    "PaymentStatus",
    "PriceTier",
    "PurchaseOrderStatus",
    "SalesOrderStatus",
]

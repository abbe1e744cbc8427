from .auth_service import AuthService, LoginPolicy
from .customer_service import CustomerService
from .excel_service import ExcelService
from .inventory_service import InventoryService
from .ledger_service import LedgerCheck, StockLedger
from .purchase_service import PurchaseService
from .reporting_service import ReportingService
from .sales_service import SalesService
from .supplier_service import SupplierService

__all__ = [
    "AuthService",
    "LoginPolicy",
    "CustomerService",
    "ExcelService",
    "InventoryService",
    "LedgerCheck",
    "StockLedger",
    "PurchaseService",
    "ReportingService",
    "SalesService",
    "SupplierService",
]

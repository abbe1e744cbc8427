from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable

from iom.config import RetryPolicy
from iom.repositories.sqlite_repo import SqliteRepository
from iom.repositories.unit_of_work import SqliteUnitOfWork
from iom.services.auth_service import AuthService, LoginPolicy
from iom.services.customer_service import CustomerService
from iom.services.excel_service import ExcelService
from iom.services.inventory_service import InventoryService
from iom.services.ledger_service import StockLedger
from iom.services.purchase_service import PurchaseService
from iom.services.reporting_service import ReportingService
from iom.services.sales_service import SalesService
from iom.services.supplier_service import SupplierService


@dataclass(frozen=True)
class AppContainer:
    repo: SqliteRepository
    auth: AuthService
    ledger: StockLedger
    inventory: InventoryService
    customers: CustomerService
    suppliers: SupplierService
    purchases: PurchaseService
    sales: SalesService
    reporting: ReportingService
    excel: ExcelService


def build_container(
    db_path: Path | str,
    clock: Callable[[], datetime] | None = None,
    retry_policy: RetryPolicy | None = None,
    login_policy: LoginPolicy | None = None,
) -> AppContainer:
    repo = SqliteRepository(db_path, clock=clock)
    repo.init_db()

    retry = retry_policy or RetryPolicy()

    def uow_factory() -> SqliteUnitOfWork:
        return SqliteUnitOfWork(repo)

    ledger = StockLedger(repo, uow_factory, retry)
    inventory = InventoryService(repo, ledger, uow_factory, retry)
    purchases = PurchaseService(repo, ledger, uow_factory, retry)
    sales = SalesService(repo, ledger, uow_factory, retry)

    return AppContainer(
        repo=repo,
        auth=AuthService(repo, login_policy),
        ledger=ledger,
        inventory=inventory,
        customers=CustomerService(repo),
        suppliers=SupplierService(repo),
        purchases=purchases,
        sales=sales,
        reporting=ReportingService(repo),
        excel=ExcelService(repo, inventory),
    )

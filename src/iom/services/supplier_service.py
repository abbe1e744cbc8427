from __future__ import annotations

import logging
import sqlite3

from iom.domain.errors import NotFoundError, ValidationError
from iom.domain.models import Actor, Supplier
from iom.services.concurrency import require_actor
from iom.services.customer_service import party_columns

log = logging.getLogger(__name__)


class SupplierService:
    def __init__(self, repo):
        self.repo = repo

    def create_supplier(self, actor: Actor | None, supplier_code: str, name: str, **details) -> int:
        actor = require_actor(actor)
        code = (supplier_code or "").strip()
        if not code:
            raise ValidationError("Supplier code is required.")
        values = party_columns({**details, "name": name})
        try:
            supplier_id = self.repo.add_supplier(code, values)
        except sqlite3.IntegrityError as exc:
            raise ValidationError(f"Supplier code already exists: {code}") from exc
        log.info("supplier_created code=%s id=%s actor=%s", code, supplier_id, actor.user_id)
        return supplier_id

    def update_supplier(self, actor: Actor | None, supplier_id: int, **fields) -> None:
        require_actor(actor)
        if "supplier_code" in fields:
            raise ValidationError("Supplier code is immutable.")
        values = party_columns(fields)
        if not values:
            return
        if not self.repo.update_supplier(int(supplier_id), values):
            raise NotFoundError("Supplier not found.")

    def delete_supplier(self, actor: Actor | None, supplier_id: int) -> str:
        """Deactivates suppliers that purchase orders still point at."""
        actor = require_actor(actor)
        outcome = self.repo.remove_supplier(int(supplier_id))
        if outcome is None:
            raise NotFoundError("Supplier not found.")
        log.info("supplier_removed id=%s outcome=%s actor=%s", supplier_id, outcome, actor.user_id)
        return outcome

    def get_supplier(self, supplier_id: int) -> Supplier:
        s = self.repo.get_supplier(int(supplier_id))
        if not s:
            raise NotFoundError("Supplier not found.")
        return s

    def list_suppliers(self, include_inactive: bool = False) -> list[Supplier]:
        try:
            return self.repo.list_suppliers(include_inactive=include_inactive)
        except sqlite3.Error:
            log.exception("suppliers_read_failed")
            return []

from __future__ import annotations

import logging
import sqlite3
from typing import Mapping

from iom.domain.errors import NotFoundError, ValidationError
from iom.domain.models import Actor, Address, Customer
from iom.domain.status import PriceTier
from iom.services.concurrency import require_actor

log = logging.getLogger(__name__)

_DETAIL_FIELDS = {"name", "contact_person", "phone", "email", "tax_id", "address", "payment_terms", "notes"}


def party_columns(details: Mapping) -> dict:
    """Maps the public contact fields of a customer/supplier to table columns."""
    unknown = set(details) - _DETAIL_FIELDS
    if unknown:
        raise ValidationError(f"Unknown fields: {sorted(unknown)}")
    columns = {k: v for k, v in details.items() if k != "address"}
    if "name" in columns:
        columns["name"] = (columns["name"] or "").strip()
        if not columns["name"]:
            raise ValidationError("Name is required.")
    if "address" in details:
        address = details["address"] or Address()
        if isinstance(address, Mapping):
            try:
                address = Address(**address)
            except TypeError as exc:
                raise ValidationError(f"Invalid address: {exc}") from exc
        columns.update(
            address_zip=address.zip_code,
            address_city=address.city,
            address_district=address.district,
            address_street=address.street,
        )
    return columns


def _tier(level) -> PriceTier:
    try:
        return PriceTier(level)
    except ValueError as exc:
        raise ValidationError(f"Unknown customer level: {level}") from exc


class CustomerService:
    def __init__(self, repo):
        self.repo = repo

    def create_customer(self, actor: Actor | None, customer_code: str, name: str, level=PriceTier.RETAIL, **details) -> int:
        actor = require_actor(actor)
        code = (customer_code or "").strip()
        if not code:
            raise ValidationError("Customer code is required.")
        values = party_columns({**details, "name": name})
        try:
            customer_id = self.repo.add_customer(code, _tier(level).value, values)
        except sqlite3.IntegrityError as exc:
            raise ValidationError(f"Customer code already exists: {code}") from exc
        log.info("customer_created code=%s id=%s actor=%s", code, customer_id, actor.user_id)
        return customer_id

    def update_customer(self, actor: Actor | None, customer_id: int, **fields) -> None:
        require_actor(actor)
        if "customer_code" in fields:
            raise ValidationError("Customer code is immutable.")
        level = fields.pop("level", None)
        values = party_columns(fields)
        if level is not None:
            values["level"] = _tier(level).value
        if not values:
            return
        if not self.repo.update_customer(int(customer_id), values):
            raise NotFoundError("Customer not found.")

    def delete_customer(self, actor: Actor | None, customer_id: int) -> str:
        actor = require_actor(actor)
        outcome = self.repo.remove_customer(int(customer_id))
        if outcome is None:
            raise NotFoundError("Customer not found.")
        log.info("customer_removed id=%s outcome=%s actor=%s", customer_id, outcome, actor.user_id)
        return outcome

    def get_customer(self, customer_id: int) -> Customer:
        c = self.repo.get_customer(int(customer_id))
        if not c:
            raise NotFoundError("Customer not found.")
        return c

    def list_customers(self, include_inactive: bool = False) -> list[Customer]:
        try:
            return self.repo.list_customers(include_inactive=include_inactive)
        except sqlite3.Error:
            log.exception("customers_read_failed")
            return []

from decimal import Decimal

import pytest
from conftest import make_product

from iom.config import RetryPolicy
from iom.domain.errors import (
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from iom.domain.status import HistoryType
from iom.repositories.unit_of_work import SqliteUnitOfWork
from iom.services.concurrency import run_with_retry


def test_opening_stock_is_booked_as_adjustment(container, actor):
    pid = make_product(container, actor, "SKU-O", stock=4, cost="12.50")

    product = container.inventory.get_product(pid)
    assert product.current_stock == 4
    assert product.average_cost == Decimal("12.50")

    [entry] = container.ledger.history_for_product(pid)
    assert entry.type == HistoryType.ADJUSTMENT
    assert entry.change == 4
    assert entry.stock_after == 4
    assert entry.user_id == actor.user_id


def test_stock_change_appends_history_with_stock_after(container, actor):
    pid = make_product(container, actor, "SKU-L")

    container.ledger.apply_stock_change(actor, pid, 7, HistoryType.CUSTOMER_RETURN, "returned")
    entry = container.ledger.apply_stock_change(actor, pid, -2, "supplier-return", "sent back")

    assert entry.stock_after == 5
    assert entry.type == HistoryType.SUPPLIER_RETURN
    assert container.inventory.get_product(pid).current_stock == 5
    assert [h.change for h in container.ledger.history_for_product(pid)] == [-2, 7]


def test_negative_result_is_rejected_without_writes(container, actor):
    pid = make_product(container, actor, "SKU-N", stock=2, cost="1.00")
    before = container.inventory.get_product(pid)

    with pytest.raises(InsufficientStockError) as exc:
        container.ledger.apply_stock_change(actor, pid, -3, HistoryType.ADJUSTMENT)

    assert exc.value.sku == "SKU-N"
    assert exc.value.available == 2
    assert exc.value.requested == 3
    after = container.inventory.get_product(pid)
    assert after.current_stock == 2
    assert after.version == before.version
    assert len(container.ledger.history_for_product(pid)) == 1


def test_write_without_actor_is_unauthorized(container, actor):
    pid = make_product(container, actor, "SKU-U")

    with pytest.raises(UnauthorizedError):
        container.ledger.apply_stock_change(None, pid, 1, HistoryType.ADJUSTMENT)
    assert container.ledger.history_for_product(pid) == []


def test_invalid_change_arguments(container, actor):
    pid = make_product(container, actor, "SKU-V")

    with pytest.raises(ValidationError):
        container.ledger.apply_stock_change(actor, pid, 1, "teleport")
    with pytest.raises(ValidationError):
        container.ledger.apply_stock_change(actor, pid, 1.5, HistoryType.ADJUSTMENT)
    with pytest.raises(NotFoundError):
        container.ledger.apply_stock_change(actor, 9999, 1, HistoryType.ADJUSTMENT)


def test_history_is_newest_first_with_strictly_increasing_timestamps(container, actor):
    # the fixed clock never moves, so ordering relies on the timestamp bump
    a = make_product(container, actor, "SKU-A", stock=1, cost="1.00")
    b = make_product(container, actor, "SKU-B", stock=1, cost="1.00")
    container.ledger.apply_stock_change(actor, a, 1, HistoryType.ADJUSTMENT)

    history = container.ledger.list_history()
    assert [h.product_id for h in history] == [a, b, a]
    stamps = [h.timestamp for h in history]
    assert stamps == sorted(stamps, reverse=True)
    assert len(set(stamps)) == 3
    assert len(container.ledger.list_history(limit=2)) == 2


def test_history_sum_matches_stock(container, actor):
    pid = make_product(container, actor, "SKU-S", stock=10, cost="3.00")
    container.ledger.apply_stock_change(actor, pid, -4, HistoryType.ADJUSTMENT)
    container.ledger.apply_stock_change(actor, pid, 6, HistoryType.CUSTOMER_RETURN)

    check = container.ledger.verify_product(pid)
    assert check.consistent
    assert check.current_stock == check.history_sum == 12
    assert check.entries == 3
    assert all(c.consistent for c in container.ledger.verify_all())


def test_stale_product_version_raises_conflict(container, actor):
    pid = make_product(container, actor, "SKU-C", stock=5, cost="1.00")
    stale = container.inventory.get_product(pid)
    container.ledger.apply_stock_change(actor, pid, 1, HistoryType.ADJUSTMENT)

    with pytest.raises(ConflictError):
        with SqliteUnitOfWork(container.repo) as uow:
            uow.write_product_stock(stale, 0, stale.average_cost)
    assert container.inventory.get_product(pid).current_stock == 6


def test_run_with_retry_reruns_on_conflict():
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise ConflictError("busy")
        return "done"

    assert run_with_retry(flaky, RetryPolicy(attempts=3, backoff_base=0.0)) == "done"
    assert len(calls) == 3


def test_run_with_retry_gives_up_after_policy_attempts():
    calls = []

    def always_conflicts():
        calls.append(1)
        raise ConflictError("busy")

    with pytest.raises(ConflictError):
        run_with_retry(always_conflicts, RetryPolicy(attempts=2, backoff_base=0.0))
    assert len(calls) == 2


def test_unit_of_work_rolls_back_on_any_exception(container, actor):
    pid = make_product(container, actor, "SKU-R", stock=5, cost="1.00")

    with pytest.raises(KeyboardInterrupt):
        with SqliteUnitOfWork(container.repo) as uow:
            container.ledger.apply(uow, pid, -5, HistoryType.ADJUSTMENT, actor=actor)
            raise KeyboardInterrupt()

    assert container.inventory.get_product(pid).current_stock == 5
    assert len(container.ledger.history_for_product(pid)) == 1


def test_standalone_receipt_needs_and_applies_unit_cost(container, actor):
    pid = make_product(container, actor, "SKU-R", stock=10, cost="100.00")

    with pytest.raises(ValidationError):
        container.ledger.apply_stock_change(actor, pid, 5, HistoryType.PURCHASE_IN)
    with pytest.raises(ValidationError):
        container.ledger.apply_stock_change(actor, pid, 1, HistoryType.ADJUSTMENT, receive_unit_cost="1.00")

    entry = container.ledger.apply_stock_change(actor, pid, 5, "purchase-in", "walk-in delivery", receive_unit_cost="130.00")

    assert entry.cost_before == Decimal("100.00")
    assert entry.cost_after == Decimal("110.00")
    product = container.inventory.get_product(pid)
    assert product.current_stock == 15
    assert product.average_cost == Decimal("110.00")

import threading

from conftest import make_customer, make_product, make_supplier

from iom.domain.errors import InsufficientStockError


def _run_parallel(target, args_list):
    outcomes = []
    lock = threading.Lock()
    barrier = threading.Barrier(len(args_list))

    def worker(*args):
        barrier.wait()
        try:
            result = target(*args)
        except Exception as exc:  # collected for assertions below
            result = exc
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=worker, args=args) for args in args_list]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    return outcomes


def test_concurrent_shipments_never_oversell(container, actor):
    customer = make_customer(container, actor)
    pid = make_product(container, actor, "SKU-HOT", stock=10, cost="5.00")
    order_ids = []
    for _ in range(5):
        so_id = container.sales.create_sales_order(actor, customer, [{"sku": "SKU-HOT", "quantity": 3, "unit_price": "9"}])
        container.sales.approve_sales_order(actor, so_id)
        order_ids.append(so_id)

    outcomes = _run_parallel(lambda oid: container.sales.ship_sales_order(actor, oid), [(oid,) for oid in order_ids])

    shipped = [o for o in outcomes if not isinstance(o, Exception)]
    failed = [o for o in outcomes if isinstance(o, Exception)]
    assert len(shipped) == 3
    assert len(failed) == 2
    assert all(isinstance(e, InsufficientStockError) for e in failed)
    assert container.inventory.get_product(pid).current_stock == 1
    assert container.ledger.verify_product(pid).consistent


def test_concurrent_receipts_and_adjustments_keep_ledger_consistent(container, actor):
    supplier = make_supplier(container, actor)
    pid = make_product(container, actor, "SKU-MIX", stock=20, cost="10.00")
    po_ids = [
        container.purchases.create_purchase_order(actor, supplier, [{"sku": "SKU-MIX", "quantity": 5, "unit_cost": "20.00"}])
        for _ in range(4)
    ]

    receipts = [(container.purchases.receive_purchase_order, (actor, po)) for po in po_ids]
    changes = [(container.ledger.apply_stock_change, (actor, pid, -1, "adjustment")) for _ in range(4)]
    outcomes = _run_parallel(lambda fn, args: fn(*args), receipts + changes)

    assert not [o for o in outcomes if isinstance(o, Exception)]
    product = container.inventory.get_product(pid)
    assert product.current_stock == 20 + 4 * 5 - 4
    assert container.ledger.verify_product(pid).consistent
    assert len(container.ledger.history_for_product(pid)) == 1 + 4 + 4

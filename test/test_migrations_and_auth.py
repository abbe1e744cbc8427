import sqlite3
from pathlib import Path

import pytest
from conftest import set_admin_pin

from iom.domain.errors import UnauthorizedError, ValidationError
from iom.repositories.sqlite_repo import SqliteRepository
from iom.services.auth_service import AuthService, LoginPolicy


def _tables(repo) -> set[str]:
    conn = repo._conn()
    rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
    conn.close()
    return {r[0] for r in rows}


def test_migrations_create_schema_and_bootstrap_admin(tmp_path: Path):
    repo = SqliteRepository(tmp_path / "m.db")
    repo.init_db()

    assert {
        "users",
        "products",
        "customers",
        "suppliers",
        "sales_orders",
        "sales_order_items",
        "purchase_orders",
        "purchase_order_items",
        "inventory_history",
        "schema_migrations",
    } <= _tables(repo)
    assert [u.username for u in repo.list_users()] == ["admin"]
    assert (tmp_path / ".admin_bootstrap_pin").exists()


def test_migrations_are_idempotent(tmp_path: Path):
    repo = SqliteRepository(tmp_path / "idem.db")
    repo.init_db()
    repo.init_db()

    conn = repo._conn()
    versions = [r[0] for r in conn.execute("SELECT version FROM schema_migrations ORDER BY version")]
    conn.close()
    assert versions == [1, 2, 3]
    assert len(repo.list_users()) == 1


def test_bootstrap_pin_from_environment(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("IOM_BOOTSTRAP_ADMIN_PIN", "Boot1234x")
    repo = SqliteRepository(tmp_path / "env.db")
    repo.init_db()

    actor = AuthService(repo).login("admin", "Boot1234x")
    assert actor.username == "admin"


def test_migration_failure_restores_db(tmp_path: Path):
    class BrokenMigrationRepo(SqliteRepository):
        def _migration_v3_ledger_guards(self, cur):
            raise RuntimeError("forced migration failure")

    db = tmp_path / "broken.db"
    repo = SqliteRepository(db)
    repo.init_db()

    conn = repo._conn()
    cur = conn.cursor()
    cur.execute("DELETE FROM schema_migrations WHERE version = 3")
    conn.commit()
    conn.close()

    broken = BrokenMigrationRepo(db)
    with pytest.raises(RuntimeError, match="Original database restored"):
        broken.run_migrations()

    conn = repo._conn()
    after = int(conn.execute("SELECT COALESCE(MAX(version), 0) FROM schema_migrations").fetchone()[0])
    conn.close()
    assert after == 2


def test_auth_rejects_wrong_pin(tmp_path: Path):
    repo = SqliteRepository(tmp_path / "a.db")
    repo.init_db()

    with pytest.raises(UnauthorizedError, match="Invalid"):
        AuthService(repo).login("admin", "wrong")


def test_auth_locks_after_failed_attempts_and_persists(tmp_path: Path):
    repo = SqliteRepository(tmp_path / "lock.db")
    repo.init_db()
    pin = set_admin_pin(repo)
    policy = LoginPolicy(max_failed_attempts=2, lockout_seconds=30, min_pin_length=8)
    auth = AuthService(repo, policy=policy)

    with pytest.raises(UnauthorizedError, match="Invalid"):
        auth.login("admin", "bad")
    with pytest.raises(UnauthorizedError, match="locked"):
        auth.login("admin", "bad")

    # correct PIN is refused while the lock holds, also from a fresh service
    with pytest.raises(UnauthorizedError, match="locked"):
        AuthService(repo, policy=policy).login("admin", pin)


def test_create_user_and_change_pin(tmp_path: Path):
    repo = SqliteRepository(tmp_path / "u.db")
    repo.init_db()
    auth = AuthService(repo)
    admin = auth.login("admin", set_admin_pin(repo))

    auth.create_user(admin, "clerk", "Clerk1234")
    clerk = auth.login("clerk", "Clerk1234")
    assert {u.username: u.must_change_pin for u in auth.list_users()}["clerk"] == 1

    auth.change_my_pin(clerk, "Clerk1234", "Clerk5678", "Clerk5678")
    assert auth.login("clerk", "Clerk5678").user_id == clerk.user_id
    assert {u.username: u.must_change_pin for u in auth.list_users()}["clerk"] == 0


def test_weak_or_duplicate_user_is_rejected(tmp_path: Path):
    repo = SqliteRepository(tmp_path / "w.db")
    repo.init_db()
    auth = AuthService(repo)
    admin = auth.login("admin", set_admin_pin(repo))

    with pytest.raises(ValidationError):
        auth.create_user(admin, "weak", "short1")
    with pytest.raises(ValidationError):
        auth.create_user(admin, "admin", "Another123")
    with pytest.raises(UnauthorizedError):
        auth.create_user(None, "anon", "Anon12345")


def test_history_rows_cannot_be_updated_or_deleted(container, actor):
    from conftest import make_product

    make_product(container, actor, "SKU-H", stock=3, cost="2.00")
    conn = container.repo._conn()
    try:
        with pytest.raises(sqlite3.IntegrityError, match="append-only"):
            conn.execute("UPDATE inventory_history SET change = 99")
        with pytest.raises(sqlite3.IntegrityError, match="append-only"):
            conn.execute("DELETE FROM inventory_history")
    finally:
        conn.close()

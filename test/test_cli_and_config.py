from datetime import datetime
from pathlib import Path

import pytest
from conftest import FixedClock, make_customer, make_product, set_admin_pin, ship

from iom.application.container import build_container
from iom.config import get_app_paths
from iom.main import main


@pytest.fixture(autouse=True)
def app_home(tmp_path: Path, monkeypatch):
    home = tmp_path / "home"
    monkeypatch.setenv("IOM_HOME", str(home))
    return home


def test_app_paths_honour_iom_home(app_home: Path):
    paths = get_app_paths()

    assert paths.base_dir == app_home
    assert paths.db_path == app_home / "inventory.db"
    assert paths.logs_dir.is_dir()


def test_cli_init_creates_database(app_home: Path, capsys):
    assert main(["init"]) == 0

    assert (app_home / "inventory.db").exists()
    assert "Database ready" in capsys.readouterr().out


def test_cli_summary_prints_and_exports(tmp_path: Path, capsys):
    db = tmp_path / "cli.db"
    c = build_container(db, clock=FixedClock(datetime(2024, 5, 2, 12, 0)))
    actor = c.auth.login("admin", set_admin_pin(c.repo))
    customer = make_customer(c, actor)
    make_product(c, actor, "SKU-CLI", stock=2, cost="4.00")
    ship(c, actor, customer, [{"sku": "SKU-CLI", "quantity": 2, "unit_price": "5.00"}])
    out_file = tmp_path / "out.xlsx"

    code = main(["--db", str(db), "summary", "--start", "2024-05-01", "--end", "2024-05-31", "--export", str(out_file)])

    out = capsys.readouterr().out
    assert code == 0
    assert "Orders:       1" in out
    assert "Gross profit: 2.00" in out
    assert "Gross margin: 20.00%" in out
    assert out_file.exists()


def test_cli_summary_rejects_bad_window(tmp_path: Path, capsys):
    code = main(["--db", str(tmp_path / "bad.db"), "summary", "--start", "2024-05-31", "--end", "2024-05-01"])

    assert code == 1
    assert "error:" in capsys.readouterr().err


def test_cli_verify_reports_healthy_database(tmp_path: Path, capsys):
    db = tmp_path / "verify.db"
    c = build_container(db)
    actor = c.auth.login("admin", set_admin_pin(c.repo))
    make_product(c, actor, "SKU-V1", stock=3, cost="1.00")
    make_product(c, actor, "SKU-V2")

    code = main(["--db", str(db), "verify"])

    out = capsys.readouterr().out
    assert code == 0
    assert "Database integrity: ok" in out
    assert "Products checked:   2" in out
    assert "MISMATCH" not in out


def test_cli_verify_flags_stock_that_history_does_not_explain(tmp_path: Path, capsys):
    db = tmp_path / "drift.db"
    c = build_container(db)
    actor = c.auth.login("admin", set_admin_pin(c.repo))
    pid = make_product(c, actor, "SKU-D", stock=3, cost="1.00")
    conn = c.repo._conn()
    conn.execute("UPDATE products SET current_stock = 7 WHERE id = ?", (pid,))
    conn.commit()
    conn.close()

    code = main(["--db", str(db), "verify"])

    assert code == 1
    assert "MISMATCH SKU-D: stock=7 history=3" in capsys.readouterr().out

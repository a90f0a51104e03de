import json
from pathlib import Path

import pytest
from conftest import make_app
from openpyxl import load_workbook

from rsm import main as cli
from rsm.domain.errors import NotFoundError, ValidationError
from rsm.domain.models import ProductLine


def _seed(app):
    local = app.inventory.add_product("Yerba", 60.0, 100.0, stock=10)
    foreign = app.inventory.add_product("Whisky", 5.0, 10.0, stock=10, foreign_currency=True)
    app.fx.record_rate(1000.0)
    sale = app.sales.create_sale("2024-05-10", [ProductLine(local, 2, 100.0), ProductLine(foreign, 1, 10.0)], paid=True)
    voided = app.sales.create_sale("2024-05-10", [ProductLine(local, 1, 100.0)])
    app.sales.void_sale(voided.id)
    app.expenses.add_expense(300.0, "Rent")
    old = app.expenses.add_expense(1000.0, "Old fridge")
    app.expenses.set_expense_active(old.id, False)
    return sale


def test_expenses_service(tmp_path: Path):
    app = make_app(tmp_path)
    rent = app.expenses.add_expense(300.0, "  Rent ")
    app.expenses.add_expense(50.0)

    assert rent.description == "Rent"
    assert rent.active is True
    assert app.expenses.set_expense_active(rent.id, False).active is False
    assert [e.cost for e in app.expenses.list_active_expenses()] == [50.0]
    assert len(app.expenses.list_expenses()) == 2


def test_update_expense(tmp_path: Path):
    app = make_app(tmp_path)
    rent = app.expenses.add_expense(300.0, "Rent")

    updated = app.expenses.update_expense(rent.id, 350.0, "  Rent (May) ")
    assert (updated.cost, updated.description, updated.active) == (350.0, "Rent (May)", True)
    assert app.expenses.update_expense(rent.id, 0.0, "").description is None

    with pytest.raises(ValidationError, match="Cost must be >= 0"):
        app.expenses.update_expense(rent.id, -1.0, "Rent")
    with pytest.raises(NotFoundError):
        app.expenses.update_expense(999, 10.0, "Ghost")

    assert app.expenses.list_expenses()[0].cost == 0.0


def test_excel_report_has_summary_detail_and_expenses(tmp_path: Path):
    app = make_app(tmp_path)
    sale = _seed(app)
    out = tmp_path / "report.xlsx"

    app.reporting.export_sales_report_excel(str(out), "2024-05-01", "2024-05-10")

    wb = load_workbook(out)
    assert wb.sheetnames == ["Summary", "Sales Detail", "Expenses"]

    summary = {wb["Summary"][f"A{r}"].value: wb["Summary"][f"B{r}"].value for r in range(5, 15)}
    assert summary["Sales count"] == 1
    assert summary["Revenue"] == 10200.0
    assert summary["Expenses"] == 300.0
    assert summary["Profit"] == 10200.0 - 120.0 - 5000.0 - 300.0

    detail = list(wb["Sales Detail"].iter_rows(min_row=2, values_only=True))
    assert len(detail) == 2
    assert {row[0] for row in detail} == {sale.id}
    assert [row[9] for row in detail] == ["ARS", "USD"]
    assert detail[1][11] == 10000.0

    expenses = list(wb["Expenses"].iter_rows(min_row=2, values_only=True))
    assert expenses == [(1, "Rent", 300.0)]


def test_cli_rate_and_metrics(tmp_path: Path, monkeypatch, capsys):
    db = tmp_path / "cli.db"
    monkeypatch.setattr(cli, "setup_logging", lambda *args, **kwargs: None)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("APPDATA", str(tmp_path))

    assert cli.main(["--db", str(db), "rate", "1200"]) == 0
    assert "Recorded 1200.0000" in capsys.readouterr().out

    assert cli.main(["--db", str(db), "rate"]) == 0
    assert capsys.readouterr().out.startswith("1200.0000")

    assert cli.main(["--db", str(db), "rate", "-5"]) == 1
    assert "Error:" in capsys.readouterr().err

    assert cli.main(["--db", str(db), "metrics"]) == 0
    metrics = json.loads(capsys.readouterr().out)
    assert metrics["revenue"] == 0.0
    assert metrics["current_rate"] == 1200.0


def test_cli_auto_cancel_with_empty_store(tmp_path: Path, monkeypatch, capsys):
    monkeypatch.setattr(cli, "setup_logging", lambda *args, **kwargs: None)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("APPDATA", str(tmp_path))

    assert cli.main(["--db", str(tmp_path / "cli.db"), "auto-cancel"]) == 0
    assert "Canceled 0 stale order(s)." in capsys.readouterr().out

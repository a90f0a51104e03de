from __future__ import annotations

from datetime import date

from openpyxl import Workbook
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.table import Table, TableStyleInfo

from rsm.services.metrics_service import compute_metrics
from rsm.services.sales_service import compute_total


class ReportingService:
    def __init__(self, sales_service, expense_service, fx_service):
        self.sales = sales_service
        self.expenses = expense_service
        self.fx = fx_service

    def export_sales_report_excel(self, path: str, date_from: date | str, date_to: date | str) -> None:
        wb = Workbook()

        def money(cell):
            cell.number_format = "#,##0.00"

        def bold_row(ws, r):
            for c in ws[r]:
                c.font = Font(bold=True)

        def set_widths(ws, widths: dict[str, int]):
            for col, w in widths.items():
                ws.column_dimensions[col].width = w

        def add_table(ws, name: str, start_row: int, start_col: int, end_row: int, end_col: int):
            ref = f"{get_column_letter(start_col)}{start_row}:{get_column_letter(end_col)}{end_row}"
            tab = Table(displayName=name, ref=ref)
            tab.tableStyleInfo = TableStyleInfo(
                name="TableStyleMedium9",
                showRowStripes=True,
                showColumnStripes=False,
            )
            ws.add_table(tab)

        sales_rows = self.sales.search_sales(date_from, date_to, voided=False)
        expense_rows = self.expenses.list_active_expenses()
        current = self.fx.current_rate()
        metrics = compute_metrics(sales_rows, expense_rows, current.rate)

        # -------- 1) Summary --------
        ws = wb.active
        ws.title = "Summary"
        ws["A1"] = "Summary"
        ws["A1"].font = Font(bold=True, size=14)

        ws["A3"] = "Window"
        ws["B3"] = f"{date_from}  ->  {date_to}"

        rows = [
            ("Sales count", len(sales_rows), "int"),
            ("Revenue (local-priced)", metrics.revenue_pesos, "money"),
            ("Revenue (foreign-priced)", metrics.revenue_dolares, "money"),
            ("Revenue", metrics.revenue, "money"),
            ("Cost of goods", metrics.cost_pesos + metrics.cost_dolares, "money"),
            ("Expenses", metrics.expenses, "money"),
            ("Profit", metrics.profit, "money"),
            ("Current rate", metrics.current_rate, "money"),
            ("Revenue USD (current rate)", metrics.revenue_usd, "money"),
            ("Profit USD (current rate)", metrics.profit_usd, "money"),
        ]

        start_row = 5
        for i, (label, val, kind) in enumerate(rows):
            r = start_row + i
            ws[f"A{r}"] = label
            ws[f"B{r}"] = val
            if kind == "money":
                money(ws[f"B{r}"])

        set_widths(ws, {"A": 30, "B": 34})

        # -------- 2) Sales Detail --------
        ws2 = wb.create_sheet("Sales Detail")
        ws2.append([
            "Sale ID", "Date", "Paid", "Sale Total",
            "Kind", "Ref ID", "Qty", "Unit Price", "Unit Cost",
            "Currency", "Rate", "Line Local Value",
        ])
        bold_row(ws2, 1)

        out_row = 2
        for s in sales_rows:
            total = compute_total(s)
            for line in s.lines:
                rate = s.exchange_rate if line.foreign_currency else 1.0
                ws2.append([
                    int(s.id), s.date, "yes" if s.paid else "no", float(total),
                    line.item.kind, int(line.item.ref_id), int(line.qty),
                    float(line.unit_price), float(line.unit_cost),
                    "USD" if line.foreign_currency else "ARS", float(s.exchange_rate),
                    float(line.qty * line.unit_price * rate),
                ])
                for col in ("D", "H", "I", "K", "L"):
                    money(ws2[f"{col}{out_row}"])
                out_row += 1

        ws2.freeze_panes = "A2"
        set_widths(ws2, {
            "A": 10, "B": 14, "C": 8, "D": 14,
            "E": 12, "F": 8, "G": 6, "H": 14,
            "I": 14, "J": 10, "K": 12, "L": 18,
        })
        if ws2.max_row >= 2:
            add_table(ws2, "SalesDetail", 1, 1, ws2.max_row, 12)

        # -------- 3) Expenses --------
        ws3 = wb.create_sheet("Expenses")
        ws3.append(["Expense ID", "Description", "Cost"])
        bold_row(ws3, 1)
        for i, e in enumerate(expense_rows, start=2):
            ws3.append([int(e.id), e.description or "", float(e.cost)])
            money(ws3[f"C{i}"])
        set_widths(ws3, {"A": 12, "B": 40, "C": 14})

        wb.save(path)

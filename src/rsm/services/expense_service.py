from __future__ import annotations

from typing import Optional

from rsm.domain.errors import NotFoundError, ValidationError
from rsm.domain.models import Expense


class ExpenseService:
    def __init__(self, repo):
        self.repo = repo

    def add_expense(self, cost: float, description: Optional[str] = None) -> Expense:
        if float(cost) < 0:
            raise ValidationError("Cost must be >= 0.")
        description = (description or "").strip() or None
        expense_id = self.repo.add_expense(float(cost), description)
        return self.repo.get_expense(expense_id)

    def update_expense(self, expense_id: int, cost: float, description: Optional[str] = None) -> Expense:
        if float(cost) < 0:
            raise ValidationError("Cost must be >= 0.")
        description = (description or "").strip() or None
        if not self.repo.update_expense(int(expense_id), float(cost), description):
            raise NotFoundError("Expense not found.")
        return self.repo.get_expense(int(expense_id))

    def set_expense_active(self, expense_id: int, active: bool) -> Expense:
        if not self.repo.set_expense_active(int(expense_id), bool(active)):
            raise NotFoundError("Expense not found.")
        return self.repo.get_expense(int(expense_id))

    def list_expenses(self, active_only: bool = False) -> list[Expense]:
        return self.repo.list_expenses(active_only=active_only)

    def list_active_expenses(self) -> list[Expense]:
        return self.repo.list_expenses(active_only=True)

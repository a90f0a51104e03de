from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from rsm.domain.errors import ValidationError
from rsm.domain.models import Expense, Sale


@dataclass(frozen=True)
class Metrics:
    """Local-currency figures valued at each sale's own rate.

    The ``*_dolares`` buckets hold the local value of foreign-priced lines.
    The ``*_usd`` figures re-express the totals at ``current_rate`` for a
    present-day view.
    """

    revenue_pesos: float
    revenue_dolares: float
    cost_pesos: float
    cost_dolares: float
    expenses: float
    current_rate: float

    @property
    def revenue(self) -> float:
        return self.revenue_pesos + self.revenue_dolares

    @property
    def cost(self) -> float:
        return self.cost_pesos + self.cost_dolares + self.expenses

    @property
    def profit(self) -> float:
        return self.revenue - self.cost

    @property
    def revenue_usd(self) -> float:
        return self.revenue / self.current_rate

    @property
    def cost_usd(self) -> float:
        return self.cost / self.current_rate

    @property
    def profit_usd(self) -> float:
        return self.profit / self.current_rate

    def as_dict(self) -> dict[str, float]:
        return {
            "revenue_pesos": self.revenue_pesos,
            "revenue_dolares": self.revenue_dolares,
            "revenue": self.revenue,
            "cost_pesos": self.cost_pesos,
            "cost_dolares": self.cost_dolares,
            "expenses": self.expenses,
            "cost": self.cost,
            "profit": self.profit,
            "revenue_usd": self.revenue_usd,
            "cost_usd": self.cost_usd,
            "profit_usd": self.profit_usd,
            "current_rate": self.current_rate,
        }


def compute_metrics(sales: Iterable[Sale], expenses: Iterable[Expense], current_rate: float) -> Metrics:
    current_rate = float(current_rate)
    if current_rate <= 0:
        raise ValidationError("Current exchange rate must be > 0.")

    revenue_pesos = revenue_dolares = 0.0
    cost_pesos = cost_dolares = 0.0

    for sale in sales:
        if sale.voided:
            continue
        for line in sale.lines:
            if line.foreign_currency:
                revenue_dolares += line.qty * line.unit_price * sale.exchange_rate
                cost_dolares += line.qty * line.unit_cost * sale.exchange_rate
            else:
                revenue_pesos += line.qty * line.unit_price
                cost_pesos += line.qty * line.unit_cost

    total_expenses = sum(float(e.cost) for e in expenses if e.active)

    return Metrics(
        revenue_pesos=revenue_pesos,
        revenue_dolares=revenue_dolares,
        cost_pesos=cost_pesos,
        cost_dolares=cost_dolares,
        expenses=total_expenses,
        current_rate=current_rate,
    )

"""
Commission Calculator

Prices a confirmed sale. The rate is taken from the seller's plan at sale
time and snapshotted into the Commission; later plan changes never reach
an existing record.
"""

from datetime import datetime, timedelta
from decimal import Decimal

from ..models import CommissionCalculation, Plan
from .money import quantize_units


class CommissionCalculator:
    """Calculates the commission owed on a sale."""

    COMMISSION_RATES = {
        Plan.BASIC.value: Decimal("0.05"),
        Plan.PREMIUM.value: Decimal("0.04"),
        Plan.DEALER.value: Decimal("0.035"),
        Plan.ENTERPRISE.value: Decimal("0.03"),
    }

    def __init__(self, due_days: int = 30):
        self.due_days = due_days

    def rate_for(self, plan: str | None) -> Decimal:
        """Unknown plans fall back to the basic rate."""
        return self.COMMISSION_RATES.get(plan or "", self.COMMISSION_RATES[Plan.BASIC.value])

    def calculate(self, sale_price: int, plan: str | None, sale_date: datetime) -> CommissionCalculation:
        rate = self.rate_for(plan)
        return CommissionCalculation(
            rate=rate,
            amount=quantize_units(Decimal(sale_price) * rate),
            due_date=sale_date + timedelta(days=self.due_days),
        )

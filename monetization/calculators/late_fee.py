"""
Late Fee Calculator

fee = min(original × monthly_rate × months_overdue, original × max_rate)

A month is a fixed 30-day period. The fee is always computed from the
original amount, so re-running accrual never compounds.
"""

from datetime import datetime
from decimal import Decimal

from ..models import LateFeeCalculation
from .money import floor_units


class LateFeeCalculator:
    """Calculates the capped, time-accruing late fee on an overdue commission."""

    DAYS_PER_MONTH = Decimal("30")

    def __init__(self, monthly_rate: Decimal, max_rate: Decimal):
        self.monthly_rate = monthly_rate
        self.max_rate = max_rate

    @staticmethod
    def days_overdue(due_date: datetime, now: datetime) -> int:
        """Whole days elapsed since the due date; zero when not yet due."""
        seconds = (now - due_date).total_seconds()
        return max(0, int(seconds // 86400))

    def calculate(self, original_amount: int, due_date: datetime, now: datetime) -> LateFeeCalculation:
        days = self.days_overdue(due_date, now)
        return self.calculate_for_days(original_amount, days)

    def calculate_for_days(self, original_amount: int, days_overdue: int) -> LateFeeCalculation:
        months = Decimal(days_overdue) / self.DAYS_PER_MONTH
        original = Decimal(original_amount)

        uncapped = floor_units(original * self.monthly_rate * months)
        max_fee = floor_units(original * self.max_rate)

        return LateFeeCalculation(
            days_overdue=days_overdue,
            months_overdue=months,
            uncapped_fee=uncapped,
            max_fee=max_fee,
            fee=min(uncapped, max_fee),
        )

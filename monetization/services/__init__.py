"""
Services Package

Stateful operations over the store: lead lifecycle, commission ledger,
billing automation and payouts.
"""

from .commissions import CommissionLedger
from .leads import LeadManager
from .payouts import PayoutBatcher
from .scheduler import BillingScheduler

__all__ = [
    "LeadManager",
    "CommissionLedger",
    "BillingScheduler",
    "PayoutBatcher",
]

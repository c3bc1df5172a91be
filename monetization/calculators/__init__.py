"""
Calculators Package

Pure pricing and settlement arithmetic used by the services.
"""

from .commission import CommissionCalculator
from .late_fee import LateFeeCalculator
from .lead_pricing import LeadPricer, LeadScorer
from .payout import PayoutCalculator

__all__ = [
    "LeadPricer",
    "LeadScorer",
    "CommissionCalculator",
    "LateFeeCalculator",
    "PayoutCalculator",
]

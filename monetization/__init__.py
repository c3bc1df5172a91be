"""
MARKETPLACE MONETIZATION ENGINE
Lead pricing, commissions, billing automation and payouts
"""

from .config import MonetizationConfig
from .engine import MonetizationEngine
from .models import TaskType

__all__ = ['MonetizationEngine', 'MonetizationConfig', 'TaskType']

"""
Monetization Engine - Wiring

Builds every service around one store, one gateway and one configuration.
The HTTP app and the Lambda handler each hold a single engine.
"""

import logging
import os
import time
from datetime import datetime
from typing import Callable, Optional

from .config import MonetizationConfig
from .gateway import PaymentGateway, StripeGateway
from .models import utc_now
from .notifications import Notifier
from .services import BillingScheduler, CommissionLedger, LeadManager, PayoutBatcher
from .store import MemoryStore, RecordStore
from .validators import InputValidator

logger = logging.getLogger(__name__)


class MonetizationEngine:
    """
    Entry point for the monetization subsystem.

    Holds:
    - leads: LeadManager (scoring, pricing, purchase, lifecycle)
    - commissions: CommissionLedger (sale confirmation, admin transitions)
    - scheduler: BillingScheduler (billing automation tasks)
    - payouts: PayoutBatcher (per-seller settlement)
    """

    def __init__(
        self,
        store: RecordStore,
        gateway: PaymentGateway,
        config: Optional[MonetizationConfig] = None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config or MonetizationConfig()
        self.store = store
        self.gateway = gateway
        self.validator = InputValidator()
        self.leads = LeadManager(store, gateway, self.config, clock=clock)
        self.commissions = CommissionLedger(store, self.config, clock=clock)
        self.scheduler = BillingScheduler(store, gateway, self.config, notifier=notifier, clock=clock, sleep=sleep)
        self.payouts = PayoutBatcher(store, gateway, self.config, clock=clock, sleep=sleep)

    @classmethod
    def from_env(cls, environ=None) -> "MonetizationEngine":
        """Engine backed by Stripe, configured from the environment."""
        env = os.environ if environ is None else environ
        config = MonetizationConfig.from_env(env)
        api_key = env.get("STRIPE_SECRET_KEY", "")
        if not api_key:
            logger.warning("STRIPE_SECRET_KEY is not set; gateway calls will fail")
        gateway = StripeGateway(api_key, currency=config.invoicing.currency)
        return cls(MemoryStore(), gateway, config)

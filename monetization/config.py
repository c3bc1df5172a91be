"""
Engine Configuration

One MonetizationConfig is built at startup and passed by reference into every
service and calculator. Nothing in the engine reads configuration globally.
All amounts are in minor currency units (euro cents).
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal


@dataclass(frozen=True)
class InvoicingConfig:
    due_in_days: int = 30
    minimum_amount: int = 1000
    lookahead_days: int = 7
    run_weekday: int = 4  # Friday
    late_fee_rate: Decimal = Decimal("0.015")  # per 30-day month
    max_late_fee_rate: Decimal = Decimal("0.10")
    currency: str = "eur"


@dataclass(frozen=True)
class SubscriptionConfig:
    renewal_window_days: int = 3
    failed_payment_window_days: int = 30


@dataclass(frozen=True)
class LeadCreditConfig:
    auto_topup: bool = True
    minimum_balance: int = 500
    topup_amount: int = 2000
    max_monthly_topup: int = 10000


@dataclass(frozen=True)
class PayoutConfig:
    minimum_amount: int = 1000
    payout_weekday: int = 4  # Friday


@dataclass(frozen=True)
class RetryConfig:
    """Backoff applied to gateway rate-limit errors only."""

    max_attempts: int = 4
    base_delay: float = 0.5
    max_delay: float = 8.0
    backoff_multiplier: float = 2.0
    jitter: float = 0.1


@dataclass(frozen=True)
class MonetizationConfig:
    invoicing: InvoicingConfig = field(default_factory=InvoicingConfig)
    subscriptions: SubscriptionConfig = field(default_factory=SubscriptionConfig)
    lead_credits: LeadCreditConfig = field(default_factory=LeadCreditConfig)
    payouts: PayoutConfig = field(default_factory=PayoutConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    commission_due_days: int = 30
    max_workers: int = 4
    task_deadline_seconds: float | None = None

    @classmethod
    def from_env(cls, environ=None) -> "MonetizationConfig":
        """Build a config, overriding defaults from MONETIZATION_* variables."""
        env = os.environ if environ is None else environ

        def _int(name: str, default: int) -> int:
            raw = env.get(name)
            return int(raw) if raw not in (None, "") else default

        def _dec(name: str, default: Decimal) -> Decimal:
            raw = env.get(name)
            return Decimal(raw) if raw not in (None, "") else default

        deadline = env.get("MONETIZATION_TASK_DEADLINE_SECONDS")
        invoicing_defaults = InvoicingConfig()
        credit_defaults = LeadCreditConfig()
        return cls(
            invoicing=InvoicingConfig(
                minimum_amount=_int("MONETIZATION_INVOICE_MINIMUM", invoicing_defaults.minimum_amount),
                lookahead_days=_int("MONETIZATION_INVOICE_LOOKAHEAD_DAYS", invoicing_defaults.lookahead_days),
                late_fee_rate=_dec("MONETIZATION_LATE_FEE_RATE", invoicing_defaults.late_fee_rate),
                max_late_fee_rate=_dec("MONETIZATION_MAX_LATE_FEE_RATE", invoicing_defaults.max_late_fee_rate),
            ),
            lead_credits=LeadCreditConfig(
                auto_topup=env.get("MONETIZATION_AUTO_TOPUP", "true").lower() == "true",
                minimum_balance=_int("MONETIZATION_CREDIT_MINIMUM", credit_defaults.minimum_balance),
                topup_amount=_int("MONETIZATION_TOPUP_AMOUNT", credit_defaults.topup_amount),
                max_monthly_topup=_int("MONETIZATION_MAX_MONTHLY_TOPUP", credit_defaults.max_monthly_topup),
            ),
            payouts=PayoutConfig(minimum_amount=_int("MONETIZATION_PAYOUT_MINIMUM", PayoutConfig().minimum_amount)),
            max_workers=_int("MONETIZATION_MAX_WORKERS", 4),
            task_deadline_seconds=float(deadline) if deadline else None,
        )

    def to_dict(self) -> dict:
        """Public view of the billing settings for the status endpoint."""
        inv = self.invoicing
        credits = self.lead_credits
        return {
            "commissionInvoicing": {
                "dueDate": inv.due_in_days,
                "minimumAmount": inv.minimum_amount,
                "lookaheadDays": inv.lookahead_days,
                "lateFeeRate": float(inv.late_fee_rate),
                "maxLateFeeRate": float(inv.max_late_fee_rate),
            },
            "subscriptionProcessing": {
                "renewalWindowDays": self.subscriptions.renewal_window_days,
                "failedPaymentWindowDays": self.subscriptions.failed_payment_window_days,
            },
            "leadCredits": {
                "autoTopup": credits.auto_topup,
                "minimumBalance": credits.minimum_balance,
                "topupAmount": credits.topup_amount,
                "maxAutoTopup": credits.max_monthly_topup,
            },
            "payouts": {"minimumAmount": self.payouts.minimum_amount},
        }

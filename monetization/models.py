"""
Domain Models for the Marketplace Monetization Engine

These dataclasses provide type-safe representations of all business entities.
Money is stored as integer minor units (cents); rates use Decimal.
Persisted records carry a `version` used for optimistic concurrency.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

# =============================================================================
# ENUMERATIONS
# =============================================================================


class LeadStatus(str, Enum):
    AVAILABLE = "available"
    PURCHASED = "purchased"
    CONTACTED = "contacted"
    CONVERTED = "converted"
    NOT_INTERESTED = "not_interested"
    INVALID = "invalid"

    @property
    def is_terminal(self) -> bool:
        return self in (LeadStatus.CONVERTED, LeadStatus.NOT_INTERESTED, LeadStatus.INVALID)


class CommissionStatus(str, Enum):
    PENDING = "pending"
    INVOICED = "invoiced"
    PAID = "paid"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (CommissionStatus.PAID, CommissionStatus.CANCELLED)

    @property
    def is_owed(self) -> bool:
        """Statuses that count toward the seller's totalCommissionOwed."""
        return self in (CommissionStatus.PENDING, CommissionStatus.INVOICED)


class Plan(str, Enum):
    BASIC = "basic"
    PREMIUM = "premium"
    DEALER = "dealer"
    ENTERPRISE = "enterprise"


class VerificationTier(str, Enum):
    NONE = "none"
    PHONE = "phone"
    ID = "id"
    BUSINESS = "business"
    BANK = "bank"
    FULL = "full"


class TaskType(str, Enum):
    """Closed set of billing automation tasks accepted by the trigger."""

    COMMISSION_INVOICING = "commission_invoicing"
    SUBSCRIPTION_RENEWALS = "subscription_renewals"
    FAILED_PAYMENT_RECOVERY = "failed_payment_recovery"
    LEAD_CREDIT_TOPUP = "lead_credit_topup"
    LATE_FEE_PROCESSING = "late_fee_processing"
    ALL = "all"

    @classmethod
    def concrete(cls) -> list["TaskType"]:
        return [t for t in cls if t is not cls.ALL]


# =============================================================================
# TAGGED RECORDS (replace free-form metadata bags)
# =============================================================================


@dataclass(frozen=True)
class LateFeeBreakdown:
    """Audit trail of a late fee, kept apart from the original commission."""

    original_amount: int
    fee_amount: int
    days_overdue: int


@dataclass(frozen=True)
class VerificationSnapshot:
    """The buyer's assurance level at the moment the lead was created."""

    tier: str
    trust_score: int


@dataclass(frozen=True)
class AdminNote:
    author_id: str
    text: str
    created_at: datetime


# =============================================================================
# COLLABORATOR RECORDS
# =============================================================================


@dataclass
class Account:
    """A marketplace user together with their seller ledger fields."""

    id: str
    name: str = ""
    email: str = ""
    role: str = "user"
    plan: str = Plan.BASIC.value
    verification_tier: str = VerificationTier.NONE.value
    trust_score: int = 0
    created_at: datetime | None = None
    customer_ref: str | None = None
    payout_ref: str | None = None
    bank_verified: bool = False
    lead_credits: int = 0
    auto_topup: bool = False
    topup_month: str | None = None
    topup_this_month: int = 0
    subscription_status: str = "inactive"
    subscription_end_date: datetime | None = None
    total_commission_owed: int = 0
    total_commission_paid: int = 0
    version: int = 0

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass
class Listing:
    id: str
    seller_id: str
    title: str = ""
    price: int = 0
    status: str = "active"
    sold_price: int | None = None
    sold_date: datetime | None = None
    commission_rate: Decimal | None = None
    version: int = 0


@dataclass
class Subscription:
    id: str
    user_id: str
    gateway_ref: str | None = None
    status: str = "active"
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    version: int = 0


@dataclass
class Payment:
    id: str
    user_id: str
    amount: int = 0
    gateway_ref: str | None = None
    status: str = "pending"
    created_at: datetime | None = None
    needs_method_update: bool = False
    version: int = 0


# =============================================================================
# CORE RECORDS
# =============================================================================


@dataclass
class Lead:
    id: str
    listing_id: str
    seller_id: str
    buyer_contact: dict
    quality_score: int
    price: int
    created_at: datetime
    message: str | None = None
    status: LeadStatus = LeadStatus.AVAILABLE
    verification: VerificationSnapshot | None = None
    buyer_id: str | None = None
    purchase_method: str | None = None
    payment_ref: str | None = None
    purchased_at: datetime | None = None
    contacted_at: datetime | None = None
    converted_at: datetime | None = None
    notes: list[AdminNote] = field(default_factory=list)
    version: int = 0

    @property
    def contact_email(self) -> str | None:
        email = self.buyer_contact.get("email")
        return email.strip().lower() if email else None


@dataclass
class Commission:
    id: str
    listing_id: str
    seller_id: str
    sale_price: int
    commission_rate: Decimal
    commission_amount: int
    due_date: datetime
    created_at: datetime
    status: CommissionStatus = CommissionStatus.PENDING
    paid_date: datetime | None = None
    invoice_ref: str | None = None
    payment_ref: str | None = None
    late_fee: LateFeeBreakdown | None = None
    notes: list[AdminNote] = field(default_factory=list)
    version: int = 0

    @property
    def original_amount(self) -> int:
        """Commission before any late fee."""
        if self.late_fee is not None:
            return self.late_fee.original_amount
        return self.commission_amount

    @property
    def fee_amount(self) -> int:
        return self.late_fee.fee_amount if self.late_fee is not None else 0


# =============================================================================
# CALCULATION / RESULT MODELS
# =============================================================================


@dataclass
class CommissionCalculation:
    """Result of pricing a confirmed sale."""

    rate: Decimal
    amount: int
    due_date: datetime


@dataclass
class LateFeeCalculation:
    days_overdue: int
    months_overdue: Decimal
    uncapped_fee: int
    max_fee: int
    fee: int


@dataclass
class ItemResult:
    """Outcome of one item inside a batch task."""

    item_id: str
    status: str
    data: dict = field(default_factory=dict)
    error: str | None = None

    # Statuses that count as neither processed nor failed
    NEUTRAL_STATUSES = ("unchanged", "skipped")

    @property
    def is_error(self) -> bool:
        return self.status == "error"

    @property
    def is_processed(self) -> bool:
        return not self.is_error and self.status not in self.NEUTRAL_STATUSES


@dataclass
class TaskReport:
    task_type: TaskType
    total_found: int = 0
    details: list[ItemResult] = field(default_factory=list)

    @property
    def total_processed(self) -> int:
        return sum(1 for d in self.details if d.is_processed)

    @property
    def total_errors(self) -> int:
        return sum(1 for d in self.details if d.is_error)


@dataclass
class AggregateReport:
    """Report of a fan-out run over every task."""

    results: list[TaskReport] = field(default_factory=list)

    @property
    def total_found(self) -> int:
        return sum(r.total_found for r in self.results)

    @property
    def total_processed(self) -> int:
        return sum(r.total_processed for r in self.results)

    @property
    def total_errors(self) -> int:
        return sum(r.total_errors for r in self.results)


@dataclass
class PayoutBatch:
    seller_id: str
    commission_ids: list[str]
    total_amount: int
    outcome: str = "pending"
    failure_reason: str | None = None
    transfer_ref: str | None = None
    seller_name: str = ""


@dataclass
class PayoutRun:
    batches: list[PayoutBatch] = field(default_factory=list)

    @property
    def total_processed(self) -> int:
        """Number of commissions settled."""
        return sum(len(b.commission_ids) for b in self.batches if b.outcome == "success")

    @property
    def total_failed(self) -> int:
        return sum(len(b.commission_ids) for b in self.batches if b.outcome == "failed")

    @property
    def total_skipped(self) -> int:
        """Commissions left for the next run because the deadline passed."""
        return sum(len(b.commission_ids) for b in self.batches if b.outcome == "skipped")

    @property
    def total_amount(self) -> int:
        return sum(b.total_amount for b in self.batches)


# =============================================================================
# HELPERS
# =============================================================================


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"

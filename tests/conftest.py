"""
Shared fixtures: an in-memory store, a scriptable fake gateway and a fixed clock.
"""

import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from monetization import MonetizationConfig, MonetizationEngine
from monetization.errors import GatewayError
from monetization.gateway import ChargeResult, GatewaySubscription, PaymentGateway
from monetization.models import Account, Commission, CommissionStatus, Listing
from monetization.store import MemoryStore

# A Friday
NOW = datetime(2025, 3, 14, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, days: int = 0, seconds: int = 0) -> None:
        self.now = self.now + timedelta(days=days, seconds=seconds)


class FakeGateway(PaymentGateway):
    """
    Records every call. Failures are scripted per method with `fail()`, or
    per customer / destination with the `failing_*` sets.
    """

    def __init__(self):
        self.calls = []
        self.failures = {}
        self.failing_customers = set()
        self.failing_destinations = set()
        self.payment_intents = {}
        self.subscriptions = {}
        self.charge_status = "succeeded"
        self.invoices = {}
        self.sent = []
        self.transfers = []
        self._counter = 0
        self._lock = threading.Lock()

    def fail(self, method: str, *errors) -> None:
        self.failures.setdefault(method, []).extend(errors)

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_{self._counter}"

    def _record(self, method: str, **kwargs) -> None:
        self.calls.append((method, kwargs))
        pending = self.failures.get(method)
        if pending:
            raise pending.pop(0)

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    def create_invoice(self, customer_ref, amount, due_in_days, metadata, idempotency_key=None):
        with self._lock:
            self._record("create_invoice", customer_ref=customer_ref, amount=amount, key=idempotency_key)
            if customer_ref in self.failing_customers:
                raise GatewayError(f"Card declined for {customer_ref}")
            invoice_id = self._next_id("in")
            self.invoices[invoice_id] = {"customer": customer_ref, "amount": amount, "metadata": metadata}
            return invoice_id

    def finalize_and_send(self, invoice_id):
        with self._lock:
            self._record("finalize_and_send", invoice_id=invoice_id)
            self.sent.append(invoice_id)

    def retrieve_payment_intent(self, payment_id):
        with self._lock:
            self._record("retrieve_payment_intent", payment_id=payment_id)
            return self.payment_intents.get(payment_id, "requires_payment_method")

    def create_charge(self, customer_ref, amount, metadata, idempotency_key=None):
        with self._lock:
            self._record("create_charge", customer_ref=customer_ref, amount=amount, key=idempotency_key)
            return ChargeResult(id=self._next_id("pi"), status=self.charge_status)

    def create_transfer(self, destination_ref, amount, metadata, idempotency_key=None):
        with self._lock:
            self._record("create_transfer", destination_ref=destination_ref, amount=amount, key=idempotency_key)
            if destination_ref in self.failing_destinations:
                raise GatewayError(f"Transfer to {destination_ref} rejected")
            transfer_id = self._next_id("tr")
            self.transfers.append((destination_ref, amount))
            return transfer_id

    def retrieve_subscription(self, subscription_id):
        with self._lock:
            self._record("retrieve_subscription", subscription_id=subscription_id)
            return self.subscriptions.get(subscription_id, GatewaySubscription(status="past_due"))


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def config():
    return MonetizationConfig()


@pytest.fixture
def engine(store, gateway, config, clock):
    return MonetizationEngine(store, gateway, config, clock=clock, sleep=lambda seconds: None)


# =============================================================================
# Seed helpers
# =============================================================================


def add_account(store, account_id, **fields):
    fields.setdefault("name", account_id.title())
    fields.setdefault("created_at", NOW - timedelta(days=400))
    account = Account(id=account_id, **fields)
    store.add("accounts", account)
    return account


def add_listing(store, listing_id, seller_id, price=1_500_000, status="active"):
    listing = Listing(id=listing_id, seller_id=seller_id, title=f"Car {listing_id}", price=price, status=status)
    store.add("listings", listing)
    return listing


def add_commission(store, commission_id, seller_id, amount, status=CommissionStatus.PENDING,
                   due_date=None, rate=Decimal("0.05"), adjust_ledger=True):
    """Insert a commission and, for owed statuses, the matching ledger balance."""
    commission = Commission(
        id=commission_id,
        listing_id=f"listing-{commission_id}",
        seller_id=seller_id,
        sale_price=int(Decimal(amount) / rate),
        commission_rate=rate,
        commission_amount=amount,
        due_date=due_date or NOW + timedelta(days=3),
        created_at=NOW - timedelta(days=27),
        status=status,
    )
    store.add("commissions", commission)
    if adjust_ledger and status.is_owed:
        seller = store.get("accounts", seller_id)
        seller.total_commission_owed += amount
        with store.transaction() as tx:
            tx.update("accounts", seller)
    return commission

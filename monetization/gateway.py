"""
Payment Gateway

The engine consumes the gateway as an opaque capability. PaymentGateway is
the contract; StripeGateway is the production implementation. Stripe errors
are translated into the engine's GatewayError / RateLimitError so callers
never depend on the provider's exception types.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional

import stripe

from .errors import GatewayError, RateLimitError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChargeResult:
    id: str
    status: str

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


@dataclass(frozen=True)
class GatewaySubscription:
    status: str
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None


class PaymentGateway(ABC):
    """Capabilities the engine needs from a payment provider."""

    @abstractmethod
    def create_invoice(
        self,
        customer_ref: str,
        amount: int,
        due_in_days: int,
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> str:
        """Create a draft invoice and return its id."""

    @abstractmethod
    def finalize_and_send(self, invoice_id: str) -> None:
        """Finalize a draft invoice and send it to the customer."""

    @abstractmethod
    def retrieve_payment_intent(self, payment_id: str) -> str:
        """Current status of a payment intent."""

    @abstractmethod
    def create_charge(
        self,
        customer_ref: str,
        amount: int,
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> ChargeResult:
        """Charge the customer's default payment method off-session."""

    @abstractmethod
    def create_transfer(
        self,
        destination_ref: str,
        amount: int,
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> str:
        """Transfer funds to a connected account and return the transfer id."""

    @abstractmethod
    def retrieve_subscription(self, subscription_id: str) -> GatewaySubscription:
        """Provider-side truth for a subscription."""


def _from_epoch(value) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class StripeGateway(PaymentGateway):
    """PaymentGateway backed by the Stripe API."""

    def __init__(self, api_key: str, currency: str = "eur"):
        self.api_key = api_key
        self.currency = currency

    def _call(self, operation: str, fn, *args, **kwargs):
        try:
            return fn(*args, api_key=self.api_key, **kwargs)
        except stripe.RateLimitError as e:
            raise RateLimitError(f"Stripe rate limit during {operation}: {e.user_message or e}") from e
        except stripe.StripeError as e:
            logger.error(f"Stripe error during {operation}: {str(e)}")
            raise GatewayError(f"Stripe {operation} failed: {e.user_message or e}") from e

    def create_invoice(self, customer_ref, amount, due_in_days, metadata, idempotency_key=None):
        invoice = self._call(
            "invoice creation",
            stripe.Invoice.create,
            customer=customer_ref,
            collection_method="send_invoice",
            days_until_due=due_in_days,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        self._call(
            "invoice item creation",
            stripe.InvoiceItem.create,
            customer=customer_ref,
            invoice=invoice.id,
            amount=amount,
            currency=self.currency,
            description=metadata.get("description", "Commission"),
            metadata=metadata,
            idempotency_key=f"{idempotency_key}-item" if idempotency_key else None,
        )
        return invoice.id

    def finalize_and_send(self, invoice_id):
        invoice = self._call("invoice retrieval", stripe.Invoice.retrieve, invoice_id)
        if invoice.status == "draft":
            self._call("invoice finalization", stripe.Invoice.finalize_invoice, invoice_id)
        self._call("invoice sending", stripe.Invoice.send_invoice, invoice_id)

    def retrieve_payment_intent(self, payment_id):
        intent = self._call("payment intent retrieval", stripe.PaymentIntent.retrieve, payment_id)
        return intent.status

    def create_charge(self, customer_ref, amount, metadata, idempotency_key=None):
        intent = self._call(
            "charge",
            stripe.PaymentIntent.create,
            amount=amount,
            currency=self.currency,
            customer=customer_ref,
            off_session=True,
            confirm=True,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        return ChargeResult(id=intent.id, status=intent.status)

    def create_transfer(self, destination_ref, amount, metadata, idempotency_key=None):
        transfer = self._call(
            "transfer",
            stripe.Transfer.create,
            amount=amount,
            currency=self.currency,
            destination=destination_ref,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        return transfer.id

    def retrieve_subscription(self, subscription_id):
        sub = self._call("subscription retrieval", stripe.Subscription.retrieve, subscription_id)
        return GatewaySubscription(
            status=sub.status,
            period_start=_from_epoch(sub.get("current_period_start")),
            period_end=_from_epoch(sub.get("current_period_end")),
        )

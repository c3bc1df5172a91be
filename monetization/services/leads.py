"""
Lead Lifecycle Manager

Owns the lead state machine:

    available --purchase--> purchased --contact--> contacted --convert--> converted
    available --invalidate (admin)--> invalid
    any non-terminal --mark_not_interested--> not_interested

Purchase is the synchronous hot path. It runs under the lead's lock and
commits the status change with a version compare-and-swap, so concurrent
attempts on one lead produce exactly one winner.
"""

import logging
from datetime import datetime
from typing import Callable, Dict, Optional

from ..calculators import LeadPricer, LeadScorer
from ..config import MonetizationConfig
from ..errors import (
    AuthorizationError, GatewayError, NotFoundError, StateConflictError, ValidationError,
)
from ..gateway import PaymentGateway
from ..models import (
    Account, AdminNote, Lead, LeadStatus, VerificationSnapshot, new_id, utc_now,
)
from ..retry import call_with_backoff
from ..store import RecordStore

logger = logging.getLogger(__name__)

# Statuses a lead has once it has left the marketplace pool
WORKED_STATUSES = (
    LeadStatus.PURCHASED, LeadStatus.CONTACTED, LeadStatus.CONVERTED, LeadStatus.NOT_INTERESTED,
)


def lead_key(lead_id: str) -> str:
    return f"lead:{lead_id}"


def account_key(account_id: str) -> str:
    return f"account:{account_id}"


def listing_key(listing_id: str) -> str:
    return f"listing:{listing_id}"


class LeadManager:
    """Creates, sells and advances leads."""

    def __init__(
        self,
        store: RecordStore,
        gateway: PaymentGateway,
        config: MonetizationConfig,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.gateway = gateway
        self.config = config
        self.clock = clock
        self.pricer = LeadPricer()
        self.scorer = LeadScorer()

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def create_lead(
        self, listing_id: str, buyer_id: str, contact: Dict, message: Optional[str] = None
    ) -> Lead:
        """
        Create an available lead for a buyer inquiry.

        Price and quality score are computed once here and never change.
        """
        listing = self.store.require("listings", listing_id, "Listing")
        if listing.status != "active":
            raise ValidationError(f"Listing {listing_id} is not active")

        buyer = self.store.require("accounts", buyer_id, "Buyer")
        if buyer.id == listing.seller_id:
            raise ValidationError("Sellers cannot create leads on their own listings")

        email = (contact.get("email") or "").strip().lower()
        if not email:
            raise ValidationError("Buyer contact email is required")

        with self.store.lock(f"lead-contact:{listing_id}:{email}"):
            duplicate = self.store.query(
                "leads", lambda l: l.listing_id == listing_id and l.contact_email == email
            )
            if duplicate:
                raise StateConflictError("A lead for this listing and contact already exists")

            now = self.clock()
            lead = Lead(
                id=new_id("lead"),
                listing_id=listing.id,
                seller_id=listing.seller_id,
                buyer_id=buyer.id,
                buyer_contact=dict(contact),
                message=message,
                price=self.pricer.price(listing.price, buyer.verification_tier),
                quality_score=self.scorer.score(buyer, listing, message, now),
                verification=VerificationSnapshot(tier=buyer.verification_tier, trust_score=buyer.trust_score),
                created_at=now,
            )
            with self.store.transaction() as tx:
                tx.insert("leads", lead)

        logger.info(f"Lead {lead.id} created for listing {listing_id} (price {lead.price}, score {lead.quality_score})")
        return lead

    # -------------------------------------------------------------------------
    # Purchase
    # -------------------------------------------------------------------------

    def purchase(
        self, lead_id: str, seller_id: str, use_credits: bool = True, payment_ref: Optional[str] = None
    ) -> Lead:
        """
        Sell an available lead to the listing's owner.

        Paid either from the seller's lead-credit balance or by card: a
        supplied payment intent must have succeeded, otherwise the seller's
        saved payment method is charged off-session.
        """
        with self.store.lock(lead_key(lead_id), account_key(seller_id)):
            lead = self.store.require("leads", lead_id, "Lead")
            if lead.seller_id != seller_id:
                raise AuthorizationError("Only the listing owner can purchase this lead")
            if lead.status != LeadStatus.AVAILABLE:
                raise StateConflictError(f"Lead {lead_id} is not available (status: {lead.status.value})")

            seller = self.store.require("accounts", seller_id, "Seller")

            if use_credits:
                if seller.lead_credits < lead.price:
                    raise ValidationError(
                        f"Insufficient lead credits: balance {seller.lead_credits}, price {lead.price}"
                    )
                seller.lead_credits -= lead.price
                lead.purchase_method = "credits"
            else:
                lead.payment_ref = self._collect_card_payment(lead, seller, payment_ref)
                lead.purchase_method = "card"

            lead.status = LeadStatus.PURCHASED
            lead.purchased_at = self.clock()
            with self.store.transaction() as tx:
                tx.update("leads", lead)
                if use_credits:
                    tx.update("accounts", seller)

        logger.info(f"Lead {lead_id} purchased by {seller_id} via {lead.purchase_method}")
        return lead

    def _collect_card_payment(self, lead: Lead, seller: Account, payment_ref: Optional[str]) -> str:
        retry = self.config.retry
        if payment_ref:
            status = call_with_backoff(lambda: self.gateway.retrieve_payment_intent(payment_ref), retry)
            if status != "succeeded":
                raise GatewayError(f"Payment {payment_ref} has not succeeded (status: {status})")
            return payment_ref

        if not seller.customer_ref:
            raise ValidationError("No saved payment method; provide a payment intent or use credits")
        charge = call_with_backoff(
            lambda: self.gateway.create_charge(
                seller.customer_ref,
                lead.price,
                {"type": "lead_purchase", "leadId": lead.id, "sellerId": seller.id},
                idempotency_key=f"lead-purchase-{lead.id}",
            ),
            retry,
        )
        if not charge.succeeded:
            raise GatewayError(f"Lead payment failed (status: {charge.status})")
        return charge.id

    # -------------------------------------------------------------------------
    # Post-purchase transitions
    # -------------------------------------------------------------------------

    def contact(self, lead_id: str, actor_id: str, notes: Optional[str] = None) -> Lead:
        return self._transition(lead_id, actor_id, LeadStatus.CONTACTED, (LeadStatus.PURCHASED,), notes)

    def convert(self, lead_id: str, actor_id: str, notes: Optional[str] = None) -> Lead:
        """
        Mark a contacted lead converted. If the listing is still active it is
        marked sold at its list price.
        """
        lead = self.store.require("leads", lead_id, "Lead")
        with self.store.lock(lead_key(lead_id), listing_key(lead.listing_id)):
            lead = self._load_for_transition(lead_id, actor_id, LeadStatus.CONVERTED, (LeadStatus.CONTACTED,))
            now = self.clock()
            lead.status = LeadStatus.CONVERTED
            lead.converted_at = now
            self._append_note(lead, actor_id, notes, now)

            listing = self.store.get("listings", lead.listing_id)
            with self.store.transaction() as tx:
                tx.update("leads", lead)
                if listing is not None and listing.status == "active":
                    listing.status = "sold"
                    listing.sold_date = now
                    # TODO: take the negotiated price once the conversion request carries one
                    listing.sold_price = listing.price
                    tx.update("listings", listing)

        logger.info(f"Lead {lead_id} converted")
        return lead

    def mark_not_interested(self, lead_id: str, actor_id: str, notes: Optional[str] = None) -> Lead:
        non_terminal = tuple(s for s in LeadStatus if not s.is_terminal)
        return self._transition(lead_id, actor_id, LeadStatus.NOT_INTERESTED, non_terminal, notes)

    def invalidate(self, lead_id: str, actor_id: str, notes: Optional[str] = None) -> Lead:
        actor = self.store.require("accounts", actor_id, "User")
        if not actor.is_admin:
            raise AuthorizationError("Only administrators can invalidate leads")
        return self._transition(
            lead_id, actor_id, LeadStatus.INVALID, (LeadStatus.AVAILABLE,), notes, check_owner=False
        )

    def apply_action(self, lead_id: str, actor_id: str, action: str, notes: Optional[str] = None) -> Lead:
        actions = {
            "contacted": self.contact,
            "converted": self.convert,
            "not_interested": self.mark_not_interested,
            "invalid": self.invalidate,
        }
        if action not in actions:
            raise ValidationError(f"Invalid action: {action}")
        return actions[action](lead_id, actor_id, notes)

    def _transition(self, lead_id, actor_id, target, allowed_from, notes, check_owner=True) -> Lead:
        with self.store.lock(lead_key(lead_id)):
            lead = self._load_for_transition(lead_id, actor_id, target, allowed_from, check_owner)
            now = self.clock()
            lead.status = target
            if target == LeadStatus.CONTACTED:
                lead.contacted_at = now
            self._append_note(lead, actor_id, notes, now)
            with self.store.transaction() as tx:
                tx.update("leads", lead)

        logger.info(f"Lead {lead_id} -> {target.value}")
        return lead

    def _load_for_transition(self, lead_id, actor_id, target, allowed_from, check_owner=True) -> Lead:
        lead = self.store.require("leads", lead_id, "Lead")
        if check_owner and lead.seller_id != actor_id:
            raise AuthorizationError("Only the lead's seller can update it")
        if lead.status not in allowed_from:
            raise StateConflictError(
                f"Cannot move lead {lead_id} from {lead.status.value} to {target.value}"
            )
        return lead

    @staticmethod
    def _append_note(lead: Lead, actor_id: str, notes: Optional[str], now: datetime) -> None:
        if notes:
            lead.notes.append(AdminNote(author_id=actor_id, text=notes, created_at=now))

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def view(self, lead_id: str, viewer_id: str) -> Lead:
        """A lead as seen by its seller or its purchaser."""
        lead = self.store.get("leads", lead_id)
        if lead is None:
            raise NotFoundError(f"Lead not found: {lead_id}")
        if viewer_id not in (lead.seller_id, lead.buyer_id):
            raise AuthorizationError("Not allowed to view this lead")
        return lead

    def list_for_seller(self, seller_id: str, status: Optional[str] = None) -> Dict:
        seller = self.store.require("accounts", seller_id, "Seller")
        if status is not None:
            try:
                wanted = LeadStatus(status)
            except ValueError:
                raise ValidationError(f"Invalid lead status: {status}") from None
        else:
            wanted = None

        leads = self.store.query(
            "leads", lambda l: l.seller_id == seller_id and (wanted is None or l.status == wanted)
        )
        leads.sort(key=lambda l: l.created_at, reverse=True)
        return {"leads": leads, "credits": seller.lead_credits}

    def conversion_stats(self, seller_id: str) -> Dict:
        leads = self.store.query("leads", lambda l: l.seller_id == seller_id)
        worked = [l for l in leads if l.status in WORKED_STATUSES]
        converted = [l for l in worked if l.status == LeadStatus.CONVERTED]
        rate = round(len(converted) / len(worked) * 100, 2) if worked else 0.0
        return {"totalPurchased": len(worked), "totalConverted": len(converted), "conversionRate": rate}

    @staticmethod
    def reveals_contact(lead: Lead) -> bool:
        return lead.status != LeadStatus.AVAILABLE


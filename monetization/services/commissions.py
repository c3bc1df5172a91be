"""
Commission Ledger Service

Records sales and moves commissions through their admin transitions. Every
commission change and the matching seller-ledger change are committed in
one transaction.
"""

import logging
from datetime import datetime
from typing import Callable, Dict, Optional

from ..calculators import CommissionCalculator
from ..config import MonetizationConfig
from ..errors import AuthorizationError, StateConflictError, ValidationError
from ..models import (
    AdminNote, Commission, CommissionStatus, Lead, LeadStatus, VerificationSnapshot, new_id, utc_now,
)
from ..store import RecordStore
from .leads import account_key, listing_key

logger = logging.getLogger(__name__)


def commission_key(commission_id: str) -> str:
    return f"commission:{commission_id}"


class CommissionLedger:
    """Sale confirmation, admin commission transitions and seller summaries."""

    def __init__(
        self,
        store: RecordStore,
        config: MonetizationConfig,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.config = config
        self.clock = clock
        self.calculator = CommissionCalculator(due_days=config.commission_due_days)

    def record_sale(
        self, listing_id: str, seller_id: str, sold_price: int, buyer_info: Optional[Dict] = None
    ) -> Commission:
        """
        Mark a listing sold and create the commission owed on it.

        The listing update, the commission, the ledger increment and the
        optional direct-sale lead are one transaction.
        """
        if sold_price <= 0:
            raise ValidationError(f"soldPrice must be positive, got: {sold_price}")

        with self.store.lock(listing_key(listing_id), account_key(seller_id)):
            listing = self.store.require("listings", listing_id, "Listing")
            if listing.seller_id != seller_id:
                raise AuthorizationError("Only the listing owner can mark it as sold")
            if listing.status == "sold":
                raise StateConflictError(f"Listing {listing_id} is already sold")

            seller = self.store.require("accounts", seller_id, "Seller")
            now = self.clock()
            calc = self.calculator.calculate(sold_price, seller.plan, now)

            listing.status = "sold"
            listing.sold_price = sold_price
            listing.sold_date = now
            listing.commission_rate = calc.rate

            commission = Commission(
                id=new_id("com"),
                listing_id=listing.id,
                seller_id=seller.id,
                sale_price=sold_price,
                commission_rate=calc.rate,
                commission_amount=calc.amount,
                due_date=calc.due_date,
                created_at=now,
            )
            seller.total_commission_owed += calc.amount

            with self.store.transaction() as tx:
                tx.update("listings", listing)
                tx.insert("commissions", commission)
                tx.update("accounts", seller)
                direct_lead = self._direct_sale_lead(listing, buyer_info, now)
                if direct_lead is not None:
                    tx.insert("leads", direct_lead)

        logger.info(
            f"Listing {listing_id} sold for {sold_price}; commission {commission.id} "
            f"= {commission.commission_amount} at {calc.rate}"
        )
        return commission

    @staticmethod
    def _direct_sale_lead(listing, buyer_info: Optional[Dict], now: datetime) -> Optional[Lead]:
        """A sale reported with buyer details is recorded as a free, converted lead."""
        if not buyer_info or not buyer_info.get("email"):
            return None
        return Lead(
            id=new_id("lead"),
            listing_id=listing.id,
            seller_id=listing.seller_id,
            buyer_contact=dict(buyer_info),
            message="Direct sale",
            quality_score=100,
            price=0,
            status=LeadStatus.CONVERTED,
            verification=VerificationSnapshot(tier="none", trust_score=0),
            created_at=now,
            purchased_at=now,
            contacted_at=now,
            converted_at=now,
        )

    # -------------------------------------------------------------------------
    # Admin transitions
    # -------------------------------------------------------------------------

    def mark_paid(
        self, commission_id: str, admin_id: str, payment_ref: Optional[str] = None, notes: Optional[str] = None
    ) -> Commission:
        self._require_admin(admin_id)
        commission = self.store.require("commissions", commission_id, "Commission")
        with self.store.lock(commission_key(commission_id), account_key(commission.seller_id)):
            commission = self.store.require("commissions", commission_id, "Commission")
            if commission.status.is_terminal:
                raise StateConflictError(f"Commission {commission_id} is already {commission.status.value}")

            seller = self.store.require("accounts", commission.seller_id, "Seller")
            now = self.clock()
            was_owed = commission.status.is_owed

            commission.status = CommissionStatus.PAID
            commission.paid_date = now
            commission.payment_ref = payment_ref
            self._append_note(commission, admin_id, notes, now)

            seller.total_commission_paid += commission.commission_amount
            if was_owed:
                seller.total_commission_owed -= commission.commission_amount

            with self.store.transaction() as tx:
                tx.update("commissions", commission)
                tx.update("accounts", seller)

        logger.info(f"Commission {commission_id} marked paid by {admin_id}")
        return commission

    def dispute(self, commission_id: str, admin_id: str, notes: Optional[str] = None) -> Commission:
        return self._close(commission_id, admin_id, CommissionStatus.DISPUTED, notes)

    def cancel(self, commission_id: str, admin_id: str, notes: Optional[str] = None) -> Commission:
        return self._close(commission_id, admin_id, CommissionStatus.CANCELLED, notes)

    def _close(self, commission_id, admin_id, target: CommissionStatus, notes) -> Commission:
        self._require_admin(admin_id)
        commission = self.store.require("commissions", commission_id, "Commission")
        with self.store.lock(commission_key(commission_id), account_key(commission.seller_id)):
            commission = self.store.require("commissions", commission_id, "Commission")
            if commission.status.is_terminal or commission.status == target:
                raise StateConflictError(
                    f"Cannot move commission {commission_id} from {commission.status.value} to {target.value}"
                )

            seller = self.store.require("accounts", commission.seller_id, "Seller")
            if commission.status.is_owed:
                seller.total_commission_owed -= commission.commission_amount

            commission.status = target
            self._append_note(commission, admin_id, notes, self.clock())

            with self.store.transaction() as tx:
                tx.update("commissions", commission)
                tx.update("accounts", seller)

        logger.info(f"Commission {commission_id} -> {target.value} by {admin_id}")
        return commission

    def apply_action(
        self, commission_id: str, admin_id: str, action: str,
        payment_ref: Optional[str] = None, notes: Optional[str] = None,
    ) -> Commission:
        if action == "mark_paid":
            return self.mark_paid(commission_id, admin_id, payment_ref, notes)
        if action == "dispute":
            return self.dispute(commission_id, admin_id, notes)
        if action == "cancel":
            return self.cancel(commission_id, admin_id, notes)
        raise ValidationError(f"Invalid action: {action}")

    def _require_admin(self, user_id: str) -> None:
        user = self.store.require("accounts", user_id, "User")
        if not user.is_admin:
            raise AuthorizationError("Admin access required")

    @staticmethod
    def _append_note(commission: Commission, author_id: str, notes: Optional[str], now: datetime) -> None:
        if notes:
            commission.notes.append(AdminNote(author_id=author_id, text=notes, created_at=now))

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def summary(self, seller_id: str) -> Dict:
        seller = self.store.require("accounts", seller_id, "Seller")
        now = self.clock()
        commissions = self.store.query("commissions", lambda c: c.seller_id == seller_id)
        commissions.sort(key=lambda c: c.created_at, reverse=True)
        overdue = [c for c in commissions if c.status.is_owed and c.due_date < now]
        return {
            "seller": seller,
            "commissions": commissions,
            "totalOwed": seller.total_commission_owed,
            "totalPaid": seller.total_commission_paid,
            "overdueCount": len(overdue),
        }

"""
Payout Calculator

Groups due commissions into one batch per seller and decides eligibility.
Pure: the PayoutBatcher owns the gateway call and the ledger commit.
"""

from ..models import Account, Commission, PayoutBatch
from .money import format_eur


class PayoutCalculator:
    """Builds per-seller payout batches."""

    def __init__(self, minimum_amount: int = 1000):
        self.minimum_amount = minimum_amount

    def group(self, commissions: list[Commission]) -> list[PayoutBatch]:
        """One batch per seller, in first-seen order, members ordered by due date."""
        by_seller: dict[str, list[Commission]] = {}
        for commission in commissions:
            if not commission.status.is_owed:
                continue
            by_seller.setdefault(commission.seller_id, []).append(commission)

        batches = []
        for seller_id, members in by_seller.items():
            members.sort(key=lambda c: (c.due_date, c.id))
            batches.append(PayoutBatch(
                seller_id=seller_id,
                commission_ids=[c.id for c in members],
                total_amount=sum(c.commission_amount for c in members),
            ))
        return batches

    def ineligibility_reason(self, batch: PayoutBatch, seller: Account | None) -> str | None:
        """Why a batch must be skipped this run, or None when it can be paid."""
        if seller is None:
            return "Seller account not found"
        if not seller.bank_verified:
            return "Bank account not verified"
        if batch.total_amount < self.minimum_amount:
            return f"Amount below minimum payout threshold ({format_eur(self.minimum_amount)})"
        if not seller.payout_ref:
            return "No payout destination on file"
        return None

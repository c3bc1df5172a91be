"""
Payout Batcher

Settles due commissions one seller at a time:
1. Group pending/invoiced commissions by seller
2. Skip batches that are not eligible (no verified bank, under minimum)
3. One gateway transfer per eligible seller
4. On success, mark every member paid and move the batch total from
   owed to paid on the seller ledger, in one transaction

A failed transfer mutates nothing; the batch is picked up again next run.
"""

import hashlib
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from functools import partial
from typing import Callable, Dict, Iterable, Optional

from ..calculators import PayoutCalculator
from ..config import MonetizationConfig
from ..errors import GatewayError, MonetizationError
from ..gateway import PaymentGateway
from ..models import CommissionStatus, PayoutBatch, PayoutRun, utc_now
from ..retry import Deadline, call_with_backoff
from ..store import RecordStore
from .commissions import commission_key
from .leads import account_key
from .scheduler import DEADLINE_EXCEEDED, BillingScheduler

logger = logging.getLogger(__name__)


class PayoutBatcher:
    """Groups due commissions per seller and executes settlement transfers."""

    def __init__(
        self,
        store: RecordStore,
        gateway: PaymentGateway,
        config: MonetizationConfig,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.gateway = gateway
        self.config = config
        self.clock = clock
        self.sleep = sleep
        self.calculator = PayoutCalculator(minimum_amount=config.payouts.minimum_amount)

    def run(
        self, commission_ids: Optional[Iterable[str]] = None, deadline_seconds: Optional[float] = None
    ) -> PayoutRun:
        """
        Settle every seller with due commissions. When `commission_ids` is
        given only those commissions are considered; an empty collection
        settles nothing.
        """
        wanted = set(commission_ids) if commission_ids is not None else None
        if deadline_seconds is None:
            deadline_seconds = self.config.task_deadline_seconds
        deadline = Deadline(deadline_seconds)
        commissions = self.store.query(
            "commissions",
            lambda c: c.status.is_owed and (wanted is None or c.id in wanted),
        )
        batches = self.calculator.group(commissions)
        logger.info(f"Payout run: {len(commissions)} due commissions across {len(batches)} sellers")

        run = PayoutRun()
        if not batches:
            return run

        with ThreadPoolExecutor(max_workers=max(1, self.config.max_workers)) as pool:
            run.batches = list(pool.map(partial(self._settle_isolated, deadline=deadline), batches))

        logger.info(
            f"Payout run finished: {run.total_processed} commissions paid, "
            f"{run.total_failed} failed, {run.total_skipped} skipped, total {run.total_amount}"
        )
        return run

    def _settle_isolated(self, batch: PayoutBatch, deadline: Deadline) -> PayoutBatch:
        if deadline.expired:
            batch.outcome = "skipped"
            batch.failure_reason = DEADLINE_EXCEEDED
            return batch
        try:
            return self.settle(batch, deadline)
        except MonetizationError as e:
            logger.error(f"Payout for seller {batch.seller_id} failed: {e.message}")
            return self._failed(batch, e.message)
        except Exception as e:
            logger.error(f"Unexpected payout error for seller {batch.seller_id}: {str(e)}", exc_info=True)
            return self._failed(batch, str(e))

    def settle(self, batch: PayoutBatch, deadline: Optional[Deadline] = None) -> PayoutBatch:
        keys = [account_key(batch.seller_id)] + [commission_key(cid) for cid in batch.commission_ids]
        with self.store.lock(*keys):
            seller = self.store.get("accounts", batch.seller_id)
            if seller is not None:
                batch.seller_name = seller.name

            # Members may have moved on since grouping
            members = [self.store.get("commissions", cid) for cid in batch.commission_ids]
            members = [c for c in members if c is not None and c.status.is_owed]
            batch.commission_ids = [c.id for c in members]
            batch.total_amount = sum(c.commission_amount for c in members)

            reason = self.calculator.ineligibility_reason(batch, seller)
            if reason is not None:
                return self._failed(batch, reason)

            try:
                transfer_ref = call_with_backoff(
                    lambda: self.gateway.create_transfer(
                        seller.payout_ref,
                        batch.total_amount,
                        {
                            "type": "commission_payout",
                            "sellerId": seller.id,
                            "commissionCount": str(len(members)),
                        },
                        idempotency_key=self.idempotency_key(batch),
                    ),
                    self.config.retry,
                    deadline=deadline,
                    sleep=self.sleep,
                )
            except GatewayError as e:
                logger.warning(f"Transfer to seller {seller.id} failed, will retry next run: {e.message}")
                return self._failed(batch, e.message)

            now = self.clock()
            for commission in members:
                commission.status = CommissionStatus.PAID
                commission.paid_date = now
                commission.payment_ref = transfer_ref
            seller.total_commission_paid += batch.total_amount
            seller.total_commission_owed -= batch.total_amount

            with self.store.transaction() as tx:
                for commission in members:
                    tx.update("commissions", commission)
                tx.update("accounts", seller)

        batch.outcome = "success"
        batch.transfer_ref = transfer_ref
        logger.info(f"Paid {len(members)} commissions to seller {seller.id} (transfer {transfer_ref})")
        return batch

    @staticmethod
    def idempotency_key(batch: PayoutBatch) -> str:
        """Same seller, member set and amount always map to the same transfer."""
        material = ",".join(sorted(batch.commission_ids)) + f":{batch.total_amount}"
        digest = hashlib.sha256(material.encode()).hexdigest()[:24]
        return f"payout-{batch.seller_id}-{digest}"

    @staticmethod
    def _failed(batch: PayoutBatch, reason: str) -> PayoutBatch:
        batch.outcome = "failed"
        batch.failure_reason = reason
        return batch

    # -------------------------------------------------------------------------
    # Seller view
    # -------------------------------------------------------------------------

    def pending_for(self, seller_id: str) -> Dict:
        seller = self.store.require("accounts", seller_id, "Seller")
        commissions = self.store.query("commissions", lambda c: c.seller_id == seller_id)

        def total(status: CommissionStatus) -> int:
            return sum(c.commission_amount for c in commissions if c.status == status)

        due = [c for c in commissions if c.status.is_owed]
        due.sort(key=lambda c: c.due_date)
        return {
            "commissions": due,
            "summary": {
                "totalPending": total(CommissionStatus.PENDING),
                "totalInvoiced": total(CommissionStatus.INVOICED),
                "totalPaid": total(CommissionStatus.PAID),
                "canReceivePayouts": seller.bank_verified and bool(seller.payout_ref),
                "nextPayoutDate": BillingScheduler.next_weekday(self.clock(), self.config.payouts.payout_weekday),
                "minimumPayout": self.config.payouts.minimum_amount,
            },
        }

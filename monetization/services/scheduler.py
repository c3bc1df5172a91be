"""
Billing Automation Scheduler

Runs named billing tasks triggered from outside (cron, EventBridge, admin
endpoint). Each task:
1. Selects the records it is responsible for
2. Processes every record as an independent unit on a bounded worker pool
3. Reports {totalFound, totalProcessed, totalErrors, details}

A failing item is captured in the report and never aborts its siblings.
Items are serialized per commission / per seller through store locks, and
each item commits only at its own transaction boundary, so a run cut short
by its deadline never leaves a record half-updated.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Union

from ..calculators import LateFeeCalculator
from ..calculators.money import format_eur
from ..config import MonetizationConfig
from ..errors import GatewayError, MonetizationError, ValidationError
from ..gateway import PaymentGateway
from ..models import (
    AggregateReport, CommissionStatus, ItemResult, LateFeeBreakdown, TaskReport, TaskType, utc_now,
)
from ..notifications import Notifier
from ..retry import Deadline, call_with_backoff
from ..store import RecordStore
from .commissions import commission_key
from .leads import account_key

logger = logging.getLogger(__name__)

RENEWAL_STATUSES = ("past_due", "incomplete")
DEADLINE_EXCEEDED = "deadline_exceeded"


def subscription_key(subscription_id: str) -> str:
    return f"subscription:{subscription_id}"


def payment_key(payment_id: str) -> str:
    return f"payment:{payment_id}"


class BillingScheduler:
    """Registry of billing tasks keyed by TaskType."""

    def __init__(
        self,
        store: RecordStore,
        gateway: PaymentGateway,
        config: MonetizationConfig,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.gateway = gateway
        self.config = config
        self.notifier = notifier or Notifier()
        self.clock = clock
        self.sleep = sleep
        self.late_fees = LateFeeCalculator(config.invoicing.late_fee_rate, config.invoicing.max_late_fee_rate)

        self.handlers: Dict[TaskType, Callable] = {
            TaskType.COMMISSION_INVOICING: self.invoice_commissions,
            TaskType.SUBSCRIPTION_RENEWALS: self.reconcile_subscriptions,
            TaskType.FAILED_PAYMENT_RECOVERY: self.recover_failed_payments,
            TaskType.LEAD_CREDIT_TOPUP: self.top_up_lead_credits,
            TaskType.LATE_FEE_PROCESSING: self.accrue_late_fees,
        }
        missing = set(TaskType.concrete()) - set(self.handlers)
        if missing:
            raise ValueError(f"No handler registered for: {sorted(t.value for t in missing)}")

    def run(
        self, task_type: TaskType, execute_now: bool = False, deadline_seconds: Optional[float] = None
    ) -> Union[TaskReport, AggregateReport]:
        """Run one task, or every task for TaskType.ALL."""
        if deadline_seconds is None:
            deadline_seconds = self.config.task_deadline_seconds
        deadline = Deadline(deadline_seconds)

        if task_type == TaskType.ALL:
            return AggregateReport(results=[
                self._run_one(t, execute_now, deadline) for t in TaskType.concrete()
            ])
        return self._run_one(task_type, execute_now, deadline)

    def _run_one(self, task_type: TaskType, execute_now: bool, deadline: Deadline) -> TaskReport:
        logger.info(f"Running billing task {task_type.value} (executeNow={execute_now})")
        report = self.handlers[task_type](execute_now, deadline)
        logger.info(
            f"Billing task {task_type.value} finished: found {report.total_found}, "
            f"processed {report.total_processed}, errors {report.total_errors}"
        )
        return report

    # -------------------------------------------------------------------------
    # Item execution
    # -------------------------------------------------------------------------

    def _process_items(
        self, task_type: TaskType, items: list, process: Callable, deadline: Deadline
    ) -> TaskReport:
        report = TaskReport(task_type=task_type, total_found=len(items))
        if not items:
            return report

        with ThreadPoolExecutor(max_workers=max(1, self.config.max_workers)) as pool:
            futures = [pool.submit(self._process_item, item, process, deadline) for item in items]
            report.details = [f.result() for f in futures]
        return report

    def _process_item(self, item, process: Callable, deadline: Deadline) -> ItemResult:
        if deadline.expired:
            return ItemResult(item_id=item.id, status="skipped", data={"reason": DEADLINE_EXCEEDED})
        try:
            return process(item, deadline)
        except MonetizationError as e:
            logger.error(f"Billing item {item.id} failed: {e.message}")
            return ItemResult(item_id=item.id, status="error", error=e.message)
        except Exception as e:
            logger.error(f"Unexpected error processing billing item {item.id}: {str(e)}", exc_info=True)
            return ItemResult(item_id=item.id, status="error", error=str(e))

    def _gateway(self, fn: Callable, deadline: Deadline):
        return call_with_backoff(fn, self.config.retry, deadline=deadline, sleep=self.sleep)

    # -------------------------------------------------------------------------
    # commission_invoicing
    # -------------------------------------------------------------------------

    def invoice_commissions(self, execute_now: bool, deadline: Deadline) -> TaskReport:
        cfg = self.config.invoicing
        horizon = self.clock() + timedelta(days=cfg.lookahead_days)
        commissions = self.store.query(
            "commissions",
            lambda c: (
                c.status == CommissionStatus.PENDING
                and c.commission_amount >= cfg.minimum_amount
                and (execute_now or c.due_date <= horizon)
            ),
        )
        commissions.sort(key=lambda c: c.due_date)
        return self._process_items(TaskType.COMMISSION_INVOICING, commissions, self._invoice_one, deadline)

    def _invoice_one(self, candidate, deadline: Deadline) -> ItemResult:
        cfg = self.config.invoicing
        with self.store.lock(commission_key(candidate.id)):
            commission = self.store.require("commissions", candidate.id, "Commission")
            if commission.status != CommissionStatus.PENDING:
                return ItemResult(item_id=commission.id, status="skipped",
                                  data={"reason": f"already {commission.status.value}"})

            seller = self.store.require("accounts", commission.seller_id, "Seller")
            if not seller.customer_ref:
                raise ValidationError(f"Seller {seller.id} has no billing customer on file")

            invoice_ref = commission.invoice_ref
            if not invoice_ref:
                invoice_ref = self._gateway(lambda: self.gateway.create_invoice(
                    seller.customer_ref,
                    commission.commission_amount,
                    cfg.due_in_days,
                    {
                        "type": "commission",
                        "commissionId": commission.id,
                        "listingId": commission.listing_id,
                        "sellerId": seller.id,
                        "description": f"Commission on sale ({format_eur(commission.sale_price)})",
                    },
                    idempotency_key=f"commission-invoice-{commission.id}",
                ), deadline)
                # Persist the reference before sending so a retry reuses this invoice
                commission.invoice_ref = invoice_ref
                with self.store.transaction() as tx:
                    tx.update("commissions", commission)

            self._gateway(lambda: self.gateway.finalize_and_send(invoice_ref), deadline)

            commission.status = CommissionStatus.INVOICED
            with self.store.transaction() as tx:
                tx.update("commissions", commission)

        return ItemResult(item_id=commission.id, status="invoiced", data={
            "invoiceId": invoice_ref,
            "amount": commission.commission_amount,
        })

    # -------------------------------------------------------------------------
    # subscription_renewals
    # -------------------------------------------------------------------------

    def reconcile_subscriptions(self, execute_now: bool, deadline: Deadline) -> TaskReport:
        horizon = self.clock() + timedelta(days=self.config.subscriptions.renewal_window_days)
        subscriptions = self.store.query(
            "subscriptions",
            lambda s: (
                s.status in RENEWAL_STATUSES
                and s.gateway_ref
                and (execute_now or (s.current_period_end is not None and s.current_period_end <= horizon))
            ),
        )
        return self._process_items(TaskType.SUBSCRIPTION_RENEWALS, subscriptions, self._reconcile_one, deadline)

    def _reconcile_one(self, candidate, deadline: Deadline) -> ItemResult:
        with self.store.lock(subscription_key(candidate.id), account_key(candidate.user_id)):
            subscription = self.store.require("subscriptions", candidate.id, "Subscription")
            if subscription.status not in RENEWAL_STATUSES:
                return ItemResult(item_id=subscription.id, status="skipped",
                                  data={"reason": f"already {subscription.status}"})

            remote = self._gateway(lambda: self.gateway.retrieve_subscription(subscription.gateway_ref), deadline)
            account = self.store.get("accounts", subscription.user_id)

            if remote.status == "active":
                subscription.status = "active"
                subscription.current_period_start = remote.period_start or subscription.current_period_start
                subscription.current_period_end = remote.period_end or subscription.current_period_end
                if account is not None:
                    account.subscription_status = "active"
                    account.subscription_end_date = subscription.current_period_end
                outcome = "renewed"
            elif remote.status == "canceled":
                subscription.status = "canceled"
                if account is not None:
                    account.plan = "basic"
                    account.subscription_status = "inactive"
                outcome = "canceled"
            else:
                return ItemResult(item_id=subscription.id, status="unchanged",
                                  data={"gatewayStatus": remote.status})

            with self.store.transaction() as tx:
                tx.update("subscriptions", subscription)
                if account is not None:
                    tx.update("accounts", account)

        return ItemResult(item_id=subscription.id, status=outcome, data={"userId": subscription.user_id})

    # -------------------------------------------------------------------------
    # failed_payment_recovery
    # -------------------------------------------------------------------------

    def recover_failed_payments(self, execute_now: bool, deadline: Deadline) -> TaskReport:
        since = self.clock() - timedelta(days=self.config.subscriptions.failed_payment_window_days)
        payments = self.store.query(
            "payments",
            lambda p: (
                p.status == "failed"
                and p.gateway_ref
                and (p.created_at is None or p.created_at >= since)
            ),
        )
        return self._process_items(TaskType.FAILED_PAYMENT_RECOVERY, payments, self._recover_one, deadline)

    def _recover_one(self, candidate, deadline: Deadline) -> ItemResult:
        with self.store.lock(payment_key(candidate.id)):
            payment = self.store.require("payments", candidate.id, "Payment")
            if payment.status != "failed":
                return ItemResult(item_id=payment.id, status="skipped", data={"reason": f"already {payment.status}"})

            status = self._gateway(lambda: self.gateway.retrieve_payment_intent(payment.gateway_ref), deadline)

            if status == "requires_payment_method":
                first_flag = not payment.needs_method_update
                payment.needs_method_update = True
                with self.store.transaction() as tx:
                    tx.update("payments", payment)
                if first_flag:
                    self.notifier.payment_method_required(self.store.get("accounts", payment.user_id), payment)
                return ItemResult(item_id=payment.id, status="requires_action",
                                  data={"userId": payment.user_id, "notified": first_flag})

            if status == "succeeded":
                payment.status = "succeeded"
                payment.needs_method_update = False
                with self.store.transaction() as tx:
                    tx.update("payments", payment)
                return ItemResult(item_id=payment.id, status="recovered", data={"userId": payment.user_id})

        return ItemResult(item_id=payment.id, status="unchanged", data={"gatewayStatus": status})

    # -------------------------------------------------------------------------
    # lead_credit_topup
    # -------------------------------------------------------------------------

    def top_up_lead_credits(self, execute_now: bool, deadline: Deadline) -> TaskReport:
        cfg = self.config.lead_credits
        if not cfg.auto_topup:
            return TaskReport(task_type=TaskType.LEAD_CREDIT_TOPUP)
        accounts = self.store.query(
            "accounts",
            lambda a: a.auto_topup and a.customer_ref and a.lead_credits < cfg.minimum_balance,
        )
        return self._process_items(TaskType.LEAD_CREDIT_TOPUP, accounts, self._top_up_one, deadline)

    def topup_allowance(self, account, month: str) -> int:
        """Amount the next top-up may charge without breaking the monthly cap."""
        cfg = self.config.lead_credits
        used = account.topup_this_month if account.topup_month == month else 0
        return max(0, min(cfg.topup_amount, cfg.max_monthly_topup - used))

    def _top_up_one(self, candidate, deadline: Deadline) -> ItemResult:
        cfg = self.config.lead_credits
        with self.store.lock(account_key(candidate.id)):
            account = self.store.require("accounts", candidate.id, "Account")
            if account.lead_credits >= cfg.minimum_balance:
                return ItemResult(item_id=account.id, status="skipped", data={"reason": "balance above minimum"})

            month = self.clock().strftime("%Y-%m")
            used = account.topup_this_month if account.topup_month == month else 0
            amount = self.topup_allowance(account, month)
            if amount <= 0:
                return ItemResult(item_id=account.id, status="skipped", data={"reason": "monthly top-up limit reached"})

            charge = self._gateway(lambda: self.gateway.create_charge(
                account.customer_ref,
                amount,
                {"type": "lead_credits_topup", "userId": account.id, "credits": str(amount)},
                idempotency_key=f"credit-topup-{account.id}-{month}-{used}",
            ), deadline)
            if not charge.succeeded:
                raise GatewayError(f"Top-up charge {charge.id} did not succeed (status: {charge.status})")

            account.lead_credits += amount
            account.topup_month = month
            account.topup_this_month = used + amount
            with self.store.transaction() as tx:
                tx.update("accounts", account)

        return ItemResult(item_id=account.id, status="topped_up", data={
            "amount": amount,
            "paymentId": charge.id,
            "newBalance": account.lead_credits,
        })

    # -------------------------------------------------------------------------
    # late_fee_processing
    # -------------------------------------------------------------------------

    def accrue_late_fees(self, execute_now: bool, deadline: Deadline) -> TaskReport:
        now = self.clock()
        commissions = self.store.query(
            "commissions", lambda c: c.status == CommissionStatus.INVOICED and c.due_date < now
        )
        return self._process_items(TaskType.LATE_FEE_PROCESSING, commissions, self._accrue_one, deadline)

    def _accrue_one(self, candidate, deadline: Deadline) -> ItemResult:
        with self.store.lock(commission_key(candidate.id), account_key(candidate.seller_id)):
            commission = self.store.require("commissions", candidate.id, "Commission")
            if commission.status != CommissionStatus.INVOICED:
                return ItemResult(item_id=commission.id, status="skipped",
                                  data={"reason": f"already {commission.status.value}"})

            original = commission.original_amount
            calc = self.late_fees.calculate(original, commission.due_date, self.clock())
            delta = calc.fee - commission.fee_amount
            if delta <= 0:
                return ItemResult(item_id=commission.id, status="unchanged", data={
                    "lateFee": commission.fee_amount,
                    "daysOverdue": calc.days_overdue,
                })

            seller = self.store.require("accounts", commission.seller_id, "Seller")
            commission.late_fee = LateFeeBreakdown(
                original_amount=original,
                fee_amount=calc.fee,
                days_overdue=calc.days_overdue,
            )
            commission.commission_amount = original + calc.fee
            seller.total_commission_owed += delta

            with self.store.transaction() as tx:
                tx.update("commissions", commission)
                tx.update("accounts", seller)

        return ItemResult(item_id=commission.id, status="late_fee_applied", data={
            "originalAmount": original,
            "lateFee": calc.fee,
            "daysOverdue": calc.days_overdue,
            "capped": calc.fee < calc.uncapped_fee,
        })

    # -------------------------------------------------------------------------
    # Status reads
    # -------------------------------------------------------------------------

    def upcoming_tasks(self) -> Dict:
        """Counts of records each task would pick up now, plus next run times."""
        now = self.clock()
        inv = self.config.invoicing
        credits = self.config.lead_credits
        horizon = now + timedelta(days=inv.lookahead_days)
        renewal_horizon = now + timedelta(days=self.config.subscriptions.renewal_window_days)

        pending_invoices = self.store.query(
            "commissions",
            lambda c: c.status == CommissionStatus.PENDING
            and c.commission_amount >= inv.minimum_amount and c.due_date <= horizon,
        )
        renewals = self.store.query(
            "subscriptions",
            lambda s: s.status in RENEWAL_STATUSES
            and s.current_period_end is not None and s.current_period_end <= renewal_horizon,
        )
        failed = self.store.query("payments", lambda p: p.status == "failed")
        low_credit = self.store.query(
            "accounts", lambda a: a.auto_topup and a.lead_credits < credits.minimum_balance
        )
        overdue = self.store.query(
            "commissions", lambda c: c.status == CommissionStatus.INVOICED and c.due_date < now
        )

        return {
            TaskType.COMMISSION_INVOICING.value: {
                "count": len(pending_invoices),
                "nextRun": self.next_weekday(now, inv.run_weekday),
            },
            TaskType.SUBSCRIPTION_RENEWALS.value: {"count": len(renewals), "nextRun": self.next_daily(now)},
            TaskType.FAILED_PAYMENT_RECOVERY.value: {"count": len(failed), "nextRun": self.next_daily(now)},
            TaskType.LEAD_CREDIT_TOPUP.value: {"count": len(low_credit), "nextRun": self.next_daily(now)},
            TaskType.LATE_FEE_PROCESSING.value: {"count": len(overdue), "nextRun": self.next_daily(now)},
        }

    def billing_snapshot(self, user_id: str) -> Dict:
        account = self.store.require("accounts", user_id, "User")
        commissions = self.store.query("commissions", lambda c: c.seller_id == user_id and c.status.is_owed)
        commissions.sort(key=lambda c: c.due_date)
        active = self.store.query("subscriptions", lambda s: s.user_id == user_id and s.status == "active")
        return {
            "pendingCommissions": commissions[:5],
            "subscription": active[0] if active else None,
            "creditBalance": account.lead_credits,
            "needsCreditTopup": account.lead_credits < self.config.lead_credits.minimum_balance,
        }

    @staticmethod
    def next_daily(now: datetime) -> datetime:
        """Next midnight after `now`."""
        return (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)

    @staticmethod
    def next_weekday(now: datetime, weekday: int) -> datetime:
        """Midnight of the next `weekday` strictly after today."""
        days_ahead = (weekday - now.weekday()) % 7 or 7
        return (now + timedelta(days=days_ahead)).replace(hour=0, minute=0, second=0, microsecond=0)

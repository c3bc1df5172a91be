"""
Output Builder

Turns engine records and reports into JSON-ready dictionaries for the API.
Amounts stay in minor units; a formatted euro string is added for display.
"""

from datetime import datetime
from typing import Optional

from .calculators.money import format_eur
from .models import (
    Account, AdminNote, AggregateReport, Commission, ItemResult, Lead,
    PayoutBatch, PayoutRun, Subscription, TaskReport,
)


def iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def note_to_dict(note: AdminNote) -> dict:
    return {"authorId": note.author_id, "text": note.text, "createdAt": iso(note.created_at)}


def lead_to_dict(lead: Lead, reveal_contact: bool) -> dict:
    """
    Serialize a lead. While the lead is unpurchased only presence flags for
    the buyer's contact details are exposed.
    """
    contact = lead.buyer_contact or {}
    if reveal_contact:
        buyer = dict(contact)
    else:
        buyer = {
            "hasEmail": bool(contact.get("email")),
            "hasPhone": bool(contact.get("phone")),
            "hasName": bool(contact.get("name")),
        }

    output = {
        "id": lead.id,
        "listingId": lead.listing_id,
        "sellerId": lead.seller_id,
        "status": lead.status.value,
        "qualityScore": lead.quality_score,
        "price": lead.price,
        "priceFormatted": format_eur(lead.price),
        "message": lead.message if reveal_contact else None,
        "buyer": buyer,
        "createdAt": iso(lead.created_at),
        "purchasedAt": iso(lead.purchased_at),
        "contactedAt": iso(lead.contacted_at),
        "convertedAt": iso(lead.converted_at),
        "notes": [note_to_dict(n) for n in lead.notes],
    }
    if lead.verification is not None:
        output["verification"] = {
            "tier": lead.verification.tier,
            "trustScore": lead.verification.trust_score,
        }
    return output


def commission_to_dict(commission: Commission) -> dict:
    output = {
        "id": commission.id,
        "listingId": commission.listing_id,
        "sellerId": commission.seller_id,
        "salePrice": commission.sale_price,
        "commissionRate": float(commission.commission_rate),
        "commissionAmount": commission.commission_amount,
        "commissionFormatted": format_eur(commission.commission_amount),
        "status": commission.status.value,
        "dueDate": iso(commission.due_date),
        "paidDate": iso(commission.paid_date),
        "invoiceId": commission.invoice_ref,
        "paymentId": commission.payment_ref,
        "notes": [note_to_dict(n) for n in commission.notes],
    }
    if commission.late_fee is not None:
        output["lateFee"] = {
            "originalAmount": commission.late_fee.original_amount,
            "feeAmount": commission.late_fee.fee_amount,
            "daysOverdue": commission.late_fee.days_overdue,
        }
    return output


def ledger_to_dict(account: Account) -> dict:
    return {
        "sellerId": account.id,
        "totalCommissionOwed": account.total_commission_owed,
        "totalCommissionPaid": account.total_commission_paid,
        "leadCredits": account.lead_credits,
    }


def subscription_to_dict(subscription: Optional[Subscription]) -> Optional[dict]:
    if subscription is None:
        return None
    return {
        "id": subscription.id,
        "status": subscription.status,
        "currentPeriodStart": iso(subscription.current_period_start),
        "currentPeriodEnd": iso(subscription.current_period_end),
    }


def item_to_dict(item: ItemResult) -> dict:
    output = {"id": item.item_id, "status": item.status}
    output.update(item.data)
    if item.error is not None:
        output["error"] = item.error
    return output


def task_report_to_dict(report: TaskReport) -> dict:
    return {
        "taskType": report.task_type.value,
        "totalFound": report.total_found,
        "totalProcessed": report.total_processed,
        "totalErrors": report.total_errors,
        "details": [item_to_dict(d) for d in report.details],
    }


def aggregate_report_to_dict(report: AggregateReport) -> dict:
    return {
        "taskType": "all",
        "totalFound": report.total_found,
        "totalProcessed": report.total_processed,
        "totalErrors": report.total_errors,
        "results": [task_report_to_dict(r) for r in report.results],
    }


def report_to_dict(report) -> dict:
    if isinstance(report, AggregateReport):
        return aggregate_report_to_dict(report)
    return task_report_to_dict(report)


def batch_to_dict(batch: PayoutBatch) -> dict:
    output = {
        "sellerId": batch.seller_id,
        "sellerName": batch.seller_name,
        "commissionIds": list(batch.commission_ids),
        "totalAmount": batch.total_amount,
        "totalFormatted": format_eur(batch.total_amount),
        "outcome": batch.outcome,
    }
    if batch.transfer_ref:
        output["transferId"] = batch.transfer_ref
    if batch.failure_reason:
        output["reason"] = batch.failure_reason
    return output


def payout_run_to_dict(run: PayoutRun) -> dict:
    return {
        "summary": {
            "totalProcessed": run.total_processed,
            "totalFailed": run.total_failed,
            "totalSkipped": run.total_skipped,
            "totalSellers": len(run.batches),
            "totalAmount": run.total_amount,
        },
        "results": [batch_to_dict(b) for b in run.batches],
    }

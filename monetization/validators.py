"""
Input Validation for the Monetization Engine

Validates request payloads before any service runs.
Raises ValidationError (a ValueError) with clear messages for any violation.
"""

from typing import Any, Dict, List, Optional

from .errors import ValidationError
from .models import TaskType

LEAD_ACTIONS = ("contacted", "converted", "not_interested", "invalid")
COMMISSION_ACTIONS = ("mark_paid", "dispute", "cancel")
MAX_MESSAGE_LENGTH = 5000
MAX_NOTE_LENGTH = 2000


class InputValidator:
    """Validates request payloads according to business rules."""

    def task_request(self, data: Optional[Dict[str, Any]]) -> tuple:
        """Returns (TaskType, execute_now)."""
        data = data or {}
        raw = data.get("taskType")
        if not raw:
            raise ValidationError("taskType is required")
        try:
            task_type = TaskType(raw)
        except ValueError:
            valid = ", ".join(t.value for t in TaskType)
            raise ValidationError(f"Invalid taskType: {raw}. Must be one of: {valid}") from None

        execute_now = data.get("executeNow", False)
        if not isinstance(execute_now, bool):
            raise ValidationError(f"executeNow must be a boolean, got: {execute_now!r}")
        return task_type, execute_now

    def lead_request(self, data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        data = data or {}
        listing_id = data.get("listingId")
        if not listing_id:
            raise ValidationError("listingId is required")

        contact = data.get("contact") or {}
        if not isinstance(contact, dict):
            raise ValidationError("contact must be an object")
        email = contact.get("email")
        if not email or "@" not in str(email):
            raise ValidationError("contact.email is required and must be a valid email address")

        message = data.get("message")
        if message is not None:
            if not isinstance(message, str):
                raise ValidationError("message must be a string")
            if len(message) > MAX_MESSAGE_LENGTH:
                raise ValidationError(f"message cannot exceed {MAX_MESSAGE_LENGTH} characters")

        return {"listing_id": listing_id, "contact": contact, "message": message}

    def purchase_request(self, data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        data = data or {}
        lead_id = data.get("leadId")
        if not lead_id:
            raise ValidationError("leadId is required")
        use_credits = data.get("useCredits", True)
        if not isinstance(use_credits, bool):
            raise ValidationError(f"useCredits must be a boolean, got: {use_credits!r}")
        return {
            "lead_id": lead_id,
            "use_credits": use_credits,
            "payment_ref": data.get("paymentIntentId"),
        }

    def lead_action(self, data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        data = data or {}
        action = data.get("action")
        if not action:
            raise ValidationError("action is required")
        if action not in LEAD_ACTIONS:
            raise ValidationError(f"Invalid action: {action}. Must be one of: {', '.join(LEAD_ACTIONS)}")
        return {"action": action, "notes": self.notes(data.get("notes"))}

    def sale_request(self, data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        data = data or {}
        listing_id = data.get("listingId")
        if not listing_id:
            raise ValidationError("listingId is required")

        sold_price = data.get("soldPrice")
        if isinstance(sold_price, bool) or not isinstance(sold_price, (int, float)):
            raise ValidationError(f"soldPrice must be a number, got: {sold_price!r}")
        if sold_price <= 0:
            raise ValidationError(f"soldPrice must be positive, got: {sold_price}")
        if int(sold_price) != sold_price:
            raise ValidationError(f"soldPrice must be in whole minor units, got: {sold_price}")

        buyer_info = data.get("buyerInfo")
        if buyer_info is not None and not isinstance(buyer_info, dict):
            raise ValidationError("buyerInfo must be an object")

        return {"listing_id": listing_id, "sold_price": int(sold_price), "buyer_info": buyer_info}

    def commission_action(self, data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        data = data or {}
        commission_id = data.get("commissionId")
        if not commission_id:
            raise ValidationError("commissionId is required")
        action = data.get("action", "mark_paid")
        if action not in COMMISSION_ACTIONS:
            raise ValidationError(
                f"Invalid action: {action}. Must be one of: {', '.join(COMMISSION_ACTIONS)}"
            )
        return {
            "commission_id": commission_id,
            "action": action,
            "payment_ref": data.get("paymentId"),
            "notes": self.notes(data.get("notes")),
        }

    def payout_request(self, data: Optional[Dict[str, Any]]) -> List[str]:
        """Returns the de-duplicated commission ids to settle."""
        if not isinstance(data, dict):
            data = {}
        commission_ids = data.get("commissionIds")
        if not isinstance(commission_ids, list) or not commission_ids:
            raise ValidationError("commissionIds array is required")
        for commission_id in commission_ids:
            if not isinstance(commission_id, str) or not commission_id.strip():
                raise ValidationError(f"Invalid commission id: {commission_id!r}")
        return list(dict.fromkeys(cid.strip() for cid in commission_ids))

    def notes(self, notes: Any) -> Optional[str]:
        if notes is None or notes == "":
            return None
        if not isinstance(notes, str):
            raise ValidationError("notes must be a string")
        if len(notes) > MAX_NOTE_LENGTH:
            raise ValidationError(f"notes cannot exceed {MAX_NOTE_LENGTH} characters")
        return notes.strip()

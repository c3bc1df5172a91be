"""
Notification Triggers

Delivery (email, SMS, WhatsApp) belongs to another service. The engine only
raises the trigger; the default notifier records it in the log.
"""

import logging

from .models import Account, Payment

logger = logging.getLogger(__name__)


class Notifier:
    """Receives notification triggers raised by billing tasks."""

    def payment_method_required(self, account: Account | None, payment: Payment) -> None:
        user_id = account.id if account else payment.user_id
        logger.info(f"Notification queued: payment method update required for user {user_id} (payment {payment.id})")

"""
Tests for the Commission Ledger Service

Verifies that sale confirmation, admin transitions and the seller ledger
always move together.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from monetization.errors import AuthorizationError, StateConflictError, ValidationError
from monetization.models import CommissionStatus, LeadStatus

from conftest import add_account, add_commission, add_listing


@pytest.fixture
def ledger(engine, store):
    add_account(store, "dealer", plan="dealer")
    add_account(store, "admin", role="admin")
    add_listing(store, "car1", "dealer", price=1_200_000)
    return engine.commissions


def owed(store, seller_id="dealer"):
    return store.get("accounts", seller_id).total_commission_owed


def paid(store, seller_id="dealer"):
    return store.get("accounts", seller_id).total_commission_paid


class TestRecordSale:
    """Test sale confirmation as one transactional unit."""

    def test_dealer_sale(self, ledger, store, clock):
        commission = ledger.record_sale("car1", "dealer", 1_000_000)

        assert commission.commission_rate == Decimal("0.035")
        assert commission.commission_amount == 35_000
        assert commission.due_date == clock.now + timedelta(days=30)
        assert commission.status == CommissionStatus.PENDING

        listing = store.get("listings", "car1")
        assert listing.status == "sold"
        assert listing.sold_price == 1_000_000
        assert listing.commission_rate == Decimal("0.035")
        assert owed(store) == 35_000

    def test_later_plan_change_does_not_touch_commission(self, ledger, store):
        commission = ledger.record_sale("car1", "dealer", 1_000_000)

        seller = store.get("accounts", "dealer")
        seller.plan = "basic"
        with store.transaction() as tx:
            tx.update("accounts", seller)

        stored = store.get("commissions", commission.id)
        assert stored.commission_rate == Decimal("0.035")
        assert stored.commission_amount == 35_000

    def test_already_sold_rejected_without_side_effects(self, ledger, store):
        ledger.record_sale("car1", "dealer", 1_000_000)
        with pytest.raises(StateConflictError):
            ledger.record_sale("car1", "dealer", 900_000)

        assert owed(store) == 35_000
        assert len(store.query("commissions")) == 1

    def test_only_owner_can_mark_sold(self, ledger, store):
        add_account(store, "intruder")
        with pytest.raises(AuthorizationError):
            ledger.record_sale("car1", "intruder", 1_000_000)
        assert store.get("listings", "car1").status == "active"

    def test_non_positive_price_rejected(self, ledger):
        with pytest.raises(ValidationError):
            ledger.record_sale("car1", "dealer", 0)

    def test_buyer_info_records_direct_sale_lead(self, ledger, store):
        ledger.record_sale("car1", "dealer", 1_000_000, {"name": "Kim", "email": "kim@example.com"})

        leads = store.query("leads")
        assert len(leads) == 1
        assert leads[0].status == LeadStatus.CONVERTED
        assert leads[0].price == 0
        assert leads[0].quality_score == 100

    def test_buyer_info_without_email_adds_no_lead(self, ledger, store):
        ledger.record_sale("car1", "dealer", 1_000_000, {"name": "Kim"})
        assert store.query("leads") == []


class TestAdminTransitions:
    """Test mark paid, dispute and cancel against the ledger."""

    def test_mark_paid_moves_owed_to_paid(self, ledger, store, clock):
        commission = ledger.record_sale("car1", "dealer", 1_000_000)
        result = ledger.mark_paid(commission.id, "admin", payment_ref="manual-42", notes="Bank transfer")

        assert result.status == CommissionStatus.PAID
        assert result.paid_date == clock.now
        assert result.payment_ref == "manual-42"
        assert result.notes[0].text == "Bank transfer"
        assert owed(store) == 0
        assert paid(store) == 35_000

    def test_mark_paid_requires_admin(self, ledger):
        commission = ledger.record_sale("car1", "dealer", 1_000_000)
        with pytest.raises(AuthorizationError):
            ledger.mark_paid(commission.id, "dealer")

    def test_paid_is_terminal(self, ledger):
        commission = ledger.record_sale("car1", "dealer", 1_000_000)
        ledger.mark_paid(commission.id, "admin")
        with pytest.raises(StateConflictError):
            ledger.mark_paid(commission.id, "admin")
        with pytest.raises(StateConflictError):
            ledger.cancel(commission.id, "admin")

    def test_dispute_then_cancel_releases_owed_once(self, ledger, store):
        commission = ledger.record_sale("car1", "dealer", 1_000_000)

        ledger.dispute(commission.id, "admin", notes="Buyer backed out")
        assert owed(store) == 0

        cancelled = ledger.cancel(commission.id, "admin")
        assert cancelled.status == CommissionStatus.CANCELLED
        assert owed(store) == 0

    def test_paying_disputed_commission_does_not_reduce_owed(self, ledger, store):
        commission = ledger.record_sale("car1", "dealer", 1_000_000)
        ledger.dispute(commission.id, "admin")
        ledger.mark_paid(commission.id, "admin")

        assert owed(store) == 0
        assert paid(store) == 35_000

    def test_invoiced_commission_can_be_cancelled(self, ledger, store):
        add_commission(store, "c-inv", "dealer", 5_000, status=CommissionStatus.INVOICED)
        ledger.cancel("c-inv", "admin")
        assert owed(store) == 0

    def test_apply_action_rejects_unknown(self, ledger):
        commission = ledger.record_sale("car1", "dealer", 1_000_000)
        with pytest.raises(ValidationError):
            ledger.apply_action(commission.id, "admin", "refund")


class TestSummary:

    def test_summary_counts_overdue(self, ledger, store, clock):
        add_commission(store, "c-late", "dealer", 2_000, status=CommissionStatus.INVOICED,
                       due_date=clock.now - timedelta(days=5))
        add_commission(store, "c-soon", "dealer", 3_000, due_date=clock.now + timedelta(days=5))

        summary = ledger.summary("dealer")
        assert summary["totalOwed"] == 5_000
        assert summary["overdueCount"] == 1
        assert len(summary["commissions"]) == 2

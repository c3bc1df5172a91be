"""
Tests for the versioned in-memory store and the gateway retry helper.
"""

import threading

import pytest

from monetization.config import RetryConfig
from monetization.errors import GatewayError, NotFoundError, RateLimitError, StateConflictError
from monetization.models import Account
from monetization.retry import Deadline, backoff_delay, call_with_backoff
from monetization.store import MemoryStore, RecordStore


class TestMemoryStore:
    """Test copies, compare-and-swap commits and atomicity."""

    @pytest.fixture
    def seeded(self):
        store = MemoryStore()
        store.add("accounts", Account(id="a1", lead_credits=100))
        store.add("accounts", Account(id="a2", lead_credits=50))
        return store

    def test_implements_record_store_contract(self, seeded):
        assert isinstance(seeded, RecordStore)
        with pytest.raises(TypeError):
            RecordStore()

    def test_reads_are_copies(self, seeded):
        account = seeded.get("accounts", "a1")
        account.lead_credits = 0
        assert seeded.get("accounts", "a1").lead_credits == 100

    def test_update_bumps_version(self, seeded):
        account = seeded.get("accounts", "a1")
        account.lead_credits = 80
        with seeded.transaction() as tx:
            tx.update("accounts", account)

        stored = seeded.get("accounts", "a1")
        assert stored.lead_credits == 80
        assert stored.version == 1
        assert account.version == 1

    def test_stale_update_rejected(self, seeded):
        first = seeded.get("accounts", "a1")
        second = seeded.get("accounts", "a1")

        first.lead_credits = 10
        with seeded.transaction() as tx:
            tx.update("accounts", first)

        second.lead_credits = 20
        with pytest.raises(StateConflictError):
            with seeded.transaction() as tx:
                tx.update("accounts", second)

        assert seeded.get("accounts", "a1").lead_credits == 10

    def test_conflict_aborts_whole_transaction(self, seeded):
        stale = seeded.get("accounts", "a2")
        bump = seeded.get("accounts", "a2")
        with seeded.transaction() as tx:
            tx.update("accounts", bump)

        fresh = seeded.get("accounts", "a1")
        fresh.lead_credits = 0
        stale.lead_credits = 0
        with pytest.raises(StateConflictError):
            with seeded.transaction() as tx:
                tx.update("accounts", fresh)
                tx.update("accounts", stale)

        assert seeded.get("accounts", "a1").lead_credits == 100
        assert seeded.get("accounts", "a2").lead_credits == 50

    def test_exception_inside_block_discards_writes(self, seeded):
        account = seeded.get("accounts", "a1")
        account.lead_credits = 0
        with pytest.raises(RuntimeError):
            with seeded.transaction() as tx:
                tx.update("accounts", account)
                raise RuntimeError("boom")
        assert seeded.get("accounts", "a1").lead_credits == 100

    def test_duplicate_insert_rejected(self, seeded):
        with pytest.raises(StateConflictError):
            seeded.add("accounts", Account(id="a1"))

    def test_require_missing(self, seeded):
        with pytest.raises(NotFoundError):
            seeded.require("accounts", "nope", "Account")

    def test_query_filters(self, seeded):
        rich = seeded.query("accounts", lambda a: a.lead_credits > 60)
        assert [a.id for a in rich] == ["a1"]

    def test_lock_serializes_read_modify_write(self, seeded):
        def increment():
            for _ in range(50):
                with seeded.lock("account:a1"):
                    account = seeded.get("accounts", "a1")
                    account.lead_credits += 1
                    with seeded.transaction() as tx:
                        tx.update("accounts", account)

        threads = [threading.Thread(target=increment) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert seeded.get("accounts", "a1").lead_credits == 300


class TestRetry:
    """Test backoff on rate limits only."""

    @pytest.fixture
    def retry_config(self):
        return RetryConfig(max_attempts=3, base_delay=0.5, max_delay=8.0, backoff_multiplier=2.0, jitter=0.0)

    def test_backoff_doubles_up_to_max(self, retry_config):
        assert backoff_delay(1, retry_config) == 0.5
        assert backoff_delay(2, retry_config) == 1.0
        assert backoff_delay(10, retry_config) == 8.0

    def test_rate_limit_retried_then_succeeds(self, retry_config):
        sleeps = []
        outcomes = [RateLimitError("slow down"), RateLimitError("slow down"), "ok"]

        def call():
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        assert call_with_backoff(call, retry_config, sleep=sleeps.append) == "ok"
        assert sleeps == [0.5, 1.0]

    def test_gives_up_after_max_attempts(self, retry_config):
        sleeps = []

        def call():
            raise RateLimitError("slow down")

        with pytest.raises(RateLimitError):
            call_with_backoff(call, retry_config, sleep=sleeps.append)
        assert len(sleeps) == 2

    def test_other_gateway_errors_not_retried(self, retry_config):
        calls = []

        def call():
            calls.append(1)
            raise GatewayError("declined")

        with pytest.raises(GatewayError):
            call_with_backoff(call, retry_config, sleep=lambda s: None)
        assert len(calls) == 1

    def test_no_retry_past_deadline(self, retry_config):
        sleeps = []
        ticks = iter([0.0, 0.0, 0.0])
        deadline = Deadline(0.25, clock=lambda: next(ticks))

        def call():
            raise RateLimitError("slow down")

        with pytest.raises(RateLimitError):
            call_with_backoff(call, retry_config, deadline=deadline, sleep=sleeps.append)
        assert sleeps == []

    def test_unbounded_deadline_never_expires(self):
        deadline = Deadline(None)
        assert not deadline.expired
        assert deadline.remaining() is None

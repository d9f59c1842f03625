"""Tests for session lifecycle and token accounting."""

import asyncio

import pytest

from app.errors import InsufficientTokens, SessionConflict, ValidationError
from app.ledger.session_ledger import SessionLedger, allocate_tokens
from app.schemas.sessions import TokenBalance


def _balance(free=15, free_used=0, paid=0, paid_used=0):
    return TokenBalance(
        user_id=1,
        free_tokens_granted=free,
        free_tokens_used=free_used,
        paid_tokens_granted=paid,
        paid_tokens_used=paid_used,
    )


class TestAllocateTokens:
    """Free pool first, never past a grant."""

    def test_free_pool_first(self):
        updated = allocate_tokens(_balance(free=10, paid=20), 4)
        assert updated.free_tokens_used == 4
        assert updated.paid_tokens_used == 0

    def test_spills_into_paid(self):
        updated = allocate_tokens(_balance(free=10, free_used=8, paid=20), 5)
        assert updated.free_tokens_used == 10
        assert updated.paid_tokens_used == 3

    def test_consumption_sums_exactly(self):
        before = _balance(free=10, free_used=3, paid=20, paid_used=1)
        after = allocate_tokens(before, 12)
        consumed = (after.free_tokens_used - before.free_tokens_used) + (after.paid_tokens_used - before.paid_tokens_used)
        assert consumed == 12
        assert after.free_tokens_used <= after.free_tokens_granted
        assert after.paid_tokens_used <= after.paid_tokens_granted

    def test_input_not_modified(self):
        before = _balance()
        allocate_tokens(before, 5)
        assert before.free_tokens_used == 0

    def test_exact_available(self):
        assert allocate_tokens(_balance(free=5, paid=5), 10).available == 0

    def test_over_available_raises(self):
        with pytest.raises(InsufficientTokens) as exc_info:
            allocate_tokens(_balance(free=5, paid=5), 11)
        assert exc_info.value.required == 11
        assert exc_info.value.available == 10

    def test_negative_rejected(self):
        with pytest.raises(ValidationError):
            allocate_tokens(_balance(), -1)


class TestCreateSession:
    """Idempotent pending-session creation."""

    def test_second_create_is_noop(self, ledger_store):
        ledger = SessionLedger(ledger_store)

        async def scenario():
            first = await ledger.create_session("s-1", 1, tokens_expected=3)
            second = await ledger.create_session("s-1", 1, tokens_expected=9)
            return first, second, await ledger_store.get_session("s-1")

        first, second, session = asyncio.run(scenario())

        assert (first, second) == (True, False)
        assert session.status == "pending"
        assert session.tokens_expected == 3


class TestBeginSession:
    """Pre-flight checks before a batch starts."""

    def test_creates_and_consumes(self, ledger_store):
        ledger = SessionLedger(ledger_store)

        async def scenario():
            balance = await ledger.begin_session("s-1", 1, 4)
            return balance, await ledger_store.get_session("s-1")

        balance, session = asyncio.run(scenario())

        assert balance.free_tokens_used == 4
        assert ledger_store.balances[1].free_tokens_used == 4
        assert session.status == "in_progress"
        assert session.tokens_expected == 4

    def test_pending_session_starts(self, ledger_store):
        ledger = SessionLedger(ledger_store)

        async def scenario():
            await ledger.create_session("s-1", 1)
            await ledger.begin_session("s-1", 1, 2)
            return await ledger_store.get_session("s-1")

        assert asyncio.run(scenario()).status == "in_progress"

    def test_running_session_conflicts(self, ledger_store):
        ledger = SessionLedger(ledger_store)

        async def scenario():
            await ledger.begin_session("s-1", 1, 2)
            await ledger.begin_session("s-1", 1, 2)

        with pytest.raises(SessionConflict) as exc_info:
            asyncio.run(scenario())
        assert exc_info.value.status == "in_progress"
        assert ledger_store.balances[1].free_tokens_used == 2

    def test_terminal_session_conflicts(self, ledger_store):
        ledger = SessionLedger(ledger_store)

        async def scenario():
            await ledger.begin_session("s-1", 1, 2)
            await ledger.complete_session("s-1", tokens_used=1)
            await ledger.begin_session("s-1", 1, 2)

        with pytest.raises(SessionConflict):
            asyncio.run(scenario())

    def test_other_users_session_conflicts(self, ledger_store):
        ledger = SessionLedger(ledger_store)

        async def scenario():
            await ledger.create_session("s-1", 1)
            await ledger.begin_session("s-1", 2, 2)

        with pytest.raises(SessionConflict):
            asyncio.run(scenario())

    def test_insufficient_tokens_writes_nothing(self, ledger_store):
        ledger = SessionLedger(ledger_store)

        with pytest.raises(InsufficientTokens):
            asyncio.run(ledger.begin_session("s-1", 1, 16))

        assert ledger_store.sessions["s-1"].status == "pending"
        assert ledger_store.balances[1].free_tokens_used == 0

    def test_empty_balance_rejected(self, ledger_store):
        ledger_store.balances[1] = _balance(free=15, free_used=15)
        ledger = SessionLedger(ledger_store)

        with pytest.raises(InsufficientTokens) as exc_info:
            asyncio.run(ledger.begin_session("s-1", 1, 1))
        assert exc_info.value.available == 0

    def test_estimate_must_be_positive(self, ledger_store):
        with pytest.raises(ValidationError):
            asyncio.run(SessionLedger(ledger_store).begin_session("s-1", 1, 0))
        assert ledger_store.sessions == {}


class TestConcurrentBegin:
    """Starts that interleave at every store call."""

    def test_same_session_starts_once(self, yielding_ledger_store):
        ledger = SessionLedger(yielding_ledger_store)

        async def scenario():
            return await asyncio.gather(
                ledger.begin_session("s-1", 1, 5),
                ledger.begin_session("s-1", 1, 5),
                return_exceptions=True,
            )

        results = asyncio.run(scenario())

        assert sorted(type(r).__name__ for r in results) == ["SessionConflict", "TokenBalance"]
        assert yielding_ledger_store.balances[1].free_tokens_used == 5
        assert yielding_ledger_store.sessions["s-1"].status == "in_progress"

    def test_parallel_sessions_charge_both(self, yielding_ledger_store):
        ledger = SessionLedger(yielding_ledger_store)

        async def scenario():
            await asyncio.gather(
                ledger.begin_session("a", 1, 5),
                ledger.begin_session("b", 1, 5),
            )

        asyncio.run(scenario())

        assert yielding_ledger_store.balances[1].free_tokens_used == 10

    def test_balance_never_overdrawn(self, yielding_ledger_store):
        ledger = SessionLedger(yielding_ledger_store)

        async def scenario():
            return await asyncio.gather(
                *(ledger.begin_session(sid, 1, 6) for sid in ("a", "b", "c")),
                return_exceptions=True,
            )

        results = asyncio.run(scenario())

        assert sum(isinstance(r, InsufficientTokens) for r in results) == 1
        assert yielding_ledger_store.balances[1].free_tokens_used == 12
        statuses = sorted(s.status for s in yielding_ledger_store.sessions.values())
        assert statuses == ["in_progress", "in_progress", "pending"]


class TestFinishSession:
    """Terminal writes happen once."""

    def test_complete_then_fail_keeps_completed(self, ledger_store):
        ledger = SessionLedger(ledger_store)

        async def scenario():
            await ledger.begin_session("s-1", 1, 2)
            completed = await ledger.complete_session("s-1", tokens_used=1, meta_data={"counts": {}})
            failed = await ledger.fail_session("s-1", "late failure")
            return completed, failed

        completed, failed = asyncio.run(scenario())
        session = ledger_store.sessions["s-1"]

        assert (completed, failed) == (True, False)
        assert session.status == "completed"
        assert session.tokens_used == 1
        assert session.error_message is None
        assert session.meta_data == {"counts": {}}

    def test_fail_records_message(self, ledger_store):
        ledger = SessionLedger(ledger_store)

        async def scenario():
            await ledger.begin_session("s-1", 1, 2)
            return await ledger.fail_session("s-1", "ERR_UPSTREAM_EXTRACTION: boom")

        assert asyncio.run(scenario()) is True
        assert ledger_store.sessions["s-1"].status == "failed"
        assert ledger_store.sessions["s-1"].error_message == "ERR_UPSTREAM_EXTRACTION: boom"

    def test_missing_session(self, ledger_store):
        assert asyncio.run(SessionLedger(ledger_store).complete_session("nope", 0)) is False

"""
Tests for FollowerFanOut.

Covers:
- Per-follower isolation (one failure never blocks another)
- Unknown types and targets without followers are dropped
- Bounded per-bot activity and status summary
- Drain waits for in-flight executions; cancelled ones are recorded as failed
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from copytrader.classifier import classify
from copytrader.fanout import FollowerFanOut
from copytrader.models import BotStatus, FollowerBot, OrderEvent, ReplicationOutcome, StoreError
from copytrader.store import InMemoryFollowerStore


def make_event(order_id="o1", order_type_code=2):
    return OrderEvent(
        order_id=order_id,
        target_profile_address="0xprofile",
        market_id="15",
        order_type_code=order_type_code,
        price="60000",
        size="0.01",
        leverage=5,
        status="open",
        timestamp=1_700_000_000,
    )


def make_bot(bot_id, status=BotStatus.ACTIVE):
    return FollowerBot(id=bot_id, target_address="0xtarget", follower_signing_key="0xkey", status=status)


def outcome_for(event, bot, success=True):
    return ReplicationOutcome(
        order_id=event.order_id,
        follower_id=bot.id,
        success=success,
        transaction_hash="0xh" if success else None,
        error=None if success else "rejected",
    )


@pytest.fixture
def store():
    return InMemoryFollowerStore([make_bot("A"), make_bot("B")])


@pytest.fixture
def pipeline():
    pipeline = MagicMock()
    pipeline.execute = AsyncMock(side_effect=lambda event, cls, bot: outcome_for(event, bot))
    return pipeline


async def _until_started(pipeline, count):
    while pipeline.execute.await_count < count:
        await asyncio.sleep(0)


# =============================================================================
# Test: Dispatch
# =============================================================================


class TestDispatch:
    """Tests for fan-out to followers."""

    @pytest.mark.asyncio
    async def test_one_execution_per_follower(self, store, pipeline):
        fanout = FollowerFanOut(store, pipeline)

        outcomes = await fanout.dispatch(make_event(), classify(2), "0xtarget")

        assert sorted(o.follower_id for o in outcomes) == ["A", "B"]
        assert pipeline.execute.await_count == 2
        assert fanout.dispatched == 1
        assert len(store.outcomes) == 2

    @pytest.mark.asyncio
    async def test_failure_isolated(self, store, pipeline):
        """Test that A failing does not affect B."""

        async def execute(event, cls, bot):
            if bot.id == "A":
                return outcome_for(event, bot, success=False)
            return outcome_for(event, bot)

        pipeline.execute.side_effect = execute
        fanout = FollowerFanOut(store, pipeline)

        outcomes = {o.follower_id: o for o in await fanout.dispatch(make_event(), classify(2), "0xtarget")}

        assert outcomes["A"].success is False
        assert outcomes["B"].success is True
        assert outcomes["B"].transaction_hash == "0xh"

    @pytest.mark.asyncio
    async def test_unexpected_exception_isolated(self, store, pipeline):
        async def execute(event, cls, bot):
            if bot.id == "A":
                raise RuntimeError("boom")
            return outcome_for(event, bot)

        pipeline.execute.side_effect = execute
        fanout = FollowerFanOut(store, pipeline)

        outcomes = {o.follower_id: o for o in await fanout.dispatch(make_event(), classify(2), "0xtarget")}

        assert outcomes["A"].success is False
        assert outcomes["A"].error == "boom"
        assert outcomes["B"].success is True

    @pytest.mark.asyncio
    async def test_slow_follower_does_not_block(self, store, pipeline):
        release = asyncio.Event()

        async def execute(event, cls, bot):
            if bot.id == "A":
                await release.wait()
            return outcome_for(event, bot)

        pipeline.execute.side_effect = execute
        fanout = FollowerFanOut(store, pipeline)

        task = fanout.dispatch(make_event(), classify(2), "0xtarget")
        for _ in range(10):
            await asyncio.sleep(0)

        assert fanout.last_result("B") is not None
        assert fanout.last_result("A") is None

        release.set()
        await task
        assert fanout.last_result("A") is not None

    @pytest.mark.asyncio
    async def test_unknown_type_dropped(self, store, pipeline):
        fanout = FollowerFanOut(store, pipeline)

        assert fanout.dispatch(make_event(order_type_code=99), classify(99), "0xtarget") is None
        assert fanout.dropped == 1
        pipeline.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_followers_dropped(self, pipeline):
        store = InMemoryFollowerStore([make_bot("A", status=BotStatus.PAUSED)])
        fanout = FollowerFanOut(store, pipeline)

        assert await fanout.dispatch(make_event(), classify(2), "0xtarget") == []
        assert fanout.dropped == 1
        assert fanout.dispatched == 0

    @pytest.mark.asyncio
    async def test_store_error_dropped(self, pipeline):
        store = MagicMock()
        store.get_active_bots_for_target = AsyncMock(side_effect=StoreError("down"))
        fanout = FollowerFanOut(store, pipeline)

        assert await fanout.dispatch(make_event(), classify(2), "0xtarget") == []
        assert fanout.dropped == 1

    @pytest.mark.asyncio
    async def test_record_failure_does_not_fail_outcome(self, pipeline):
        store = MagicMock()
        store.get_active_bots_for_target = AsyncMock(return_value=[make_bot("A")])
        store.record_outcome = AsyncMock(side_effect=RuntimeError("db down"))
        fanout = FollowerFanOut(store, pipeline)

        outcomes = await fanout.dispatch(make_event(), classify(2), "0xtarget")

        assert outcomes[0].success is True
        assert fanout.last_result("A").success is True


# =============================================================================
# Test: Activity / Status
# =============================================================================


class TestActivity:
    """Tests for bounded per-bot history."""

    @pytest.mark.asyncio
    async def test_activity_bounded(self, store, pipeline):
        fanout = FollowerFanOut(store, pipeline, activity_limit=3)

        for i in range(5):
            await fanout.dispatch(make_event(order_id=f"o{i}"), classify(2), "0xtarget")

        activity = fanout.recent_activity("A")
        assert [o.order_id for o in activity] == ["o2", "o3", "o4"]

    @pytest.mark.asyncio
    async def test_summary(self, store, pipeline):
        fanout = FollowerFanOut(store, pipeline)
        await fanout.dispatch(make_event(), classify(2), "0xtarget")

        summary = fanout.follower_summary()
        assert summary["A"]["successful"] == 1
        assert summary["A"]["failed"] == 0
        assert summary["A"]["last_result"]["order_id"] == "o1"

    def test_unknown_bot_has_no_activity(self, store, pipeline):
        fanout = FollowerFanOut(store, pipeline)
        assert fanout.recent_activity("nobody") == []
        assert fanout.last_result("nobody") is None


# =============================================================================
# Test: Drain
# =============================================================================


class TestDrain:
    """Tests for shutdown draining."""

    @pytest.mark.asyncio
    async def test_drain_waits(self, store, pipeline):
        async def execute(event, cls, bot):
            await asyncio.sleep(0.01)
            return outcome_for(event, bot)

        pipeline.execute.side_effect = execute
        fanout = FollowerFanOut(store, pipeline)
        fanout.dispatch(make_event(), classify(2), "0xtarget")

        assert fanout.in_flight > 0
        assert await fanout.drain(timeout=1.0) is True
        assert fanout.in_flight == 0
        assert len(store.outcomes) == 2

    @pytest.mark.asyncio
    async def test_drain_timeout(self, store, pipeline):
        async def execute(event, cls, bot):
            await asyncio.sleep(10)

        pipeline.execute.side_effect = execute
        fanout = FollowerFanOut(store, pipeline)
        fanout.dispatch(make_event(), classify(2), "0xtarget")

        assert await fanout.drain(timeout=0.05) is False
        await fanout.cancel_pending()

    @pytest.mark.asyncio
    async def test_cancel_pending_records_failures(self, store, pipeline):
        async def execute(event, cls, bot):
            await asyncio.sleep(10)

        pipeline.execute.side_effect = execute
        fanout = FollowerFanOut(store, pipeline)
        task = fanout.dispatch(make_event(), classify(2), "0xtarget")
        await asyncio.wait_for(_until_started(pipeline, 2), timeout=1.0)

        assert await fanout.cancel_pending() == 2

        assert fanout.in_flight == 0
        assert task.done()
        assert {o.follower_id for o in store.outcomes} == {"A", "B"}
        assert all(o.success is False for o in store.outcomes)
        assert all(o.error == "cancelled at shutdown" for o in store.outcomes)
        assert fanout.follower_summary()["A"]["failed"] == 1

    @pytest.mark.asyncio
    async def test_cancel_pending_with_nothing_running(self, store, pipeline):
        fanout = FollowerFanOut(store, pipeline)
        assert await fanout.cancel_pending() == 0

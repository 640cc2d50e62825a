"""
Follower fan-out.

For each qualifying event, loads the target's active followers and starts
one execution task per follower. Tasks are tracked so failures are
observable and shutdown can drain in-flight work. Executions still running
when the drain gives up are cancelled and recorded as failures. No follower
waits on another.
"""

import asyncio
import logging
from collections import defaultdict, deque
from typing import Optional

from .classifier import OrderClassification
from .execution import ExecutionPipeline
from .models import FollowerBot, OrderEvent, ReplicationOutcome, StoreError, short_address
from .store import FollowerStore

logger = logging.getLogger(__name__)

DEFAULT_ACTIVITY_LIMIT = 50

CANCELLED_AT_SHUTDOWN = "cancelled at shutdown"


class FollowerFanOut:
    """
    Dispatches events to followers and keeps bounded per-bot activity.

    Attributes:
        store: Source of active follower bots.
        pipeline: Execution pipeline run once per follower.
        dispatched: Events handed to at least one follower.
        dropped: Events dropped (unknown type or no followers).
    """

    def __init__(
        self,
        store: FollowerStore,
        pipeline: ExecutionPipeline,
        activity_limit: int = DEFAULT_ACTIVITY_LIMIT,
    ):
        self.store = store
        self.pipeline = pipeline
        self.activity_limit = activity_limit

        self._tasks: set[asyncio.Task] = set()
        self._follower_tasks: set[asyncio.Task] = set()
        self._activity: dict[str, deque] = defaultdict(lambda: deque(maxlen=self.activity_limit))
        self._counters: dict[str, dict[str, int]] = defaultdict(lambda: {"success": 0, "failed": 0})

        self.dispatched = 0
        self.dropped = 0

    def dispatch(
        self, event: OrderEvent, classification: OrderClassification, target_address: str
    ) -> Optional[asyncio.Task]:
        """
        Start fan-out for one event without blocking the caller.

        Returns:
            The fan-out task, or None if the event was dropped up front.
        """
        if not classification.is_known:
            self.dropped += 1
            logger.info(f"Order {event.order_id} has unknown type {event.order_type_code}; not replicated")
            return None

        return self._track(self._fan_out(event, classification, target_address))

    def _track(self, coro, follower: bool = False) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        if follower:
            self._follower_tasks.add(task)
            task.add_done_callback(self._follower_tasks.discard)
        return task

    async def _fan_out(
        self, event: OrderEvent, classification: OrderClassification, target_address: str
    ) -> list[ReplicationOutcome]:
        try:
            bots = await self.store.get_active_bots_for_target(target_address)
        except StoreError as e:
            self.dropped += 1
            logger.error(f"Cannot load followers for {short_address(target_address)}: {e}")
            return []

        bots = [b for b in bots if b.is_active]
        if not bots:
            self.dropped += 1
            logger.info(f"No active followers for {short_address(target_address)}; order {event.order_id} dropped")
            return []

        self.dispatched += 1
        logger.info(f"Fanning out order {event.order_id} to {len(bots)} follower(s)")

        tasks = [self._track(self._run_follower(event, classification, bot), follower=True) for bot in bots]
        return list(await asyncio.gather(*tasks))

    async def _run_follower(
        self, event: OrderEvent, classification: OrderClassification, bot: FollowerBot
    ) -> ReplicationOutcome:
        try:
            outcome = await self.pipeline.execute(event, classification, bot)
        except asyncio.CancelledError:
            logger.warning(f"Execution of {event.order_id} for bot {bot.id} cancelled at shutdown")
            outcome = ReplicationOutcome(
                order_id=event.order_id, follower_id=bot.id, success=False, error=CANCELLED_AT_SHUTDOWN
            )
            self._record(outcome)
            await self._persist(bot, outcome)
            raise
        except Exception as e:
            logger.error(f"Execution for bot {bot.id} raised: {e}", exc_info=True)
            outcome = ReplicationOutcome(
                order_id=event.order_id, follower_id=bot.id, success=False, error=str(e)
            )

        self._record(outcome)
        await self._persist(bot, outcome)
        return outcome

    async def _persist(self, bot: FollowerBot, outcome: ReplicationOutcome) -> None:
        try:
            await self.store.record_outcome(bot, outcome)
        except Exception as e:
            logger.error(f"Failed to record outcome for bot {bot.id}: {e}")

    def _record(self, outcome: ReplicationOutcome) -> None:
        self._activity[outcome.follower_id].append(outcome)
        self._counters[outcome.follower_id]["success" if outcome.success else "failed"] += 1

    def recent_activity(self, bot_id: str) -> list[ReplicationOutcome]:
        return list(self._activity.get(bot_id, ()))

    def last_result(self, bot_id: str) -> Optional[ReplicationOutcome]:
        activity = self._activity.get(bot_id)
        return activity[-1] if activity else None

    def follower_summary(self) -> dict[str, dict]:
        """Per-bot counters and last result for the status surface."""
        summary = {}
        for bot_id, counters in self._counters.items():
            last = self.last_result(bot_id)
            summary[bot_id] = {
                "successful": counters["success"],
                "failed": counters["failed"],
                "last_result": last.to_dict() if last else None,
            }
        return summary

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for in-flight executions.

        Returns:
            True if everything finished, False if the timeout hit first.
        """
        deadline = asyncio.get_running_loop().time() + timeout if timeout is not None else None
        # follower tasks are created by fan-out tasks, so loop until none are left
        while self._tasks:
            remaining = None
            if deadline is not None:
                remaining = deadline - asyncio.get_running_loop().time()
                if remaining <= 0:
                    break
            await asyncio.wait(set(self._tasks), timeout=remaining)

        if self._tasks:
            logger.warning(f"{len(self._tasks)} execution(s) still in flight after drain timeout")
            return False
        return True

    async def cancel_pending(self) -> int:
        """
        Cancel whatever is still in flight and wait for it to unwind.

        Follower executions are cancelled before the fan-out tasks that
        spawned them, so each one records a failed outcome first.

        Returns:
            Number of follower executions cancelled.
        """
        cancelled = 0
        while self._tasks:
            followers = list(self._follower_tasks)
            batch = followers or list(self._tasks)
            for task in batch:
                task.cancel()
            await asyncio.wait(batch)
            cancelled += len(followers)
        return cancelled

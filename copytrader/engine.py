"""
Order Replication Engine.

Wires the stream session, dedup tracker, classifier, target registry,
follower fan-out and execution pipeline into one running service.

Data flow:
    stream frame -> parse -> watermark/dedup -> classify -> resolve target
    -> fan-out (one task per follower) -> execution pipeline -> outcome

Message handling up to and including dedup is synchronous inside the
socket reader, so duplicates delivered back to back cannot both pass.
Everything after that runs in tasks off the receive path.

Example:
    >>> engine = ReplicationEngine(venue=kana, chain=PaperChainClient(), store=store,
    ...                            ws_url=KANA_WS_URL)
    >>> await engine.run()

Safety:
    - Paper chain client unless the operator passes --live
    - Kill switch file (.kill_switch) halts replication; events are still tracked
    - Shutdown drains in-flight executions before closing the socket
"""

import asyncio
import json
import logging
import signal
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Optional

from .chain import ChainClient
from .classifier import OrderClassification, classify, describe_order_type, market_name
from .dedup import OrderTracker
from .execution import EXECUTION_TIMEOUT, ExecutionPipeline
from .fanout import FollowerFanOut
from .models import OrderEvent, StoreError, short_address
from .registry import TargetRegistry
from .store import FollowerStore
from .stream import ORDER_HISTORY_TOPIC, SessionState, StreamSession
from .telemetry import EngineStatus, write_status
from .venue import KanaClient

logger = logging.getLogger(__name__)


class ReplicationEngine:
    """
    Mirrors target orders onto follower bots.

    Attributes:
        tracker: Dedup set and watermark.
        registry: Target <-> profile address map.
        fanout: Follower dispatch and recent activity.
        session: Websocket session to the venue feed.
    """

    def __init__(
        self,
        venue: KanaClient,
        chain: ChainClient,
        store: FollowerStore,
        ws_url: str = "",
        static_targets: Iterable[str] = (),
        tracker: Optional[OrderTracker] = None,
        session: Optional[StreamSession] = None,
        connector: Optional[Callable[[str], Awaitable[Any]]] = None,
        watermark_buffer: int = 30,
        dedup_retention: int = 24 * 3600,
        reconnect_delay: float = 5.0,
        max_reconnect_attempts: int = 10,
        ping_interval: float = 20.0,
        execution_timeout: float = EXECUTION_TIMEOUT,
        refresh_interval: float = 60.0,
        drain_timeout: float = EXECUTION_TIMEOUT,
        activity_limit: int = 50,
        kill_switch_file: Optional[Path] = None,
        status_file: Optional[Path] = None,
    ):
        """
        Initialize the engine. The watermark is fixed here, at startup.

        Args:
            venue: Kana REST client
            chain: Chain client (paper or live)
            store: Follower store
            ws_url: Order feed websocket URL
            static_targets: Targets monitored regardless of bots
            tracker: Pre-built tracker (tests)
            session: Pre-built stream session (tests)
            connector: Opens the websocket (tests inject a fake)
            watermark_buffer: Seconds subtracted from start time
            dedup_retention: Seconds an order id is remembered
            reconnect_delay: Base for linear reconnect backoff
            max_reconnect_attempts: Reconnects before FAILED
            ping_interval: Keepalive interval
            execution_timeout: Bound for one follower execution
            refresh_interval: Seconds between monitoring cycles
            drain_timeout: Shutdown wait for in-flight executions
            activity_limit: Outcomes kept per bot
            kill_switch_file: Presence halts replication
            status_file: Where status snapshots are written
        """
        self.venue = venue
        self.chain = chain
        self.store = store
        self.static_targets = list(static_targets)
        self.refresh_interval = refresh_interval
        self.drain_timeout = drain_timeout
        self.kill_switch_file = kill_switch_file
        self.status_file = status_file

        self.tracker = tracker or OrderTracker(
            watermark_buffer=watermark_buffer, retention=dedup_retention
        )
        self.registry = TargetRegistry(venue, watermark_buffer=watermark_buffer)
        self.pipeline = ExecutionPipeline(venue, chain, timeout=execution_timeout)
        self.fanout = FollowerFanOut(store, self.pipeline, activity_limit=activity_limit)
        self.session = session or StreamSession(
            ws_url,
            on_message=self.handle_message,
            addresses=lambda: self.registry.profile_addresses,
            max_reconnect_attempts=max_reconnect_attempts,
            reconnect_delay=reconnect_delay,
            ping_interval=ping_interval,
            **({"connector": connector} if connector is not None else {}),
        )

        self.is_monitoring = False
        self._accepting = False
        self._shutdown_event = asyncio.Event()

        logger.info(
            f"ReplicationEngine initialized: watermark={self.tracker.watermark}, "
            f"static_targets={len(self.static_targets)}"
        )

    # -------------------------------------------------------------------------
    # Message handling (runs inside the socket reader; must not block)
    # -------------------------------------------------------------------------

    def handle_message(self, raw: str) -> list[asyncio.Task]:
        """
        Handle one feed frame. Never raises.

        Returns:
            Fan-out tasks started for this frame.
        """
        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(f"Error parsing WebSocket message: {e}")
            return []

        if not isinstance(payload, dict) or payload.get("message") != ORDER_HISTORY_TOPIC:
            return []

        entries = payload.get("data") or []
        if not isinstance(entries, list):
            logger.warning(f"order_history data is not a list: {type(entries).__name__}")
            return []

        logger.debug(f"Processing {len(entries)} order(s) from feed")

        tasks = []
        for entry in entries:
            try:
                event = OrderEvent.from_wire(entry)
            except ValueError as e:
                logger.warning(f"Skipping malformed order: {e}")
                continue

            task = self.process_event(event)
            if task is not None:
                tasks.append(task)
        return tasks

    def process_event(self, event: OrderEvent) -> Optional[asyncio.Task]:
        """Filter, classify and dispatch one order event."""
        if not self._accepting:
            return None

        sub = self.registry.subscription_for_profile(event.target_profile_address)
        if sub is None:
            logger.debug(f"Ignoring order {event.order_id} from unmonitored profile")
            return None

        if event.timestamp < sub.active_from_watermark:
            logger.debug(f"Ignoring historical order {event.order_id} ({event.timestamp})")
            return None

        # marked before fan-out so a rapid redelivery cannot double-dispatch
        if not self.tracker.claim(event):
            logger.debug(f"Ignoring replayed or duplicate order {event.order_id}")
            return None

        classification = classify(event.order_type_code)
        self._log_detected(event, classification, sub.target_address)

        if self.kill_switch_active():
            logger.warning(f"Kill switch active - order {event.order_id} not replicated")
            return None

        return self.fanout.dispatch(event, classification, sub.target_address)

    def _log_detected(
        self, event: OrderEvent, classification: OrderClassification, target_address: str
    ) -> None:
        if classification.is_buy:
            action = "BUY"
        elif classification.is_sell:
            action = "SELL"
        elif classification.is_exit:
            action = "EXIT"
        else:
            action = "UNKNOWN"

        logger.info(
            f"New {action} order from target {short_address(target_address)}: "
            f"id={event.order_id} {describe_order_type(event.order_type_code)} "
            f"{market_name(event.market_id)} size={event.size} price={event.price} "
            f"leverage={event.leverage}x status={event.status}"
        )

    def kill_switch_active(self) -> bool:
        return self.kill_switch_file is not None and self.kill_switch_file.exists()

    # -------------------------------------------------------------------------
    # Monitoring cycle
    # -------------------------------------------------------------------------

    async def refresh_targets(self) -> None:
        """
        Sync monitored targets with the store.

        Adds targets referenced by active bots, drops targets no bot (or
        static config) references, retries failed profile lookups and
        subscribes newly resolved profiles on the live socket.
        """
        try:
            active = await self.store.get_active_target_addresses()
        except StoreError as e:
            logger.error(f"Cannot load active targets: {e}")
            active = None

        wanted = set(self.static_targets)
        if active is not None:
            wanted.update(active)
            for target in self.registry.targets:
                if target not in wanted:
                    self.registry.remove_target(target)
                    logger.info(f"No active bots reference {short_address(target)}; stopped monitoring")

        before = set(self.registry.profile_addresses)
        # targets present at startup share the engine watermark; later ones start from now
        watermark = None if self.is_monitoring else self.tracker.watermark
        for target in sorted(wanted):
            self.registry.add_target(target, watermark=watermark)

        unresolved = self.registry.unresolved
        if unresolved:
            await self.registry.resolve_all(unresolved)

        if self.session.is_connected:
            for profile in self.registry.profile_addresses:
                if profile not in before:
                    await self.session.subscribe(profile)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Resolve targets, connect, and begin accepting events."""
        logger.info("Starting order replication engine...")
        await self.refresh_targets()

        if not self.registry.profile_addresses:
            logger.warning("No targets resolved yet; will retry every monitoring cycle")

        self._accepting = True
        self.is_monitoring = True
        await self.session.start()
        self._write_status()

    async def run(self) -> None:
        """
        Main loop: start, then run monitoring cycles until stopped.
        """
        await self.start()
        try:
            while not self._shutdown_event.is_set():
                try:
                    await asyncio.wait_for(
                        self._shutdown_event.wait(),
                        timeout=self.refresh_interval,
                    )
                except asyncio.TimeoutError:
                    pass  # Normal timeout, run the next cycle
                else:
                    break

                try:
                    await self.refresh_targets()
                except Exception as e:
                    logger.error(f"Monitoring cycle error: {e}", exc_info=True)

                if self.session.state is SessionState.FAILED:
                    logger.error("Stream session FAILED; restart the engine to resume")

                self._write_status()
        except asyncio.CancelledError:
            logger.info("Engine run cancelled")
        finally:
            await self.shutdown()

    def stop(self) -> None:
        """Signal the main loop to exit."""
        logger.info("Stopping replication engine...")
        self._accepting = False
        self._shutdown_event.set()

    async def shutdown(self) -> None:
        """
        Stop accepting events, drain executions, close the socket and clients.

        Executions still running after drain_timeout are cancelled and
        recorded as failed before any client is closed.
        """
        self._accepting = False

        if self.fanout.in_flight:
            logger.info(f"Waiting for {self.fanout.in_flight} in-flight execution(s)...")
        if not await self.fanout.drain(timeout=self.drain_timeout):
            cancelled = await self.fanout.cancel_pending()
            logger.warning(f"Cancelled {cancelled} execution(s) still running after {self.drain_timeout}s")

        await self.session.close()
        await self.venue.close()
        await self.chain.close()

        self.is_monitoring = False
        self._write_status()
        logger.info("Replication engine stopped")

    def install_signal_handlers(self) -> None:
        """Route SIGINT/SIGTERM to stop()."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
            except (NotImplementedError, RuntimeError):
                # Windows event loops do not support signal handlers
                pass

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def get_status(self) -> EngineStatus:
        return EngineStatus(
            is_monitoring=self.is_monitoring,
            target_count=len(self.registry.targets),
            tracked_order_count=self.tracker.tracked_count,
            reconnect_attempts=self.session.reconnect_attempts,
            session_state=str(self.session.state),
            kill_switch=self.kill_switch_active(),
            in_flight=self.fanout.in_flight,
            events_dispatched=self.fanout.dispatched,
            events_dropped=self.fanout.dropped,
            unresolved_targets=self.registry.unresolved,
            followers=self.fanout.follower_summary(),
        )

    def _write_status(self) -> None:
        if self.status_file is not None:
            write_status(self.get_status(), self.status_file)

    def recent_activity(self, bot_id: str) -> list[dict[str, Any]]:
        return [o.to_dict() for o in self.fanout.recent_activity(bot_id)]

"""
Follower persistence boundary.

The engine reads active follower bots per target and optionally writes
replication outcomes back. Schema ownership lives outside this package; the
stores here only read copy_trading_bots and append to copy_trading_trades.
"""

import asyncio
import json
import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from .models import BotStatus, FollowerBot, ReplicationOutcome, SizingPolicy, StoreError

logger = logging.getLogger(__name__)

BOTS_TABLE = "copy_trading_bots"
TRADES_TABLE = "copy_trading_trades"

# Outcomes kept in memory by InMemoryFollowerStore
OUTCOME_HISTORY_LIMIT = 1000


class FollowerStore(ABC):
    """Read path for follower bots plus an outcome write path."""

    @abstractmethod
    async def get_active_target_addresses(self) -> list[str]:
        """Unique target addresses referenced by active bots."""
        pass

    @abstractmethod
    async def get_active_bots_for_target(self, target_address: str) -> list[FollowerBot]:
        """
        Active bots following a target.

        Raises:
            StoreError: If the store cannot be read.
        """
        pass

    async def record_outcome(self, bot: FollowerBot, outcome: ReplicationOutcome) -> None:
        """Persist an outcome. Default is a no-op."""
        pass


class InMemoryFollowerStore(FollowerStore):
    """
    Process-local follower store.

    Backs tests and single-operator deployments (FOLLOWERS_FILE). Supports
    the bot lifecycle: settings updates and soft deletes via status.
    Only the most recent outcome_limit outcomes are kept; recorded counts
    every outcome ever written.
    """

    def __init__(
        self,
        bots: Optional[list[FollowerBot]] = None,
        outcome_limit: int = OUTCOME_HISTORY_LIMIT,
    ):
        self._bots: dict[str, FollowerBot] = {}
        self._lock = threading.Lock()
        self.outcomes: deque[ReplicationOutcome] = deque(maxlen=outcome_limit)
        self.recorded = 0
        for bot in bots or []:
            self.add_bot(bot)

    @classmethod
    def from_file(cls, path: str) -> "InMemoryFollowerStore":
        """Load follower rows from a JSON list."""
        try:
            with open(Path(path)) as f:
                rows = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StoreError(f"cannot read followers file {path}: {e}") from e

        if not isinstance(rows, list):
            raise StoreError(f"followers file {path} must contain a JSON list")

        try:
            return cls([FollowerBot.from_row(row) for row in rows])
        except (KeyError, TypeError, ValueError) as e:
            raise StoreError(f"bad follower row in {path}: {e}") from e

    def add_bot(self, bot: FollowerBot) -> None:
        with self._lock:
            self._bots[bot.id] = bot

    def get_bot(self, bot_id: str) -> Optional[FollowerBot]:
        with self._lock:
            return self._bots.get(bot_id)

    def set_status(self, bot_id: str, status: BotStatus) -> None:
        with self._lock:
            bot = self._bots.get(bot_id)
            if bot is None:
                raise StoreError(f"unknown bot {bot_id}")
            bot.status = status
        logger.info(f"Bot {bot_id} status -> {status}")

    def update_settings(
        self,
        bot_id: str,
        sizing: Optional[SizingPolicy] = None,
        copy_trading_enabled: Optional[bool] = None,
    ) -> None:
        with self._lock:
            bot = self._bots.get(bot_id)
            if bot is None:
                raise StoreError(f"unknown bot {bot_id}")
            if sizing is not None:
                bot.sizing = sizing
            if copy_trading_enabled is not None:
                bot.copy_trading_enabled = copy_trading_enabled

    async def get_active_target_addresses(self) -> list[str]:
        with self._lock:
            targets = {b.target_address for b in self._bots.values() if b.status is BotStatus.ACTIVE}
        return sorted(targets)

    async def get_active_bots_for_target(self, target_address: str) -> list[FollowerBot]:
        with self._lock:
            return [
                b
                for b in self._bots.values()
                if b.target_address == target_address and b.status is BotStatus.ACTIVE
            ]

    async def record_outcome(self, bot: FollowerBot, outcome: ReplicationOutcome) -> None:
        with self._lock:
            self.outcomes.append(outcome)
            self.recorded += 1


class SupabaseFollowerStore(FollowerStore):
    """
    Supabase-backed follower store.

    The supabase-py client is synchronous, so every query runs in a worker
    thread to keep the event loop free.
    """

    def __init__(self, url: str = "", service_key: str = "", client: Any = None):
        if client is None:
            if not url or not service_key:
                raise StoreError("SUPABASE_URL and SUPABASE_SERVICE_KEY are required")
            from supabase import create_client

            client = create_client(url, service_key)
        self._client = client

    def _select_active(self, target_address: Optional[str] = None) -> list[dict[str, Any]]:
        query = self._client.table(BOTS_TABLE).select("*").eq("status", BotStatus.ACTIVE.value)
        if target_address is not None:
            query = query.eq("target_address", target_address)
        response = query.execute()
        return response.data or []

    async def get_active_target_addresses(self) -> list[str]:
        try:
            rows = await asyncio.to_thread(self._select_active)
        except Exception as e:
            raise StoreError(f"Failed to fetch active copy trading bots: {e}") from e
        return sorted({r["target_address"] for r in rows if r.get("target_address")})

    async def get_active_bots_for_target(self, target_address: str) -> list[FollowerBot]:
        try:
            rows = await asyncio.to_thread(self._select_active, target_address)
        except Exception as e:
            raise StoreError(f"Failed to fetch bots for target address: {e}") from e

        bots = []
        for row in rows:
            try:
                bots.append(FollowerBot.from_row(row))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed bot row {row.get('id')}: {e}")
        return bots

    def _write_outcome(self, bot: FollowerBot, outcome: ReplicationOutcome) -> None:
        trade = {
            "bot_id": bot.id,
            "order_id": outcome.order_id,
            "success": outcome.success,
            "transaction_hash": outcome.transaction_hash,
            "error": outcome.error,
            "size": outcome.size,
            "direction": str(outcome.direction) if outcome.direction else None,
            "trade_side": outcome.trade_side,
            "created_at": outcome.observed_at.isoformat(),
        }
        self._client.table(TRADES_TABLE).insert(trade).execute()

        row = (
            self._client.table(BOTS_TABLE)
            .select("total_trades, successful_trades, failed_trades")
            .eq("id", bot.id)
            .execute()
        )
        current = (row.data or [{}])[0]
        metrics = {
            "total_trades": (current.get("total_trades") or 0) + 1,
            "successful_trades": (current.get("successful_trades") or 0) + (1 if outcome.success else 0),
            "failed_trades": (current.get("failed_trades") or 0) + (0 if outcome.success else 1),
            "last_trade_at": datetime.now(timezone.utc).isoformat(),
        }
        self._client.table(BOTS_TABLE).update(metrics).eq("id", bot.id).execute()

    async def record_outcome(self, bot: FollowerBot, outcome: ReplicationOutcome) -> None:
        try:
            await asyncio.to_thread(self._write_outcome, bot, outcome)
        except Exception as e:
            # trade logging must not affect replication
            logger.error(f"Failed to record outcome for bot {bot.id}: {e}")

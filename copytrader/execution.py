"""
Per-follower execution pipeline.

Turns one classified target order plus one follower's configuration into a
replicated order and pushes it through REST payload construction and chain
submission.

Pipeline:
1. Size: exact copy, or clamp(original * multiplier, min, max)
2. Side/direction: exits close on the original position's side
3. Order class: market endpoint for market orders, limit endpoint otherwise
4. Payload: venue REST call returns an entry-function payload
5. Submit: sign with the follower's key, submit, wait for confirmation
6. Outcome: success with hash, or failure with the underlying reason

No step is retried. A failed outcome is final for that (event, follower)
pair; the next event is handled independently.
"""

import asyncio
import logging
from typing import Optional

from .chain import ChainClient
from .classifier import OrderClassification, describe_order_type, market_name
from .models import (
    ChainError,
    Direction,
    FollowerBot,
    OrderEvent,
    ReplicationOutcome,
    SizingPolicy,
    VenueError,
)
from .venue import KanaClient, ReplicationRequest

logger = logging.getLogger(__name__)

# Overall budget for one follower run (REST + submit + confirmation)
EXECUTION_TIMEOUT = 90.0


def compute_size(original_size: float, sizing: SizingPolicy) -> float:
    """
    Size a replicated order.

    The floor is applied before the ceiling, so a floor above the ceiling
    resolves to the ceiling.

    Raises:
        ValueError: If the original size is not a positive number.
    """
    if not original_size > 0:
        raise ValueError(f"invalid original size: {original_size}")

    if sizing.exact_copy:
        return original_size

    return min(max(original_size * sizing.copy_multiplier, sizing.min_size), sizing.max_size)


def map_side_direction(classification: OrderClassification) -> tuple[bool, Direction]:
    """
    Map a classification to (trade_side, direction).

    trade_side is True for the long side. Exits keep the side of the
    position being closed rather than inverting it.
    """
    # TODO: confirm Kana's closing-order side convention for shorts before inverting here
    if classification.is_exit:
        return classification.is_long, Direction.CLOSE
    return classification.is_long, Direction.OPEN


def build_request(
    event: OrderEvent, classification: OrderClassification, follower: FollowerBot
) -> ReplicationRequest:
    """Steps 1-3: size, side/direction and order class for one follower."""
    size = compute_size(event.size_value, follower.sizing)
    trade_side, direction = map_side_direction(classification)
    order_class = classification.order_class

    return ReplicationRequest(
        market_id=event.market_id,
        trade_side=trade_side,
        direction=direction,
        size=size,
        price=event.price_value,
        leverage=event.leverage,
        order_class=order_class,
    )


class ExecutionPipeline:
    """
    Replicates a single order for a single follower.

    Attributes:
        venue: REST client for payload construction.
        chain: Chain client for signing and submission.
        timeout: Upper bound for one execution.

    Example:
        pipeline = ExecutionPipeline(venue=kana, chain=PaperChainClient())
        outcome = await pipeline.execute(event, classify(event.order_type_code), bot)
    """

    def __init__(
        self,
        venue: KanaClient,
        chain: ChainClient,
        timeout: float = EXECUTION_TIMEOUT,
    ):
        self.venue = venue
        self.chain = chain
        self.timeout = timeout

    async def execute(
        self,
        event: OrderEvent,
        classification: OrderClassification,
        follower: FollowerBot,
    ) -> ReplicationOutcome:
        """
        Run the pipeline. Never raises; every failure becomes an outcome.
        """

        def failed(error: str, request: Optional[ReplicationRequest] = None) -> ReplicationOutcome:
            logger.warning(f"Copy of {event.order_id} for bot {follower.id} FAILED: {error}")
            return ReplicationOutcome(
                order_id=event.order_id,
                follower_id=follower.id,
                success=False,
                error=error,
                size=request.size if request else None,
                direction=request.direction if request else None,
                trade_side=request.trade_side if request else None,
                order_class=request.order_class if request else None,
            )

        if not follower.is_active:
            return failed(f"bot is {follower.status} (copy trading enabled={follower.copy_trading_enabled})")

        if not classification.is_known:
            return failed(f"unrecognized order type {event.order_type_code}")

        try:
            request = build_request(event, classification, follower)
        except ValueError as e:
            return failed(str(e))

        logger.info(
            f"Copying {describe_order_type(event.order_type_code)} {event.order_id} for bot {follower.id}: "
            f"{market_name(event.market_id)} size {event.size} -> {request.size}, "
            f"{'CLOSE' if request.direction.is_close else 'OPEN'} "
            f"{'LONG' if request.trade_side else 'SHORT'} via {request.order_class} endpoint"
        )

        try:
            tx_hash = await asyncio.wait_for(
                self._submit(request, follower), timeout=self.timeout
            )
        except VenueError as e:
            return failed(e.message, request)
        except ChainError as e:
            return failed(str(e), request)
        except asyncio.TimeoutError:
            return failed(f"execution timed out after {self.timeout}s", request)

        logger.info(f"Copy of {event.order_id} for bot {follower.id} SUCCESSFUL: {tx_hash}")
        return ReplicationOutcome(
            order_id=event.order_id,
            follower_id=follower.id,
            success=True,
            transaction_hash=tx_hash,
            size=request.size,
            direction=request.direction,
            trade_side=request.trade_side,
            order_class=request.order_class,
        )

    async def _submit(self, request: ReplicationRequest, follower: FollowerBot) -> str:
        payload = await self.venue.build_order_payload(request)
        return await self.chain.submit_and_confirm(follower.follower_signing_key, payload)

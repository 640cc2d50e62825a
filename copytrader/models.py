"""
Core data types for order replication.

This module defines the wire-level order event, follower bot configuration,
replication outcomes and the exception hierarchy shared by every component
of the engine. Raw JSON crossing the venue boundary is validated here once
and converted into these types; nothing past this module handles untyped
payloads.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def _utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def short_address(address: Optional[str]) -> str:
    """Shorten an address for log lines."""
    if not address:
        return "-"
    if len(address) <= 14:
        return address
    return f"{address[:8]}...{address[-4:]}"


# =============================================================================
# Exceptions
# =============================================================================


class CopyTraderError(Exception):
    """Base exception for copy-trading errors."""

    pass


class ConfigurationError(CopyTraderError):
    """Raised when startup configuration is missing or malformed."""

    pass


class ConnectError(CopyTraderError):
    """Raised when the stream session cannot open its socket."""

    pass


class ProfileLookupError(CopyTraderError):
    """Raised when a target wallet cannot be resolved to a profile address."""

    pass


class VenueError(CopyTraderError):
    """
    Raised when the venue REST API rejects a request or is unreachable.

    Attributes:
        message: Reason reported by the venue, kept verbatim.
        status_code: HTTP status, if a response was received.
    """

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ChainError(CopyTraderError):
    """Raised when building, signing, submitting or confirming a transaction fails."""

    pass


class StoreError(CopyTraderError):
    """Raised when the follower store cannot be read."""

    pass


# =============================================================================
# Enums
# =============================================================================


class BotStatus(Enum):
    """Follower bot lifecycle status."""

    ACTIVE = "active"
    PAUSED = "paused"
    STOPPED = "stopped"

    def __str__(self) -> str:
        return self.value


class Direction(Enum):
    """Whether a replicated order opens or closes a position."""

    OPEN = "open"
    CLOSE = "close"

    @property
    def is_close(self) -> bool:
        return self is Direction.CLOSE

    def __str__(self) -> str:
        return self.value


class OrderClass(Enum):
    """Which venue endpoint builds the replicated order."""

    MARKET = "market"
    LIMIT = "limit"

    def __str__(self) -> str:
        return self.value


# =============================================================================
# Wire types
# =============================================================================


_ORDER_EVENT_KEYS = (
    "order_id",
    "address",
    "market_id",
    "order_type",
    "price",
    "size",
    "leverage",
    "timestamp",
)


@dataclass(frozen=True)
class OrderEvent:
    """
    One order observed on the target's order_history stream.

    Attributes:
        order_id: Venue-unique order identifier.
        target_profile_address: Profile address that placed the order.
        market_id: Venue market id (e.g. "15" for BTC-USD).
        order_type_code: Venue order type code (1-12 are known).
        price: Decimal string price.
        size: Decimal string size.
        leverage: Leverage multiplier.
        status: Venue order status string.
        timestamp: Unix seconds.
    """

    order_id: str
    target_profile_address: str
    market_id: str
    order_type_code: int
    price: str
    size: str
    leverage: int
    status: str
    timestamp: int

    @classmethod
    def from_wire(cls, data: Any) -> "OrderEvent":
        """
        Validate one raw order_history entry.

        Raises:
            ValueError: If keys are missing or numeric fields do not parse.
        """
        if not isinstance(data, dict):
            raise ValueError(f"order entry is not an object: {data!r}")

        missing = [k for k in _ORDER_EVENT_KEYS if data.get(k) is None]
        if missing:
            raise ValueError(f"order entry missing {', '.join(missing)}")

        try:
            order_type_code = int(data["order_type"])
            leverage = int(data["leverage"])
            timestamp = int(float(data["timestamp"]))
            float(data["price"])
            float(data["size"])
        except (TypeError, ValueError) as e:
            raise ValueError(f"order {data.get('order_id')} has bad numeric field: {e}") from e

        return cls(
            order_id=str(data["order_id"]),
            target_profile_address=str(data["address"]),
            market_id=str(data["market_id"]),
            order_type_code=order_type_code,
            price=str(data["price"]),
            size=str(data["size"]),
            leverage=leverage,
            status=str(data.get("status", "")),
            timestamp=timestamp,
        )

    @property
    def price_value(self) -> float:
        return float(self.price)

    @property
    def size_value(self) -> float:
        return float(self.size)


@dataclass
class ChainPayload:
    """
    Entry-function payload returned by the venue's order endpoints.

    Attributes:
        function: Fully qualified Move function id.
        type_arguments: Move type arguments.
        arguments: Function arguments, already venue-encoded.
    """

    function: str
    type_arguments: list[str] = field(default_factory=list)
    arguments: list[Any] = field(default_factory=list)

    @classmethod
    def from_venue(cls, data: Any) -> "ChainPayload":
        """
        Validate the opaque payload from placeLimitOrder/placeMarketOrder.

        Accepts both the TypeScript SDK shape (functionArguments,
        typeArguments) and the REST shape (arguments, type_arguments).

        Raises:
            VenueError: If the payload has no function id or bad arguments.
        """
        if not isinstance(data, dict):
            raise VenueError(f"unexpected order payload: {data!r}")

        function = data.get("function")
        if not function or not isinstance(function, str):
            raise VenueError("order payload has no function id")

        arguments = data.get("functionArguments", data.get("arguments", []))
        type_arguments = data.get("typeArguments", data.get("type_arguments", []))
        if not isinstance(arguments, list) or not isinstance(type_arguments, list):
            raise VenueError("order payload arguments must be lists")

        return cls(
            function=function,
            type_arguments=[str(t) for t in type_arguments],
            arguments=list(arguments),
        )

    def to_entry_function_payload(self) -> dict[str, Any]:
        """Shape expected by the node's JSON transaction submission."""
        return {
            "type": "entry_function_payload",
            "function": self.function,
            "type_arguments": self.type_arguments,
            "arguments": [_encode_argument(a) for a in self.arguments],
        }


def _encode_argument(value: Any) -> Any:
    # Move JSON encodes integers as strings; booleans and vectors pass through
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, list):
        return [_encode_argument(v) for v in value]
    return value


# =============================================================================
# Followers
# =============================================================================


@dataclass
class SizingPolicy:
    """
    How a follower sizes replicated orders.

    Attributes:
        copy_multiplier: Multiplier applied to the target's size.
        min_size: Floor applied after the multiplier.
        max_size: Ceiling applied after the floor.
        exact_copy: Copy the target's size unchanged.
    """

    copy_multiplier: float = 1.0
    min_size: float = 0.0001
    max_size: float = 0.001
    exact_copy: bool = False


@dataclass
class FollowerBot:
    """
    A follower account replicating one target.

    The signing key is owned by this bot alone and is excluded from repr so
    it never reaches a log line.
    """

    id: str
    target_address: str
    follower_signing_key: str = field(repr=False)
    status: BotStatus = BotStatus.ACTIVE
    sizing: SizingPolicy = field(default_factory=SizingPolicy)
    copy_trading_enabled: bool = True
    user_address: Optional[str] = None
    bot_name: str = ""

    @property
    def is_active(self) -> bool:
        """Only active, enabled bots may reach the execution pipeline."""
        return self.status is BotStatus.ACTIVE and self.copy_trading_enabled

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "FollowerBot":
        """Build a bot from a copy_trading_bots row."""
        try:
            status = BotStatus(str(row.get("status", "active")).lower())
        except ValueError:
            status = BotStatus.STOPPED

        sizing = SizingPolicy(
            copy_multiplier=_row_float(row, "copy_multiplier", SizingPolicy.copy_multiplier),
            min_size=_row_float(row, "min_copy_size", SizingPolicy.min_size),
            max_size=_row_float(row, "max_copy_size", SizingPolicy.max_size),
            exact_copy=bool(row.get("exact_copy") or False),
        )

        return cls(
            id=str(row["id"]),
            target_address=str(row["target_address"]),
            follower_signing_key=str(row.get("user_private_key") or ""),
            status=status,
            sizing=sizing,
            copy_trading_enabled=bool(row.get("copy_trading_enabled", True)),
            user_address=row.get("user_address"),
            bot_name=row.get("bot_name") or "",
        )


def _row_float(row: dict[str, Any], key: str, default: float) -> float:
    # NULL or absent falls back; an explicit 0 is kept
    value = row.get(key)
    return default if value is None else float(value)


@dataclass
class TargetSubscription:
    """
    One monitored target.

    Events with timestamp < active_from_watermark are historical replay.
    """

    target_address: str
    profile_address: Optional[str] = None
    active_from_watermark: int = field(default_factory=lambda: int(time.time()))

    @property
    def is_resolved(self) -> bool:
        return self.profile_address is not None


@dataclass
class ReplicationOutcome:
    """Result of one (event, follower) execution attempt."""

    order_id: str
    follower_id: str
    success: bool
    transaction_hash: Optional[str] = None
    error: Optional[str] = None
    observed_at: datetime = field(default_factory=_utc_now)
    size: Optional[float] = None
    direction: Optional[Direction] = None
    trade_side: Optional[bool] = None
    order_class: Optional[OrderClass] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "follower_id": self.follower_id,
            "success": self.success,
            "transaction_hash": self.transaction_hash,
            "error": self.error,
            "observed_at": self.observed_at.isoformat(),
            "size": self.size,
            "direction": str(self.direction) if self.direction else None,
            "trade_side": self.trade_side,
            "order_class": str(self.order_class) if self.order_class else None,
        }

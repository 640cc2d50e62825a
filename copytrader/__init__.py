"""
Order replication engine for Kana Labs perps on Aptos.

This package mirrors a target trader's orders onto follower bots:
- ReplicationEngine: wires stream, dedup, fan-out and execution together
- StreamSession: persistent order_history websocket with linear backoff
- OrderTracker: start watermark and processed-order dedup
- ExecutionPipeline: size, map, build payload, sign, submit, confirm
- FollowerStore: follower bots from Supabase or a JSON file

Usage:
    from copytrader import ReplicationEngine, KanaClient, PaperChainClient

    engine = ReplicationEngine(
        venue=KanaClient(api_key="..."),
        chain=PaperChainClient(),
        store=InMemoryFollowerStore.from_file("followers.json"),
        ws_url="wss://...",
    )
    await engine.run()
"""

from .chain import AptosChainClient, ChainClient, PaperChainClient
from .classifier import OrderClassification, classify, describe_order_type, market_name
from .dedup import OrderTracker
from .engine import ReplicationEngine
from .execution import ExecutionPipeline, compute_size, map_side_direction
from .fanout import FollowerFanOut
from .models import (
    BotStatus,
    ChainError,
    ChainPayload,
    ConfigurationError,
    ConnectError,
    CopyTraderError,
    Direction,
    FollowerBot,
    OrderClass,
    OrderEvent,
    ProfileLookupError,
    ReplicationOutcome,
    SizingPolicy,
    StoreError,
    TargetSubscription,
    VenueError,
)
from .registry import TargetRegistry
from .store import FollowerStore, InMemoryFollowerStore, SupabaseFollowerStore
from .stream import SessionState, StreamSession
from .telemetry import EngineStatus
from .venue import KanaClient, ReplicationRequest

__all__ = [
    # Engine
    "ReplicationEngine",
    "EngineStatus",
    # Stream and dedup
    "StreamSession",
    "SessionState",
    "OrderTracker",
    # Classification
    "OrderClassification",
    "classify",
    "describe_order_type",
    "market_name",
    # Execution
    "ExecutionPipeline",
    "FollowerFanOut",
    "compute_size",
    "map_side_direction",
    "KanaClient",
    "ReplicationRequest",
    "ChainClient",
    "AptosChainClient",
    "PaperChainClient",
    # Targets and followers
    "TargetRegistry",
    "FollowerStore",
    "InMemoryFollowerStore",
    "SupabaseFollowerStore",
    # Types
    "OrderEvent",
    "ChainPayload",
    "FollowerBot",
    "SizingPolicy",
    "TargetSubscription",
    "ReplicationOutcome",
    "BotStatus",
    "Direction",
    "OrderClass",
    # Exceptions
    "CopyTraderError",
    "ConfigurationError",
    "ConnectError",
    "ProfileLookupError",
    "VenueError",
    "ChainError",
    "StoreError",
]

"""Status surface for external health checks."""
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)


@dataclass
class EngineStatus:
    """
    Read-only snapshot of the engine.

    Attributes:
        is_monitoring: Engine started and accepting events.
        target_count: Targets currently monitored.
        tracked_order_count: Order ids in the dedup window.
        reconnect_attempts: Consecutive failed connects.
        session_state: Stream session state name.
        kill_switch: Whether the kill switch file is present.
        in_flight: Executions still running.
        events_dispatched: Events handed to followers.
        events_dropped: Events dropped (unknown type, no followers).
        unresolved_targets: Targets whose profile lookup failed.
        followers: bot_id -> counters and last result.
    """

    is_monitoring: bool
    target_count: int
    tracked_order_count: int
    reconnect_attempts: int
    session_state: str = "disconnected"
    kill_switch: bool = False
    in_flight: int = 0
    events_dispatched: int = 0
    events_dropped: int = 0
    unresolved_targets: list[str] = field(default_factory=list)
    followers: dict[str, Any] = field(default_factory=dict)
    updated_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def write_status(status: EngineStatus, path: Path) -> None:
    """Write a status snapshot atomically (write then rename)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    try:
        with open(tmp, "w") as f:
            json.dump(status.to_dict(), f, indent=2)
        tmp.replace(path)
    except OSError as e:
        logger.warning(f"Could not write status snapshot to {path}: {e}")


def read_status(path: Path) -> Optional[dict[str, Any]]:
    """Load the last snapshot, or None if there is none."""
    if not path.exists():
        return None
    try:
        with open(path) as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Could not read status snapshot {path}: {e}")
        return None

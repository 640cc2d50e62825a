"""Configuration management for the Kana perps copy-trading engine."""
import os
import re
from pathlib import Path
from dotenv import load_dotenv

from .models import ConfigurationError

# Load environment variables
load_dotenv()

# Project root directory
PROJECT_ROOT = Path(__file__).parent.parent

# Data directory
DATA_DIR = PROJECT_ROOT / "data"
LOGS_DIR = PROJECT_ROOT / "logs"

# Status snapshot written by the engine every refresh cycle
STATUS_FILE = DATA_DIR / "engine_status.json"

# Kill switch file (create this file to halt all replication)
KILL_SWITCH_FILE = PROJECT_ROOT / ".kill_switch"

# Trading mode: "paper" or "live"
TRADING_MODE = os.getenv("TRADING_MODE", "paper")

# =============================================================================
# VENUE / CHAIN ENDPOINTS
# =============================================================================

KANA_API_KEY = os.getenv("KANA_API_KEY", "")
KANA_REST_URL = os.getenv("KANA_REST", "https://perps-tradeapi.kanalabs.io")
KANA_WS_URL = os.getenv("KANA_WS", "wss://perpetuals-indexer-ws-develop.kanalabs.io/ws/")
APTOS_NODE_URL = os.getenv("APTOS_NODE", "https://fullnode.mainnet.aptoslabs.com/v1")

# =============================================================================
# FOLLOWER PERSISTENCE
# =============================================================================

SUPABASE_URL = os.getenv("SUPABASE_URL", "")
SUPABASE_SERVICE_KEY = os.getenv("SUPABASE_SERVICE_KEY", "")

# JSON file with follower rows (used instead of Supabase when set)
FOLLOWERS_FILE = os.getenv("FOLLOWERS_FILE", "")

# Statically configured targets, monitored even before any bot references them
TARGET_WALLET_ADDRESSES = [
    a.strip() for a in os.getenv("TARGET_WALLET_ADDRESSES", "").split(",") if a.strip()
]

# =============================================================================
# STREAM SESSION
# =============================================================================

# Linear backoff: attempt N waits RECONNECT_DELAY * N seconds
RECONNECT_DELAY = float(os.getenv("RECONNECT_DELAY", "5"))
MAX_RECONNECT_ATTEMPTS = int(os.getenv("MAX_RECONNECT_ATTEMPTS", "10"))
PING_INTERVAL = float(os.getenv("PING_INTERVAL", "20"))

# =============================================================================
# DEDUP / WATERMARK
# =============================================================================

# Watermark = start time minus this buffer (clock skew tolerance)
WATERMARK_BUFFER = int(os.getenv("WATERMARK_BUFFER", "30"))

# Processed order ids are remembered for this many seconds
DEDUP_RETENTION = int(os.getenv("DEDUP_RETENTION", str(24 * 3600)))

# =============================================================================
# EXECUTION
# =============================================================================

REST_TIMEOUT = float(os.getenv("REST_TIMEOUT", "10"))
CONFIRMATION_TIMEOUT = float(os.getenv("CONFIRMATION_TIMEOUT", "60"))

# Seconds between monitoring cycles (target refresh + status snapshot)
REFRESH_INTERVAL = float(os.getenv("REFRESH_INTERVAL", "60"))

# Outcomes kept per bot for the status surface
RECENT_ACTIVITY_LIMIT = int(os.getenv("RECENT_ACTIVITY_LIMIT", "50"))

# Shutdown waits this long for in-flight executions, then cancels them.
# Defaults to the whole-execution timeout so a normal drain never cuts one short.
DRAIN_TIMEOUT = float(os.getenv("DRAIN_TIMEOUT", "90"))

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{1,64}$")


def is_valid_address(address: str) -> bool:
    """Check that an address looks like an Aptos account address."""
    return bool(address) and bool(_ADDRESS_RE.match(address))


def validate_config(
    api_key: str = None,
    targets: list = None,
    followers_file: str = None,
    supabase_url: str = None,
    supabase_key: str = None,
) -> None:
    """
    Validate startup configuration.

    Arguments default to the module settings; they are parameters so the
    check can be exercised without touching the environment.

    Raises:
        ConfigurationError: listing every problem found.
    """
    api_key = KANA_API_KEY if api_key is None else api_key
    targets = TARGET_WALLET_ADDRESSES if targets is None else targets
    followers_file = FOLLOWERS_FILE if followers_file is None else followers_file
    supabase_url = SUPABASE_URL if supabase_url is None else supabase_url
    supabase_key = SUPABASE_SERVICE_KEY if supabase_key is None else supabase_key

    problems = []

    if not api_key:
        problems.append("KANA_API_KEY is not set")

    if not followers_file and not (supabase_url and supabase_key):
        problems.append(
            "no follower source: set FOLLOWERS_FILE or SUPABASE_URL and SUPABASE_SERVICE_KEY"
        )
    elif followers_file and not Path(followers_file).exists():
        problems.append(f"FOLLOWERS_FILE not found: {followers_file}")

    for address in targets:
        if not is_valid_address(address):
            problems.append(f"malformed target address: {address}")

    if problems:
        raise ConfigurationError("; ".join(problems))


def ensure_dirs() -> None:
    """Create data and log directories."""
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    LOGS_DIR.mkdir(parents=True, exist_ok=True)

#!/usr/bin/env python3
"""
Run the Order Replication Engine

Command-line interface for mirroring target traders' Kana Labs perps orders
onto follower bots.

Usage:
    # Paper mode (default, safe): payloads are built but never submitted
    python scripts/run_copy_engine.py

    # Check status of a running engine (reads the last snapshot)
    python scripts/run_copy_engine.py --status

    # Run for a specific duration (in minutes)
    python scripts/run_copy_engine.py --duration 60

    # Live submission to Aptos (CAUTION - signs with follower keys)
    python scripts/run_copy_engine.py --live

    # Activate kill switch (stop replicating new orders)
    python scripts/run_copy_engine.py --kill

    # Deactivate kill switch
    python scripts/run_copy_engine.py --resume

Safety Notes:
    - Paper mode is the default. Nothing is submitted on-chain unless --live is passed.
    - Kill switch: Create .kill_switch file in project root to halt replication.
    - Follower signing keys come from the follower store and are never logged.

Environment Variables:
    KANA_API_KEY - Kana Labs perps API key (required)
    KANA_REST / KANA_WS / APTOS_NODE - Endpoint overrides
    TARGET_WALLET_ADDRESSES - Comma-separated targets monitored from startup
    FOLLOWERS_FILE - JSON list of follower rows (instead of Supabase)
    SUPABASE_URL / SUPABASE_SERVICE_KEY - Supabase follower store
    TRADING_MODE - "paper" (default) or "live"
"""

import argparse
import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from copytrader import config
from copytrader.chain import AptosChainClient, ChainClient, PaperChainClient
from copytrader.engine import ReplicationEngine
from copytrader.models import ConfigurationError, StoreError
from copytrader.store import FollowerStore, InMemoryFollowerStore, SupabaseFollowerStore
from copytrader.telemetry import read_status
from copytrader.venue import KanaClient


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for the engine."""
    level = logging.DEBUG if verbose else logging.INFO

    console_format = "%(asctime)s [%(levelname)s] %(message)s"
    file_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(console_format, datefmt="%H:%M:%S"))

    # File handler
    config.LOGS_DIR.mkdir(parents=True, exist_ok=True)
    log_file = config.LOGS_DIR / f"copy_engine_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"

    file_handler = logging.FileHandler(log_file)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(file_format))

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    # Reduce noise from external libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)

    print(f"Logs will be written to: {log_file}")


def build_store() -> FollowerStore:
    """Follower store from FOLLOWERS_FILE, else Supabase."""
    if config.FOLLOWERS_FILE:
        return InMemoryFollowerStore.from_file(config.FOLLOWERS_FILE)
    return SupabaseFollowerStore(config.SUPABASE_URL, config.SUPABASE_SERVICE_KEY)


def build_chain(paper_mode: bool) -> ChainClient:
    if paper_mode:
        return PaperChainClient()
    return AptosChainClient(config.APTOS_NODE_URL, confirmation_timeout=config.CONFIRMATION_TIMEOUT)


def show_status() -> None:
    """Show the last status snapshot without starting the engine."""
    print("\n" + "=" * 70)
    print("Order Replication Engine Status")
    print("=" * 70)

    kill_switch_active = config.KILL_SWITCH_FILE.exists()
    print(f"\nKill Switch: {'ACTIVE (replication halted)' if kill_switch_active else 'Inactive'}")
    print(f"Kill Switch Path: {config.KILL_SWITCH_FILE}")

    print("\nConfiguration:")
    print(f"  Trading Mode: {config.TRADING_MODE}")
    print(f"  Static Targets: {len(config.TARGET_WALLET_ADDRESSES)}")
    print(f"  Follower Source: {'file' if config.FOLLOWERS_FILE else 'supabase'}")
    print(f"  API Key: {'Configured' if config.KANA_API_KEY else 'NOT CONFIGURED'}")

    status = read_status(config.STATUS_FILE)
    if status is None:
        print("\nEngine Snapshot: none (engine has not run yet)")
        print("\n" + "=" * 70)
        return

    print(f"\nEngine Snapshot ({status.get('updated_at', 'unknown')}):")
    print(f"  Monitoring: {status.get('is_monitoring')}")
    print(f"  Session: {status.get('session_state')}")
    print(f"  Reconnect Attempts: {status.get('reconnect_attempts')}")
    print(f"  Targets: {status.get('target_count')}")
    print(f"  Tracked Orders: {status.get('tracked_order_count')}")
    print(f"  In Flight: {status.get('in_flight')}")
    print(f"  Dispatched / Dropped: {status.get('events_dispatched')} / {status.get('events_dropped')}")

    unresolved = status.get("unresolved_targets") or []
    if unresolved:
        print(f"  Unresolved Targets: {', '.join(unresolved)}")

    followers = status.get("followers") or {}
    if followers:
        print("\nFollowers:")
        for bot_id, summary in followers.items():
            last = summary.get("last_result") or {}
            last_str = "none"
            if last:
                last_str = "OK " + str(last.get("transaction_hash")) if last.get("success") else "FAILED " + str(last.get("error"))
            print(f"  {bot_id}: {summary.get('successful')} ok / {summary.get('failed')} failed, last: {last_str}")

    print("\n" + "=" * 70)


def activate_kill_switch(reason: str = "CLI activation") -> None:
    """Create the kill switch file."""
    config.KILL_SWITCH_FILE.write_text(f"{datetime.now().isoformat()} {reason}\n")
    print(f"\nKill switch ACTIVATED: {reason}")
    print(f"Kill switch file: {config.KILL_SWITCH_FILE}")
    print("\nNew target orders will not be replicated.")
    print("To resume, run: python scripts/run_copy_engine.py --resume")


def deactivate_kill_switch() -> None:
    """Remove the kill switch file."""
    if config.KILL_SWITCH_FILE.exists():
        config.KILL_SWITCH_FILE.unlink()
        print("\nKill switch DEACTIVATED")
        print("Replication is now allowed.")
    else:
        print("\nKill switch was not active.")


async def run_engine(paper_mode: bool, duration_minutes: int) -> None:
    """
    Build and run the engine.

    Args:
        paper_mode: If True, use the paper chain client
        duration_minutes: How long to run (0 = unlimited)
    """
    mode_str = "PAPER" if paper_mode else "LIVE"

    print("\n" + "=" * 70)
    print(f"Starting Order Replication Engine ({mode_str} MODE)")
    print("=" * 70)

    if not paper_mode:
        print("\n" + "!" * 70)
        print("WARNING: LIVE MODE")
        print("Transactions will be signed with follower keys and submitted!")
        print("!" * 70)

        confirm = input("\nType 'LIVE' to confirm live replication: ")
        if confirm != "LIVE":
            print("Live replication cancelled.")
            return

    try:
        store = build_store()
    except StoreError as e:
        print(f"Error: {e}")
        return

    engine = ReplicationEngine(
        venue=KanaClient(config.KANA_API_KEY, config.KANA_REST_URL, timeout=config.REST_TIMEOUT),
        chain=build_chain(paper_mode),
        store=store,
        ws_url=config.KANA_WS_URL,
        static_targets=config.TARGET_WALLET_ADDRESSES,
        watermark_buffer=config.WATERMARK_BUFFER,
        dedup_retention=config.DEDUP_RETENTION,
        reconnect_delay=config.RECONNECT_DELAY,
        max_reconnect_attempts=config.MAX_RECONNECT_ATTEMPTS,
        ping_interval=config.PING_INTERVAL,
        refresh_interval=config.REFRESH_INTERVAL,
        drain_timeout=config.DRAIN_TIMEOUT,
        activity_limit=config.RECENT_ACTIVITY_LIMIT,
        kill_switch_file=config.KILL_SWITCH_FILE,
        status_file=config.STATUS_FILE,
    )
    engine.install_signal_handlers()

    print(f"\nDuration: {duration_minutes} minutes" if duration_minutes > 0 else "\nDuration: Unlimited")
    print("Press Ctrl+C to stop\n")

    run_task = asyncio.create_task(engine.run())
    try:
        if duration_minutes > 0:
            try:
                await asyncio.wait_for(asyncio.shield(run_task), timeout=duration_minutes * 60)
            except asyncio.TimeoutError:
                print(f"\nDuration limit reached ({duration_minutes} minutes)")
                engine.stop()
        await run_task
    finally:
        status = engine.get_status()

        print("\n" + "=" * 70)
        print("Final Status")
        print("=" * 70)
        print(f"\nSession Summary:")
        print(f"  Mode: {mode_str}")
        print(f"  Events dispatched: {status.events_dispatched}")
        print(f"  Events dropped: {status.events_dropped}")
        print(f"  Orders tracked: {status.tracked_order_count}")
        for bot_id, summary in status.followers.items():
            print(f"  Bot {bot_id}: {summary['successful']} ok / {summary['failed']} failed")
        print("\n" + "=" * 70)


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Run the Kana perps Order Replication Engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/run_copy_engine.py                  # Paper mode (default)
  python scripts/run_copy_engine.py --status         # Check status
  python scripts/run_copy_engine.py --duration 60    # Run for 60 minutes
  python scripts/run_copy_engine.py --live           # Live submission (CAUTION)
  python scripts/run_copy_engine.py --kill           # Activate kill switch
  python scripts/run_copy_engine.py --resume         # Deactivate kill switch
        """,
    )

    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument(
        "--live",
        action="store_true",
        help="Sign and submit replicated orders on-chain (CAUTION)",
    )
    mode_group.add_argument(
        "--status",
        action="store_true",
        help="Show the last engine status snapshot and exit",
    )
    mode_group.add_argument(
        "--kill",
        action="store_true",
        help="Activate kill switch to halt replication",
    )
    mode_group.add_argument(
        "--resume",
        action="store_true",
        help="Deactivate kill switch to allow replication",
    )

    parser.add_argument(
        "--duration",
        type=int,
        default=0,
        metavar="MINUTES",
        help="How long to run in minutes (0 = unlimited, default: 0)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose (debug) logging",
    )

    args = parser.parse_args()

    if args.status:
        show_status()
        return

    if args.kill:
        activate_kill_switch()
        return

    if args.resume:
        deactivate_kill_switch()
        return

    try:
        config.validate_config()
    except ConfigurationError as e:
        print(f"Configuration error: {e}")
        sys.exit(1)

    config.ensure_dirs()
    setup_logging(verbose=args.verbose)

    paper_mode = not args.live and config.TRADING_MODE != "live"

    try:
        asyncio.run(run_engine(paper_mode=paper_mode, duration_minutes=args.duration))
    except KeyboardInterrupt:
        print("\nShutdown requested by user...")


if __name__ == "__main__":
    main()

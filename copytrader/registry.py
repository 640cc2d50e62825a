"""
Target registry: wallet address <-> venue profile address.

Profile addresses never change for a wallet, so each successful lookup is
cached for the life of the process, including across removal and
re-addition of the target. Failed lookups are remembered and
retried on the next monitoring cycle without blocking other targets.
"""

import asyncio
import logging
import threading
import time
from typing import Optional

from .models import ProfileLookupError, TargetSubscription, short_address
from .venue import KanaClient

logger = logging.getLogger(__name__)


class TargetRegistry:
    """
    Monitored targets and their resolved profile addresses.

    Attributes:
        venue: Client used for profile lookups.
        failures: target_address -> last lookup error.
    """

    def __init__(self, venue: KanaClient, watermark_buffer: int = 30):
        self.venue = venue
        self.watermark_buffer = watermark_buffer
        self._subscriptions: dict[str, TargetSubscription] = {}
        # target_address -> profile_address, kept after a target is removed
        self._profiles: dict[str, str] = {}
        self.failures: dict[str, str] = {}
        self._lock = threading.Lock()

    def add_target(self, target_address: str, watermark: Optional[int] = None) -> TargetSubscription:
        """Register a target (idempotent). Its watermark is set on first add."""
        with self._lock:
            sub = self._subscriptions.get(target_address)
            if sub is None:
                if watermark is None:
                    watermark = int(time.time()) - self.watermark_buffer
                sub = TargetSubscription(
                    target_address=target_address,
                    profile_address=self._profiles.get(target_address),
                    active_from_watermark=watermark,
                )
                self._subscriptions[target_address] = sub
            return sub

    def remove_target(self, target_address: str) -> Optional[TargetSubscription]:
        with self._lock:
            self.failures.pop(target_address, None)
            return self._subscriptions.pop(target_address, None)

    def get(self, target_address: str) -> Optional[TargetSubscription]:
        with self._lock:
            return self._subscriptions.get(target_address)

    @property
    def targets(self) -> list[str]:
        with self._lock:
            return list(self._subscriptions)

    @property
    def profile_addresses(self) -> list[str]:
        with self._lock:
            return [s.profile_address for s in self._subscriptions.values() if s.is_resolved]

    @property
    def unresolved(self) -> list[str]:
        with self._lock:
            return [t for t, s in self._subscriptions.items() if not s.is_resolved]

    async def resolve_profile_address(self, target_address: str) -> str:
        """
        Resolve (and cache) a target's profile address.

        Raises:
            ProfileLookupError: If the venue lookup fails.
        """
        sub = self.add_target(target_address)
        if sub.profile_address is not None:
            return sub.profile_address

        try:
            profile = await self.venue.get_profile_address(target_address)
        except ProfileLookupError as e:
            with self._lock:
                if target_address in self._subscriptions:
                    self.failures[target_address] = str(e)
            raise

        with self._lock:
            self._profiles[target_address] = profile
            # target may have been removed while the lookup was in flight
            current = self._subscriptions.get(target_address)
            if current is not None:
                current.profile_address = profile
            self.failures.pop(target_address, None)
        return profile

    async def resolve_all(self, target_addresses: Optional[list[str]] = None) -> dict[str, str]:
        """
        Resolve many targets concurrently, isolating failures per target.

        Returns:
            target_address -> profile_address for every target that resolved.
        """
        targets = target_addresses if target_addresses is not None else self.targets
        results = await asyncio.gather(
            *(self.resolve_profile_address(t) for t in targets), return_exceptions=True
        )

        resolved = {}
        for target, result in zip(targets, results):
            if isinstance(result, ProfileLookupError):
                logger.warning(f"Could not resolve target {short_address(target)}: {result}")
            elif isinstance(result, BaseException):
                logger.error(
                    f"Unexpected error resolving {short_address(target)}: {result}", exc_info=result
                )
                with self._lock:
                    if target in self._subscriptions:
                        self.failures[target] = str(result)
            else:
                resolved[target] = result
        return resolved

    def target_address_for(self, profile_address: str) -> Optional[str]:
        """Reverse lookup; a linear scan is fine for tens of targets."""
        with self._lock:
            for target, sub in self._subscriptions.items():
                if sub.profile_address == profile_address:
                    return target
        return None

    def subscription_for_profile(self, profile_address: str) -> Optional[TargetSubscription]:
        with self._lock:
            for sub in self._subscriptions.values():
                if sub.profile_address == profile_address:
                    return sub
        return None

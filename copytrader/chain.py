"""
Chain submission for replicated orders.

The venue returns an entry-function payload; this module builds the
transaction, signs it with the follower's key, submits it and waits for the
chain to report the outcome.

Implementations:
- AptosChainClient: live submission through aptos-sdk's RestClient
- PaperChainClient: paper mode (default), validates and logs only

SECURITY WARNING:
- Follower signing keys are read-only to this module and never logged
"""

import asyncio
import hashlib
import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from typing import Optional

import httpx
from aptos_sdk.account import Account
from aptos_sdk.async_client import ApiError, RestClient

from .models import ChainError, ChainPayload

logger = logging.getLogger(__name__)

# Seconds to wait for a committed transaction
CONFIRMATION_TIMEOUT = 60.0

# Paper submissions kept for inspection
PAPER_HISTORY_LIMIT = 500


class ChainClient(ABC):
    """Abstract build-sign-submit-confirm pipeline."""

    @abstractmethod
    async def submit_and_confirm(self, signing_key: str, payload: ChainPayload) -> str:
        """
        Sign and submit a payload, then wait for confirmation.

        Args:
            signing_key: Follower's private key (hex).
            payload: Entry-function payload from the venue.

        Returns:
            Transaction hash of the committed, successful transaction.

        Raises:
            ChainError: If signing, submission or execution fails, or if
                confirmation does not arrive in time.
        """
        pass

    async def close(self) -> None:
        """Release network resources."""
        pass


class AptosChainClient(ChainClient):
    """
    Live Aptos submission via aptos-sdk.

    Example:
        chain = AptosChainClient("https://fullnode.mainnet.aptoslabs.com/v1")
        tx_hash = await chain.submit_and_confirm(key, payload)
    """

    def __init__(
        self,
        node_url: str,
        confirmation_timeout: float = CONFIRMATION_TIMEOUT,
        rest_client: Optional[RestClient] = None,
    ):
        self.node_url = node_url
        self.confirmation_timeout = confirmation_timeout
        self._rest = rest_client or RestClient(node_url)

        # signing key -> Account, loaded once per follower
        self._accounts: dict[str, Account] = {}
        self._accounts_lock = threading.Lock()

    def _account_for(self, signing_key: str) -> Account:
        with self._accounts_lock:
            account = self._accounts.get(signing_key)
            if account is None:
                try:
                    account = Account.load_key(signing_key)
                except Exception as e:
                    # never echo the key material
                    raise ChainError(f"invalid signing key: {type(e).__name__}") from None
                self._accounts[signing_key] = account
            return account

    async def submit_and_confirm(self, signing_key: str, payload: ChainPayload) -> str:
        account = self._account_for(signing_key)

        try:
            tx_hash = await self._rest.submit_transaction(
                account, payload.to_entry_function_payload()
            )
        except (ApiError, httpx.HTTPError, AssertionError) as e:
            raise ChainError(f"submission failed: {e}") from e

        logger.debug(f"Submitted {tx_hash} from {account.address()}, awaiting confirmation")

        try:
            await asyncio.wait_for(self._confirm(tx_hash), timeout=self.confirmation_timeout)
        except asyncio.TimeoutError:
            raise ChainError(
                f"confirmation timed out after {self.confirmation_timeout}s for {tx_hash}"
            ) from None
        return tx_hash

    async def _confirm(self, tx_hash: str) -> None:
        try:
            await self._rest.wait_for_transaction(tx_hash)
            committed = await self._rest.transaction_by_hash(tx_hash)
        except (ApiError, httpx.HTTPError, AssertionError) as e:
            raise ChainError(f"Transaction failed to confirm: {e}") from e

        if not committed.get("success"):
            raise ChainError(
                f"Transaction failed to confirm: {committed.get('vm_status', 'unknown status')}"
            )

    async def close(self) -> None:
        await self._rest.close()


class PaperChainClient(ChainClient):
    """
    Paper-mode chain client.

    Validates payloads and returns a deterministic synthetic hash without
    touching the chain. Used by default until --live is passed.
    """

    def __init__(self, latency: float = 0.0, history_limit: int = PAPER_HISTORY_LIMIT):
        self.latency = latency
        self.submissions: deque[ChainPayload] = deque(maxlen=history_limit)
        self.submission_count = 0

    async def submit_and_confirm(self, signing_key: str, payload: ChainPayload) -> str:
        if not signing_key:
            raise ChainError("invalid signing key: empty")
        if not payload.function:
            raise ChainError("payload has no function id")

        if self.latency:
            await asyncio.sleep(self.latency)

        self.submissions.append(payload)
        self.submission_count += 1
        digest = hashlib.sha256(
            f"{payload.function}|{payload.arguments}|{self.submission_count}".encode()
        ).hexdigest()
        # same length as a real hash: 0x + 64 chars
        tx_hash = f"0xpaper{digest[:59]}"
        logger.info(f"[PAPER] Would submit {payload.function} -> {tx_hash[:18]}...")
        return tx_hash

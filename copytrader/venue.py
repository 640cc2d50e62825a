"""
Kana Labs perps REST client.

Wraps the three venue endpoints the engine needs:
- getProfileAddress: wallet -> venue profile address
- placeLimitOrder / placeMarketOrder: order parameters -> entry-function payload

Safety Features:
- Bounded timeout on every request
- Retry with exponential backoff (3 attempts) on profile lookups only
- Order endpoints are never retried; a rejection is final for that follower

IMPORTANT: Requires KANA_API_KEY in the environment or .env file.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    RetryError,
)

from .models import ChainPayload, Direction, OrderClass, ProfileLookupError, VenueError, short_address

logger = logging.getLogger(__name__)

# API timeout in seconds
API_TIMEOUT = 10.0

# Retry configuration for profile lookups
MAX_RETRY_ATTEMPTS = 3
RETRY_MIN_WAIT = 0.5  # seconds
RETRY_MAX_WAIT = 4.0  # seconds

# Order restriction code: 0 = no restriction
NO_RESTRICTION = 0


@dataclass
class ReplicationRequest:
    """
    Parameters for one replicated order.

    Attributes:
        market_id: Venue market id.
        trade_side: True = long side, False = short side.
        direction: Open or close.
        size: Sized quantity for the follower.
        price: Limit price (ignored for market orders).
        leverage: Leverage multiplier.
        order_class: Market or limit endpoint.
        restriction: Venue restriction code.
    """

    market_id: str
    trade_side: bool
    direction: Direction
    size: float
    price: Optional[float]
    leverage: int
    order_class: OrderClass
    restriction: int = NO_RESTRICTION

    def to_params(self) -> dict[str, str]:
        """Query parameters in the venue's encoding."""
        params = {
            "marketId": str(self.market_id),
            "tradeSide": _bool_param(self.trade_side),
            "direction": _bool_param(self.direction.is_close),
            "size": _num_param(self.size),
            "leverage": str(self.leverage),
            "restriction": str(self.restriction),
        }
        if self.order_class is OrderClass.LIMIT and self.price is not None:
            params["price"] = _num_param(self.price)
        return params


def _bool_param(value: bool) -> str:
    return "true" if value else "false"


def _num_param(value: float) -> str:
    # repr keeps full precision without scientific notation for typical sizes
    text = repr(float(value))
    if "e" in text or "E" in text:
        text = f"{value:.12f}".rstrip("0").rstrip(".")
    return text


class KanaClient:
    """
    Async client for the Kana Labs perps REST API.

    Example:
        async with KanaClient(api_key="...") as kana:
            profile = await kana.get_profile_address("0xabc...")
    """

    DEFAULT_BASE_URL = "https://perps-tradeapi.kanalabs.io"

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = API_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            api_key: Kana Labs API key (sent as x-api-key)
            base_url: REST base URL
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests pass a MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.retry_wait = wait_exponential(multiplier=RETRY_MIN_WAIT, max=RETRY_MAX_WAIT)
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"x-api-key": api_key, "Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "KanaClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def _get(self, path: str, params: dict[str, Any]) -> Any:
        """
        GET a venue endpoint and unwrap its {success, data, message} envelope.

        Raises:
            VenueError: On transport failure, HTTP error or success=false.
        """
        try:
            response = await self._client.get(path, params=params)
        except httpx.TimeoutException as e:
            raise VenueError(f"{path} timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise VenueError(f"{path} request failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code >= 400:
            detail = None
            if isinstance(body, dict):
                detail = body.get("message") or body.get("error")
            raise VenueError(
                f"HTTP {response.status_code}: {detail or response.reason_phrase}",
                status_code=response.status_code,
            )

        if not isinstance(body, dict):
            raise VenueError(f"{path} returned a non-JSON body", status_code=response.status_code)

        if not body.get("success"):
            raise VenueError(
                f"API returned error: {body.get('message') or 'Unknown error'}",
                status_code=response.status_code,
            )

        return body.get("data")

    async def get_profile_address(self, wallet_address: str) -> str:
        """
        Resolve a wallet address to its venue profile address.

        Transport failures are retried; an explicit success=false is not.

        Raises:
            ProfileLookupError: If the lookup fails.
        """

        @retry(
            stop=stop_after_attempt(MAX_RETRY_ATTEMPTS),
            wait=self.retry_wait,
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=False,
        )
        async def _fetch():
            return await self._client.get(
                "/getProfileAddress", params={"userAddress": wallet_address}
            )

        try:
            response = await _fetch()
        except RetryError as e:
            cause = e.last_attempt.exception()
            logger.error(
                f"Profile lookup for {short_address(wallet_address)} failed after "
                f"{MAX_RETRY_ATTEMPTS} attempts: {cause}"
            )
            raise ProfileLookupError(f"profile lookup failed: {cause}") from cause
        except httpx.HTTPError as e:
            raise ProfileLookupError(f"profile lookup failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code >= 400 or not isinstance(body, dict) or not body.get("success"):
            message = body.get("message") if isinstance(body, dict) else None
            raise ProfileLookupError(
                f"Failed to get profile address: {message or f'HTTP {response.status_code}'}"
            )

        profile = body.get("data")
        if not profile or not isinstance(profile, str):
            raise ProfileLookupError("Failed to get profile address: empty response")

        logger.info(f"Resolved {short_address(wallet_address)} -> profile {short_address(profile)}")
        return profile

    async def place_limit_order(self, request: ReplicationRequest) -> ChainPayload:
        """Build a limit order payload (also used for stop orders)."""
        data = await self._get("/placeLimitOrder", request.to_params())
        return ChainPayload.from_venue(data)

    async def place_market_order(self, request: ReplicationRequest) -> ChainPayload:
        """Build a market order payload."""
        data = await self._get("/placeMarketOrder", request.to_params())
        return ChainPayload.from_venue(data)

    async def build_order_payload(self, request: ReplicationRequest) -> ChainPayload:
        """Dispatch to the market or limit endpoint by order class."""
        if request.order_class is OrderClass.MARKET:
            return await self.place_market_order(request)
        return await self.place_limit_order(request)

"""
Tests for the Kana Labs REST client.

All requests go through httpx.MockTransport. NO network calls are made.
"""

import httpx
import pytest
from tenacity import wait_none

from copytrader.models import ChainPayload, Direction, OrderClass, ProfileLookupError, VenueError
from copytrader.venue import KanaClient, ReplicationRequest


PAYLOAD = {
    "function": "0xkana::perpetual_scripts::place_limit_order",
    "functionArguments": ["15", True, False, "1000", "60000", 5, 0],
    "typeArguments": [],
}


def make_client(handler) -> KanaClient:
    client = KanaClient(api_key="test-key", base_url="https://kana.test", transport=httpx.MockTransport(handler))
    client.retry_wait = wait_none()
    return client


def make_request(order_class=OrderClass.LIMIT, direction=Direction.OPEN, trade_side=True):
    return ReplicationRequest(
        market_id="15",
        trade_side=trade_side,
        direction=direction,
        size=0.001,
        price=60000.0,
        leverage=5,
        order_class=order_class,
    )


# =============================================================================
# Test: Request Encoding
# =============================================================================


class TestReplicationRequest:
    """Tests for query parameter encoding."""

    def test_limit_params(self):
        params = make_request().to_params()
        assert params == {
            "marketId": "15",
            "tradeSide": "true",
            "direction": "false",
            "size": "0.001",
            "leverage": "5",
            "restriction": "0",
            "price": "60000.0",
        }

    def test_market_params_omit_price(self):
        params = make_request(order_class=OrderClass.MARKET).to_params()
        assert "price" not in params

    def test_close_direction(self):
        params = make_request(direction=Direction.CLOSE, trade_side=False).to_params()
        assert params["direction"] == "true"
        assert params["tradeSide"] == "false"

    def test_small_size_not_scientific(self):
        request = make_request()
        request.size = 0.00001
        assert request.to_params()["size"] == "0.00001"


# =============================================================================
# Test: Profile Lookup
# =============================================================================


class TestProfileLookup:
    """Tests for get_profile_address."""

    @pytest.mark.asyncio
    async def test_success(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["user"] = request.url.params["userAddress"]
            seen["key"] = request.headers["x-api-key"]
            return httpx.Response(200, json={"success": True, "data": "0xprofile"})

        async with make_client(handler) as kana:
            assert await kana.get_profile_address("0xwallet") == "0xprofile"

        assert seen == {"path": "/getProfileAddress", "user": "0xwallet", "key": "test-key"}

    @pytest.mark.asyncio
    async def test_success_false(self):
        def handler(request):
            return httpx.Response(200, json={"success": False, "message": "Profile not found"})

        async with make_client(handler) as kana:
            with pytest.raises(ProfileLookupError, match="Failed to get profile address: Profile not found"):
                await kana.get_profile_address("0xwallet")

    @pytest.mark.asyncio
    async def test_transport_errors_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                raise httpx.ConnectError("connection refused")
            return httpx.Response(200, json={"success": True, "data": "0xprofile"})

        async with make_client(handler) as kana:
            assert await kana.get_profile_address("0xwallet") == "0xprofile"

        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_retries_exhausted(self):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("connection refused")

        async with make_client(handler) as kana:
            with pytest.raises(ProfileLookupError, match="connection refused"):
                await kana.get_profile_address("0xwallet")

        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_rejection_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500, json={"success": False, "message": "boom"})

        async with make_client(handler) as kana:
            with pytest.raises(ProfileLookupError):
                await kana.get_profile_address("0xwallet")

        assert len(calls) == 1


# =============================================================================
# Test: Order Payloads
# =============================================================================


class TestOrderPayloads:
    """Tests for placeLimitOrder / placeMarketOrder."""

    @pytest.mark.asyncio
    async def test_limit_order_payload(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json={"success": True, "data": PAYLOAD})

        async with make_client(handler) as kana:
            payload = await kana.build_order_payload(make_request())

        assert isinstance(payload, ChainPayload)
        assert payload.function == PAYLOAD["function"]
        assert payload.arguments == PAYLOAD["functionArguments"]
        assert seen["method"] == "GET"
        assert seen["path"] == "/placeLimitOrder"
        assert seen["params"]["restriction"] == "0"

    @pytest.mark.asyncio
    async def test_market_order_endpoint(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            return httpx.Response(200, json={"success": True, "data": PAYLOAD})

        async with make_client(handler) as kana:
            await kana.build_order_payload(make_request(order_class=OrderClass.MARKET))

        assert seen["path"] == "/placeMarketOrder"

    @pytest.mark.asyncio
    async def test_api_error_message_kept(self):
        def handler(request):
            return httpx.Response(200, json={"success": False, "message": "Insufficient margin"})

        async with make_client(handler) as kana:
            with pytest.raises(VenueError) as exc_info:
                await kana.place_limit_order(make_request())

        assert exc_info.value.message == "API returned error: Insufficient margin"

    @pytest.mark.asyncio
    async def test_api_error_without_message(self):
        def handler(request):
            return httpx.Response(200, json={"success": False})

        async with make_client(handler) as kana:
            with pytest.raises(VenueError, match="Unknown error"):
                await kana.place_limit_order(make_request())

    @pytest.mark.asyncio
    async def test_http_error(self):
        def handler(request):
            return httpx.Response(401, json={"message": "Invalid API key"})

        async with make_client(handler) as kana:
            with pytest.raises(VenueError) as exc_info:
                await kana.place_market_order(make_request(order_class=OrderClass.MARKET))

        assert exc_info.value.status_code == 401
        assert exc_info.value.message == "HTTP 401: Invalid API key"

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out")

        async with make_client(handler) as kana:
            with pytest.raises(VenueError, match="timed out"):
                await kana.place_limit_order(make_request())

    @pytest.mark.asyncio
    async def test_payload_without_function(self):
        def handler(request):
            return httpx.Response(200, json={"success": True, "data": {"arguments": []}})

        async with make_client(handler) as kana:
            with pytest.raises(VenueError, match="no function id"):
                await kana.place_limit_order(make_request())

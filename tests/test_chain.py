"""
Tests for chain submission clients.

The Aptos client runs against a mocked aptos-sdk RestClient. NO transactions
are submitted.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from copytrader.chain import AptosChainClient, PaperChainClient
from copytrader.models import ChainError, ChainPayload

SIGNING_KEY = "0x" + "ab" * 32


@pytest.fixture
def payload():
    return ChainPayload(
        function="0xkana::perpetual_scripts::place_market_order",
        arguments=["15", True, False, 1000, 5],
    )


@pytest.fixture
def rest_client():
    rest = MagicMock()
    rest.submit_transaction = AsyncMock(return_value="0xtxhash")
    rest.wait_for_transaction = AsyncMock(return_value=None)
    rest.transaction_by_hash = AsyncMock(return_value={"success": True, "vm_status": "Executed successfully"})
    rest.close = AsyncMock()
    return rest


@pytest.fixture
def mock_account():
    with patch("copytrader.chain.Account") as account_cls:
        account = MagicMock()
        account.address.return_value = "0xfollower"
        account_cls.load_key.return_value = account
        yield account_cls


# =============================================================================
# Test: Payload Encoding
# =============================================================================


class TestPayloadEncoding:
    """Tests for ChainPayload."""

    def test_entry_function_payload(self, payload):
        body = payload.to_entry_function_payload()
        assert body["type"] == "entry_function_payload"
        assert body["function"] == payload.function
        assert body["arguments"] == ["15", True, False, "1000", "5"]

    def test_from_venue_rest_shape(self):
        payload = ChainPayload.from_venue(
            {"function": "0x1::m::f", "arguments": [1], "type_arguments": ["0x1::aptos_coin::AptosCoin"]}
        )
        assert payload.arguments == [1]
        assert payload.type_arguments == ["0x1::aptos_coin::AptosCoin"]


# =============================================================================
# Test: Aptos Client
# =============================================================================


class TestAptosChainClient:
    """Tests for live submission with a mocked node."""

    @pytest.mark.asyncio
    async def test_submit_and_confirm(self, rest_client, mock_account, payload):
        chain = AptosChainClient("https://node.test", rest_client=rest_client)

        tx_hash = await chain.submit_and_confirm(SIGNING_KEY, payload)

        assert tx_hash == "0xtxhash"
        mock_account.load_key.assert_called_once_with(SIGNING_KEY)
        account, body = rest_client.submit_transaction.await_args.args
        assert account is mock_account.load_key.return_value
        assert body == payload.to_entry_function_payload()
        rest_client.wait_for_transaction.assert_awaited_once_with("0xtxhash")

    @pytest.mark.asyncio
    async def test_account_loaded_once_per_key(self, rest_client, mock_account, payload):
        chain = AptosChainClient("https://node.test", rest_client=rest_client)

        await chain.submit_and_confirm(SIGNING_KEY, payload)
        await chain.submit_and_confirm(SIGNING_KEY, payload)

        assert mock_account.load_key.call_count == 1

    @pytest.mark.asyncio
    async def test_failed_transaction(self, rest_client, mock_account, payload):
        rest_client.transaction_by_hash.return_value = {"success": False, "vm_status": "Move abort: EINSUFFICIENT"}
        chain = AptosChainClient("https://node.test", rest_client=rest_client)

        with pytest.raises(ChainError, match="Transaction failed to confirm: Move abort"):
            await chain.submit_and_confirm(SIGNING_KEY, payload)

    @pytest.mark.asyncio
    async def test_submission_rejected(self, rest_client, mock_account, payload):
        rest_client.submit_transaction.side_effect = AssertionError("400 - invalid payload")
        chain = AptosChainClient("https://node.test", rest_client=rest_client)

        with pytest.raises(ChainError, match="submission failed"):
            await chain.submit_and_confirm(SIGNING_KEY, payload)

    @pytest.mark.asyncio
    async def test_confirmation_timeout(self, rest_client, mock_account, payload):
        async def never(tx_hash):
            await asyncio.sleep(10)

        rest_client.wait_for_transaction.side_effect = never
        chain = AptosChainClient("https://node.test", confirmation_timeout=0.05, rest_client=rest_client)

        with pytest.raises(ChainError, match="confirmation timed out after 0.05s"):
            await chain.submit_and_confirm(SIGNING_KEY, payload)

    @pytest.mark.asyncio
    async def test_bad_key_not_echoed(self, rest_client, payload):
        chain = AptosChainClient("https://node.test", rest_client=rest_client)

        with pytest.raises(ChainError) as exc_info:
            await chain.submit_and_confirm("not-a-key", payload)

        assert "not-a-key" not in str(exc_info.value)
        rest_client.submit_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_close(self, rest_client):
        chain = AptosChainClient("https://node.test", rest_client=rest_client)
        await chain.close()
        rest_client.close.assert_awaited_once()


# =============================================================================
# Test: Paper Client
# =============================================================================


class TestPaperChainClient:
    """Tests for paper mode."""

    @pytest.mark.asyncio
    async def test_records_submission(self, payload):
        chain = PaperChainClient()
        tx_hash = await chain.submit_and_confirm(SIGNING_KEY, payload)

        assert tx_hash.startswith("0xpaper")
        assert len(tx_hash) == 2 + 64
        assert list(chain.submissions) == [payload]

    @pytest.mark.asyncio
    async def test_distinct_hashes(self, payload):
        chain = PaperChainClient()
        first = await chain.submit_and_confirm(SIGNING_KEY, payload)
        second = await chain.submit_and_confirm(SIGNING_KEY, payload)
        assert first != second

    @pytest.mark.asyncio
    async def test_submission_history_bounded(self, payload):
        chain = PaperChainClient(history_limit=2)
        hashes = {await chain.submit_and_confirm(SIGNING_KEY, payload) for _ in range(5)}

        assert len(chain.submissions) == 2
        assert chain.submission_count == 5
        assert len(hashes) == 5

    @pytest.mark.asyncio
    async def test_empty_key_rejected(self, payload):
        with pytest.raises(ChainError):
            await PaperChainClient().submit_and_confirm("", payload)

from __future__ import annotations

import json

import httpx
import pytest

from escrow_engine.domain.exceptions import UpstreamUnavailableError, ValidationError
from escrow_engine.infrastructure.rpc_client import JsonRpcConfirmationClient

CHAIN = "eip155:1"
ENDPOINT = "https://rpc.example/mainnet"
TX_HASH = "0x" + "c" * 64


def _client(results: dict[str, object], status_code: int = 200) -> JsonRpcConfirmationClient:
    """Client whose endpoint answers each JSON-RPC method from ``results``."""

    def handler(request: httpx.Request) -> httpx.Response:
        call = json.loads(request.content)
        if status_code != 200:
            return httpx.Response(status_code)
        result = results[call["method"]]
        if isinstance(result, Exception):
            error = {"code": -32000, "message": str(result)}
            body = {"jsonrpc": "2.0", "id": call["id"], "error": error}
        else:
            body = {"jsonrpc": "2.0", "id": call["id"], "result": result}
        return httpx.Response(200, json=body)

    return JsonRpcConfirmationClient(
        {CHAIN: ENDPOINT}, client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
    )


class TestGetConfirmations:
    @pytest.mark.asyncio
    async def test_counts_inclusive_depth(self) -> None:
        client = _client(
            {
                "eth_getTransactionReceipt": {"blockNumber": "0x10", "status": "0x1"},
                "eth_blockNumber": "0x1b",
            }
        )

        assert await client.get_confirmations(CHAIN, TX_HASH) == 12

    @pytest.mark.asyncio
    async def test_unmined_transaction_has_no_confirmations(self) -> None:
        client = _client({"eth_getTransactionReceipt": None})

        assert await client.get_confirmations(CHAIN, TX_HASH) == 0

    @pytest.mark.asyncio
    async def test_reverted_deposit(self) -> None:
        client = _client({"eth_getTransactionReceipt": {"blockNumber": "0x10", "status": "0x0"}})

        with pytest.raises(ValidationError) as exc_info:
            await client.get_confirmations(CHAIN, TX_HASH)
        assert exc_info.value.code == "DEPOSIT_TX_REVERTED"

    @pytest.mark.asyncio
    async def test_rpc_error(self) -> None:
        client = _client({"eth_getTransactionReceipt": RuntimeError("header not found")})

        with pytest.raises(UpstreamUnavailableError, match="header not found"):
            await client.get_confirmations(CHAIN, TX_HASH)

    @pytest.mark.asyncio
    async def test_http_error(self) -> None:
        client = _client({}, status_code=502)

        with pytest.raises(UpstreamUnavailableError) as exc_info:
            await client.get_confirmations(CHAIN, TX_HASH)
        assert exc_info.value.code == "RPC_UNAVAILABLE"

    @pytest.mark.asyncio
    async def test_unknown_chain(self) -> None:
        client = _client({})

        with pytest.raises(UpstreamUnavailableError, match="eip155:137"):
            await client.get_confirmations("eip155:137", TX_HASH)

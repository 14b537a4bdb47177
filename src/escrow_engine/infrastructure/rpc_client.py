"""JSON-RPC confirmation source.

Counts confirmations of a deposit transaction on an EVM chain:

    confirmations = head_block - receipt_block + 1

using ``eth_getTransactionReceipt`` and ``eth_blockNumber`` against the
endpoint configured for the stake's CAIP-2 chain id. A transaction that is not
yet mined has zero confirmations. Transport, HTTP and JSON-RPC errors all
surface as UpstreamUnavailableError; a deposit is never confirmed on a guess.
"""

from __future__ import annotations

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from escrow_engine.domain.exceptions import UpstreamUnavailableError, ValidationError
from escrow_engine.logging_config import get_logger

logger = get_logger(__name__)


class JsonRpcConfirmationClient:
    def __init__(
        self,
        endpoints: dict[str, str],
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._endpoints = endpoints
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._request_id = 0

    async def get_confirmations(self, chain_id: str, tx_hash: str) -> int:
        endpoint = self._endpoints.get(chain_id)
        if endpoint is None:
            raise UpstreamUnavailableError("rpc", f"no endpoint configured for {chain_id}")

        receipt = await self._call(endpoint, "eth_getTransactionReceipt", [tx_hash])
        if receipt is None:
            return 0
        if receipt.get("status") == "0x0":
            raise ValidationError(
                f"Deposit transaction {tx_hash} reverted", code="DEPOSIT_TX_REVERTED"
            )

        try:
            receipt_block = int(receipt["blockNumber"], 16)
            head_block = int(await self._call(endpoint, "eth_blockNumber", []), 16)
        except (KeyError, TypeError, ValueError) as exc:
            raise UpstreamUnavailableError("rpc", f"malformed response: {exc}") from exc

        confirmations = max(0, head_block - receipt_block + 1)
        logger.debug(
            "rpc.confirmations",
            chain_id=chain_id,
            tx_hash=tx_hash,
            confirmations=confirmations,
        )
        return confirmations

    async def _call(self, endpoint: str, method: str, params: list) -> object:
        """Perform one JSON-RPC call and return its ``result``."""
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
        try:
            body = await self._post(endpoint, payload)
        except httpx.HTTPError as exc:
            raise UpstreamUnavailableError("rpc", f"{method}: {exc}") from exc
        except ValueError as exc:
            raise UpstreamUnavailableError("rpc", f"{method}: invalid JSON ({exc})") from exc

        if body.get("error"):
            error = body["error"]
            raise UpstreamUnavailableError(
                "rpc", f"{method}: {error.get('message', error)} (code {error.get('code')})"
            )
        return body.get("result")

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _post(self, endpoint: str, payload: dict) -> dict:
        response = await self._client.post(endpoint, json=payload)
        response.raise_for_status()
        return response.json()

    async def aclose(self) -> None:
        await self._client.aclose()

"""
Network endpoint capability and its JSON-RPC implementation.

RpcEndpoint speaks JSON-RPC 2.0 over HTTP:
    sendTransaction        base64 transaction, {"skipPreflight": ...}  -> txid
    getSignatureStatuses   [[txid]]                                   -> [{confirmationStatus, err, slot} | null]
    simulateTransaction    base64 transaction, {"sigVerify": false}   -> {err, logs}
    getLatestBlockhash     [{"commitment": ...}]                      -> {blockhash, lastValidBlockHeight}
"""
import base64
import itertools
import logging
from typing import Any, Protocol

import httpx

import txrelay.constants as C
from txrelay.errors import NetworkError, NetworkSendError, RpcError
from txrelay.models import NOT_FOUND, ConfirmationStatus, SimulationResult, Transaction

log = logging.getLogger("txrelay.endpoint")


class NetworkEndpoint(Protocol):
    async def submit(self, raw: bytes, *, skip_preflight: bool = True) -> str: ...
    async def poll_status(self, txid: str) -> ConfirmationStatus: ...
    async def simulate(self, tx: Transaction, commitment: C.Commitment = C.Commitment.PROCESSED) -> SimulationResult: ...
    async def get_freshness_token(self) -> str: ...


_request_ids = itertools.count(1)


def parse_status(value: dict | None) -> ConfirmationStatus:
    """Map one getSignatureStatuses entry to a ConfirmationStatus."""
    if not value:
        return NOT_FOUND
    level = value.get("confirmationStatus") or C.Commitment.PROCESSED
    try:
        commitment = C.Commitment(level)
    except ValueError:
        log.warning("Unknown confirmation status %r, treating as processed", level)
        commitment = C.Commitment.PROCESSED
    return ConfirmationStatus(level=commitment, err=value.get("err"), slot=value.get("slot"))


class RpcEndpoint:
    def __init__(
        self,
        url: str,
        *,
        timeout: float = C.RPC_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "RpcEndpoint":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def call(self, method: str, params: list | None = None) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": next(_request_ids),
            "method": method,
            "params": params or [],
        }
        try:
            resp = await self._client.post(self.url, json=payload)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as e:
            raise NetworkError(f"{method} failed: {e.__class__.__name__}: {e}") from e
        except ValueError as e:
            raise NetworkError(f"{method} returned invalid JSON") from e

        if err := data.get("error"):
            raise RpcError(
                f"{method}: {err.get('message', 'unknown error')}",
                code=err.get("code"),
                data=err.get("data"),
            )
        return data.get("result")

    async def submit(self, raw: bytes, *, skip_preflight: bool = True) -> str:
        tx_b64 = base64.b64encode(raw).decode()
        try:
            return await self.call(
                "sendTransaction",
                [tx_b64, {"encoding": "base64", "skipPreflight": skip_preflight}],
            )
        except NetworkError as e:
            raise NetworkSendError(e.message, payload=e.payload) from e

    async def poll_status(self, txid: str) -> ConfirmationStatus:
        result = await self.call("getSignatureStatuses", [[txid], {"searchTransactionHistory": False}])
        values = (result or {}).get("value") or [None]
        return parse_status(values[0])

    async def simulate(self, tx: Transaction, commitment: C.Commitment = C.Commitment.PROCESSED) -> SimulationResult:
        result = await self.call(
            "simulateTransaction",
            [tx.to_base64(), {"encoding": "base64", "commitment": str(commitment), "sigVerify": False}],
        )
        value = (result or {}).get("value") or {}
        return SimulationResult(
            err=value.get("err"),
            logs=list(value.get("logs") or []),
            units_consumed=value.get("unitsConsumed"),
        )

    async def get_freshness_token(self) -> str:
        result = await self.call("getLatestBlockhash", [{"commitment": str(C.Commitment.FINALIZED)}])
        try:
            return result["value"]["blockhash"]
        except (KeyError, TypeError) as e:
            raise NetworkError("getLatestBlockhash returned no blockhash") from e

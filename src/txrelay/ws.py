# txrelay/ws.py
"""
WebSocket confirmation watcher that:
1. Opens a connection to the endpoint's pubsub port
2. Subscribes to the signature at the requested commitment
3. Resolves on the first notification for it
4. Reconnects with exponential backoff until the caller's timeout
"""
import asyncio
import json
import logging

import websockets
from websockets.exceptions import WebSocketException

import txrelay.constants as C
from txrelay.endpoint import NetworkEndpoint
from txrelay.errors import ConfirmationTimeoutError, NetworkError, TransactionExecutionError
from txrelay.models import ConfirmationStatus

log = logging.getLogger("txrelay.ws")

RECONNECT_BASE = 1.0
RECONNECT_MAX = 10.0


def subscribe_message(txid: str, commitment: C.Commitment, request_id: int = 1) -> str:
    # pubsub has no "not_found" level; anything visible is at least processed
    level = max(commitment, C.Commitment.PROCESSED, key=lambda c: c.rank)
    return json.dumps({
        "jsonrpc": "2.0",
        "id": request_id,
        "method": "signatureSubscribe",
        "params": [txid, {"commitment": str(level)}],
    })


def parse_notification(raw: str | bytes, commitment: C.Commitment) -> ConfirmationStatus | None:
    """Return a status for a signatureNotification, None for anything else."""
    try:
        obj = json.loads(raw)
    except json.JSONDecodeError:
        log.debug("WS raw (non-JSON): %s", raw[:200])
        return None

    if err := obj.get("error"):
        raise NetworkError(f"signatureSubscribe rejected: {err.get('message', err)}")

    if obj.get("method") != "signatureNotification":
        # Subscription ack carries the subscription id in "result"
        log.debug("WS message: %s", obj.get("result", obj.get("method")))
        return None

    result = obj.get("params", {}).get("result", {})
    value = result.get("value") or {}
    if not isinstance(value, dict):
        return None
    slot = result.get("context", {}).get("slot")
    return ConfirmationStatus(level=C.Commitment(commitment), err=value.get("err"), slot=slot)


class SubscriptionWatcher:
    """
    Push-based alternative to ConfirmationWatcher with the same three exits.

    Parameters
    ----------
    ws_url:
        Pubsub URL (e.g., "ws://127.0.0.1:8900")
    endpoint:
        Optional endpoint polled once after every (re)subscribe, so a
        confirmation that happened while disconnected is not missed.
    """

    def __init__(self, ws_url: str, *, endpoint: NetworkEndpoint | None = None) -> None:
        self.ws_url = ws_url
        self.endpoint = endpoint

    async def wait(self, txid: str, commitment: C.Commitment, timeout: float) -> ConfirmationStatus:
        commitment = C.Commitment(commitment)
        try:
            async with asyncio.timeout(timeout):
                status = await self._listen(txid, commitment)
        except TimeoutError:
            log.warning("Subscription timeout tx=%s after %.1fs", txid, timeout)
            raise ConfirmationTimeoutError(txid, timeout) from None

        if status.failed:
            raise TransactionExecutionError(txid, status.err)
        return status

    async def _catch_up(self, txid: str, commitment: C.Commitment) -> ConfirmationStatus | None:
        if self.endpoint is None:
            return None
        try:
            status = await self.endpoint.poll_status(txid)
        except NetworkError as e:
            log.debug("Catch-up poll for %s failed: %s", txid, e)
            return None
        if status.failed or status.satisfies(commitment):
            return status
        return None

    async def _listen(self, txid: str, commitment: C.Commitment) -> ConfirmationStatus:
        backoff = RECONNECT_BASE

        while True:
            try:
                async with websockets.connect(
                    self.ws_url,
                    ping_interval=20,
                    ping_timeout=20,
                    close_timeout=1
                ) as ws:
                    await ws.send(subscribe_message(txid, commitment))
                    log.debug("WS subscribed to %s at %s", txid, commitment)
                    backoff = RECONNECT_BASE

                    if (status := await self._catch_up(txid, commitment)) is not None:
                        return status

                    async for msg in ws:
                        status = parse_notification(msg, commitment)
                        if status is not None:
                            return status

            except (OSError, NetworkError, WebSocketException) as e:
                log.warning("WS subscription for %s dropped: %s", txid, e)

            log.info("WS resubscribing in %.1fs", backoff)
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, RECONNECT_MAX)

import asyncio
import logging
from typing import Protocol

import txrelay.constants as C
from txrelay.endpoint import NetworkEndpoint
from txrelay.errors import ConfirmationTimeoutError, NetworkError, TransactionExecutionError
from txrelay.models import ConfirmationStatus

log = logging.getLogger("txrelay.confirmation")


class Watcher(Protocol):
    async def wait(self, txid: str, commitment: C.Commitment, timeout: float) -> ConfirmationStatus: ...


class ConfirmationWatcher:
    """Poll the endpoint until the transaction reaches ``commitment``.

    Exits on exactly one of:
      - status at or above the requested level, no error  -> returns the status
      - error payload at any level                       -> TransactionExecutionError
      - timeout                                          -> ConfirmationTimeoutError
    A failed poll is logged and the next poll goes ahead on schedule.
    """

    def __init__(self, endpoint: NetworkEndpoint, *, poll_interval: float = C.POLL_INTERVAL_MS / 1000) -> None:
        self.endpoint = endpoint
        self.poll_interval = poll_interval

    async def wait(self, txid: str, commitment: C.Commitment, timeout: float) -> ConfirmationStatus:
        commitment = C.Commitment(commitment)
        polls = 0
        try:
            async with asyncio.timeout(timeout):
                while True:
                    polls += 1
                    try:
                        status = await self.endpoint.poll_status(txid)
                    except NetworkError as e:
                        log.debug("Status poll %d for %s failed: %s", polls, txid, e)
                    else:
                        if status.failed:
                            log.info("Tx %s failed at %s: %s", txid, status.level, status.err)
                            raise TransactionExecutionError(txid, status.err)
                        if status.satisfies(commitment):
                            log.debug("Tx %s reached %s after %d polls", txid, status.level, polls)
                            return status
                    await asyncio.sleep(self.poll_interval)
        except TimeoutError:
            log.warning("Confirmation timeout tx=%s after %.1fs (%d polls)", txid, timeout, polls)
            raise ConfirmationTimeoutError(txid, timeout) from None

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator

from txrelay.endpoint import NetworkEndpoint
from txrelay.errors import NetworkError
from txrelay.models import SubmissionHandle

log = logging.getLogger("txrelay.broadcast")


async def rebroadcast(
    endpoint: NetworkEndpoint,
    raw: bytes,
    handle: SubmissionHandle,
    *,
    warmup: float,
    interval: float,
    skip_preflight: bool = True,
) -> int:
    """Resend the same signed bytes every ``interval`` seconds until the handle is done.

    A dropped resend is not a failure; the confirmation watcher decides the outcome.
    Returns the number of resends issued, also kept on handle.resends.
    """
    if await handle.wait(warmup):
        return handle.resends
    while not handle.done:
        log.debug("Resending tx %s (attempt %d, %.1fs in)", handle.txid, handle.resends + 1, handle.elapsed())
        try:
            await endpoint.submit(raw, skip_preflight=skip_preflight)
        except NetworkError as e:
            log.debug("Resend of %s failed: %s", handle.txid, e)
        handle.resends += 1
        if await handle.wait(interval):
            break
    log.debug("Stopped resending %s after %d attempts", handle.txid, handle.resends)
    return handle.resends


@contextlib.asynccontextmanager
async def rebroadcasting(
    endpoint: NetworkEndpoint,
    raw: bytes,
    handle: SubmissionHandle,
    *,
    warmup: float,
    interval: float,
    skip_preflight: bool = True,
) -> AsyncIterator[asyncio.Task[int]]:
    """Run rebroadcast() for the lifetime of the block.

    On exit, by any path, the handle is finished, the loop task is cancelled
    (an in-flight resend does not outlive the block) and joined.
    """
    task = asyncio.create_task(
        rebroadcast(endpoint, raw, handle, warmup=warmup, interval=interval, skip_preflight=skip_preflight),
        name=f"rebroadcast-{handle.txid[:8]}",
    )
    try:
        yield task
    finally:
        handle.finish()
        task.cancel()
        await asyncio.wait({task})
        if not task.cancelled() and (exc := task.exception()) is not None:
            log.error("Rebroadcast loop for %s crashed: %r", handle.txid, exc)

"""
Submission orchestrator.

Per submission:

    BUILT -> SIGNED -> BROADCASTING -> CONFIRMED                -> DONE
                                    -> DIAGNOSING -> FAILED     -> DONE

The broadcast loop runs in the background for exactly as long as the
confirmation watcher is awaited; whatever the watcher does, the handle is
finished and the loop is joined before the outcome is surfaced.
"""
import asyncio
import inspect
import logging
from dataclasses import replace
from collections.abc import Awaitable, Callable, Sequence

import txrelay.constants as C
from txrelay.broadcast import rebroadcasting
from txrelay.config import SubmitOptions
from txrelay.confirmation import ConfirmationWatcher, Watcher
from txrelay.diagnosis import Diagnostician, error_text
from txrelay.endpoint import NetworkEndpoint
from txrelay.errors import (
    ConfirmationTimeoutError,
    DiagnosisUnavailableError,
    NetworkError,
    NetworkSendError,
    RelayError,
    SigningError,
    TransactionExecutionError,
)
from txrelay.models import Diagnosis, SignerSet, SubmissionHandle, Transaction
from txrelay.signing import sign_transaction, sign_transactions
from txrelay.store import InMemoryStore
from txrelay.ws import SubscriptionWatcher

log = logging.getLogger("txrelay.submitter")

OnSigned = Callable[[Transaction], Awaitable[None] | None]


class Submitter:
    def __init__(
        self,
        endpoint: NetworkEndpoint,
        *,
        store: InMemoryStore | None = None,
        submit_cfg: dict | None = None,
        watcher: Watcher | None = None,
        diagnostician: Diagnostician | None = None,
        max_in_flight: int = C.MAX_IN_FLIGHT,
        on_signed: OnSigned | None = None,
    ) -> None:
        submit_cfg = submit_cfg or {}
        self.endpoint = endpoint
        self.store = store or InMemoryStore()
        self.options = SubmitOptions.from_config(submit_cfg)
        self.batch_options = SubmitOptions.from_config(submit_cfg, batch=True)
        self.presigned_options = SubmitOptions.from_config(submit_cfg, presigned=True)
        self.watcher = watcher or ConfirmationWatcher(endpoint, poll_interval=self.options.poll_interval)
        self.diagnostician = diagnostician or Diagnostician(endpoint, commitment=self.options.simulate_commitment)
        self.max_in_flight = max_in_flight
        self.on_signed = on_signed

    @classmethod
    def from_config(cls, endpoint: NetworkEndpoint, conf: dict, *, store: InMemoryStore | None = None) -> "Submitter":
        submit_cfg = conf.get("submit", {})
        net = conf.get("network", {})
        watcher = None
        if net.get("confirm_via") == "subscribe":
            watcher = SubscriptionWatcher(net["ws_url"], endpoint=endpoint)
        return cls(
            endpoint,
            store=store,
            submit_cfg=submit_cfg,
            watcher=watcher,
            max_in_flight=submit_cfg.get("max_in_flight", C.MAX_IN_FLIGHT),
        )

    async def submit(
        self,
        tx: Transaction,
        signer_set: SignerSet,
        *,
        timeout_ms: int | None = None,
        commitment: C.Commitment | str | None = None,
    ) -> str:
        """Sign, send and confirm one transaction. Returns its txid."""
        opts = self.options.override(timeout_ms=timeout_ms, commitment=commitment)
        tx = await sign_transaction(self.endpoint, tx, signer_set)
        await self._notify_signed(tx)
        return await self._drive(tx, opts)

    async def submit_pre_signed(
        self,
        tx: Transaction,
        *,
        timeout_ms: int | None = None,
        commitment: C.Commitment | str | None = None,
    ) -> str:
        """Send and confirm an already fully signed transaction on the fast cadence."""
        if not tx.signers:
            raise SigningError("pre-signed transaction has no signers")
        if missing := tx.missing_signatures():
            raise SigningError(f"pre-signed transaction is missing signatures for {', '.join(m[:10] for m in missing)}")
        opts = self.presigned_options.override(timeout_ms=timeout_ms, commitment=commitment)
        return await self._drive(tx, opts)

    async def submit_batch(
        self,
        txs: Sequence[Transaction],
        signer_set: SignerSet,
        *,
        timeout_ms: int | None = None,
        commitment: C.Commitment | str | None = None,
    ) -> dict[int, str | Exception]:
        """
        Sign every transaction under one freshness token, then run each one that
        signed through its own submission, at most ``max_in_flight`` at a time.

        Returns index -> txid or the exception that ended that submission.
        One failure never cancels its siblings.
        """
        if not txs:
            return {}
        opts = self.batch_options.override(timeout_ms=timeout_ms, commitment=commitment)
        try:
            signed = await sign_transactions(self.endpoint, txs, signer_set)
        except RelayError as e:
            log.error("Batch of %d not signed: %s", len(txs), e)
            return {i: e for i in range(len(txs))}

        results: dict[int, str | Exception] = {i: r for i, r in enumerate(signed) if isinstance(r, SigningError)}
        ready = [(i, tx) for i, tx in enumerate(signed) if isinstance(tx, Transaction)]
        for _, tx in ready:
            await self._notify_signed(tx)
        results.update(await self._fan_out([tx for _, tx in ready], opts, [i for i, _ in ready]))
        return dict(sorted(results.items()))

    async def submit_pre_signed_batch(
        self,
        txs: Sequence[Transaction],
        *,
        timeout_ms: int | None = None,
        commitment: C.Commitment | str | None = None,
    ) -> dict[int, str | Exception]:
        """Pre-signed counterpart of submit_batch: fast cadence, batch commitment."""
        opts = replace(self.presigned_options, commitment=self.batch_options.commitment)
        opts = opts.override(timeout_ms=timeout_ms, commitment=commitment)
        results: dict[int, str | Exception] = {}
        ready: list[tuple[int, Transaction]] = []
        for i, tx in enumerate(txs):
            if not tx.signers or tx.missing_signatures():
                results[i] = SigningError("pre-signed transaction is missing signatures")
            else:
                ready.append((i, tx))
        results.update(await self._fan_out([tx for _, tx in ready], opts, [i for i, _ in ready]))
        return dict(sorted(results.items()))

    async def _fan_out(
        self,
        signed: Sequence[Transaction],
        opts: SubmitOptions,
        indexes: Sequence[int] | None = None,
    ) -> dict[int, str | Exception]:
        indexes = list(indexes) if indexes is not None else list(range(len(signed)))
        results: dict[int, str | Exception] = {}
        sem = asyncio.Semaphore(self.max_in_flight)

        async def _one(i: int, tx: Transaction) -> None:
            async with sem:
                try:
                    results[i] = await self._drive(tx, opts)
                except Exception as e:
                    log.info("Batch item %d failed: %s", i, e)
                    results[i] = e

        async with asyncio.TaskGroup() as tg:
            for i, tx in zip(indexes, signed):
                tg.create_task(_one(i, tx), name=f"batch-{i}")

        ok = sum(isinstance(r, str) for r in results.values())
        log.info("Batch done: %d/%d confirmed at %s", ok, len(signed), opts.commitment)
        return dict(sorted(results.items()))

    async def _notify_signed(self, tx: Transaction) -> None:
        if self.on_signed is None:
            return
        try:
            result = self.on_signed(tx)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            log.warning("on_signed callback failed for %s: %s", tx.txid, e)

    async def _drive(self, tx: Transaction, opts: SubmitOptions) -> str:
        raw = tx.serialize()
        txid = tx.txid
        await self.store.mark(txid, state=C.SubmitState.SIGNED, commitment=str(opts.commitment))

        handle = SubmissionHandle(txid)
        log.debug("First send %s (timeout=%.1fs, commitment=%s)", txid, opts.timeout, opts.commitment)
        try:
            await self.endpoint.submit(raw, skip_preflight=opts.skip_preflight)
        except NetworkError as e:
            handle.finish()
            err = e if isinstance(e, NetworkSendError) else NetworkSendError(e.message, payload=e.payload)
            await self._record_failure(txid, err, handle)
            log.error("Send failed tx=%s: %s", txid, e)
            if err is e:
                raise
            raise err from e

        await self.store.mark(txid, state=C.SubmitState.BROADCASTING)

        outcome: ConfirmationTimeoutError | TransactionExecutionError | None = None
        async with rebroadcasting(
            self.endpoint,
            raw,
            handle,
            warmup=opts.warmup,
            interval=opts.interval,
            skip_preflight=opts.skip_preflight,
        ):
            try:
                status = await self.watcher.wait(txid, opts.commitment, opts.timeout)
            except (ConfirmationTimeoutError, TransactionExecutionError) as e:
                outcome = e
            except Exception as e:
                log.exception("Watcher failed for %s", txid)
                await self._record_failure(txid, e, handle)
                raise

        if outcome is None:
            latency = handle.elapsed()
            await self.store.mark(
                txid,
                state=C.SubmitState.CONFIRMED,
                level=str(status.level),
                slot=status.slot,
                latency=latency,
                resends=handle.resends,
            )
            log.info("Confirmed %s at %s in %.3fs (%d resends)", txid, status.level, latency, handle.resends)
            log.debug("%s DONE", txid)
            return txid

        raise await self._diagnosed(tx, outcome, handle) from outcome

    async def _diagnosed(
        self,
        tx: Transaction,
        outcome: ConfirmationTimeoutError | TransactionExecutionError,
        handle: SubmissionHandle,
    ) -> RelayError:
        txid = tx.txid
        await self.store.mark(txid, state=C.SubmitState.DIAGNOSING)
        diagnosis: Diagnosis | None = None
        unavailable = False
        try:
            diagnosis = await self.diagnostician.diagnose(tx)
        except DiagnosisUnavailableError as e:
            log.warning("No diagnosis for %s: %s", txid, e)
            unavailable = True
        except Exception:
            log.exception("Diagnostician failed for %s", txid)
            unavailable = True

        match outcome:
            case ConfirmationTimeoutError():
                err: RelayError = ConfirmationTimeoutError(
                    txid, outcome.timeout, diagnosis=diagnosis.message if diagnosis else None
                )
            case TransactionExecutionError():
                if diagnosis is not None:
                    message = diagnosis.summary()
                elif unavailable:
                    message = "Transaction failed"
                else:
                    message = error_text(outcome.err)
                err = TransactionExecutionError(
                    txid,
                    outcome.err,
                    diagnosis=diagnosis.message if diagnosis else None,
                    message=message,
                )

        await self._record_failure(txid, err, handle)
        log.warning("Failed %s after %.3fs: %s", txid, handle.elapsed(), err.message)
        log.debug("%s DONE", txid)
        return err

    async def _record_failure(self, txid: str, err: Exception, handle: SubmissionHandle) -> None:
        await self.store.mark(
            txid,
            state=C.SubmitState.FAILED,
            error=getattr(err, "message", str(err)),
            error_kind=getattr(err, "kind", "internal_error"),
            diagnosis=getattr(err, "diagnosis", None),
            resends=handle.resends,
        )

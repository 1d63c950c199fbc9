import asyncio
import time
from unittest import IsolatedAsyncioTestCase

from fakes import FAST, FakeEndpoint, FakeWallet, signed_tx

import txrelay.constants as C
from txrelay.confirmation import ConfirmationWatcher
from txrelay.diagnosis import Diagnostician
from txrelay.errors import (
    ConfirmationTimeoutError,
    NetworkError,
    NetworkSendError,
    SigningError,
    TransactionExecutionError,
)
from txrelay.models import ConfirmationStatus, SignerSet, SimulationResult, Transaction
from txrelay.signing import KeypairSigner, WalletSigner
from txrelay.simnet import SimulatedNetwork
from txrelay.submitter import Submitter

FAILED = ConfirmationStatus(level=C.Commitment.PROCESSED, err={"InstructionError": [0, {"Custom": 1}]})
LOGS = ["Program log: step1", "Program log: insufficient funds", "Program consumed 100 units"]


def memo(**ix) -> Transaction:
    return Transaction().add({"program": "memo", "name": "Memo", **ix})


def rebroadcast_tasks() -> list[asyncio.Task]:
    return [t for t in asyncio.all_tasks() if t.get_name().startswith("rebroadcast-")]


class CountingWatcher:
    def __init__(self, inner) -> None:
        self.inner = inner
        self.active = 0
        self.peak = 0

    async def wait(self, txid, commitment, timeout):
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(0.02)
            return await self.inner.wait(txid, commitment, timeout)
        finally:
            self.active -= 1


class BrokenWatcher:
    async def wait(self, txid, commitment, timeout):
        await asyncio.sleep(0.05)
        raise RuntimeError("watcher bug")


class SubmitterTestCase(IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.net = SimulatedNetwork(slot_ms=10, confirm_slots=1, finalize_slots=5)
        self.submitter = Submitter(self.net, submit_cfg=FAST)
        self.payer = KeypairSigner.generate()
        self.signers = SignerSet(self.payer)

    async def assertQuiet(self, endpoint_sends):
        before = endpoint_sends()
        await asyncio.sleep(0.1)
        self.assertEqual(endpoint_sends(), before)
        self.assertEqual(rebroadcast_tasks(), [])


class TestSubmit(SubmitterTestCase):
    async def test_confirms_and_stops_broadcasting(self):
        txid = await self.submitter.submit(memo(), self.signers)
        rec = await self.submitter.store.get(txid)
        self.assertEqual(rec["state"], "CONFIRMED")
        self.assertEqual(rec["commitment"], "processed")
        self.assertIsNotNone(rec["latency"])
        self.assertIn("finalized_at", rec)
        await self.assertQuiet(lambda: self.net.calls["submit"])

    async def test_commitment_override(self):
        txid = await self.submitter.submit(memo(), self.signers, commitment="confirmed")
        rec = await self.submitter.store.get(txid)
        self.assertIn(rec["level"], ("confirmed", "finalized"))

    async def test_rebroadcast_gets_dropped_transaction_through(self):
        self.net.drop_first = 2
        txid = await self.submitter.submit(memo(), self.signers)
        rec = await self.submitter.store.get(txid)
        self.assertGreaterEqual(rec["resends"], 2)
        self.assertEqual(self.net.landed(txid).err, None)

    async def test_execution_failure_is_diagnosed(self):
        start = time.monotonic()
        with self.assertRaises(TransactionExecutionError) as cm:
            await self.submitter.submit(memo(fail="insufficient funds"), self.signers, timeout_ms=5000)
        self.assertLess(time.monotonic() - start, 2.0)
        err = cm.exception
        self.assertEqual(err.message, "Transaction failed: insufficient funds")
        self.assertEqual(err.diagnosis, "insufficient funds")
        self.assertEqual(err.err, {"InstructionError": [0, {"Custom": 1}]})
        rec = await self.submitter.store.get(err.txid)
        self.assertEqual(rec["state"], "FAILED")
        self.assertEqual(rec["error_kind"], "transaction_execution_error")
        await self.assertQuiet(lambda: self.net.calls["submit"])

    async def test_execution_failure_without_diagnosis(self):
        self.net.fail_next("simulate")
        with self.assertRaises(TransactionExecutionError) as cm:
            await self.submitter.submit(memo(fail="insufficient funds"), self.signers)
        self.assertEqual(cm.exception.message, "Transaction failed")
        self.assertIsNone(cm.exception.diagnosis)

    async def test_execution_failure_with_clean_simulation(self):
        endpoint = FakeEndpoint([FAILED], simulation=SimulationResult())
        submitter = Submitter(endpoint, submit_cfg=FAST)
        with self.assertRaises(TransactionExecutionError) as cm:
            await submitter.submit(memo(), self.signers)
        self.assertEqual(cm.exception.message, '{"InstructionError": [0, {"Custom": 1}]}')

    async def test_initial_send_failure(self):
        self.net.fail_next("submit")
        with self.assertRaises(NetworkSendError):
            await self.submitter.submit(memo(), self.signers)
        [rec] = await self.submitter.store.all_records()
        self.assertEqual(rec["state"], "FAILED")
        self.assertEqual(rec["error_kind"], "network_send_error")
        self.assertEqual(self.net.calls["submit"], 1)
        await self.assertQuiet(lambda: self.net.calls["submit"])

    async def test_generic_send_failure_becomes_send_error(self):
        endpoint = FakeEndpoint(send_error=NetworkError("connection reset"))
        with self.assertRaises(NetworkSendError) as cm:
            await Submitter(endpoint, submit_cfg=FAST).submit(memo(), self.signers)
        self.assertIsInstance(cm.exception.__cause__, NetworkError)

    async def test_signing_failure_sends_nothing(self):
        signers = SignerSet(WalletSigner(FakeWallet(connected=False)))
        with self.assertRaises(SigningError):
            await self.submitter.submit(memo(), signers)
        self.assertEqual(self.net.calls["submit"], 0)

    async def test_unexpected_watcher_error_still_joins_loop(self):
        submitter = Submitter(self.net, submit_cfg=FAST, watcher=BrokenWatcher())
        with self.assertRaisesRegex(RuntimeError, "watcher bug"):
            await submitter.submit(memo(), self.signers)
        await self.assertQuiet(lambda: self.net.calls["submit"])
        [rec] = await submitter.store.all_records()
        self.assertEqual(rec["state"], "FAILED")
        self.assertEqual(rec["error_kind"], "internal_error")
        self.assertEqual(await submitter.store.find_by_state(C.SubmitState.BROADCASTING), [])

    async def test_broken_log_strategy_keeps_execution_error(self):
        def broken(logs):
            raise IndexError("log format changed")

        endpoint = FakeEndpoint([FAILED], simulation=SimulationResult(err=FAILED.err, logs=LOGS))
        submitter = Submitter(endpoint, submit_cfg=FAST, diagnostician=Diagnostician(endpoint, strategy=broken))
        with self.assertRaises(TransactionExecutionError) as cm:
            await submitter.submit(memo(), self.signers)
        self.assertEqual(cm.exception.message, "Transaction failed")
        rec = await submitter.store.get(cm.exception.txid)
        self.assertEqual(rec["state"], "FAILED")
        self.assertEqual(rec["error_kind"], "transaction_execution_error")

    async def test_broken_diagnostician_keeps_timeout(self):
        class Exploding:
            async def diagnose(self, tx):
                raise RuntimeError("diagnostician bug")

        endpoint = FakeEndpoint()
        submitter = Submitter(endpoint, submit_cfg=FAST, diagnostician=Exploding())
        with self.assertRaises(ConfirmationTimeoutError) as cm:
            await submitter.submit(memo(), self.signers, timeout_ms=100)
        self.assertEqual(cm.exception.message, "Timed out awaiting confirmation on transaction")
        self.assertEqual((await submitter.store.get(cm.exception.txid))["state"], "FAILED")


class TestTimeout(SubmitterTestCase):
    async def test_timeout_not_before_deadline(self):
        endpoint = FakeEndpoint(simulation=SimulationResult())
        submitter = Submitter(endpoint, submit_cfg=FAST)
        start = time.monotonic()
        with self.assertRaises(ConfirmationTimeoutError) as cm:
            await submitter.submit(memo(), self.signers, timeout_ms=150)
        self.assertGreaterEqual(time.monotonic() - start, 0.15)
        self.assertEqual(cm.exception.message, "Timed out awaiting confirmation on transaction")
        self.assertEqual(len(endpoint.simulated), 1)
        self.assertGreater(len(endpoint.sent), 1)
        await self.assertQuiet(lambda: len(endpoint.sent))

    async def test_timeout_carries_diagnosis(self):
        endpoint = FakeEndpoint(simulation=SimulationResult(err="InsufficientFundsForFee", logs=LOGS))
        submitter = Submitter(endpoint, submit_cfg=FAST)
        with self.assertRaises(ConfirmationTimeoutError) as cm:
            await submitter.submit(memo(), self.signers, timeout_ms=100)
        self.assertEqual(
            cm.exception.message,
            "Timed out awaiting confirmation on transaction: insufficient funds",
        )
        rec = await submitter.store.get(cm.exception.txid)
        self.assertEqual(rec["error_kind"], "confirmation_timeout")


class TestOnSigned(SubmitterTestCase):
    async def test_called_before_first_send(self):
        seen = []

        async def on_signed(tx):
            seen.append((tx.txid, self.net.calls["submit"]))

        self.submitter.on_signed = on_signed
        txid = await self.submitter.submit(memo(), self.signers)
        self.assertEqual(seen, [(txid, 0)])

    async def test_errors_do_not_propagate(self):
        def on_signed(tx):
            raise ValueError("analytics down")

        self.submitter.on_signed = on_signed
        with self.assertLogs("txrelay.submitter", level="WARNING"):
            txid = await self.submitter.submit(memo(), self.signers)
        self.assertEqual((await self.submitter.store.get(txid))["state"], "CONFIRMED")


class TestPreSigned(SubmitterTestCase):
    async def test_sends_the_callers_bytes(self):
        tx = signed_tx(self.payer, await self.net.get_freshness_token())
        raw = Transaction.from_base64(tx.to_base64())
        txid = await self.submitter.submit_pre_signed(raw)
        self.assertEqual(txid, tx.txid)
        self.assertEqual(self.net.calls["get_freshness_token"], 1)

    async def test_missing_signature(self):
        tx = memo()
        tx.attach(await self.net.get_freshness_token(), [self.payer.identity])
        with self.assertRaises(SigningError):
            await self.submitter.submit_pre_signed(tx)
        with self.assertRaises(SigningError):
            await self.submitter.submit_pre_signed(memo())
        self.assertEqual(self.net.calls["submit"], 0)

    async def test_batch_reports_unsigned_slot(self):
        token = await self.net.get_freshness_token()
        unsigned = memo()
        unsigned.attach(token, [self.payer.identity])
        txs = [signed_tx(self.payer, token, data="a"), unsigned, signed_tx(self.payer, token, data="b")]
        results = await self.submitter.submit_pre_signed_batch(txs)
        self.assertEqual(list(results), [0, 1, 2])
        self.assertEqual(results[0], txs[0].txid)
        self.assertIsInstance(results[1], SigningError)
        self.assertEqual(results[2], txs[2].txid)


class TestBatch(SubmitterTestCase):
    async def test_one_failure_does_not_sink_siblings(self):
        txs = [memo(data="a"), memo(fail="insufficient funds"), memo(data="c")]
        results = await self.submitter.submit_batch(txs, self.signers)
        self.assertIsInstance(results[0], str)
        self.assertIsInstance(results[1], TransactionExecutionError)
        self.assertEqual(results[1].message, "Transaction failed: insufficient funds")
        self.assertIsInstance(results[2], str)
        self.assertEqual(self.net.calls["get_freshness_token"], 1)
        rec = await self.submitter.store.get(results[0])
        self.assertEqual(rec["commitment"], "confirmed")
        await self.assertQuiet(lambda: self.net.calls["submit"])

    async def test_signing_failure_fills_every_slot(self):
        signers = SignerSet(WalletSigner(FakeWallet(refuse=True)))
        results = await self.submitter.submit_batch([memo(data="a"), memo(data="b")], signers)
        self.assertEqual(list(results), [0, 1])
        self.assertTrue(all(isinstance(r, SigningError) for r in results.values()))
        self.assertEqual(self.net.calls["submit"], 0)

    async def test_unsignable_item_fails_alone(self):
        sealed = signed_tx(self.payer, "stale-token", data="b")
        sealed.serialize()
        results = await self.submitter.submit_batch([memo(data="a"), sealed, memo(data="c")], self.signers)
        self.assertEqual(list(results), [0, 1, 2])
        self.assertIsInstance(results[1], SigningError)
        for i in (0, 2):
            self.assertIsInstance(results[i], str)
            self.assertEqual((await self.submitter.store.get(results[i]))["state"], "CONFIRMED")
        self.assertEqual(len(await self.submitter.store.all_records()), 2)

    async def test_wallet_approves_once(self):
        wallet = FakeWallet()
        results = await self.submitter.submit_batch(
            [memo(data=str(i)) for i in range(3)], SignerSet(WalletSigner(wallet))
        )
        self.assertEqual(wallet.batches, [3])
        self.assertTrue(all(isinstance(r, str) for r in results.values()))

    async def test_in_flight_cap(self):
        watcher = CountingWatcher(ConfirmationWatcher(self.net, poll_interval=0.005))
        submitter = Submitter(self.net, submit_cfg=FAST, watcher=watcher, max_in_flight=2)
        results = await submitter.submit_batch([memo(data=str(i)) for i in range(5)], self.signers)
        self.assertTrue(all(isinstance(r, str) for r in results.values()))
        self.assertLessEqual(watcher.peak, 2)

    async def test_empty_batch(self):
        self.assertEqual(await self.submitter.submit_batch([], self.signers), {})

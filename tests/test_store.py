from unittest import IsolatedAsyncioTestCase

import txrelay.constants as C
from txrelay.store import InMemoryStore


class TestInMemoryStore(IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.store = InMemoryStore()

    async def test_mark_merges_fields(self):
        await self.store.mark("a", state=C.SubmitState.SIGNED, commitment="processed")
        await self.store.mark("a", state=C.SubmitState.BROADCASTING)
        rec = await self.store.get("a")
        self.assertEqual(rec["state"], "BROADCASTING")
        self.assertEqual(rec["commitment"], "processed")
        self.assertEqual(rec["txid"], "a")
        self.assertNotIn("finalized_at", rec)

    async def test_finalized_at_stamped_once(self):
        await self.store.mark("a", state=C.SubmitState.CONFIRMED, latency=0.5)
        first = (await self.store.get("a"))["finalized_at"]
        await self.store.mark("a", state=C.SubmitState.CONFIRMED, resends=3)
        self.assertEqual((await self.store.get("a"))["finalized_at"], first)

    async def test_get_returns_a_copy(self):
        await self.store.mark("a", state=C.SubmitState.SIGNED)
        (await self.store.get("a"))["state"] = "tampered"
        self.assertEqual((await self.store.get("a"))["state"], "SIGNED")
        self.assertIsNone(await self.store.get("missing"))

    async def test_find_and_stats(self):
        await self.store.mark("a", state=C.SubmitState.CONFIRMED, latency=1.0)
        await self.store.mark("b", state=C.SubmitState.CONFIRMED, latency=3.0)
        await self.store.mark("c", state=C.SubmitState.FAILED, error_kind="confirmation_timeout")
        await self.store.mark("d", state=C.SubmitState.BROADCASTING)

        failed = await self.store.find_by_state(C.SubmitState.FAILED)
        self.assertEqual([r["txid"] for r in failed], ["c"])
        pending = await self.store.find_by_state("BROADCASTING", C.SubmitState.DIAGNOSING)
        self.assertEqual([r["txid"] for r in pending], ["d"])

        stats = self.store.snapshot_stats()
        self.assertEqual(stats["by_state"], {"CONFIRMED": 2, "FAILED": 1, "BROADCASTING": 1})
        self.assertEqual(stats["by_error_kind"], {"confirmation_timeout": 1})
        self.assertEqual(stats["total_tracked"], 4)
        self.assertEqual(stats["mean_latency"], 2.0)

    async def test_oldest_finalized_records_evicted(self):
        store = InMemoryStore(max_finalized=2)
        await store.mark("pending", state=C.SubmitState.BROADCASTING)
        for txid in ("a", "b", "c"):
            await store.mark(txid, state=C.SubmitState.CONFIRMED, latency=1.0)
        self.assertIsNone(await store.get("a"))
        self.assertEqual((await store.get("b"))["state"], "CONFIRMED")
        self.assertEqual((await store.get("pending"))["state"], "BROADCASTING")
        self.assertEqual(store.snapshot_stats()["by_state"], {"BROADCASTING": 1, "CONFIRMED": 2})

        await store.mark("b", state=C.SubmitState.CONFIRMED, resends=1)
        self.assertIsNotNone(await store.get("b"))

import asyncio
import logging
import time
from collections import Counter, deque

import txrelay.constants as C

log = logging.getLogger("txrelay.store")

TERMINAL_STATES = {C.SubmitState.CONFIRMED, C.SubmitState.FAILED}
MAX_FINALIZED = 5000


class InMemoryStore:
    """
    Current snapshot of submission states.

    Pending records stay until they finish; only the newest ``max_finalized``
    CONFIRMED/FAILED records are kept, oldest evicted first.
    """

    def __init__(self, max_finalized: int = MAX_FINALIZED) -> None:
        self._lock = asyncio.Lock()
        self._records: dict[str, dict] = {}
        self._finalized: deque[str] = deque()
        self.max_finalized = max_finalized
        self.count_by_state: dict[str, int] = {}
        self.count_by_kind: dict[str, int] = {}

    def _recount(self) -> None:
        self.count_by_state = Counter(rec.get("state", "UNKNOWN") for rec in self._records.values())
        self.count_by_kind = Counter(
            rec["error_kind"] for rec in self._records.values() if rec.get("error_kind")
        )

    async def get(self, txid: str) -> dict | None:
        async with self._lock:
            rec = self._records.get(txid)
            return dict(rec) if rec is not None else None

    async def mark(self, txid: str, **fields) -> None:
        """
        Update or insert a submission record.

        txid:
            Transaction id (payer signature).
        **fields:
            Fields to merge (e.g., state, latency, resends, error).

        - On first transition to CONFIRMED or FAILED, stamps 'finalized_at' and
          evicts the oldest finalized record once over ``max_finalized``.
        - Recomputes the per-state counters.
        """
        async with self._lock:
            rec = self._records.setdefault(txid, {"txid": txid, "created_at": time.time()})
            prev_state = rec.get("state")
            rec.update(fields)

            state = rec.get("state")
            if isinstance(state, C.SubmitState):
                state = str(state)
                rec["state"] = state

            if state in TERMINAL_STATES and "finalized_at" not in rec:
                rec["finalized_at"] = time.time()
                self._finalized.append(txid)
                while len(self._finalized) > self.max_finalized:
                    self._records.pop(self._finalized.popleft(), None)

            self._recount()
            log.debug("%s --> %s  %s", prev_state, state, txid)

    async def find_by_state(self, *states: C.SubmitState | str) -> list[dict]:
        wanted = {str(s) for s in states}
        async with self._lock:
            return [dict(rec) for rec in self._records.values() if rec.get("state") in wanted]

    async def all_records(self) -> list[dict]:
        async with self._lock:
            return [dict(rec) for rec in self._records.values()]

    def snapshot_stats(self) -> dict:
        latencies = [r["latency"] for r in self._records.values() if r.get("latency") is not None]
        return {
            "by_state": dict(self.count_by_state),
            "by_error_kind": dict(self.count_by_kind),
            "total_tracked": len(self._records),
            "mean_latency": sum(latencies) / len(latencies) if latencies else None,
        }

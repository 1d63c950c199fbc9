"""
In-process ledger that implements NetworkEndpoint.

Each instruction is a dict with a "program" name; an instruction carrying
"fail": "<reason>" executes with an error and logs the reason. The slot
clock advances every ``slot_ms`` and commitment follows it:

    landed slot + 0              -> processed
    landed slot + confirm_slots  -> confirmed
    landed slot + finalize_slots -> finalized
"""
import hashlib
import logging
import time
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import txrelay.constants as C
from txrelay.errors import NetworkError, NetworkSendError, RpcError
from txrelay.models import NOT_FOUND, ConfirmationStatus, SimulationResult, Transaction
from txrelay.signing import verify_signatures

log = logging.getLogger("txrelay.simnet")

COMPUTE_LIMIT = 200_000
UNITS_PER_INSTRUCTION = 1_500


@dataclass(slots=True)
class Landed:
    slot: int
    err: Any = None
    logs: list[str] = field(default_factory=list)


def execute(tx: Transaction) -> tuple[Any, list[str], int]:
    """Run the instructions in order, stopping at the first failure."""
    logs: list[str] = []
    units = 0
    for idx, ix in enumerate(tx.instructions):
        program = ix.get("program", "unknown")
        logs.append(f"Program {program} invoke [1]")
        if name := ix.get("name"):
            logs.append(f"{C.PROGRAM_LOG_PREFIX}Instruction: {name}")
        units += UNITS_PER_INSTRUCTION
        logs.append(f"Program {program} consumed {UNITS_PER_INSTRUCTION} of {COMPUTE_LIMIT} compute units")
        if reason := ix.get("fail"):
            code = int(ix.get("code", 1))
            logs.insert(-1, f"{C.PROGRAM_LOG_PREFIX}{reason}")
            logs.append(f"Program {program} failed: custom program error: {code:#x}")
            return {"InstructionError": [idx, {"Custom": code}]}, logs, units
        logs.append(f"Program {program} success")
    return None, logs, units


class SimulatedNetwork:
    def __init__(
        self,
        *,
        slot_ms: int = 400,
        confirm_slots: int = 1,
        finalize_slots: int = 32,
        token_ttl_ms: int = 60_000,
        drop_first: int = 0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.slot_ms = slot_ms
        self.confirm_slots = confirm_slots
        self.finalize_slots = finalize_slots
        self.token_ttl = token_ttl_ms / 1000
        self.drop_first = drop_first
        self.clock = clock
        self._genesis = clock()
        self._tokens: dict[str, float] = {}
        self._landed: dict[str, Landed] = {}
        self._seen: Counter[str] = Counter()
        self.calls: Counter[str] = Counter()
        self.outages: Counter[str] = Counter()

    @classmethod
    def from_config(cls, sim_cfg: dict) -> "SimulatedNetwork":
        return cls(
            slot_ms=sim_cfg.get("slot_ms", 400),
            confirm_slots=sim_cfg.get("confirm_slots", 1),
            finalize_slots=sim_cfg.get("finalize_slots", 32),
            token_ttl_ms=sim_cfg.get("token_ttl_ms", 60_000),
            drop_first=sim_cfg.get("drop_first", 0),
        )

    async def aclose(self) -> None:
        pass

    @property
    def slot(self) -> int:
        return int((self.clock() - self._genesis) * 1000 // self.slot_ms)

    def fail_next(self, method: str, times: int = 1) -> None:
        """Make the next ``times`` calls of ``method`` raise NetworkError."""
        self.outages[method] += times

    def _enter(self, method: str) -> None:
        self.calls[method] += 1
        if self.outages[method] > 0:
            self.outages[method] -= 1
            raise NetworkError(f"{method}: simulated outage")

    def _token_valid(self, token: str | None) -> bool:
        issued = self._tokens.get(token) if token else None
        return issued is not None and self.clock() - issued <= self.token_ttl

    def landed(self, txid: str) -> Landed | None:
        return self._landed.get(txid)

    async def get_freshness_token(self) -> str:
        self._enter("get_freshness_token")
        slot = self.slot
        token = hashlib.sha256(f"{slot}:{len(self._tokens)}".encode()).hexdigest()[:44]
        self._tokens[token] = self.clock()
        return token

    async def submit(self, raw: bytes, *, skip_preflight: bool = True) -> str:
        try:
            self._enter("submit")
        except NetworkError as e:
            raise NetworkSendError(e.message) from e
        try:
            tx = Transaction.deserialize(raw)
        except ValueError as e:
            raise RpcError(str(e), code=-32602) from e
        if tx.missing_signatures() or not verify_signatures(tx):
            raise RpcError("Transaction signature verification failure", code=-32003)

        txid = tx.txid
        if txid in self._landed:
            log.debug("Duplicate %s ignored", txid[:16])
            return txid

        if not self._token_valid(tx.freshness_token):
            if not skip_preflight:
                raise RpcError("Transaction simulation failed: Blockhash not found", code=-32002)
            log.debug("Stale token on %s, dropping", txid[:16])
            return txid

        err, logs, _ = execute(tx)
        if err is not None and not skip_preflight:
            raise RpcError("Transaction simulation failed", code=-32002, data={"err": err, "logs": logs})

        self._seen[txid] += 1
        if self._seen[txid] <= self.drop_first:
            log.debug("Dropping send %d of %s", self._seen[txid], txid[:16])
            return txid

        self._landed[txid] = Landed(slot=self.slot, err=err, logs=logs)
        log.debug("Landed %s at slot %d err=%s", txid[:16], self.slot, err)
        return txid

    async def poll_status(self, txid: str) -> ConfirmationStatus:
        self._enter("poll_status")
        landed = self._landed.get(txid)
        if landed is None:
            return NOT_FOUND
        age = self.slot - landed.slot
        if age >= self.finalize_slots:
            level = C.Commitment.FINALIZED
        elif age >= self.confirm_slots:
            level = C.Commitment.CONFIRMED
        else:
            level = C.Commitment.PROCESSED
        return ConfirmationStatus(level=level, err=landed.err, slot=landed.slot)

    async def simulate(self, tx: Transaction, commitment: C.Commitment = C.Commitment.PROCESSED) -> SimulationResult:
        self._enter("simulate")
        if not self._token_valid(tx.freshness_token):
            return SimulationResult(err="BlockhashNotFound")
        err, logs, units = execute(tx)
        return SimulationResult(err=err, logs=logs, units_consumed=units)

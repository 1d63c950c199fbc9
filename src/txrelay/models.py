"""Transaction envelope and submission data structures."""
import asyncio
import base64
import json
import time
from dataclasses import dataclass, field
from typing import Any

import txrelay.constants as C


def _canonical(obj: Any) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":")).encode()


@dataclass(slots=True)
class Transaction:
    """An ordered list of opaque instructions plus the signing envelope.

    Wire format is canonical JSON of instructions, freshness token, signer
    identities and signatures. The signing message is the same document
    without signatures, so every signer signs identical bytes.
    Once serialized the transaction is sealed and cannot change.
    """

    instructions: list[dict[str, Any]] = field(default_factory=list)
    freshness_token: str | None = None
    signers: list[str] = field(default_factory=list)
    signatures: dict[str, str] = field(default_factory=dict)
    _serialized: bytes | None = field(default=None, repr=False)

    @property
    def sealed(self) -> bool:
        return self._serialized is not None

    def _check_mutable(self) -> None:
        if self.sealed:
            raise ValueError("transaction is already serialized")

    def add(self, *instructions: dict[str, Any]) -> "Transaction":
        self._check_mutable()
        self.instructions.extend(instructions)
        return self

    def attach(self, freshness_token: str, signers: list[str]) -> None:
        """Set the freshness token and signer identities, dropping stale signatures."""
        self._check_mutable()
        if not signers:
            raise ValueError("a transaction needs at least one signer")
        self.freshness_token = freshness_token
        self.signers = list(dict.fromkeys(signers))
        self.signatures = {}

    def message(self) -> bytes:
        return _canonical({
            "instructions": self.instructions,
            "freshness_token": self.freshness_token,
            "signers": self.signers,
        })

    def add_signature(self, identity: str, signature: str) -> None:
        self._check_mutable()
        if identity not in self.signers:
            raise ValueError(f"{identity} is not a signer of this transaction")
        self.signatures[identity] = signature

    def missing_signatures(self) -> list[str]:
        return [s for s in self.signers if s not in self.signatures]

    @property
    def payer(self) -> str | None:
        return self.signers[0] if self.signers else None

    @property
    def txid(self) -> str | None:
        """The payer's signature, known as soon as the payer has signed."""
        payer = self.payer
        return self.signatures.get(payer) if payer else None

    def serialize(self) -> bytes:
        if self._serialized is None:
            self._serialized = _canonical({
                "instructions": self.instructions,
                "freshness_token": self.freshness_token,
                "signers": self.signers,
                "signatures": self.signatures,
            })
        return self._serialized

    def to_base64(self) -> str:
        return base64.b64encode(self.serialize()).decode()

    @classmethod
    def deserialize(cls, raw: bytes) -> "Transaction":
        try:
            doc = json.loads(raw)
            tx = cls(
                instructions=list(doc["instructions"]),
                freshness_token=doc.get("freshness_token"),
                signers=list(doc.get("signers", [])),
                signatures=dict(doc.get("signatures", {})),
            )
        except (ValueError, KeyError, TypeError) as e:
            raise ValueError(f"malformed transaction: {e}") from e
        tx._serialized = raw
        return tx

    @classmethod
    def from_base64(cls, data: str) -> "Transaction":
        try:
            raw = base64.b64decode(data, validate=True)
        except ValueError as e:
            raise ValueError(f"malformed transaction: {e}") from e
        return cls.deserialize(raw)


@dataclass(frozen=True, slots=True)
class SignerSet:
    payer: Any
    additional: tuple[Any, ...] = ()

    def __post_init__(self):
        if self.payer is None:
            raise ValueError("SignerSet requires a payer")

    @property
    def identities(self) -> list[str]:
        return [self.payer.identity, *(s.identity for s in self.additional)]


@dataclass(slots=True)
class SubmissionHandle:
    """Tracks one in-flight submission.

    The done flag is an asyncio.Event so the broadcast loop wakes the moment
    it is set. finish() flips it exactly once.
    """

    txid: str
    started_at: float = field(default_factory=time.monotonic)
    _done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    flips: int = 0
    resends: int = 0

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def finish(self) -> bool:
        if self._done.is_set():
            return False
        self._done.set()
        self.flips += 1
        return True

    async def wait(self, timeout: float) -> bool:
        """Sleep up to timeout; return True as soon as the handle is done."""
        try:
            async with asyncio.timeout(timeout):
                await self._done.wait()
        except TimeoutError:
            return False
        return True

    def elapsed(self) -> float:
        return time.monotonic() - self.started_at


@dataclass(frozen=True, slots=True)
class ConfirmationStatus:
    level: C.Commitment = C.Commitment.NOT_FOUND
    err: Any = None
    slot: int | None = None

    @property
    def failed(self) -> bool:
        return self.err is not None

    def satisfies(self, required: C.Commitment) -> bool:
        return self.err is None and self.level.reached(required)


NOT_FOUND = ConfirmationStatus()


@dataclass(frozen=True, slots=True)
class SimulationResult:
    err: Any = None
    logs: list[str] = field(default_factory=list)
    units_consumed: int | None = None


@dataclass(frozen=True, slots=True)
class Diagnosis:
    message: str
    err: Any = None
    from_logs: bool = False

    def summary(self) -> str:
        if self.from_logs:
            return f"Transaction failed: {self.message}"
        return self.message

from typing import Final
from enum import StrEnum


class Commitment(StrEnum):
    """Durability levels reported by the network, weakest first."""

    NOT_FOUND  = "not_found"
    PROCESSED  = "processed"
    CONFIRMED  = "confirmed"
    FINALIZED  = "finalized"

    @property
    def rank(self) -> int:
        return _COMMITMENT_ORDER.index(self)

    def reached(self, required: "Commitment") -> bool:
        return self.rank >= Commitment(required).rank


_COMMITMENT_ORDER: Final = tuple(Commitment)


class SubmitState(StrEnum):
    BUILT        = "BUILT"
    SIGNED       = "SIGNED"
    BROADCASTING = "BROADCASTING"
    CONFIRMED    = "CONFIRMED"
    DIAGNOSING   = "DIAGNOSING"
    FAILED       = "FAILED"
    DONE         = "DONE"


class SignerKind(StrEnum):
    LOCAL    = "local"
    EXTERNAL = "external"


PROGRAM_LOG_PREFIX: Final = "Program log: "

# Defaults in milliseconds, overridable from config.toml
DEFAULT_TIMEOUT_MS = 30_000
REBROADCAST_WARMUP_MS = 1_000
REBROADCAST_INTERVAL_MS = 2_000
PRESIGNED_WARMUP_MS = 500
PRESIGNED_INTERVAL_MS = 500
POLL_INTERVAL_MS = 500
MAX_IN_FLIGHT = 8
RPC_TIMEOUT = 10.0

__all__ = [
    "DEFAULT_TIMEOUT_MS",
    "MAX_IN_FLIGHT",
    "POLL_INTERVAL_MS",
    "PRESIGNED_INTERVAL_MS",
    "PRESIGNED_WARMUP_MS",
    "PROGRAM_LOG_PREFIX",
    "REBROADCAST_INTERVAL_MS",
    "REBROADCAST_WARMUP_MS",
    "RPC_TIMEOUT",

    ######
    "Commitment",
    "SignerKind",
    "SubmitState",
]

import json
import logging
from collections.abc import Callable, Sequence

import txrelay.constants as C
from txrelay.endpoint import NetworkEndpoint
from txrelay.errors import DiagnosisUnavailableError, NetworkError
from txrelay.models import Diagnosis, Transaction

log = logging.getLogger("txrelay.diagnosis")

LogStrategy = Callable[[Sequence[str]], str | None]


def last_program_log(logs: Sequence[str], prefix: str = C.PROGRAM_LOG_PREFIX) -> str | None:
    """Last line carrying ``prefix``, with the prefix removed."""
    for line in reversed(logs):
        if line.startswith(prefix):
            return line[len(prefix):]
    return None


def error_text(err) -> str:
    if isinstance(err, str):
        return err
    return json.dumps(err, sort_keys=True)


class Diagnostician:
    """Re-run a failed transaction as a simulation and pull the cause out of its logs."""

    def __init__(
        self,
        endpoint: NetworkEndpoint,
        *,
        strategy: LogStrategy = last_program_log,
        commitment: C.Commitment = C.Commitment.PROCESSED,
    ) -> None:
        self.endpoint = endpoint
        self.strategy = strategy
        self.commitment = commitment

    async def diagnose(self, tx: Transaction, commitment: C.Commitment | None = None) -> Diagnosis | None:
        """
        Returns None when the simulation comes back clean.

        Raises DiagnosisUnavailableError when the simulation or the log strategy
        fails, so the caller can keep the failure it is diagnosing.
        """
        commitment = C.Commitment(commitment or self.commitment)
        try:
            sim = await self.endpoint.simulate(tx, commitment)
        except NetworkError as e:
            log.warning("Simulation for %s failed: %s", tx.txid, e)
            raise DiagnosisUnavailableError(f"simulation failed: {e.message}") from e
        except Exception as e:
            log.exception("Simulation for %s raised", tx.txid)
            raise DiagnosisUnavailableError(f"simulation failed: {e!r}") from e

        if sim.err is None:
            log.debug("Simulation for %s succeeded, nothing to diagnose", tx.txid)
            return None

        try:
            line = self.strategy(sim.logs)
        except Exception as e:
            log.exception("Log strategy failed for %s", tx.txid)
            raise DiagnosisUnavailableError(f"log strategy failed: {e!r}") from e

        if line is not None:
            log.info("Diagnosed %s: %s", tx.txid, line)
            return Diagnosis(message=line, err=sim.err, from_logs=True)

        log.info("Diagnosed %s from error payload: %s", tx.txid, sim.err)
        return Diagnosis(message=error_text(sim.err), err=sim.err)

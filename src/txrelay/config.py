import os
import tomllib
from dataclasses import dataclass, replace
from pathlib import Path

import txrelay.constants as C

pkg_root = Path(__file__).parent
config_file = pkg_root / "config.toml"


def load_config(path: Path | str | None = None) -> dict:
    """Read config.toml and apply environment overrides."""
    conf = tomllib.loads(Path(path or config_file).read_text())
    net = conf.setdefault("network", {})
    net["rpc_url"] = os.getenv("RPC_URL", net.get("rpc_url", "http://127.0.0.1:8899"))
    net["ws_url"] = os.getenv("WS_URL", net.get("ws_url", "ws://127.0.0.1:8900"))
    conf["endpoint"] = os.getenv("TXRELAY_ENDPOINT", conf.get("endpoint", "rpc"))
    conf.setdefault("submit", {})
    conf.setdefault("simulated", {})
    conf.setdefault("server", {})
    return conf


cfg = load_config()


@dataclass(frozen=True, slots=True)
class SubmitOptions:
    """Tuning for one submission. Durations are seconds."""

    timeout: float = C.DEFAULT_TIMEOUT_MS / 1000
    commitment: C.Commitment = C.Commitment.PROCESSED
    skip_preflight: bool = True
    warmup: float = C.REBROADCAST_WARMUP_MS / 1000
    interval: float = C.REBROADCAST_INTERVAL_MS / 1000
    poll_interval: float = C.POLL_INTERVAL_MS / 1000
    simulate_commitment: C.Commitment = C.Commitment.PROCESSED

    @classmethod
    def from_config(cls, submit_cfg: dict, *, presigned: bool = False, batch: bool = False) -> "SubmitOptions":
        s = submit_cfg
        if presigned:
            warmup_ms = s.get("presigned_warmup_ms", C.PRESIGNED_WARMUP_MS)
            interval_ms = s.get("presigned_interval_ms", C.PRESIGNED_INTERVAL_MS)
        else:
            warmup_ms = s.get("rebroadcast_warmup_ms", C.REBROADCAST_WARMUP_MS)
            interval_ms = s.get("rebroadcast_interval_ms", C.REBROADCAST_INTERVAL_MS)
        commitment = s.get("batch_commitment", "confirmed") if batch else s.get("commitment", "processed")
        return cls(
            timeout=s.get("timeout_ms", C.DEFAULT_TIMEOUT_MS) / 1000,
            commitment=C.Commitment(commitment),
            skip_preflight=bool(s.get("skip_preflight", True)),
            warmup=warmup_ms / 1000,
            interval=interval_ms / 1000,
            poll_interval=s.get("poll_interval_ms", C.POLL_INTERVAL_MS) / 1000,
            simulate_commitment=C.Commitment(s.get("simulate_commitment", "processed")),
        )

    def override(self, *, timeout_ms: int | None = None, commitment: str | None = None) -> "SubmitOptions":
        """Return a copy with the caller-facing knobs replaced where given."""
        changes: dict = {}
        if timeout_ms is not None:
            changes["timeout"] = timeout_ms / 1000
        if commitment is not None:
            changes["commitment"] = C.Commitment(commitment)
        return replace(self, **changes) if changes else self

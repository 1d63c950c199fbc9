"""
Error taxonomy for the submission engine.

Callers need to tell three situations apart:
    - never left the client (SigningError, initial NetworkSendError)
    - still might land (ConfirmationTimeoutError)
    - confirmed rejected (TransactionExecutionError)

Each error carries a stable ``kind`` string and ``to_dict()`` for the HTTP layer.
"""
from typing import Any


class RelayError(Exception):
    kind = "relay_error"

    def __init__(self, message: str, *, payload: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.payload = payload

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.payload is not None:
            d["payload"] = self.payload
        return d


class SigningError(RelayError):
    kind = "signing_error"


class NetworkError(RelayError):
    kind = "network_error"


class NetworkSendError(NetworkError):
    kind = "network_send_error"


class RpcError(NetworkError):
    """JSON-RPC error object returned by the endpoint."""

    kind = "rpc_error"

    def __init__(self, message: str, *, code: int | None = None, data: Any = None) -> None:
        super().__init__(message, payload=data)
        self.code = code
        self.data = data

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["code"] = self.code
        return d


class ConfirmationTimeoutError(RelayError):
    """No durable status within the timeout. The transaction may still land."""

    kind = "confirmation_timeout"

    def __init__(self, txid: str, timeout: float, *, diagnosis: str | None = None) -> None:
        message = "Timed out awaiting confirmation on transaction"
        if diagnosis:
            message = f"{message}: {diagnosis}"
        super().__init__(message)
        self.txid = txid
        self.timeout = timeout
        self.diagnosis = diagnosis

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d.update(txid=self.txid, timeout=self.timeout, diagnosis=self.diagnosis)
        return d


class TransactionExecutionError(RelayError):
    """The network reported an error payload for the transaction."""

    kind = "transaction_execution_error"

    def __init__(self, txid: str, err: Any, *, diagnosis: str | None = None, message: str | None = None) -> None:
        super().__init__(message or "Transaction failed", payload=err)
        self.txid = txid
        self.err = err
        self.diagnosis = diagnosis

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d.update(txid=self.txid, diagnosis=self.diagnosis)
        return d


class DiagnosisUnavailableError(RelayError):
    """The simulation request itself failed."""

    kind = "diagnosis_unavailable"


__all__ = [
    "ConfirmationTimeoutError",
    "DiagnosisUnavailableError",
    "NetworkError",
    "NetworkSendError",
    "RelayError",
    "RpcError",
    "SigningError",
    "TransactionExecutionError",
]

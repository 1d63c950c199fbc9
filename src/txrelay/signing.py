"""
Signer coordination.

Two kinds of signer, dispatched on SignerKind:
    LOCAL     key material held in-process (xrpl-py keypairs), signs synchronously
    EXTERNAL  an interactive wallet that signs the whole transaction (or a batch) itself

When the payer is EXTERNAL, local co-signers partial-sign first and the wallet
finishes the job. Otherwise every signer signs locally, payer first.
"""
import logging
from collections.abc import Sequence
from typing import ClassVar, Protocol, runtime_checkable

from xrpl import CryptoAlgorithm
from xrpl.core import keypairs
from xrpl.wallet import Wallet

from txrelay.constants import SignerKind
from txrelay.errors import SigningError
from txrelay.models import SignerSet, Transaction

log = logging.getLogger("txrelay.signing")


class FreshnessSource(Protocol):
    async def get_freshness_token(self) -> str: ...


@runtime_checkable
class WalletAdapter(Protocol):
    """Interactive wallet (browser extension, hardware device, remote approval)."""

    public_key: str
    connected: bool

    async def sign_transaction(self, tx: Transaction) -> Transaction: ...
    async def sign_all_transactions(self, txs: list[Transaction]) -> list[Transaction]: ...


class KeypairSigner:
    kind: ClassVar[SignerKind] = SignerKind.LOCAL

    def __init__(self, wallet: Wallet) -> None:
        self.wallet = wallet

    @classmethod
    def from_seed(cls, seed: str, algorithm: CryptoAlgorithm = CryptoAlgorithm.ED25519) -> "KeypairSigner":
        return cls(Wallet.from_seed(seed, algorithm=algorithm))

    @classmethod
    def generate(cls, algorithm: CryptoAlgorithm = CryptoAlgorithm.ED25519) -> "KeypairSigner":
        return cls(Wallet.create(algorithm=algorithm))

    @property
    def identity(self) -> str:
        return self.wallet.public_key

    def sign(self, tx: Transaction) -> Transaction:
        signature = keypairs.sign(tx.message(), self.wallet.private_key)
        tx.add_signature(self.identity, signature)
        return tx

    def __repr__(self) -> str:
        return f"KeypairSigner({self.identity[:10]}...)"


class WalletSigner:
    kind: ClassVar[SignerKind] = SignerKind.EXTERNAL

    def __init__(self, adapter: WalletAdapter) -> None:
        self.adapter = adapter

    @property
    def identity(self) -> str:
        return self.adapter.public_key

    def _require_connected(self) -> None:
        if not self.adapter.connected:
            raise SigningError(f"wallet {self.identity[:10]}... is not connected")

    async def sign(self, tx: Transaction) -> Transaction:
        self._require_connected()
        log.info("Signing as wallet %s", self.identity)
        return await self.adapter.sign_transaction(tx)

    async def sign_all(self, txs: list[Transaction]) -> list[Transaction]:
        self._require_connected()
        log.info("Signing %d transactions as wallet %s", len(txs), self.identity)
        signed = await self.adapter.sign_all_transactions(txs)
        if len(signed) != len(txs):
            raise SigningError(f"wallet returned {len(signed)} transactions for {len(txs)} requests")
        return signed


Signer = KeypairSigner | WalletSigner


def verify_signatures(tx: Transaction) -> bool:
    """Check every attached signature against the signing message."""
    message = tx.message()
    try:
        return all(
            keypairs.is_valid_message(message, bytes.fromhex(sig), identity)
            for identity, sig in tx.signatures.items()
        )
    except ValueError:
        return False


def _sign_locally(signer: Signer, tx: Transaction) -> None:
    if signer.kind is not SignerKind.LOCAL:
        raise SigningError(f"co-signer {signer.identity[:10]}... must hold local key material")
    signer.sign(tx)


def _require_complete(tx: Transaction) -> Transaction:
    if missing := tx.missing_signatures():
        raise SigningError(f"missing signatures for {', '.join(m[:10] for m in missing)}")
    return tx


async def sign_transaction(source: FreshnessSource, tx: Transaction, signer_set: SignerSet) -> Transaction:
    """Attach a fresh token and the signer identities, then collect every signature."""
    token = await source.get_freshness_token()
    payer = signer_set.payer
    try:
        tx.attach(token, signer_set.identities)
        match payer.kind:
            case SignerKind.EXTERNAL:
                for s in signer_set.additional:
                    _sign_locally(s, tx)
                tx = await payer.sign(tx)
            case SignerKind.LOCAL:
                for s in (payer, *signer_set.additional):
                    _sign_locally(s, tx)
            case _:
                raise SigningError(f"unknown signer kind {payer.kind!r}")
    except SigningError:
        raise
    except Exception as e:
        raise SigningError(f"signer failed: {e}") from e
    return _require_complete(tx)


def _as_signing_error(e: Exception) -> SigningError:
    if isinstance(e, SigningError):
        return e
    err = SigningError(f"signer failed: {e}")
    err.__cause__ = e
    return err


async def sign_transactions(
    source: FreshnessSource,
    txs: Sequence[Transaction],
    signer_set: SignerSet,
) -> list[Transaction | SigningError]:
    """
    Sign a batch under one freshness token.

    Returns one entry per input: the signed transaction, or the SigningError
    that stopped it. A bad transaction never takes its siblings down with it.
    An external payer approves every transaction that got that far in one
    request; if the wallet refuses, the whole batch raises SigningError.
    """
    token = await source.get_freshness_token()
    payer = signer_set.payer
    if payer.kind not in (SignerKind.LOCAL, SignerKind.EXTERNAL):
        raise SigningError(f"unknown signer kind {payer.kind!r}")

    results: list[Transaction | SigningError] = []
    for i, tx in enumerate(txs):
        try:
            tx.attach(token, signer_set.identities)
            for s in signer_set.additional:
                _sign_locally(s, tx)
            if payer.kind is SignerKind.LOCAL:
                _require_complete(payer.sign(tx))
            results.append(tx)
        except Exception as e:
            err = _as_signing_error(e)
            log.warning("Batch item %d not signed: %s", i, err)
            results.append(err)

    if payer.kind is SignerKind.LOCAL:
        return results

    pending = [i for i, r in enumerate(results) if isinstance(r, Transaction)]
    if not pending:
        return results
    try:
        signed = await payer.sign_all([results[i] for i in pending])
    except SigningError:
        raise
    except Exception as e:
        raise SigningError(f"signer failed: {e}") from e
    for i, tx in zip(pending, signed):
        try:
            results[i] = _require_complete(tx)
        except SigningError as e:
            results[i] = e
    return results

"""
Signature hashing and signer orchestration.

Segwit spends (p2wsh, p2sh_p2wsh) sign the BIP143 digest over the witness
script and the previous output value; bare p2sh spends sign the legacy
digest with the redeem script as script code. The digest and its funding
context go to an external Signer as a SignRequest, one per input.

secp256k1 operations use coincurve, imported lazily so that script and
address code does not need it.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Protocol, Sequence

from bitcointx.core import b2lx
from bitcointx.core.script import SIGHASH_ALL as SIGHASH_ALL_TYPE, SIGVERSION_BASE, SIGVERSION_WITNESS_V0, SignatureHash

from .assembler import CollateralLeg
from .errors import ConfigurationError
from .unlock import SIGHASH_ALL


def _imp_coincurve():
    import importlib
    try:
        return importlib.import_module('coincurve')
    except ImportError as e:
        raise ImportError(f'coincurve not available: {e}')


@dataclass(frozen=True)
class SignRequest:
    """Everything a wallet needs to sign (or re-derive the digest of) one input.

    Attributes:
        index: input index in the spending transaction.
        pubkey: compressed key expected to sign.
        digest: 32-byte sighash to sign (SIGHASH_ALL).
        script_code: redeem/witness script used as script code.
        value: satoshis of the previous output (BIP143 commits to it).
        segwit: True for BIP143 digests, False for legacy.
        lock_time: nLockTime of the spending transaction.
        txid / vout: the outpoint being spent.
        funding_tx_hex: raw funding transaction, when known.
    """
    index: int
    pubkey: bytes
    digest: bytes
    script_code: bytes
    value: int
    segwit: bool
    lock_time: int
    txid: str
    vout: int
    funding_tx_hex: Optional[str] = None


class Signer(Protocol):
    async def sign(self, request: SignRequest) -> bytes:
        """Return a DER-encoded ECDSA signature (no sighash byte) over request.digest."""
        ...


def compute_sighash(tx, index: int, leg: CollateralLeg) -> bytes:
    sigversion = SIGVERSION_WITNESS_V0 if leg.kind.segwit else SIGVERSION_BASE
    return bytes(SignatureHash(leg.redeem_script, tx, index, SIGHASH_ALL_TYPE, amount=leg.value, sigversion=sigversion))


def sign_requests(tx, legs: Sequence[CollateralLeg], pubkey: bytes) -> List[SignRequest]:
    """One request per input; legs must be in input order."""
    if len(legs) != len(tx.vin):
        raise ConfigurationError(f"{len(legs)} legs for {len(tx.vin)} inputs")
    out: List[SignRequest] = []
    for i, leg in enumerate(legs):
        out.append(SignRequest(
            index=i,
            pubkey=bytes(pubkey),
            digest=compute_sighash(tx, i, leg),
            script_code=bytes(leg.redeem_script),
            value=leg.value,
            segwit=leg.kind.segwit,
            lock_time=tx.nLockTime,
            txid=b2lx(tx.vin[i].prevout.hash),
            vout=tx.vin[i].prevout.n,
            funding_tx_hex=leg.funding_tx_hex,
        ))
    return out


async def sign_inputs(signer: Signer, requests: Sequence[SignRequest]) -> List[bytes]:
    """Sign all requests concurrently; results keep request order and carry the sighash byte."""
    sigs = await asyncio.gather(*(signer.sign(r) for r in requests))
    return [bytes(s) + bytes([SIGHASH_ALL]) for s in sigs]


def verify_signature(pubkey: bytes, digest: bytes, sig: bytes) -> bool:
    """Check a detached signature (with trailing sighash byte) against a digest."""
    cc = _imp_coincurve()
    if not sig or sig[-1] != SIGHASH_ALL:
        return False
    try:
        return bool(cc.PublicKey(pubkey).verify(sig[:-1], digest, hasher=None))
    except ValueError:
        return False


class LocalKeySigner:
    """In-process Signer holding raw private keys (tests and offline tooling)."""

    def __init__(self, secret_keys: Iterable[bytes]) -> None:
        cc = _imp_coincurve()
        self._keys: Dict[bytes, object] = {}
        for sk in secret_keys:
            priv = cc.PrivateKey(bytes(sk))
            self._keys[priv.public_key.format(compressed=True)] = priv

    @property
    def pubkeys(self) -> List[bytes]:
        return list(self._keys)

    async def sign(self, request: SignRequest) -> bytes:
        try:
            priv = self._keys[request.pubkey]
        except KeyError:
            raise ConfigurationError(f"no private key for pubkey {request.pubkey.hex()}")
        return priv.sign(request.digest, hasher=None)

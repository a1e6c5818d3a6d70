"""
Payment variants: the three ways a redeem script is wrapped into an output.

- p2wsh:       OP_0 <sha256(script)>
- p2sh_p2wsh:  OP_HASH160 <hash160(OP_0 <sha256(script)>)> OP_EQUAL
- p2sh:        OP_HASH160 <hash160(script)> OP_EQUAL

Addresses are encoded under python-bitcointx chain params so the same script
yields mainnet, testnet, signet or regtest addresses.
"""
from __future__ import annotations

import hashlib
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from bitcointx import ChainParams
from bitcointx.core import Hash160, b2lx
from bitcointx.core.script import CScript, OP_CHECKSIG, OP_DUP, OP_EQUALVERIFY, OP_HASH160
from bitcointx.wallet import CCoinAddress, CCoinAddressError

from .errors import ConfigurationError, ScriptMatchError
from .template import MAX_P2SH_SCRIPT_SIZE

NETWORKS = ('bitcoin', 'bitcoin/testnet', 'bitcoin/regtest', 'bitcoin/signet')
ADDRESS_MODES = ('p2wpkh', 'p2sh_p2wpkh', 'p2pkh')


class PaymentKind(Enum):
    P2WSH = "p2wsh"
    P2SH_P2WSH = "p2sh_p2wsh"
    P2SH = "p2sh"

    @property
    def segwit(self) -> bool:
        return self is not PaymentKind.P2SH

    @classmethod
    def parse(cls, value: "str | PaymentKind") -> "PaymentKind":
        if isinstance(value, PaymentKind):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ConfigurationError(f"invalid script mode {value!r} (choose from {', '.join(k.value for k in cls)})")


@dataclass(frozen=True)
class PaymentVariant:
    kind: PaymentKind
    redeem_script: CScript
    locking_script: CScript
    address: str


@dataclass(frozen=True)
class CollateralOutput:
    """A funding output locked to one of our payment variants."""
    txid: str
    vout: int
    value: int
    variant: PaymentVariant


def check_network(network: str) -> str:
    if network not in NETWORKS:
        raise ConfigurationError(f"unknown network {network!r} (choose from {', '.join(NETWORKS)})")
    return network


def witness_program(script: bytes) -> CScript:
    """OP_0 <sha256(script)>, the redeem script of the wrapped-segwit form."""
    return CScript([0, hashlib.sha256(script).digest()])


def locking_script(script: CScript, kind: PaymentKind) -> CScript:
    if kind is PaymentKind.P2WSH:
        return script.to_p2wsh_scriptPubKey()
    if kind is PaymentKind.P2SH_P2WSH:
        return witness_program(script).to_p2sh_scriptPubKey()
    # size is enforced at spend time, only for scripts actually used as p2sh
    return script.to_p2sh_scriptPubKey(checksize=False)


def script_to_address(spk: bytes, network: str) -> str:
    with ChainParams(check_network(network)):
        return str(CCoinAddress.from_scriptPubKey(CScript(spk)))


def address_to_script(address: str, network: str) -> CScript:
    with ChainParams(check_network(network)):
        try:
            return CCoinAddress(address).to_scriptPubKey()
        except CCoinAddressError as exc:
            raise ConfigurationError(f"invalid {network} address {address!r}: {exc}") from exc


def derive_payment_variants(script: CScript, network: str = 'bitcoin') -> Dict[PaymentKind, PaymentVariant]:
    """Wrap a redeem script all three ways and encode the addresses."""
    script = CScript(script)
    out: Dict[PaymentKind, PaymentVariant] = {}
    for kind in PaymentKind:
        spk = locking_script(script, kind)
        out[kind] = PaymentVariant(kind, script, spk, script_to_address(spk, network))
    return out


def require_p2sh_size(variant: PaymentVariant) -> None:
    if variant.kind is PaymentKind.P2SH and len(variant.redeem_script) > MAX_P2SH_SCRIPT_SIZE:
        raise ConfigurationError(
            f"redeem script is {len(variant.redeem_script)} bytes; p2sh pushes are limited to {MAX_P2SH_SCRIPT_SIZE}")


def classify_output(spk: bytes, variants: Dict[PaymentKind, PaymentVariant]) -> Optional[PaymentKind]:
    for kind, v in variants.items():
        if bytes(v.locking_script) == bytes(spk):
            return kind
    return None


def find_outputs(tx: Any, spk: bytes) -> List[int]:
    """Indexes of every output of tx paying exactly to spk."""
    return [i for i, out in enumerate(tx.vout) if bytes(out.scriptPubKey) == bytes(spk)]


def match_collateral_output(tx: Any, variant: PaymentVariant, txid: Optional[str] = None) -> CollateralOutput:
    """Locate the output of a funding tx paying to the given variant.

    Raises ScriptMatchError when no output matches; an index is never guessed.
    """
    txid = txid or b2lx(tx.GetTxid())
    idx = find_outputs(tx, variant.locking_script)
    if not idx:
        raise ScriptMatchError(txid)
    vout = idx[0]
    return CollateralOutput(txid, vout, int(tx.vout[vout].nValue), variant)


def pubkey_to_address(pubkey: bytes, mode: str, network: str) -> str:
    """Single-key destination address for the configured address mode."""
    if len(pubkey) != 33:
        raise ConfigurationError("pubkey must be 33 bytes (compressed)")
    pkh = Hash160(pubkey)
    if mode == 'p2wpkh':
        spk = CScript([0, pkh])
    elif mode == 'p2sh_p2wpkh':
        spk = CScript([0, pkh]).to_p2sh_scriptPubKey()
    elif mode == 'p2pkh':
        spk = CScript([OP_DUP, OP_HASH160, pkh, OP_EQUALVERIFY, OP_CHECKSIG])
    else:
        raise ConfigurationError(f"invalid address mode {mode!r} (choose from {', '.join(ADDRESS_MODES)})")
    return script_to_address(spk, network)

from __future__ import annotations

from typing import List, Optional, Sequence

from bitcointx.core.script import CScript, CScriptWitness

from .params import SECRET_SIZE
from .template import Branch, Period, ScriptVariant, branch_selectors, resolve_branch
from .variants import witness_program

TRUE_SELECTOR = b"\x01"    # minimal-IF true
FALSE_SELECTOR = b""       # minimal-IF false / OP_0
MULTISIG_DUMMY = b""       # consumed by CHECKMULTISIG's extra pop

SIGHASH_ALL = 0x01


def _validate_signature(sig: bytes) -> None:
    # DER (8..72 bytes) plus one sighash byte
    if not 9 <= len(sig) <= 73 or sig[0] != 0x30:
        raise ValueError("signature must be DER-encoded with a trailing sighash byte (9-73 bytes)")


def _validate_pubkey(pubkey: Optional[bytes]) -> None:
    if pubkey is None:
        raise ValueError("pubkey is required for single-signature branches")
    if len(pubkey) != 33:
        raise ValueError("pubkey must be 33 bytes (compressed)")


def _validate_secrets(variant: ScriptVariant, secrets: Sequence[Optional[bytes]], slots: Sequence[str],
                      branch: Branch) -> None:
    if len(secrets) != len(slots):
        raise ValueError(f"{branch.value} branch takes {len(slots)} secret(s) ({', '.join(slots) or 'none'}), got {len(secrets)}")
    for s in secrets:
        if s is not None and len(s) != SECRET_SIZE:
            raise ValueError(f"secret must be {SECRET_SIZE} bytes")
    if branch is Branch.SEIZURE and slots and secrets[0] is None:
        raise ValueError(f"seizure branch requires the {slots[0]} secret")
    if branch is Branch.HASH and variant.hash_check_slot is not None and secrets[-1] is None:
        raise ValueError(f"hash branch requires the {variant.hash_check_slot} secret")


def build_unlock_items(variant: ScriptVariant, period: "Period | str", signatures: Sequence[bytes],
                       secrets: Sequence[Optional[bytes]] = (), pubkey: Optional[bytes] = None) -> List[bytes]:
    """Compile the stack items satisfying the period's branch (script not included).

    Multisig (LIQUIDATION):  [<dummy>, sig_1, sig_2, secrets..., selectors...]
    Single-sig (others):     [sig, pubkey, secrets..., selectors...]

    secrets are given in slot declaration order, None for unrevealed slots,
    and are pushed in reverse so the first slot ends up on top.
    """
    period = Period.parse(period)
    branch = resolve_branch(variant, period)
    slots = variant.secret_slots(period)
    _validate_secrets(variant, secrets, slots, branch)
    for sig in signatures:
        _validate_signature(sig)

    items: List[bytes] = []
    if branch is Branch.ARBITRATION:
        if len(signatures) != 2:
            raise ValueError("arbitration branch requires exactly 2 signatures")
        items.append(MULTISIG_DUMMY)
        items.extend(signatures)
    else:
        if len(signatures) != 1:
            raise ValueError(f"{branch.value} branch requires exactly 1 signature")
        _validate_pubkey(pubkey)
        items.append(signatures[0])
        items.append(pubkey)

    items.extend(FALSE_SELECTOR if s is None else s for s in reversed(secrets))
    items.extend(TRUE_SELECTOR if flag else FALSE_SELECTOR for flag in branch_selectors(variant, period))
    return items


def to_witness(items: Sequence[bytes], script: bytes) -> CScriptWitness:
    return CScriptWitness(list(items) + [bytes(script)])


def _minimal_push(item: bytes):
    # MINIMALDATA: single bytes 1..16 must be OP_1..OP_16
    if len(item) == 1 and 1 <= item[0] <= 16:
        return item[0]
    return item


def to_script_sig(items: Sequence[bytes], script: bytes) -> CScript:
    """Push-only scriptSig for a bare p2sh spend, redeem script last."""
    return CScript([_minimal_push(i) for i in items] + [bytes(script)])


def wrapped_script_sig(script: bytes) -> CScript:
    """scriptSig of a p2sh_p2wsh spend: a single push of the witness program."""
    return CScript([bytes(witness_program(script))])

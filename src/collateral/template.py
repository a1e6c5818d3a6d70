"""
Collateral redeem script template

Canonical layout (four branches, selected by flags pushed before the script,
last pushed flag tested first)

OP_IF                                  HASH: loan period, borrower reclaims
  <1-of-2 preimage threshold over B1, C1>
  OP_DUP OP_HASH160 <borrower_pkh> OP_EQUALVERIFY OP_CHECKSIG
OP_ELSE
  OP_IF                                ARBITRATION: 2-of-3 after approve
    <approve> OP_CHECKLOCKTIMEVERIFY OP_DROP
    OP_2 <pk_borrower> <pk_lender> <pk_agent> OP_3 OP_CHECKMULTISIG
  OP_ELSE
    OP_IF                              SEIZURE: secret A1 after liquidation
      OP_SIZE 32 OP_EQUALVERIFY OP_SHA256 <A1> OP_EQUALVERIFY
      <liquidation> OP_CHECKLOCKTIMEVERIFY OP_DROP
      OP_DUP OP_HASH160 <seizable_pkh> OP_EQUALVERIFY OP_CHECKSIG
    OP_ELSE                            REFUND: borrower after seizure
      <seizure> OP_CHECKLOCKTIMEVERIFY OP_DROP
      OP_DUP OP_HASH160 <borrower_pkh> OP_EQUALVERIFY OP_CHECKSIG
    OP_ENDIF
  OP_ENDIF
OP_ENDIF

seizable_pkh is the lender on the seizable leg and the borrower on the
refundable leg, which is the only difference between the two scripts.

The swap layout drops REFUND: its HASH branch takes two of A1/B1/C1 plus
an exact D1 and is guarded by the liquidator's key hash, and its SEIZURE
branch carries no secret.

The same branch layout tuple produces both the nested IF structure here and
the selector flags used by the unlock compiler.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

from bitcointx.core.script import (
    CScript,
    CScriptOp,
    OPCODE_NAMES,
    OP_2,
    OP_3,
    OP_ADD,
    OP_CHECKLOCKTIMEVERIFY,
    OP_CHECKMULTISIG,
    OP_CHECKSIG,
    OP_DROP,
    OP_DUP,
    OP_ELSE,
    OP_ENDIF,
    OP_EQUAL,
    OP_EQUALVERIFY,
    OP_GREATERTHANOREQUAL,
    OP_HASH160,
    OP_IF,
    OP_LESSTHANOREQUAL,
    OP_SHA256,
    OP_SIZE,
    OP_SWAP,
    OP_VERIFY,
)

from .errors import ConfigurationError, UnresolvedBranchError
from .params import MULTISIG_ORDER, SECRET_SIZE, ExpirationSet, Party, PartyKeys, SecretHashSet

MAX_P2SH_SCRIPT_SIZE = 520


class Branch(Enum):
    HASH = "hash"                # preimage reveal, single signature
    ARBITRATION = "arbitration"  # 2-of-3 multisig after approve expiration
    SEIZURE = "seizure"          # seizable party after liquidation expiration
    REFUND = "refund"            # borrower after the last expiration


class Period(Enum):
    """Lifecycle period: the branch it spends and the expiration it locks to."""
    LOAN = ("loan", Branch.HASH, None)
    LIQUIDATION = ("liquidation", Branch.ARBITRATION, "approve")
    SEIZURE = ("seizure", Branch.SEIZURE, "liquidation")
    REFUND = ("refund", Branch.REFUND, "seizure")

    def __init__(self, label: str, branch: Branch, expiration: Optional[str]) -> None:
        self.label = label
        self.branch = branch
        self.expiration = expiration

    @classmethod
    def parse(cls, name: "str | Period") -> "Period":
        if isinstance(name, Period):
            return name
        key = str(name).lower()
        if key.endswith('period'):
            key = key[:-len('period')]
        key = _PERIOD_ALIASES.get(key, key)
        for period in cls:
            if period.label == key:
                return period
        raise UnresolvedBranchError(f"unknown period {name!r}")


_PERIOD_ALIASES = {'claim': 'loan', 'bidding': 'liquidation'}


@dataclass(frozen=True)
class HashGate:
    """Preimage threshold: at least ``threshold`` of ``slots`` must be revealed.

    exact_size=True counts a slot only when its item is exactly 32 bytes and
    hashes to the commitment, so an empty push counts as zero. exact_size=False
    is the older gate which aborts on items longer than 32 bytes.
    """
    slots: Tuple[str, ...]
    threshold: int
    exact_size: bool = True

    def validate(self) -> None:
        if not self.slots:
            raise ConfigurationError("hash gate needs at least one slot")
        if not 1 <= self.threshold <= len(self.slots):
            raise ConfigurationError("hash gate threshold must be between 1 and the number of slots")


@dataclass(frozen=True)
class ScriptVariant:
    """Which optional features a collateral script carries.

    Attributes:
        name: registry key.
        hash_gate: preimage threshold of the HASH branch.
        hash_check_slot: preimage the HASH branch also requires after the
            threshold (None: threshold only).
        hash_guard: party whose key hash guards the HASH branch.
        arbitration_gate: optional preimage threshold before the multisig.
        seizure_slot: preimage required by the SEIZURE branch (None: no secret).
        seizure_guard: fixed party guarding SEIZURE; None means lender on the
            seizable leg and borrower on the refundable leg.
        refund_branch: whether a final REFUND branch follows SEIZURE.
    """
    name: str
    hash_gate: HashGate
    hash_check_slot: Optional[str] = None
    hash_guard: Party = Party.BORROWER
    arbitration_gate: Optional[HashGate] = None
    seizure_slot: Optional[str] = "A1"
    seizure_guard: Optional[Party] = None
    refund_branch: bool = True

    def validate(self) -> None:
        self.hash_gate.validate()
        if self.arbitration_gate is not None:
            self.arbitration_gate.validate()

    @property
    def layout(self) -> Tuple[Branch, ...]:
        branches = (Branch.HASH, Branch.ARBITRATION, Branch.SEIZURE)
        return branches + (Branch.REFUND,) if self.refund_branch else branches

    def seizure_party(self, seizable: bool) -> Party:
        """Party whose signature opens the SEIZURE branch of a leg."""
        if self.seizure_guard is not None:
            return self.seizure_guard
        return Party.LENDER if seizable else Party.BORROWER

    def hash_slots(self) -> Tuple[str, ...]:
        if self.hash_check_slot is None:
            return self.hash_gate.slots
        return self.hash_gate.slots + (self.hash_check_slot,)

    def required_slots(self) -> Tuple[str, ...]:
        slots = list(self.hash_slots())
        if self.arbitration_gate is not None:
            slots += self.arbitration_gate.slots
        if self.seizure_slot is not None:
            slots.append(self.seizure_slot)
        return tuple(slots)

    def secret_slots(self, period: Period) -> Tuple[str, ...]:
        """Slots whose preimages the unlocking data carries for a period."""
        branch = resolve_branch(self, period)
        if branch is Branch.HASH:
            return self.hash_slots()
        if branch is Branch.ARBITRATION:
            return self.arbitration_gate.slots if self.arbitration_gate else ()
        if branch is Branch.SEIZURE:
            return (self.seizure_slot,) if self.seizure_slot else ()
        return ()


CANONICAL = ScriptVariant(
    name="canonical",
    hash_gate=HashGate(("B1", "C1"), 1),
)

# Earlier revision: arbitration needs 2-of-3 of A2/B2/C2, lender seizes both legs.
LEGACY = ScriptVariant(
    name="legacy",
    hash_gate=HashGate(("B1", "C1"), 1),
    arbitration_gate=HashGate(("A2", "B2", "C2"), 2, exact_size=False),
    seizure_guard=Party.LENDER,
)

# Collateral swap: a liquidator claims with any two of A1/B1/C1 plus D1;
# seizure is the secret-less final fallback.
SWAP = ScriptVariant(
    name="swap",
    hash_gate=HashGate(("A1", "B1", "C1"), 2),
    hash_check_slot="D1",
    hash_guard=Party.LIQUIDATOR,
    seizure_slot=None,
    refund_branch=False,
)

VARIANTS: Dict[str, ScriptVariant] = {v.name: v for v in (CANONICAL, LEGACY, SWAP)}


def get_variant(name: "str | ScriptVariant") -> ScriptVariant:
    if isinstance(name, ScriptVariant):
        return name
    try:
        return VARIANTS[name]
    except KeyError:
        raise ConfigurationError(f"unknown script variant {name!r} (choose from {', '.join(VARIANTS)})")


def resolve_branch(variant: ScriptVariant, period: "Period | str") -> Branch:
    period = Period.parse(period)
    if period.branch not in variant.layout:
        raise UnresolvedBranchError(f"{variant.name} scripts have no {period.branch.value} branch")
    return period.branch


def branch_selectors(variant: ScriptVariant, period: "Period | str") -> Tuple[bool, ...]:
    """Flags to push, in push order, to reach the period's branch.

    The last pushed flag is tested by the outermost OP_IF, so branch i of n
    takes [True] + [False]*i, and the final else-branch takes [False]*(n-1).
    """
    layout = variant.layout
    i = layout.index(resolve_branch(variant, period))
    if i == len(layout) - 1:
        return (False,) * i
    return (True,) + (False,) * i


def _slot_test(expected: bytes, exact_size: bool) -> List:
    if exact_size:
        return [OP_SIZE, SECRET_SIZE, OP_EQUAL, OP_SWAP, OP_SHA256, expected, OP_EQUAL, OP_ADD, OP_2, OP_EQUAL]
    return [OP_SIZE, SECRET_SIZE, OP_LESSTHANOREQUAL, OP_VERIFY, OP_SHA256, expected, OP_EQUAL]


def _hash_gate_ops(gate: HashGate, hashes: SecretHashSet) -> List:
    ops: List = []
    for i, slot in enumerate(gate.slots):
        test = _slot_test(hashes.require(slot), gate.exact_size)
        ops += test if i == 0 else [OP_SWAP] + test + [OP_ADD]
    return ops + [gate.threshold, OP_GREATERTHANOREQUAL, OP_VERIFY]


def _exact_preimage(expected: bytes) -> List:
    return [OP_SIZE, SECRET_SIZE, OP_EQUALVERIFY, OP_SHA256, expected, OP_EQUALVERIFY]


def _pkh_check(pkh: bytes) -> List:
    return [OP_DUP, OP_HASH160, pkh, OP_EQUALVERIFY, OP_CHECKSIG]


def _branch_ops(branch: Branch, keys: PartyKeys, hashes: SecretHashSet, expirations: ExpirationSet,
                seizable: bool, variant: ScriptVariant) -> List:
    if branch is Branch.HASH:
        ops = _hash_gate_ops(variant.hash_gate, hashes)
        if variant.hash_check_slot is not None:
            ops += _exact_preimage(hashes.require(variant.hash_check_slot))
        return ops + _pkh_check(keys.pubkey_hash(variant.hash_guard))
    if branch is Branch.ARBITRATION:
        gate = _hash_gate_ops(variant.arbitration_gate, hashes) if variant.arbitration_gate else []
        multisig = [OP_2] + [keys.pubkey(p) for p in MULTISIG_ORDER] + [OP_3, OP_CHECKMULTISIG]
        return gate + [expirations.locktime("approve"), OP_CHECKLOCKTIMEVERIFY, OP_DROP] + multisig
    if branch is Branch.SEIZURE:
        ops: List = []
        if variant.seizure_slot is not None:
            ops += _exact_preimage(hashes.require(variant.seizure_slot))
        guard = variant.seizure_party(seizable)
        return ops + [expirations.locktime("liquidation"), OP_CHECKLOCKTIMEVERIFY, OP_DROP] + _pkh_check(keys.pubkey_hash(guard))
    return [expirations.locktime("seizure"), OP_CHECKLOCKTIMEVERIFY, OP_DROP] + _pkh_check(keys.pubkey_hash(Party.BORROWER))


def build_redeem_script(keys: PartyKeys, hashes: SecretHashSet, expirations: ExpirationSet, seizable: bool,
                        variant: ScriptVariant = CANONICAL) -> CScript:
    """Build the redeem script for one collateral leg.

    Args:
        keys: borrower/lender/agent compressed pubkeys.
        hashes: secret commitments; the slots the variant uses must be set.
        expirations: approve/liquidation[/seizure] absolute locktimes.
        seizable: True for the seizable leg, False for the refundable one.
        variant: script feature set (defaults to the canonical protocol).

    Returns:
        The script; byte-identical for identical arguments.
    """
    variant.validate()
    keys.validate()
    hashes.validate(variant.required_slots())
    expirations.validate(require_seizure=variant.refund_branch)

    bodies = [_branch_ops(b, keys, hashes, expirations, seizable, variant) for b in variant.layout]
    # Nest from the inside out: the last two branches share the innermost IF.
    ops = [OP_IF] + bodies[-2] + [OP_ELSE] + bodies[-1] + [OP_ENDIF]
    for body in reversed(bodies[:-2]):
        ops = [OP_IF] + body + [OP_ELSE] + ops + [OP_ENDIF]
    return CScript(ops)


def disasm(script: bytes) -> str:
    out: List[str] = []
    for item in CScript(script):
        if isinstance(item, CScriptOp):
            out.append(OPCODE_NAMES.get(item, f"0x{int(item):02x}"))
        elif isinstance(item, int):
            out.append(f"OP_{item}")
        elif len(item) == 0:
            out.append("OP_0")
        else:
            out.append(item.hex())
    return ' '.join(out)

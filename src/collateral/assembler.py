"""
Spend assembly for collateral outputs.

One input per collateral leg (sequence 0 so nLockTime is enforced), the
period's expiration as nLockTime, and either one aggregate output or one
output per leg. Finalization writes the unlocking data into the witness,
the scriptSig, or both depending on the payment kind.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from bitcointx.core import (
    COutPoint,
    CMutableTransaction,
    CMutableTxIn,
    CMutableTxInWitness,
    CMutableTxOut,
    CMutableTxWitness,
    lx,
)
from bitcointx.core.script import CScript

from .errors import ConfigurationError, FeeError
from .fees import PLACEHOLDER_SIG_SIZE, FeePolicy, check_fee, fee_for, split_fee
from .params import SECRET_SIZE, ExpirationSet
from .template import Branch, Period, ScriptVariant, resolve_branch
from .unlock import build_unlock_items, to_script_sig, to_witness, wrapped_script_sig
from .variants import CollateralOutput, PaymentKind, address_to_script, require_p2sh_size

log = logging.getLogger(__name__)

TX_VERSION = 2
LOCKTIME_SEQUENCE = 0  # below 0xffffffff so nLockTime applies; not signalling RBF


@dataclass(frozen=True)
class CollateralLeg:
    """One collateral output together with the context needed to spend it."""
    output: CollateralOutput
    seizable: bool
    funding_tx_hex: Optional[str] = None

    @property
    def value(self) -> int:
        return self.output.value

    @property
    def redeem_script(self) -> CScript:
        return self.output.variant.redeem_script

    @property
    def kind(self) -> PaymentKind:
        return self.output.variant.kind


@dataclass(frozen=True)
class OutputSpec:
    """Destination of a spend; value None means "derive from inputs minus fee"."""
    address: str
    value: Optional[int] = None


@dataclass
class SpendPlan:
    tx: CMutableTransaction
    legs: Tuple[CollateralLeg, ...]
    period: Period
    variant: ScriptVariant
    fee: int
    outputs: Tuple[OutputSpec, ...] = field(default_factory=tuple)

    @property
    def total_in(self) -> int:
        return sum(leg.value for leg in self.legs)


def allocate_outputs(leg_values: Sequence[int], outputs: Sequence[OutputSpec], fee: int) -> List[int]:
    """Output values after subtracting the fee.

    - one output: exactly inputs minus fee; an explicit value must equal it;
    - one output per leg: each leg minus its share of the fee, unless an
      explicit value is given;
    - any other shape: every value must be explicit.
    Raises FeeError when the fee eats the inputs or an output drops to zero.
    """
    if not outputs:
        raise ConfigurationError("at least one destination output is required")
    total_in = sum(leg_values)
    check_fee(total_in, fee)
    if len(outputs) == 1:
        value = total_in - fee
        if outputs[0].value is not None and outputs[0].value != value:
            raise FeeError(f"single output of {outputs[0].value} sats would leave a fee of "
                           f"{total_in - outputs[0].value} sats instead of {fee}")
        values = [value]
    elif len(outputs) == len(leg_values):
        shares = split_fee(fee, len(outputs))
        values = [o.value if o.value is not None else v - s for o, v, s in zip(outputs, leg_values, shares)]
    else:
        if any(o.value is None for o in outputs):
            raise ConfigurationError(f"{len(outputs)} outputs for {len(leg_values)} inputs need explicit values")
        values = [int(o.value) for o in outputs]
    for v in values:
        if v <= 0:
            raise FeeError(f"output value {v} sats is not positive after a fee of {fee} sats")
    if sum(values) + fee > total_in:
        raise FeeError(f"outputs ({sum(values)}) plus fee ({fee}) exceed inputs ({total_in})")
    return values


def build_unsigned_tx(legs: Sequence[CollateralLeg], locktime: int, destinations: Sequence[Tuple[CScript, int]]) -> CMutableTransaction:
    for leg in legs:
        require_p2sh_size(leg.output.variant)
    vin = [CMutableTxIn(COutPoint(lx(leg.output.txid), leg.output.vout), nSequence=LOCKTIME_SEQUENCE) for leg in legs]
    vout = [CMutableTxOut(value, spk) for spk, value in destinations]
    witness = CMutableTxWitness([CMutableTxInWitness() for _ in vin])
    return CMutableTransaction(vin, vout, nLockTime=locktime, nVersion=TX_VERSION, witness=witness)


def finalize_input(tx: CMutableTransaction, index: int, leg: CollateralLeg, items: Sequence[bytes]) -> None:
    """Write unlocking data for input ``index`` in place."""
    script = leg.redeem_script
    if leg.kind is PaymentKind.P2SH:
        require_p2sh_size(leg.output.variant)
        tx.vin[index].scriptSig = to_script_sig(items, script)
        return
    tx.wit.vtxinwit[index] = CMutableTxInWitness(to_witness(items, script))
    if leg.kind is PaymentKind.P2SH_P2WSH:
        tx.vin[index].scriptSig = wrapped_script_sig(script)


def placeholder_items(variant: ScriptVariant, period: Period) -> List[bytes]:
    """Worst-case-size unlocking data used to measure a spend before signing."""
    branch = resolve_branch(variant, period)
    sig = b"\x30" + b"\x00" * (PLACEHOLDER_SIG_SIZE - 2) + b"\x01"
    nsigs = 2 if branch is Branch.ARBITRATION else 1
    pubkey = None if branch is Branch.ARBITRATION else b"\x02" + b"\x00" * 32
    secrets = [b"\x00" * SECRET_SIZE for _ in variant.secret_slots(period)]
    return build_unlock_items(variant, period, [sig] * nsigs, secrets, pubkey)


def measure_vsize(draft: CMutableTransaction, legs: Sequence[CollateralLeg], variant: ScriptVariant, period: Period) -> int:
    """Finalize a throwaway draft with placeholder data and return its vsize."""
    items = placeholder_items(variant, period)
    for i, leg in enumerate(legs):
        finalize_input(draft, i, leg, items)
    return draft.get_virtual_size()


def assemble_spend(legs: Sequence[CollateralLeg], period: "Period | str", expirations: ExpirationSet,
                   outputs: Sequence[OutputSpec], *, variant: ScriptVariant, network: str,
                   fee_policy: Optional[FeePolicy] = None, fee_per_byte: Optional[int] = None,
                   fee: Optional[int] = None) -> SpendPlan:
    """Build the unsigned spend of ``legs`` for ``period``.

    Either pass an absolute ``fee`` or a ``fee_per_byte`` rate which is
    applied to the size the fee policy reports.
    """
    period = Period.parse(period)
    resolve_branch(variant, period)
    legs = tuple(legs)
    if not legs:
        raise ConfigurationError("a spend needs at least one collateral leg")
    outputs = tuple(outputs)
    locktime = expirations.locktime(period.expiration)
    spks = [address_to_script(o.address, network) for o in outputs]
    leg_values = [leg.value for leg in legs]

    if fee is None:
        if fee_per_byte is None:
            raise ConfigurationError("either fee or fee_per_byte is required")
        policy = fee_policy or FeePolicy()
        # amounts are fixed-width, so placeholder values size the draft exactly
        draft_outputs = [(spk, 0) for spk in spks]
        vsize = policy.estimate_vsize(
            len(legs), len(outputs),
            measure=lambda: measure_vsize(build_unsigned_tx(legs, locktime, draft_outputs), legs, variant, period))
        fee = fee_for(vsize, fee_per_byte)
        log.debug("fee %d sats for %d vbytes at %d sat/vB (%s)", fee, vsize, fee_per_byte, policy.model.value)

    values = allocate_outputs(leg_values, outputs, fee)
    tx = build_unsigned_tx(legs, locktime, list(zip(spks, values)))
    log.debug("assembled %s spend: %d input(s), %d output(s), locktime %d", period.label, len(legs), len(values), locktime)
    return SpendPlan(tx, legs, period, variant, fee, outputs)

"""
Spend verification with the python-bitcointx script interpreter.

Runs the unlocking data of one input against the locking script of the
output it spends. OP_CHECKLOCKTIMEVERIFY is treated as a NOP by the
interpreter, so timelocks are not checked here; signature checks need the
system libsecp256k1 that python-bitcointx loads.
"""
from __future__ import annotations

from typing import Any, Optional, TypedDict

from bitcointx.core import ValidationError, b2lx
from bitcointx.core.scripteval import SCRIPT_VERIFY_P2SH, SCRIPT_VERIFY_WITNESS, VerifyScript

VERIFY_FLAGS = {SCRIPT_VERIFY_P2SH, SCRIPT_VERIFY_WITNESS}


class VerifyResult(TypedDict):
    ok: bool
    index: int
    prevout: str
    value: Optional[int]
    reason: Optional[str]


def verify_spend(tx: Any, funding_tx: Any, index: int = 0) -> VerifyResult:
    if index < 0 or index >= len(tx.vin):
        raise IndexError(f'input index {index} out of range (num_inputs={len(tx.vin)})')
    txin = tx.vin[index]
    prevout = f"{b2lx(txin.prevout.hash)}:{txin.prevout.n}"
    if b2lx(txin.prevout.hash) != b2lx(funding_tx.GetTxid()) or txin.prevout.n >= len(funding_tx.vout):
        return {'ok': False, 'index': index, 'prevout': prevout, 'value': None,
                'reason': 'input does not spend the funding transaction'}
    prev = funding_tx.vout[txin.prevout.n]
    witness = tx.wit.vtxinwit[index].scriptWitness if index < len(tx.wit.vtxinwit) else None
    try:
        VerifyScript(txin.scriptSig, prev.scriptPubKey, tx, index, flags=VERIFY_FLAGS,
                     amount=prev.nValue, witness=witness)
    except ValidationError as e:
        return {'ok': False, 'index': index, 'prevout': prevout, 'value': int(prev.nValue), 'reason': str(e)}
    return {'ok': True, 'index': index, 'prevout': prevout, 'value': int(prev.nValue), 'reason': None}

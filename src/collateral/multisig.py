"""
Cooperative 2-of-3 spending of the arbitration branch.

Every party builds the same unsigned spend from pre-agreed outputs and
signs it independently; the detached signatures are exchanged out of band.
A transaction only exists once two valid signature sets are combined:

    UNSIGNED -> PARTIALLY_SIGNED -> READY -> FINALIZED -> BROADCAST

An abandoned session never produces a transaction.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Dict, List, Optional, Sequence

from .assembler import SpendPlan, finalize_input
from .chain import Broadcaster
from .errors import MultisigError
from .params import MULTISIG_ORDER, Party, PartyKeys
from .signing import Signer, SignRequest, compute_sighash, sign_inputs, sign_requests, verify_signature
from .template import Branch, resolve_branch
from .txio import to_raw_tx_hex, txid_of
from .unlock import build_unlock_items

log = logging.getLogger(__name__)

REQUIRED_SIGNERS = 2


class SessionState(Enum):
    UNSIGNED = "unsigned"
    PARTIALLY_SIGNED = "partially_signed"
    READY = "ready"
    FINALIZED = "finalized"
    BROADCAST = "broadcast"


class MultisigSession:
    def __init__(self, plan: SpendPlan, keys: PartyKeys, secrets: Sequence[Optional[bytes]] = (),
                 verify: bool = True) -> None:
        if resolve_branch(plan.variant, plan.period) is not Branch.ARBITRATION:
            raise MultisigError(f"{plan.period.label} spends do not use the multisig branch")
        self.plan = plan
        self.keys = keys
        self.secrets = tuple(secrets)
        self.verify = verify
        self._unsigned_txid = txid_of(plan.tx)
        self._digests = [compute_sighash(plan.tx, i, leg) for i, leg in enumerate(plan.legs)]
        self._sigs: Dict[Party, List[bytes]] = {}
        self._finalized: Optional[str] = None
        self._broadcast_txid: Optional[str] = None

    @property
    def unsigned_txid(self) -> str:
        """Identifier all parties can compare before exchanging signatures."""
        return self._unsigned_txid

    @property
    def state(self) -> SessionState:
        if self._broadcast_txid is not None:
            return SessionState.BROADCAST
        if self._finalized is not None:
            return SessionState.FINALIZED
        if len(self._sigs) >= REQUIRED_SIGNERS:
            return SessionState.READY
        if self._sigs:
            return SessionState.PARTIALLY_SIGNED
        return SessionState.UNSIGNED

    @property
    def signers(self) -> List[Party]:
        return [p for p in MULTISIG_ORDER if p in self._sigs]

    def sighashes(self) -> List[bytes]:
        return list(self._digests)

    def requests(self, party: Party) -> List[SignRequest]:
        return sign_requests(self.plan.tx, self.plan.legs, self.keys.pubkey(party))

    async def sign(self, party: Party, signer: Signer) -> List[bytes]:
        """Produce and record this party's detached signatures, one per input."""
        sigs = await sign_inputs(signer, self.requests(party))
        self.add_signatures(party, sigs)
        return sigs

    def add_signatures(self, party: Party, sigs: Sequence[bytes]) -> None:
        if not isinstance(party, Party):
            raise MultisigError(f"unknown party {party!r}")
        if self._finalized is not None:
            raise MultisigError("session already finalized")
        if len(sigs) != len(self._digests):
            raise MultisigError(f"{party.value} supplied {len(sigs)} signature(s) for {len(self._digests)} input(s)")
        if self.verify:
            pubkey = self.keys.pubkey(party)
            for i, (sig, digest) in enumerate(zip(sigs, self._digests)):
                if not verify_signature(pubkey, digest, sig):
                    raise MultisigError(f"invalid {party.value} signature for input {i}")
        self._sigs[party] = [bytes(s) for s in sigs]
        log.debug("multisig %s: %s signed (%s)", self.unsigned_txid, party.value, self.state.value)

    def build(self) -> str:
        """Combine two signature sets into the finalized transaction hex (no broadcast)."""
        if self._finalized is not None:
            return self._finalized
        parties = self.signers
        if len(parties) < REQUIRED_SIGNERS:
            raise MultisigError(f"need signatures from {REQUIRED_SIGNERS} parties, have {len(parties)}")
        # CHECKMULTISIG walks keys in script order, so signatures must follow it
        chosen = parties[:REQUIRED_SIGNERS]
        # finalize a copy so plan.tx stays the unsigned transaction every party agreed on
        tx = self.plan.tx.clone()
        for i, leg in enumerate(self.plan.legs):
            sigs = [self._sigs[p][i] for p in chosen]
            items = build_unlock_items(self.plan.variant, self.plan.period, sigs, self.secrets)
            finalize_input(tx, i, leg, items)
        self._finalized = to_raw_tx_hex(tx)
        log.info("multisig spend finalized with %s signatures", '+'.join(p.value for p in chosen))
        return self._finalized

    async def send(self, broadcaster: Broadcaster) -> str:
        tx_hex = self.build()
        self._broadcast_txid = await broadcaster.send_raw_transaction(tx_hex)
        log.info("multisig spend broadcast: %s", self._broadcast_txid)
        return self._broadcast_txid

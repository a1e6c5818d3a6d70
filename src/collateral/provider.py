"""
Collateral lifecycle operations.

CollateralProvider ties the pure layers (template, variants, assembler,
unlock) to the external collaborators (chain reader, broadcaster, signer,
fee oracle, funder):

    lock / lock_batch        fund the refundable and seizable addresses
    refund / refund_one      loan period, borrower reveals B1 or C1
    claim                    loan period of a swap, liquidator reveals three secrets
    multisig_sign/build/send liquidation period, 2-of-3 cooperative spend
    seize                    seizure period, lender reveals A1 (seizable leg)
    regain                   seizure period, borrower takes the refundable leg
    reclaim                  refund period, borrower after the last expiration
    find_*                   bounded polling for funding and spending txs
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, NamedTuple, Optional, Sequence, Tuple, Union

from bitcointx.core import CTransaction, Hash160, b2lx, x
from bitcointx.core.script import CScript

from .assembler import CollateralLeg, OutputSpec, SpendPlan, assemble_spend, finalize_input
from .chain import (
    DEFAULT_POLL_INTERVAL,
    DEFAULT_POLL_TIMEOUT,
    Broadcaster,
    ChainReader,
    FeeOracle,
    Funder,
    poll_until,
)
from .errors import ConfigurationError, ScriptMatchError, SecretMismatchError
from .fees import FeePolicy
from .locator import locate_collateral
from .multisig import MultisigSession
from .params import CollateralTerms, CollateralValues, Party
from .signing import Signer, sign_inputs, sign_requests
from .template import Period, ScriptVariant, build_redeem_script, get_variant
from .txio import to_raw_tx_hex
from .unlock import build_unlock_items
from .variants import (
    ADDRESS_MODES,
    PaymentKind,
    PaymentVariant,
    check_network,
    derive_payment_variants,
    pubkey_to_address,
    require_p2sh_size,
)

log = logging.getLogger(__name__)

TxIds = Union[str, Sequence[str]]


@dataclass
class ProviderConfig:
    """Provider settings.

    Attributes:
        network: bitcointx chain params name (bitcoin, bitcoin/testnet, ...).
        script_mode: payment kind that is funded and searched for.
        address_mode: single-key destination format for refunds/seizures.
        variant: script feature set name.
        fee_policy: size model used for fees.
        fee_per_byte: fixed rate in sat/vB; None asks the fee oracle.
        poll_interval / poll_timeout: cadence and bound of find operations.
    """
    network: str = 'bitcoin/regtest'
    script_mode: str = 'p2wsh'
    address_mode: str = 'p2wpkh'
    variant: str = 'canonical'
    fee_policy: FeePolicy = field(default_factory=FeePolicy)
    fee_per_byte: Optional[int] = None
    poll_interval: float = DEFAULT_POLL_INTERVAL
    poll_timeout: Optional[float] = DEFAULT_POLL_TIMEOUT

    def validate(self) -> None:
        check_network(self.network)
        PaymentKind.parse(self.script_mode)
        if self.address_mode not in ADDRESS_MODES:
            raise ConfigurationError(f"invalid address mode {self.address_mode!r} (choose from {', '.join(ADDRESS_MODES)})")
        get_variant(self.variant)
        self.fee_policy.validate()
        if self.fee_per_byte is not None and self.fee_per_byte < 0:
            raise ConfigurationError("fee_per_byte must be non-negative")
        if self.poll_interval <= 0:
            raise ConfigurationError("poll_interval must be positive")
        if self.poll_timeout is not None and self.poll_timeout <= 0:
            raise ConfigurationError("poll_timeout must be positive (or None)")


class LockAddresses(NamedTuple):
    refundable: str
    seizable: str


class CollateralProvider:
    def __init__(self, config: ProviderConfig, *, chain: ChainReader, broadcaster: Broadcaster,
                 signer: Optional[Signer] = None, fee_oracle: Optional[FeeOracle] = None,
                 funder: Optional[Funder] = None) -> None:
        config.validate()
        self.config = config
        self.kind = PaymentKind.parse(config.script_mode)
        self.variant: ScriptVariant = get_variant(config.variant)
        self.chain = chain
        self.broadcaster = broadcaster
        self.signer = signer
        self.fee_oracle = fee_oracle
        self.funder = funder

    # scripts and addresses

    def redeem_scripts(self, terms: CollateralTerms) -> Tuple[CScript, CScript]:
        """(refundable, seizable) redeem scripts."""
        return (
            build_redeem_script(terms.keys, terms.hashes, terms.expirations, False, self.variant),
            build_redeem_script(terms.keys, terms.hashes, terms.expirations, True, self.variant),
        )

    def payment_variants(self, terms: CollateralTerms) -> Tuple[PaymentVariant, PaymentVariant]:
        """Active-mode variants of the (refundable, seizable) scripts."""
        out: List[PaymentVariant] = []
        for script in self.redeem_scripts(terms):
            variant = derive_payment_variants(script, self.config.network)[self.kind]
            require_p2sh_size(variant)
            out.append(variant)
        return out[0], out[1]

    def lock_addresses(self, terms: CollateralTerms) -> LockAddresses:
        refundable, seizable = self.payment_variants(terms)
        return LockAddresses(refundable.address, seizable.address)

    def party_address(self, terms: CollateralTerms, party: Party) -> str:
        return pubkey_to_address(terms.keys.pubkey(party), self.config.address_mode, self.config.network)

    # funding

    def _require_funder(self) -> Funder:
        if self.funder is None:
            raise ConfigurationError("this operation needs a funder")
        return self.funder

    async def lock(self, values: CollateralValues, terms: CollateralTerms) -> Tuple[str, str]:
        """Fund both legs with separate payments; returns (refundable_txid, seizable_txid)."""
        values.validate()
        funder = self._require_funder()
        addresses = self.lock_addresses(terms)
        ref_txid = await funder.send_transaction(addresses.refundable, values.refundable)
        sei_txid = await funder.send_transaction(addresses.seizable, values.seizable)
        log.info("locked %d + %d sats: %s, %s", values.refundable, values.seizable, ref_txid, sei_txid)
        return ref_txid, sei_txid

    async def lock_batch(self, values: CollateralValues, terms: CollateralTerms) -> str:
        """Fund both legs in one transaction."""
        values.validate()
        funder = self._require_funder()
        addresses = self.lock_addresses(terms)
        txid = await funder.send_batch_transaction([
            (addresses.refundable, values.refundable),
            (addresses.seizable, values.seizable),
        ])
        log.info("locked %d sats in one payment: %s", values.total, txid)
        return txid

    # spending

    async def locate(self, txids: TxIds, terms: CollateralTerms) -> List[CollateralLeg]:
        refundable, seizable = self.payment_variants(terms)
        return await locate_collateral(self.chain, _as_list(txids), refundable, seizable)

    async def _fee_rate(self) -> int:
        if self.config.fee_per_byte is not None:
            return self.config.fee_per_byte
        if self.fee_oracle is None:
            raise ConfigurationError("set fee_per_byte or provide a fee oracle")
        return await self.fee_oracle.get_fee_per_byte()

    def _hash_secrets(self, terms: CollateralTerms, secret: bytes) -> List[Optional[bytes]]:
        if self.variant.hash_guard is not Party.BORROWER:
            raise ConfigurationError(f"{self.variant.name} scripts are claimed by the {self.variant.hash_guard.value}, use claim")
        slots = self.variant.hash_gate.slots
        slot = terms.hashes.match(secret, slots)
        return [secret if s == slot else None for s in slots]

    def _claim_secrets(self, terms: CollateralTerms, secrets: Sequence[bytes]) -> List[Optional[bytes]]:
        """Place revealed preimages in hash-branch slot order, None where absent."""
        needed = self.variant.hash_gate.threshold + 1
        if len(secrets) != needed:
            raise SecretMismatchError(f"claim needs {needed} secrets, got {len(secrets)}")
        slots = self.variant.hash_slots()
        by_slot: Dict[str, bytes] = {}
        for secret in secrets:
            slot = terms.hashes.match(secret, slots)
            if slot in by_slot:
                raise SecretMismatchError(f"secret {slot} supplied twice")
            by_slot[slot] = secret
        if self.variant.hash_check_slot not in by_slot:
            raise SecretMismatchError(f"claim needs the {self.variant.hash_check_slot} secret")
        return [by_slot.get(s) for s in slots]

    async def build_single_sig_spend(self, legs: Sequence[CollateralLeg], period: Period, terms: CollateralTerms,
                                     party: Party, secrets: Sequence[Optional[bytes]] = (),
                                     outputs: Optional[Sequence[OutputSpec]] = None,
                                     pubkey: Optional[bytes] = None) -> SpendPlan:
        """Assemble, sign and finalize a spend whose branch needs one signature.

        ``pubkey`` defaults to the party's committed key; the liquidator is
        only known by key hash and must pass it.
        """
        if self.signer is None:
            raise ConfigurationError("this operation needs a signer")
        if not legs:
            raise ScriptMatchError(message="No collateral outputs to spend")
        pubkey = pubkey if pubkey is not None else terms.keys.pubkey(party)
        outputs = outputs or [OutputSpec(pubkey_to_address(pubkey, self.config.address_mode, self.config.network))]
        plan = assemble_spend(legs, period, terms.expirations, outputs, variant=self.variant,
                              network=self.config.network, fee_policy=self.config.fee_policy,
                              fee_per_byte=await self._fee_rate())
        sigs = await sign_inputs(self.signer, sign_requests(plan.tx, plan.legs, pubkey))
        for i, leg in enumerate(plan.legs):
            items = build_unlock_items(self.variant, period, [sigs[i]], secrets, pubkey)
            finalize_input(plan.tx, i, leg, items)
        return plan

    async def _broadcast(self, plan: SpendPlan) -> str:
        txid = await self.broadcaster.send_raw_transaction(to_raw_tx_hex(plan.tx))
        log.info("%s spend of %d input(s) broadcast: %s", plan.period.label, len(plan.legs), txid)
        return txid

    async def refund(self, txids: TxIds, terms: CollateralTerms, secret: bytes) -> str:
        """Loan period: borrower spends every matched leg with secret B1 or C1.

        Accepts the two lock txids, a single batch-lock txid, or many locks at
        once; each matching output becomes one input.
        """
        secrets = self._hash_secrets(terms, secret)
        legs = await self.locate(txids, terms)
        plan = await self.build_single_sig_spend(legs, Period.LOAN, terms, Party.BORROWER, secrets)
        return await self._broadcast(plan)

    async def refund_one(self, txid: str, terms: CollateralTerms, secret: bytes, seizable: bool) -> str:
        secrets = self._hash_secrets(terms, secret)
        legs = [leg for leg in await self.locate(txid, terms) if leg.seizable == seizable]
        plan = await self.build_single_sig_spend(legs, Period.LOAN, terms, Party.BORROWER, secrets)
        return await self._broadcast(plan)

    async def claim(self, txids: TxIds, terms: CollateralTerms, secrets: Sequence[bytes], pubkey: bytes) -> str:
        """Loan period of a swap: the liquidator takes every matched leg.

        ``secrets`` are any two of A1/B1/C1 plus D1, in any order. ``pubkey``
        must hash to the committed liquidator key hash; funds go to its address.
        """
        if self.variant.hash_guard is not Party.LIQUIDATOR:
            raise ConfigurationError(f"{self.variant.name} scripts have no liquidator claim")
        if bytes(Hash160(bytes(pubkey))) != terms.keys.pubkey_hash(Party.LIQUIDATOR):
            raise ConfigurationError("pubkey does not match the liquidator pubkey hash")
        ordered = self._claim_secrets(terms, secrets)
        legs = await self.locate(txids, terms)
        plan = await self.build_single_sig_spend(legs, Period.LOAN, terms, Party.LIQUIDATOR, ordered, pubkey=pubkey)
        return await self._broadcast(plan)

    async def _seizure_spend(self, txids: TxIds, terms: CollateralTerms, secret: Optional[bytes],
                             seizable: bool) -> SpendPlan:
        slot = self.variant.seizure_slot
        secrets: List[Optional[bytes]] = []
        if slot is not None:
            if secret is None:
                raise ConfigurationError(f"seizure needs the {slot} secret")
            terms.hashes.match(secret, [slot])
            secrets = [secret]
        legs = [leg for leg in await self.locate(txids, terms) if leg.seizable == seizable]
        party = self.variant.seizure_party(seizable)
        return await self.build_single_sig_spend(legs, Period.SEIZURE, terms, party, secrets)

    async def seize(self, txids: TxIds, terms: CollateralTerms, secret: Optional[bytes] = None) -> str:
        """Seizure period: lender takes the seizable leg(s), revealing A1."""
        plan = await self._seizure_spend(txids, terms, secret, True)
        return await self._broadcast(plan)

    async def regain(self, txids: TxIds, terms: CollateralTerms, secret: Optional[bytes] = None) -> str:
        """Seizure period: borrower takes the refundable leg(s) back.

        Opens at the liquidation expiration, before the final refund period.
        Canonical scripts still require A1 here; swap scripts need no secret.
        """
        party = self.variant.seizure_party(False)
        if party is not Party.BORROWER:
            raise ConfigurationError(f"the refundable leg of {self.variant.name} scripts is seized by the {party.value}")
        plan = await self._seizure_spend(txids, terms, secret, False)
        return await self._broadcast(plan)

    async def reclaim(self, txids: TxIds, terms: CollateralTerms, seizable: Optional[bool] = None) -> str:
        """Refund period: borrower reclaims after the last expiration (one leg or both)."""
        legs = await self.locate(txids, terms)
        if seizable is not None:
            legs = [leg for leg in legs if leg.seizable == seizable]
        plan = await self.build_single_sig_spend(legs, Period.REFUND, terms, Party.BORROWER)
        return await self._broadcast(plan)

    # cooperative multisig

    async def multisig_session(self, txids: TxIds, terms: CollateralTerms, outputs: Sequence[OutputSpec],
                               *, fee: Optional[int] = None,
                               secrets: Sequence[Optional[bytes]] = ()) -> MultisigSession:
        """Rebuild the shared liquidation spend every party signs.

        All parties must derive the identical transaction, so the fee is
        either given explicitly or computed from the configured fixed rate,
        never from a local fee oracle.
        """
        if fee is None and self.config.fee_per_byte is None:
            raise ConfigurationError("multisig spends need an agreed fee or a fixed fee_per_byte")
        legs = await self.locate(txids, terms)
        plan = assemble_spend(legs, Period.LIQUIDATION, terms.expirations, outputs, variant=self.variant,
                              network=self.config.network, fee_policy=self.config.fee_policy,
                              fee_per_byte=self.config.fee_per_byte, fee=fee)
        return MultisigSession(plan, terms.keys, secrets)

    async def multisig_sign(self, txids: TxIds, terms: CollateralTerms, party: Party,
                            outputs: Sequence[OutputSpec], **kwargs) -> List[bytes]:
        """Detached signatures of ``party``, one per input, to share with the others."""
        if self.signer is None:
            raise ConfigurationError("this operation needs a signer")
        session = await self.multisig_session(txids, terms, outputs, **kwargs)
        return await session.sign(party, self.signer)

    async def multisig_build(self, txids: TxIds, terms: CollateralTerms, outputs: Sequence[OutputSpec],
                             signatures: Mapping[Party, Sequence[bytes]], **kwargs) -> str:
        """Finalized transaction hex from two (or three) parties' signatures; not broadcast."""
        session = await self.multisig_session(txids, terms, outputs, **kwargs)
        for party, sigs in signatures.items():
            session.add_signatures(party, sigs)
        return session.build()

    async def multisig_send(self, txids: TxIds, terms: CollateralTerms, outputs: Sequence[OutputSpec],
                            signatures: Mapping[Party, Sequence[bytes]], **kwargs) -> str:
        session = await self.multisig_session(txids, terms, outputs, **kwargs)
        for party, sigs in signatures.items():
            session.add_signatures(party, sigs)
        return await session.send(self.broadcaster)

    # finding

    async def find_lock_transaction(self, terms: CollateralTerms, seizable: bool = False) -> str:
        """Poll until a transaction pays the leg's address; returns its txid."""
        address = self.lock_addresses(terms)[1 if seizable else 0]

        async def fetch() -> Optional[str]:
            txids = await self.chain.get_address_txids(address)
            return txids[0] if txids else None

        return await poll_until(fetch, interval=self.config.poll_interval, timeout=self.config.poll_timeout,
                                what=f"funding of {address}")

    async def find_spend_transaction(self, funding_txid: str, terms: CollateralTerms, seizable: bool = False) -> str:
        """Poll until the leg's collateral output is spent; returns the spending txid."""
        legs = [leg for leg in await self.locate(funding_txid, terms) if leg.seizable == seizable]
        if not legs:
            raise ScriptMatchError(funding_txid)
        outpoint = (legs[0].output.txid, legs[0].output.vout)
        address = legs[0].output.variant.address
        checked: Dict[str, bool] = {funding_txid: False}

        async def fetch() -> Optional[str]:
            for txid in await self.chain.get_address_txids(address):
                if txid in checked:
                    continue
                tx = CTransaction.deserialize(x(await self.chain.get_raw_transaction(txid)))
                checked[txid] = any((b2lx(txin.prevout.hash), txin.prevout.n) == outpoint for txin in tx.vin)
                if checked[txid]:
                    return txid
            return None

        return await poll_until(fetch, interval=self.config.poll_interval, timeout=self.config.poll_timeout,
                                what=f"spend of {outpoint[0]}:{outpoint[1]}")


def _as_list(txids: TxIds) -> List[str]:
    return [txids] if isinstance(txids, str) else list(txids)

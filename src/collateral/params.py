"""
Parameter model for one collateral instance.

Lightweight, explicit containers for the values the redeem scripts commit
to: the three party keys, the secret hashes and the expirations, plus the
amounts locked on each leg. Any change to these values changes the derived
addresses, so the containers are frozen.
"""
from __future__ import annotations

import hashlib
from dataclasses import dataclass, fields
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from bitcointx.core import Hash160

from .errors import ConfigurationError, SecretMismatchError
from .hexutil import HexOrBytes, as_bytes, parse_hash32, parse_pubkey

MAX_LOCKTIME = 0xFFFFFFFF
SECRET_SIZE = 32


class Party(Enum):
    BORROWER = "borrower"
    LENDER = "lender"
    AGENT = "agent"
    LIQUIDATOR = "liquidator"


# Key order inside the 2-of-3 CHECKMULTISIG; signatures must follow it.
MULTISIG_ORDER = (Party.BORROWER, Party.LENDER, Party.AGENT)

PUBKEY_HASH_SIZE = 20


def normalize_locktime(name: str, value: Any) -> int:
    """Coerce an absolute locktime to int and enforce the nLockTime range."""
    try:
        n = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{name} must be an integer") from exc
    if n <= 0:
        raise ConfigurationError(f"{name} must be a positive locktime")
    if n > MAX_LOCKTIME:
        raise ConfigurationError(f"{name} must be <= {MAX_LOCKTIME} (nLockTime is 32-bit)")
    return n


@dataclass(frozen=True)
class PartyKeys:
    """Compressed public keys of the three roles.

    Attributes:
        borrower: posts the collateral and can always reclaim it eventually.
        lender: can seize the seizable leg after liquidation.
        agent: arbiter, the third key of the 2-of-3 multisig.
        liquidator: optional HASH160 of the key that claims a swap-style
            collateral; only the hash is committed to, never the pubkey.
    """
    borrower: bytes
    lender: bytes
    agent: bytes
    liquidator: Optional[bytes] = None

    @classmethod
    def from_hex(cls, borrower: HexOrBytes, lender: HexOrBytes, agent: HexOrBytes,
                 liquidator: Optional[HexOrBytes] = None) -> "PartyKeys":
        try:
            return cls(
                parse_pubkey('borrower pubkey', borrower),
                parse_pubkey('lender pubkey', lender),
                parse_pubkey('agent pubkey', agent),
                None if liquidator is None else as_bytes('liquidator pubkey hash', liquidator, PUBKEY_HASH_SIZE),
            )
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc

    def validate(self) -> None:
        for party in MULTISIG_ORDER:
            try:
                parse_pubkey(f"{party.value} pubkey", self.pubkey(party))
            except ValueError as exc:
                raise ConfigurationError(str(exc)) from exc
        if self.liquidator is not None and len(self.liquidator) != PUBKEY_HASH_SIZE:
            raise ConfigurationError(f"liquidator pubkey hash must be {PUBKEY_HASH_SIZE} bytes")

    def pubkey(self, party: Party) -> bytes:
        if party is Party.LIQUIDATOR:
            raise ConfigurationError("the liquidator is known by pubkey hash only")
        return getattr(self, party.value)

    def pubkey_hash(self, party: Party) -> bytes:
        if party is Party.LIQUIDATOR:
            if self.liquidator is None:
                raise ConfigurationError("liquidator pubkey hash is required")
            return bytes(self.liquidator)
        return bytes(Hash160(self.pubkey(party)))

    def party_of(self, pubkey: bytes) -> Party:
        for party in MULTISIG_ORDER:
            if self.pubkey(party) == pubkey:
                return party
        if self.liquidator is not None and bytes(Hash160(pubkey)) == self.liquidator:
            return Party.LIQUIDATOR
        raise ConfigurationError(f"pubkey {pubkey.hex()} belongs to no party")


@dataclass(frozen=True)
class SecretHashSet:
    """SHA-256 commitments to the protocol secrets, by slot name.

    Slot names follow the lifecycle convention: A* belong to the lender,
    B* to the borrower, C* to the agent and D1 to a liquidator. Only the
    slots a script variant actually uses need to be present.
    """
    a1: Optional[bytes] = None
    a2: Optional[bytes] = None
    b1: Optional[bytes] = None
    b2: Optional[bytes] = None
    c1: Optional[bytes] = None
    c2: Optional[bytes] = None
    d1: Optional[bytes] = None

    @classmethod
    def from_hex(cls, **slots: Optional[HexOrBytes]) -> "SecretHashSet":
        parsed: Dict[str, bytes] = {}
        for slot, value in slots.items():
            key = slot.lower()
            if key not in SECRET_SLOTS:
                raise ConfigurationError(f"unknown secret slot {slot}")
            if value is None:
                continue
            try:
                parsed[key] = parse_hash32(f"secret hash {slot.upper()}", value)
            except ValueError as exc:
                raise ConfigurationError(str(exc)) from exc
        return cls(**parsed)

    @classmethod
    def from_secrets(cls, **secrets: bytes) -> "SecretHashSet":
        """Commit to known preimages (the party that generated them)."""
        return cls.from_hex(**{k: hashlib.sha256(v).digest() for k, v in secrets.items()})

    def get(self, slot: str) -> Optional[bytes]:
        key = slot.lower()
        if key not in SECRET_SLOTS:
            raise ConfigurationError(f"unknown secret slot {slot}")
        return getattr(self, key)

    def require(self, slot: str) -> bytes:
        h = self.get(slot)
        if h is None:
            raise ConfigurationError(f"secret hash {slot.upper()} is required")
        return h

    def validate(self, required: Iterable[str] = ()) -> None:
        for slot in SECRET_SLOTS:
            h = getattr(self, slot)
            if h is not None and len(h) != 32:
                raise ConfigurationError(f"secret hash {slot.upper()} must be 32 bytes")
        for slot in required:
            self.require(slot)

    def match(self, secret: bytes, slots: Optional[Iterable[str]] = None) -> str:
        """Return the slot name the preimage opens, or raise SecretMismatchError."""
        if len(secret) != SECRET_SIZE:
            raise SecretMismatchError(f"secret must be {SECRET_SIZE} bytes (got {len(secret)})")
        digest = hashlib.sha256(secret).digest()
        candidates = [s.upper() for s in (slots if slots is not None else SECRET_SLOTS)]
        for slot in candidates:
            if self.get(slot) == digest:
                return slot
        raise SecretMismatchError(f"secret does not match any of {', '.join(candidates)}")


SECRET_SLOTS = tuple(f.name for f in fields(SecretHashSet))


@dataclass(frozen=True)
class ExpirationSet:
    """Absolute locktimes (UNIX time or height) ending each period.

    approve: end of the loan period; the arbitration branch opens.
    liquidation: end of liquidation; the seizure branch opens.
    seizure: end of seizure; the borrower's final refund opens.

    The values are expected to increase in that order; that ordering is the
    caller's responsibility.
    """
    approve: int
    liquidation: int
    seizure: Optional[int] = None

    def validate(self, require_seizure: bool = True) -> None:
        normalize_locktime('approve expiration', self.approve)
        normalize_locktime('liquidation expiration', self.liquidation)
        if self.seizure is not None:
            normalize_locktime('seizure expiration', self.seizure)
        elif require_seizure:
            raise ConfigurationError('seizure expiration is required')

    def locktime(self, name: Optional[str]) -> int:
        if name is None:
            return 0
        value = getattr(self, name)
        if value is None:
            raise ConfigurationError(f"{name} expiration is required")
        return normalize_locktime(f"{name} expiration", value)


@dataclass(frozen=True)
class CollateralTerms:
    """Everything the two redeem scripts of one collateral instance commit to."""
    keys: PartyKeys
    hashes: SecretHashSet
    expirations: ExpirationSet


@dataclass(frozen=True)
class CollateralValues:
    """Satoshis locked on each leg."""
    refundable: int
    seizable: int

    def validate(self) -> None:
        for name in ('refundable', 'seizable'):
            v = getattr(self, name)
            if not isinstance(v, int) or isinstance(v, bool) or v <= 0:
                raise ConfigurationError(f"{name} value must be a positive integer (sats)")

    @property
    def total(self) -> int:
        return self.refundable + self.seizable

"""
Batch location of collateral outputs across many funding transactions.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Sequence, Tuple

from bitcointx.core import CTransaction, x

from .assembler import CollateralLeg
from .chain import ChainReader
from .errors import ConfigurationError, ScriptMatchError
from .variants import CollateralOutput, PaymentVariant

log = logging.getLogger(__name__)


class LegMatch(Enum):
    REFUNDABLE = "refundable"
    SEIZABLE = "seizable"
    BOTH = "both"


@dataclass(frozen=True)
class FundingMatch:
    txid: str
    match: LegMatch
    legs: Tuple[CollateralLeg, ...]


def classify_funding(txid: str, tx_hex: str, refundable: PaymentVariant, seizable: PaymentVariant) -> FundingMatch:
    """Match every output of one funding tx against the two collateral scripts.

    Raises ScriptMatchError naming the txid when nothing matches.
    """
    tx = CTransaction.deserialize(x(tx_hex))
    legs: List[CollateralLeg] = []
    for i, out in enumerate(tx.vout):
        spk = bytes(out.scriptPubKey)
        for variant, is_seizable in ((refundable, False), (seizable, True)):
            if spk == bytes(variant.locking_script):
                output = CollateralOutput(txid, i, int(out.nValue), variant)
                legs.append(CollateralLeg(output, is_seizable, tx_hex))
                break
    kinds = {leg.seizable for leg in legs}
    if not legs:
        raise ScriptMatchError(txid)
    if kinds == {False, True}:
        match = LegMatch.BOTH
    elif kinds == {True}:
        match = LegMatch.SEIZABLE
    else:
        match = LegMatch.REFUNDABLE
    return FundingMatch(txid, match, tuple(legs))


async def locate_collateral(reader: ChainReader, txids: Sequence[str], refundable: PaymentVariant,
                            seizable: PaymentVariant) -> List[CollateralLeg]:
    """Fetch funding txs concurrently and return all matched legs in request order."""
    if len(set(txids)) != len(txids):
        raise ConfigurationError("funding txids must be unique")
    hexes = await asyncio.gather(*(reader.get_raw_transaction(t) for t in txids))
    legs: List[CollateralLeg] = []
    for txid, tx_hex in zip(txids, hexes):
        found = classify_funding(txid, tx_hex, refundable, seizable)
        log.debug("funding %s: %s (%d output(s))", txid, found.match.value, len(found.legs))
        legs.extend(found.legs)
    return legs

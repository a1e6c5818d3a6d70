import hashlib
import itertools
from typing import Dict, List, Sequence, Tuple

import pytest

from bitcointx.core import COutPoint, CMutableTransaction, CMutableTxIn, CMutableTxOut, CTransaction, Hash160, b2lx, b2x, x

from collateral.assembler import CollateralLeg
from collateral.params import CollateralTerms, ExpirationSet, Party, PartyKeys, SecretHashSet
from collateral.template import CANONICAL, build_redeem_script
from collateral.variants import PaymentKind, address_to_script, derive_payment_variants, match_collateral_output, pubkey_to_address

# Well-known compressed pubkeys of the private keys 1 to 4.
BORROWER_SK = (1).to_bytes(32, 'big')
LENDER_SK = (2).to_bytes(32, 'big')
AGENT_SK = (3).to_bytes(32, 'big')
LIQUIDATOR_SK = (4).to_bytes(32, 'big')
BORROWER_PK = '0279be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798'
LENDER_PK = '02c6047f9441ed7d6d3045406e95c07cd85c778e4b8cef3ca7abac09b95c709ee5'
AGENT_PK = '02f9308a019258c31049344f85f89d5229b531c845836f99b08601f113bce036f9'
LIQUIDATOR_PK = '02e493dbf1c10d80f3581e4904930b1404cc6c13900ee0758474fa94abe8c4cd13'

SECRETS = {slot: bytes([0x10 + i]) * 32 for i, slot in enumerate(('A1', 'A2', 'B1', 'B2', 'C1', 'C2', 'D1'))}

APPROVE = 1_700_000_000
LIQUIDATION = 1_700_100_000
SEIZURE = 1_700_200_000

REGTEST = 'bitcoin/regtest'

_prevout_counter = itertools.count(1)


def sha256(b: bytes) -> bytes:
    return hashlib.sha256(b).digest()


def make_terms(**expiration_overrides) -> CollateralTerms:
    keys = PartyKeys.from_hex(BORROWER_PK, LENDER_PK, AGENT_PK, liquidator=bytes(Hash160(x(LIQUIDATOR_PK))))
    hashes = SecretHashSet.from_secrets(**{k.lower(): v for k, v in SECRETS.items()})
    exp = dict(approve=APPROVE, liquidation=LIQUIDATION, seizure=SEIZURE)
    exp.update(expiration_overrides)
    return CollateralTerms(keys, hashes, ExpirationSet(**exp))


def funding_tx(payments: Sequence[Tuple[bytes, int]]) -> CMutableTransaction:
    """A transaction paying ``value`` to each script; its input is a unique dummy outpoint."""
    n = next(_prevout_counter)
    txin = CMutableTxIn(COutPoint(n.to_bytes(32, 'little'), 0))
    return CMutableTransaction([txin], [CMutableTxOut(v, spk) for spk, v in payments], nVersion=2)


def secp256k1_available() -> bool:
    """Whether bitcointx can load libsecp256k1 for interpreter signature checks."""
    try:
        from bitcointx.core.secp256k1 import get_secp256k1
        get_secp256k1()
    except (ImportError, OSError):
        return False
    return True


requires_secp256k1 = pytest.mark.skipif(not secp256k1_available(), reason='libsecp256k1 not available to bitcointx')


class FakeChain:
    """In-memory ChainReader, Broadcaster, FeeOracle and Funder."""

    def __init__(self, network: str = REGTEST, fee_per_byte: int = 2) -> None:
        self.network = network
        self.fee_per_byte = fee_per_byte
        self.txs: Dict[str, str] = {}
        self.by_address: Dict[str, List[str]] = {}
        self.broadcast: List[str] = []
        self.fee_calls = 0

    def add_tx(self, tx, addresses: Sequence[str] = ()) -> str:
        txid = b2lx(tx.GetTxid())
        self.txs[txid] = b2x(tx.serialize())
        for a in addresses:
            self.by_address.setdefault(a, []).append(txid)
        return txid

    async def get_raw_transaction(self, txid: str) -> str:
        return self.txs[txid]

    async def get_address_txids(self, address: str) -> List[str]:
        return list(self.by_address.get(address, []))

    async def send_raw_transaction(self, tx_hex: str) -> str:
        self.broadcast.append(tx_hex)
        return b2lx(CTransaction.deserialize(x(tx_hex)).GetTxid())

    async def get_fee_per_byte(self) -> int:
        self.fee_calls += 1
        return self.fee_per_byte

    async def send_transaction(self, address: str, value: int) -> str:
        return await self.send_batch_transaction([(address, value)])

    async def send_batch_transaction(self, outputs: Sequence[Tuple[str, int]]) -> str:
        tx = funding_tx([(address_to_script(a, self.network), v) for a, v in outputs])
        return self.add_tx(tx, [a for a, _ in outputs])


@pytest.fixture
def terms() -> CollateralTerms:
    return make_terms()


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def signer():
    pytest.importorskip('coincurve', reason='coincurve not installed')
    from collateral.signing import LocalKeySigner
    return LocalKeySigner([BORROWER_SK, LENDER_SK, AGENT_SK, LIQUIDATOR_SK])


def make_leg(terms, seizable=False, value=100_000, kind=None, variant=None):
    """A collateral leg funded by a fresh single-output transaction."""
    script = build_redeem_script(terms.keys, terms.hashes, terms.expirations, seizable, variant or CANONICAL)
    pv = derive_payment_variants(script, REGTEST)[kind or PaymentKind.P2WSH]
    tx = funding_tx([(pv.locking_script, value)])
    return CollateralLeg(match_collateral_output(tx, pv), seizable, b2x(tx.serialize()))


def borrower_address(terms) -> str:
    return pubkey_to_address(terms.keys.pubkey(Party.BORROWER), 'p2wpkh', REGTEST)

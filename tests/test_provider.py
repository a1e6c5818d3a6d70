import asyncio

import pytest

from bitcointx.core import CTransaction, b2lx, x
from bitcointx.core.script import OP_TRUE, CScript

from collateral.assembler import OutputSpec
from collateral.errors import ConfigurationError, PollTimeoutError, ScriptMatchError, SecretMismatchError
from collateral.params import CollateralValues, Party
from collateral.provider import CollateralProvider, ProviderConfig
from collateral.unlock import FALSE_SELECTOR, TRUE_SELECTOR
from collateral.variants import address_to_script, pubkey_to_address

from conftest import LIQUIDATION, LIQUIDATOR_PK, REGTEST, SECRETS, SEIZURE, funding_tx

VALUES = CollateralValues(60_000, 40_000)


def _provider(chain, signer=None, **config):
    return CollateralProvider(ProviderConfig(**config), chain=chain, broadcaster=chain, signer=signer,
                              fee_oracle=chain, funder=chain)


def _last_broadcast(chain):
    return CTransaction.deserialize(x(chain.broadcast[-1]))


def _stacks(tx):
    return [list(w.scriptWitness.stack) for w in tx.wit.vtxinwit]


def test_config_validation(chain):
    for bad in ({'script_mode': 'p2tr'}, {'address_mode': 'p2wsh'}, {'network': 'litecoin'},
                {'variant': 'nope'}, {'fee_per_byte': -1}, {'poll_interval': 0}, {'poll_timeout': -1}):
        with pytest.raises(ConfigurationError):
            _provider(chain, **bad)


def test_lock_addresses_follow_mode(chain, terms):
    p2wsh = _provider(chain).lock_addresses(terms)
    assert p2wsh.refundable.startswith('bcrt1q') and p2wsh.seizable.startswith('bcrt1q')
    assert p2wsh.refundable != p2wsh.seizable
    p2sh = _provider(chain, script_mode='p2sh').lock_addresses(terms)
    assert p2sh.refundable.startswith('2')
    assert _provider(chain, address_mode='p2pkh').party_address(terms, Party.LENDER)[0] in 'mn'


def test_lock_funds_both_addresses(chain, terms):
    provider = _provider(chain)
    ref_txid, sei_txid = asyncio.run(provider.lock(VALUES, terms))
    addresses = provider.lock_addresses(terms)
    ref_tx = CTransaction.deserialize(x(chain.txs[ref_txid]))
    assert ref_tx.vout[0].nValue == 60_000
    assert bytes(ref_tx.vout[0].scriptPubKey) == bytes(address_to_script(addresses.refundable, REGTEST))
    assert chain.by_address[addresses.seizable] == [sei_txid]
    with pytest.raises(ConfigurationError):
        asyncio.run(provider.lock(CollateralValues(0, 1), terms))


def test_refund_spends_both_legs_with_secret(chain, terms, signer):
    provider = _provider(chain, signer)
    txids = asyncio.run(provider.lock(VALUES, terms))
    spend_txid = asyncio.run(provider.refund(list(txids), terms, SECRETS['B1']))

    tx = _last_broadcast(chain)
    assert b2lx(tx.GetTxid()) == spend_txid
    assert len(tx.vin) == 2 and len(tx.vout) == 1
    assert tx.nLockTime == 0
    assert bytes(tx.vout[0].scriptPubKey) == bytes(address_to_script(provider.party_address(terms, Party.BORROWER), REGTEST))
    fee = VALUES.total - tx.vout[0].nValue
    assert fee > 0 and fee % chain.fee_per_byte == 0
    # placeholders are worst case, so the real size never exceeds the paid size
    assert tx.get_virtual_size() * chain.fee_per_byte <= fee
    for stack in _stacks(tx):
        assert SECRETS['B1'] in stack
        assert stack[-2] == TRUE_SELECTOR
        assert stack[1] == terms.keys.borrower


def test_refund_with_agent_secret(chain, terms, signer):
    provider = _provider(chain, signer)
    txids = asyncio.run(provider.lock(VALUES, terms))
    asyncio.run(provider.refund(txids, terms, SECRETS['C1']))
    for stack in _stacks(_last_broadcast(chain)):
        # C1 is the second slot, pushed first
        assert stack[2:4] == [SECRETS['C1'], FALSE_SELECTOR]


def test_refund_rejects_wrong_secret(chain, terms, signer):
    provider = _provider(chain, signer)
    txids = asyncio.run(provider.lock(VALUES, terms))
    with pytest.raises(SecretMismatchError):
        asyncio.run(provider.refund(txids, terms, SECRETS['A1']))
    assert chain.broadcast == []


def test_refund_batch_lock(chain, terms, signer):
    provider = _provider(chain, signer)
    txid = asyncio.run(provider.lock_batch(VALUES, terms))
    asyncio.run(provider.refund(txid, terms, SECRETS['B1']))
    tx = _last_broadcast(chain)
    assert len(tx.vin) == 2
    assert {b2lx(i.prevout.hash) for i in tx.vin} == {txid}


def test_refund_many_locks_in_one_spend(chain, terms, signer):
    provider = _provider(chain, signer)
    address = provider.lock_addresses(terms).refundable
    txids = [asyncio.run(chain.send_transaction(address, 10_000 + i)) for i in range(5)]
    asyncio.run(provider.refund(txids, terms, SECRETS['B1']))
    tx = _last_broadcast(chain)
    assert len(tx.vin) == 5 and len(tx.vout) == 1
    assert [b2lx(i.prevout.hash) for i in tx.vin] == txids


def test_refund_rejects_unrelated_txid(chain, terms, signer):
    provider = _provider(chain, signer)
    txids = list(asyncio.run(provider.lock(VALUES, terms)))
    stray = chain.add_tx(funding_tx([(CScript([OP_TRUE]), 5_000)]))
    with pytest.raises(ScriptMatchError, match=stray):
        asyncio.run(provider.refund(txids + [stray], terms, SECRETS['B1']))
    assert chain.broadcast == []


def test_refund_one_leg(chain, terms, signer):
    provider = _provider(chain, signer)
    txid = asyncio.run(provider.lock_batch(VALUES, terms))
    asyncio.run(provider.refund_one(txid, terms, SECRETS['B1'], seizable=True))
    tx = _last_broadcast(chain)
    assert len(tx.vin) == 1
    funding = CTransaction.deserialize(x(chain.txs[txid]))
    assert funding.vout[tx.vin[0].prevout.n].nValue == 40_000


def test_seize_takes_only_seizable_leg(chain, terms, signer):
    provider = _provider(chain, signer)
    txids = asyncio.run(provider.lock(VALUES, terms))
    asyncio.run(provider.seize(txids, terms, SECRETS['A1']))
    tx = _last_broadcast(chain)
    assert len(tx.vin) == 1 and b2lx(tx.vin[0].prevout.hash) == txids[1]
    assert tx.nLockTime == LIQUIDATION
    assert bytes(tx.vout[0].scriptPubKey) == bytes(address_to_script(provider.party_address(terms, Party.LENDER), REGTEST))
    stack = _stacks(tx)[0]
    assert stack[1] == terms.keys.lender
    assert stack[2:6] == [SECRETS['A1'], TRUE_SELECTOR, FALSE_SELECTOR, FALSE_SELECTOR]


def test_seize_requires_the_seizure_secret(chain, terms, signer):
    provider = _provider(chain, signer)
    txids = asyncio.run(provider.lock(VALUES, terms))
    with pytest.raises(ConfigurationError, match='A1'):
        asyncio.run(provider.seize(txids, terms))
    with pytest.raises(SecretMismatchError):
        asyncio.run(provider.seize(txids, terms, SECRETS['B1']))


def test_seize_without_seizable_leg(chain, terms, signer):
    provider = _provider(chain, signer)
    address = provider.lock_addresses(terms).refundable
    txid = asyncio.run(chain.send_transaction(address, 10_000))
    with pytest.raises(ScriptMatchError, match='No collateral outputs'):
        asyncio.run(provider.seize(txid, terms, SECRETS['A1']))


def test_reclaim_after_seizure_expiration(chain, terms, signer):
    provider = _provider(chain, signer)
    txids = asyncio.run(provider.lock(VALUES, terms))
    asyncio.run(provider.reclaim(txids, terms))
    tx = _last_broadcast(chain)
    assert len(tx.vin) == 2 and tx.nLockTime == SEIZURE
    for stack in _stacks(tx):
        assert stack[2:5] == [FALSE_SELECTOR] * 3
    asyncio.run(provider.reclaim(txids, terms, seizable=False))
    assert len(_last_broadcast(chain).vin) == 1


@pytest.mark.parametrize('mode', ['p2sh', 'p2sh_p2wsh'])
def test_refund_in_wrapped_modes(chain, terms, signer, mode):
    provider = _provider(chain, signer, script_mode=mode)
    txids = asyncio.run(provider.lock(VALUES, terms))
    asyncio.run(provider.refund(txids, terms, SECRETS['B1']))
    tx = _last_broadcast(chain)
    assert all(len(i.scriptSig) > 0 for i in tx.vin)
    if mode == 'p2sh':
        assert all(SECRETS['B1'] in bytes(i.scriptSig) for i in tx.vin)
    else:
        assert all(SECRETS['B1'] in stack for stack in _stacks(tx))


def test_fixed_fee_rate_skips_oracle(chain, terms, signer):
    provider = _provider(chain, signer, fee_per_byte=5)
    txids = asyncio.run(provider.lock(VALUES, terms))
    asyncio.run(provider.refund(txids, terms, SECRETS['B1']))
    assert chain.fee_calls == 0
    assert (VALUES.total - _last_broadcast(chain).vout[0].nValue) % 5 == 0


def test_spend_needs_signer_and_fee_source(chain, terms, signer):
    provider = _provider(chain)
    txids = asyncio.run(provider.lock(VALUES, terms))
    with pytest.raises(ConfigurationError, match='signer'):
        asyncio.run(provider.refund(txids, terms, SECRETS['B1']))
    bare = CollateralProvider(ProviderConfig(), chain=chain, broadcaster=chain, signer=signer)
    with pytest.raises(ConfigurationError, match='fee oracle'):
        asyncio.run(bare.refund(txids, terms, SECRETS['B1']))
    with pytest.raises(ConfigurationError, match='funder'):
        asyncio.run(bare.lock(VALUES, terms))


def test_multisig_sign_build_send(chain, terms, signer):
    provider = _provider(chain, signer, fee_per_byte=3)
    txids = asyncio.run(provider.lock(VALUES, terms))
    outputs = [OutputSpec(provider.party_address(terms, Party.LENDER))]
    lender = asyncio.run(provider.multisig_sign(txids, terms, Party.LENDER, outputs))
    agent = asyncio.run(provider.multisig_sign(txids, terms, Party.AGENT, outputs))
    assert len(lender) == len(agent) == 2

    tx_hex = asyncio.run(provider.multisig_build(txids, terms, outputs, {Party.AGENT: agent, Party.LENDER: lender}))
    tx = CTransaction.deserialize(x(tx_hex))
    assert tx.nLockTime == terms.expirations.approve
    assert chain.broadcast == []
    for i, stack in enumerate(_stacks(tx)):
        assert stack[1:3] == [lender[i], agent[i]]

    txid = asyncio.run(provider.multisig_send(txids, terms, outputs, {Party.LENDER: lender, Party.AGENT: agent}))
    assert chain.broadcast == [tx_hex]
    assert txid == b2lx(tx.GetTxid())


def test_multisig_needs_agreed_fee(chain, terms, signer):
    provider = _provider(chain, signer)
    txids = asyncio.run(provider.lock(VALUES, terms))
    outputs = [OutputSpec(provider.party_address(terms, Party.LENDER))]
    with pytest.raises(ConfigurationError, match='agreed fee'):
        asyncio.run(provider.multisig_sign(txids, terms, Party.LENDER, outputs))
    sigs = asyncio.run(provider.multisig_sign(txids, terms, Party.LENDER, outputs, fee=2_000))
    assert len(sigs) == 2


def test_find_lock_transaction(chain, terms):
    provider = _provider(chain, poll_interval=0.01, poll_timeout=0.05)
    ref_txid, sei_txid = asyncio.run(provider.lock(VALUES, terms))
    assert asyncio.run(provider.find_lock_transaction(terms)) == ref_txid
    assert asyncio.run(provider.find_lock_transaction(terms, seizable=True)) == sei_txid


def test_find_lock_transaction_times_out(chain, terms):
    provider = _provider(chain, poll_interval=0.01, poll_timeout=0.05)
    with pytest.raises(PollTimeoutError):
        asyncio.run(provider.find_lock_transaction(terms))
    with pytest.raises(TimeoutError):
        asyncio.run(provider.find_lock_transaction(terms, seizable=True))


def test_find_spend_transaction(chain, terms, signer):
    provider = _provider(chain, signer, poll_interval=0.01, poll_timeout=0.05)
    ref_txid, sei_txid = asyncio.run(provider.lock(VALUES, terms))
    with pytest.raises(PollTimeoutError):
        asyncio.run(provider.find_spend_transaction(ref_txid, terms))
    spend_txid = asyncio.run(provider.refund([ref_txid, sei_txid], terms, SECRETS['B1']))
    # the node's address index now lists the spend under both lock addresses
    addresses = provider.lock_addresses(terms)
    chain.add_tx(_last_broadcast(chain), [addresses.refundable, addresses.seizable])
    assert asyncio.run(provider.find_spend_transaction(ref_txid, terms)) == spend_txid
    assert asyncio.run(provider.find_spend_transaction(sei_txid, terms, seizable=True)) == spend_txid
    with pytest.raises(ScriptMatchError):
        asyncio.run(provider.find_spend_transaction(ref_txid, terms, seizable=True))


def test_regain_takes_only_refundable_leg(chain, terms, signer):
    provider = _provider(chain, signer)
    txids = asyncio.run(provider.lock(VALUES, terms))
    asyncio.run(provider.regain(txids, terms, SECRETS['A1']))
    tx = _last_broadcast(chain)
    assert len(tx.vin) == 1 and b2lx(tx.vin[0].prevout.hash) == txids[0]
    assert tx.nLockTime == LIQUIDATION
    assert bytes(tx.vout[0].scriptPubKey) == bytes(address_to_script(provider.party_address(terms, Party.BORROWER), REGTEST))
    stack = _stacks(tx)[0]
    assert stack[1] == terms.keys.borrower
    assert stack[2:6] == [SECRETS['A1'], TRUE_SELECTOR, FALSE_SELECTOR, FALSE_SELECTOR]
    with pytest.raises(ConfigurationError, match='A1'):
        asyncio.run(provider.regain(txids, terms))


def test_regain_swap_needs_no_secret(chain, terms, signer):
    provider = _provider(chain, signer, variant='swap')
    txids = asyncio.run(provider.lock(VALUES, terms))
    asyncio.run(provider.regain(txids, terms))
    tx = _last_broadcast(chain)
    assert len(tx.vin) == 1 and b2lx(tx.vin[0].prevout.hash) == txids[0]
    assert _stacks(tx)[0][1:4] == [terms.keys.borrower, FALSE_SELECTOR, FALSE_SELECTOR]


def test_regain_not_available_when_lender_guards_both_legs(chain, terms, signer):
    provider = _provider(chain, signer, variant='legacy')
    txids = asyncio.run(provider.lock(VALUES, terms))
    with pytest.raises(ConfigurationError, match='seized by the lender'):
        asyncio.run(provider.regain(txids, terms, SECRETS['A1']))
    assert chain.broadcast == []


def test_claim_swap_with_three_secrets(chain, terms, signer):
    provider = _provider(chain, signer, variant='swap')
    txids = asyncio.run(provider.lock(VALUES, terms))
    pubkey = x(LIQUIDATOR_PK)
    # any order; placed into A1, B1, C1, D1 slots
    spend_txid = asyncio.run(provider.claim(txids, terms, [SECRETS['D1'], SECRETS['C1'], SECRETS['A1']], pubkey))
    tx = _last_broadcast(chain)
    assert b2lx(tx.GetTxid()) == spend_txid
    assert len(tx.vin) == 2 and tx.nLockTime == 0
    assert bytes(tx.vout[0].scriptPubKey) == bytes(address_to_script(pubkey_to_address(pubkey, 'p2wpkh', REGTEST), REGTEST))
    for stack in _stacks(tx):
        assert stack[1] == pubkey
        assert stack[2:7] == [SECRETS['D1'], SECRETS['C1'], FALSE_SELECTOR, SECRETS['A1'], TRUE_SELECTOR]


def test_claim_rejections(chain, terms, signer):
    provider = _provider(chain, signer, variant='swap')
    txids = asyncio.run(provider.lock(VALUES, terms))
    pubkey = x(LIQUIDATOR_PK)
    with pytest.raises(SecretMismatchError, match='needs 3 secrets'):
        asyncio.run(provider.claim(txids, terms, [SECRETS['A1'], SECRETS['D1']], pubkey))
    with pytest.raises(SecretMismatchError, match='D1'):
        asyncio.run(provider.claim(txids, terms, [SECRETS['A1'], SECRETS['B1'], SECRETS['C1']], pubkey))
    with pytest.raises(SecretMismatchError, match='twice'):
        asyncio.run(provider.claim(txids, terms, [SECRETS['A1'], SECRETS['A1'], SECRETS['D1']], pubkey))
    with pytest.raises(SecretMismatchError):
        asyncio.run(provider.claim(txids, terms, [SECRETS['A2'], SECRETS['B1'], SECRETS['D1']], pubkey))
    with pytest.raises(ConfigurationError, match='liquidator pubkey hash'):
        asyncio.run(provider.claim(txids, terms, [SECRETS['A1'], SECRETS['B1'], SECRETS['D1']], terms.keys.lender))
    with pytest.raises(ConfigurationError, match='use claim'):
        asyncio.run(provider.refund(txids, terms, SECRETS['B1']))
    assert chain.broadcast == []


def test_claim_needs_a_swap_layout(chain, terms, signer):
    provider = _provider(chain, signer)
    txids = asyncio.run(provider.lock(VALUES, terms))
    with pytest.raises(ConfigurationError, match='no liquidator claim'):
        asyncio.run(provider.claim(txids, terms, [SECRETS['A1'], SECRETS['B1'], SECRETS['D1']], x(LIQUIDATOR_PK)))

#!/usr/bin/env python3
"""
Collateral CLI: redeem script builder, address deriver, unlock compiler and
spend verifier

Quick start (regtest sketch)
1) Collect params: borrower/lender/agent compressed pubkeys, secret hashes
   (A1, B1, C1), approve/liquidation/seizure expirations
2) Print the addresses to fund:
   python -m collateral.cli addresses --borrower-pk <pk> --lender-pk <pk> --agent-pk <pk> \
       --secret-hash A1=<h> --secret-hash B1=<h> --secret-hash C1=<h> \
       --approve <t1> --liquidation <t2> --seizure <t3> --network bitcoin/regtest
3) Locate the collateral output in the funding tx:
   python -m collateral.cli match-output ... --tx-file funding.hex
4) After signing, check a spend input against its funding tx:
   python -m collateral.cli verify-spend --tx-file spend.hex --funding-tx-file funding.hex --index 0

Notes
- Signatures come from your wallet; this tool never handles private keys.
- Timelocks are enforced by the network, not by verify-spend.
"""
import argparse
import json
import logging
import sys
from typing import Dict, List, Optional, Sequence

from .hexutil import parse_hex
from .params import CollateralTerms, ExpirationSet, PartyKeys, SecretHashSet
from .template import VARIANTS, Period, build_redeem_script, disasm, get_variant
from .txio import list_outputs, load_tx
from .unlock import build_unlock_items, to_script_sig, to_witness, wrapped_script_sig
from .variants import NETWORKS, PaymentKind, derive_payment_variants, match_collateral_output
from .verify import verify_spend


def _parse_slot_pairs(name: str, pairs: Optional[Sequence[str]]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for pair in pairs or []:
        slot, sep, value = pair.partition('=')
        if not sep or not slot or not value:
            raise ValueError(f"{name} must look like SLOT=HEX (got {pair!r})")
        out[slot.strip().upper()] = value.strip()
    return out


def _terms_from_args(args: argparse.Namespace) -> CollateralTerms:
    keys = PartyKeys.from_hex(args.borrower_pk, args.lender_pk, args.agent_pk, args.liquidator_pkh)
    hashes = SecretHashSet.from_hex(**_parse_slot_pairs('--secret-hash', args.secret_hash))
    expirations = ExpirationSet(args.approve, args.liquidation, args.seizure)
    return CollateralTerms(keys, hashes, expirations)


def _print(args: argparse.Namespace, out: Dict) -> None:
    if args.json:
        print(json.dumps(out))
        return
    width = max(len(k) for k in out)
    for k, v in out.items():
        print(f"{k.ljust(width)} = {v}")


def cmd_build(args: argparse.Namespace) -> None:
    terms = _terms_from_args(args)
    variant = get_variant(args.variant)
    script = build_redeem_script(terms.keys, terms.hashes, terms.expirations, args.seizable, variant)
    out: Dict[str, object] = {'redeem_script_hex': script.hex(), 'script_size': len(script)}
    for kind, pv in derive_payment_variants(script, args.network).items():
        out[f'{kind.value}_address'] = pv.address
        out[f'{kind.value}_spk'] = pv.locking_script.hex()
    if args.disasm:
        out['disasm'] = disasm(script)
    _print(args, out)


def cmd_addresses(args: argparse.Namespace) -> None:
    terms = _terms_from_args(args)
    variant = get_variant(args.variant)
    kind = PaymentKind.parse(args.script_mode)
    out: Dict[str, object] = {'script_mode': kind.value}
    for label, seizable in (('refundable', False), ('seizable', True)):
        script = build_redeem_script(terms.keys, terms.hashes, terms.expirations, seizable, variant)
        out[f'{label}_address'] = derive_payment_variants(script, args.network)[kind].address
    _print(args, out)


def cmd_unlock(args: argparse.Namespace) -> None:
    variant = get_variant(args.variant)
    period = Period.parse(args.period)
    sigs = [parse_hex('sig', s) for s in args.sig or []]
    pubkey = parse_hex('pubkey', args.pubkey, 33) if args.pubkey else None
    given = _parse_slot_pairs('--secret', args.secret)
    slots = variant.secret_slots(period)
    unknown = set(given) - set(slots)
    if unknown:
        raise ValueError(f"{period.label} branch does not take secret(s) {', '.join(sorted(unknown))}")
    secrets: List[Optional[bytes]] = [parse_hex(f'secret {s}', given[s], 32) if s in given else None for s in slots]
    items = build_unlock_items(variant, period, sigs, secrets, pubkey)
    out: Dict[str, object] = {'period': period.label, 'items': [i.hex() for i in items]}
    if args.script:
        script = parse_hex('script', args.script)
        kind = PaymentKind.parse(args.script_mode)
        if kind is PaymentKind.P2SH:
            out['script_sig'] = to_script_sig(items, script).hex()
        else:
            out['witness'] = [bytes(i).hex() for i in to_witness(items, script).stack]
            if kind is PaymentKind.P2SH_P2WSH:
                out['script_sig'] = wrapped_script_sig(script).hex()
    _print(args, out)


def cmd_match_output(args: argparse.Namespace) -> None:
    terms = _terms_from_args(args)
    variant = get_variant(args.variant)
    kind = PaymentKind.parse(args.script_mode)
    tx = load_tx('tx', args.tx, args.tx_file)
    script = build_redeem_script(terms.keys, terms.hashes, terms.expirations, args.seizable, variant)
    output = match_collateral_output(tx, derive_payment_variants(script, args.network)[kind])
    _print(args, {'txid': output.txid, 'vout': output.vout, 'value': output.value, 'address': output.variant.address})


def cmd_show_outputs(args: argparse.Namespace) -> None:
    tx = load_tx('tx', args.tx, args.tx_file)
    rows = list_outputs(tx)
    if args.json:
        print(json.dumps(rows))
    else:
        for r in rows:
            print(f"{r['index']}: value={r['value']} spk={r['spk']}")


def cmd_verify_spend(args: argparse.Namespace) -> None:
    tx = load_tx('tx', args.tx, args.tx_file)
    funding = load_tx('funding tx', args.funding_tx, args.funding_tx_file)
    res = verify_spend(tx, funding, args.index)
    if args.json:
        print(json.dumps(res))
    else:
        print('[OK] input satisfies its locking script' if res['ok'] else '[FAIL] script verification failed')
        print('index   =', res['index'])
        print('prevout =', res['prevout'])
        if res['reason']:
            print('reason  =', res['reason'])


def _add_terms_args(p: argparse.ArgumentParser) -> None:
    p.add_argument('--borrower-pk', required=True, help='33B hex compressed pubkey')
    p.add_argument('--lender-pk', required=True, help='33B hex compressed pubkey')
    p.add_argument('--agent-pk', required=True, help='33B hex compressed pubkey')
    p.add_argument('--liquidator-pkh', help='20B hex liquidator pubkey hash (swap variant)')
    p.add_argument('--secret-hash', action='append', metavar='SLOT=HEX',
                   help='32B hex sha256 commitment for a slot (A1, A2, B1, B2, C1, C2, D1); repeatable')
    p.add_argument('--approve', required=True, type=int, help='approve expiration (absolute locktime)')
    p.add_argument('--liquidation', required=True, type=int, help='liquidation expiration (absolute locktime)')
    p.add_argument('--seizure', type=int, help='seizure expiration (absolute locktime)')
    p.add_argument('--variant', default='canonical', choices=sorted(VARIANTS), help='script feature set')
    p.add_argument('--network', default='bitcoin', choices=NETWORKS, help='address encoding network')


def main():
    ap = argparse.ArgumentParser(description="Collateral CLI (build scripts, derive addresses, verify spends)",
                                 epilog=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    ap.add_argument('-v', '--verbose', action='store_true', help='debug logging to stderr')
    sub = ap.add_subparsers(dest='cmd', required=True)
    modes = [k.value for k in PaymentKind]

    ap_b = sub.add_parser('build-script', help='build one redeem script and its three addresses')
    _add_terms_args(ap_b)
    ap_b.add_argument('--seizable', action='store_true', help='build the seizable leg (default: refundable)')
    ap_b.add_argument('--disasm', action='store_true', help='print opcode disassembly')
    ap_b.add_argument('--json', action='store_true', help='print JSON output')
    ap_b.set_defaults(func=cmd_build)

    ap_a = sub.add_parser('addresses', help='refundable and seizable addresses for the script mode')
    _add_terms_args(ap_a)
    ap_a.add_argument('--script-mode', default='p2wsh', choices=modes)
    ap_a.add_argument('--json', action='store_true', help='print JSON output')
    ap_a.set_defaults(func=cmd_addresses)

    ap_u = sub.add_parser('unlock', help='compile unlocking stack items for a period')
    ap_u.add_argument('--variant', default='canonical', choices=sorted(VARIANTS))
    ap_u.add_argument('--period', required=True, help='loan | liquidation | seizure | refund')
    ap_u.add_argument('--sig', action='append', help='DER signature + sighash byte (hex); repeat for multisig')
    ap_u.add_argument('--pubkey', help='33B hex signer pubkey (single-signature branches)')
    ap_u.add_argument('--secret', action='append', metavar='SLOT=HEX', help='revealed preimage for a slot')
    ap_u.add_argument('--script', help='redeem script hex; adds witness/scriptSig for --script-mode')
    ap_u.add_argument('--script-mode', default='p2wsh', choices=modes)
    ap_u.add_argument('--json', action='store_true', help='print JSON output')
    ap_u.set_defaults(func=cmd_unlock)

    ap_m = sub.add_parser('match-output', help='locate the collateral output in a funding transaction')
    _add_terms_args(ap_m)
    ap_m.add_argument('--seizable', action='store_true', help='match the seizable leg (default: refundable)')
    ap_m.add_argument('--script-mode', default='p2wsh', choices=modes)
    ap_m.add_argument('--tx', help='funding tx hex')
    ap_m.add_argument('--tx-file', help='read funding tx hex from file')
    ap_m.add_argument('--json', action='store_true', help='print JSON output')
    ap_m.set_defaults(func=cmd_match_output)

    ap_s = sub.add_parser('show-outputs', help='list transaction outputs (index, value, scriptPubKey hex)')
    ap_s.add_argument('--tx', help='tx hex')
    ap_s.add_argument('--tx-file', help='read tx hex from file')
    ap_s.add_argument('--json', action='store_true', help='print JSON output')
    ap_s.set_defaults(func=cmd_show_outputs)

    ap_v = sub.add_parser('verify-spend', help='run the script interpreter on one input of a spend')
    ap_v.add_argument('--tx', help='spending tx hex')
    ap_v.add_argument('--tx-file', help='read spending tx hex from file')
    ap_v.add_argument('--funding-tx', help='funding tx hex')
    ap_v.add_argument('--funding-tx-file', help='read funding tx hex from file')
    ap_v.add_argument('--index', type=int, default=0, help='input index to verify')
    ap_v.add_argument('--json', action='store_true', help='print JSON output')
    ap_v.set_defaults(func=cmd_verify_spend)

    args = ap.parse_args()
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING, stream=sys.stderr,
                        format='%(levelname)s %(name)s: %(message)s')
    args.func(args)


if __name__ == '__main__':
    main()

"""
Chain collaborators: the narrow interfaces the engine needs from a node or
wallet, a bounded polling helper, and a bitcoin-cli backed implementation.

bitcoin-cli usage (regtest sketch)
  bitcoind -regtest -txindex -addressindex
  chain = BitcoinCliChain('bitcoin/regtest', wallet='borrower')

getaddresstxids/getaddressmempool need a node built with the address index
(the same RPCs the "find" operations rely on).
"""
from __future__ import annotations

import asyncio
import json
import logging
import math
import subprocess
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Tuple, TypeVar

from .errors import CommandError, ConfigurationError, PollTimeoutError

log = logging.getLogger(__name__)

T = TypeVar('T')

DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_POLL_TIMEOUT = 600.0
SATS_PER_COIN = Decimal(100_000_000)

_CLI_NETWORK_FLAGS = {
    'bitcoin': None,
    'bitcoin/testnet': '-testnet',
    'bitcoin/regtest': '-regtest',
    'bitcoin/signet': '-signet',
}


class ChainReader(Protocol):
    async def get_raw_transaction(self, txid: str) -> str:
        ...

    async def get_address_txids(self, address: str) -> List[str]:
        """Confirmed and mempool txids touching the address."""
        ...


class Broadcaster(Protocol):
    async def send_raw_transaction(self, tx_hex: str) -> str:
        ...


class FeeOracle(Protocol):
    async def get_fee_per_byte(self) -> int:
        ...


class Funder(Protocol):
    async def send_transaction(self, address: str, value: int) -> str:
        ...

    async def send_batch_transaction(self, outputs: Sequence[Tuple[str, int]]) -> str:
        ...


async def poll_until(fetch: Callable[[], Awaitable[Optional[T]]], *, interval: float = DEFAULT_POLL_INTERVAL,
                     timeout: Optional[float] = DEFAULT_POLL_TIMEOUT, what: str = 'match') -> T:
    """Call ``fetch`` every ``interval`` seconds until it returns non-None.

    Raises PollTimeoutError after ``timeout`` seconds (None waits until the
    task is cancelled).
    """
    loop = asyncio.get_running_loop()
    deadline = None if timeout is None else loop.time() + timeout
    while True:
        result = await fetch()
        if result is not None:
            return result
        if deadline is not None and loop.time() + interval > deadline:
            raise PollTimeoutError(f"no {what} after {timeout:g}s")
        log.debug("waiting %.1fs for %s", interval, what)
        await asyncio.sleep(interval)


def sats_to_coins(value: int) -> str:
    return f"{Decimal(value) / SATS_PER_COIN:.8f}"


class BitcoinCliChain:
    """ChainReader, Broadcaster, FeeOracle and Funder over bitcoin-cli."""

    def __init__(self, network: str = 'bitcoin/regtest', *, wallet: Optional[str] = None,
                 cli: str = 'bitcoin-cli', extra_args: Sequence[str] = (),
                 conf_target: int = 6, fallback_fee_per_byte: int = 1) -> None:
        if network not in _CLI_NETWORK_FLAGS:
            raise ConfigurationError(f"unknown network {network!r}")
        self.network = network
        self.wallet = wallet
        self.cli = cli
        self.extra_args = list(extra_args)
        self.conf_target = conf_target
        self.fallback_fee_per_byte = fallback_fee_per_byte

    def command(self, method: str, *params: str) -> List[str]:
        cmd = [self.cli]
        flag = _CLI_NETWORK_FLAGS[self.network]
        if flag:
            cmd.append(flag)
        if self.wallet:
            cmd.append(f"-rpcwallet={self.wallet}")
        return cmd + self.extra_args + [method, *params]

    def _run_sync(self, method: str, *params: str) -> str:
        args = self.command(method, *params)
        try:
            return subprocess.check_output(args, stderr=subprocess.STDOUT).decode().strip()
        except subprocess.CalledProcessError as e:
            raise CommandError(method, e.returncode, e.output.decode().strip()) from e

    async def call(self, method: str, *params: str) -> str:
        return await asyncio.to_thread(self._run_sync, method, *params)

    async def call_json(self, method: str, *params: str) -> Any:
        return json.loads(await self.call(method, *params))

    async def get_raw_transaction(self, txid: str) -> str:
        return await self.call('getrawtransaction', txid)

    async def get_address_txids(self, address: str) -> List[str]:
        query = json.dumps({'addresses': [address]})
        confirmed = await self.call_json('getaddresstxids', query)
        pending = await self.call_json('getaddressmempool', query)
        txids: List[str] = []
        for txid in list(confirmed) + [d['txid'] for d in pending]:
            if txid not in txids:
                txids.append(txid)
        return txids

    async def send_raw_transaction(self, tx_hex: str) -> str:
        txid = await self.call('sendrawtransaction', tx_hex)
        log.info("broadcast %s", txid)
        return txid

    async def get_fee_per_byte(self) -> int:
        est = await self.call_json('estimatesmartfee', str(self.conf_target))
        rate = est.get('feerate')
        if rate is None:
            log.warning("estimatesmartfee returned no rate (%s); using %d sat/vB",
                        ', '.join(est.get('errors', [])) or 'no data', self.fallback_fee_per_byte)
            return self.fallback_fee_per_byte
        # BTC/kvB -> sat/vB, rounded up
        return max(1, math.ceil(Decimal(str(rate)) * SATS_PER_COIN / 1000))

    async def send_transaction(self, address: str, value: int) -> str:
        return await self.call('sendtoaddress', address, sats_to_coins(value))

    async def send_batch_transaction(self, outputs: Sequence[Tuple[str, int]]) -> str:
        amounts: Dict[str, str] = {}
        for address, value in outputs:
            amounts[address] = sats_to_coins(value)
        return await self.call('sendmany', '', json.dumps(amounts))

"""
Raw transaction IO helpers (thin wrappers around python-bitcointx via dynamic import).

Load transactions from hex strings or files, serialize them back to hex
for broadcasting, and summarise outputs for display.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from .hexutil import file_or_hex


def _imp_transaction():
    import importlib
    return importlib.import_module('bitcointx.core').CTransaction


def _imp_b2x():
    import importlib
    return importlib.import_module('bitcointx.core').b2x


def _imp_b2lx():
    import importlib
    return importlib.import_module('bitcointx.core').b2lx


def decode_tx(raw: bytes) -> Any:
    """Deserialize raw bytes into a bitcointx CTransaction."""
    return _imp_transaction().deserialize(raw)


def load_tx(name: str, hex_value: Optional[str] = None, file_path: Optional[str] = None) -> Any:
    """Load a transaction from a hex string or a file containing hex."""
    return decode_tx(file_or_hex(name, hex_value, file_path))


def to_raw_tx_hex(tx: Any) -> str:
    b2x = _imp_b2x()
    return b2x(tx.serialize())


def txid_of(tx: Any) -> str:
    b2lx = _imp_b2lx()
    return b2lx(tx.GetTxid())


def list_outputs(tx: Any) -> List[Dict[str, Any]]:
    return [{'index': i, 'value': int(out.nValue), 'spk': out.scriptPubKey.hex()} for i, out in enumerate(tx.vout)]

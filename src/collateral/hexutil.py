"""
Hex input helpers for keys, hashes, secrets and raw transactions.

All parsing funnels through parse_hex so error messages name the field that
was malformed.
"""
from __future__ import annotations

import binascii
import re
from typing import Optional, Union

_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")

HexOrBytes = Union[str, bytes, bytearray]


def is_hex_str(s: str) -> bool:
    return bool(_HEX_RE.fullmatch(s or ""))


def parse_hex(name: str, s: Optional[str], length: Optional[int] = None) -> bytes:
    """Parse a hex string into bytes with optional fixed-length validation.

    Args:
        name: human-readable name for error messages.
        s: hex string (case-insensitive, even length required).
        length: expected length in bytes (optional). If set, enforce exact length.
    """
    if s is None:
        raise ValueError(f"{name} is required")
    s = s.strip()
    if not is_hex_str(s) or len(s) % 2 != 0:
        raise ValueError(f"Invalid hex for {name}")
    try:
        b = binascii.unhexlify(s)
    except binascii.Error:
        raise ValueError(f"Invalid hex for {name}")
    if length is not None and len(b) != length:
        raise ValueError(f"{name} must be {length} bytes (got {len(b)})")
    return b


def as_bytes(name: str, value: Optional[HexOrBytes], length: Optional[int] = None) -> bytes:
    """Accept either raw bytes or a hex string and return bytes."""
    if isinstance(value, (bytes, bytearray)):
        b = bytes(value)
        if length is not None and len(b) != length:
            raise ValueError(f"{name} must be {length} bytes (got {len(b)})")
        return b
    return parse_hex(name, value, length)


def parse_pubkey(name: str, value: Optional[HexOrBytes]) -> bytes:
    """Compressed secp256k1 public key (33 bytes, 02/03 prefix)."""
    b = as_bytes(name, value, 33)
    if b[0] not in (2, 3):
        raise ValueError(f"{name} must be a compressed pubkey (02/03 prefix)")
    return b


def parse_hash32(name: str, value: Optional[HexOrBytes]) -> bytes:
    return as_bytes(name, value, 32)


def file_or_hex(name: str, hex_value: Optional[str], file_path: Optional[str], *, length: Optional[int] = None) -> bytes:
    """Read bytes from a hex string or a file containing hex.

    Precedence: hex_value if provided; otherwise file_path is used.
    """
    if hex_value:
        return parse_hex(name, hex_value, length)
    if file_path:
        with open(file_path, 'rt') as f:
            return parse_hex(name, f.read().strip(), length)
    raise ValueError(f"{name} required")

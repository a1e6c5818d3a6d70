"""
Error taxonomy for the collateral engine.

Everything derives from ValueError so callers that already guard parameter
parsing with ``except ValueError`` keep working.
"""
from __future__ import annotations

from typing import Optional


class CollateralError(ValueError):
    """Base class for all collateral engine failures."""


class ConfigurationError(CollateralError):
    """Invalid script/address mode, unknown network or missing parameters."""


class ScriptMatchError(CollateralError):
    """A funding transaction has no output for the expected locking script."""

    def __init__(self, txid: Optional[str] = None, message: str = "Could not find transaction based on redeem script") -> None:
        self.txid = txid
        super().__init__(f"{message} (txid {txid})" if txid else message)


class SecretMismatchError(CollateralError):
    """A supplied preimage hashes to none of the expected secret slots."""


class FeeError(CollateralError):
    """Fee would consume the inputs or leave an output at or below zero."""


class UnresolvedBranchError(CollateralError):
    """The requested period has no branch in the script layout."""


class MultisigError(CollateralError):
    """Cooperative signatures are missing, misordered or invalid."""


class CommandError(CollateralError):
    """bitcoin-cli exited with a failure."""

    def __init__(self, command: str, returncode: int, output: str) -> None:
        self.command = command
        self.returncode = returncode
        self.output = output
        super().__init__(f"bitcoin-cli {command} failed (exit {returncode}): {output}")


class PollTimeoutError(CollateralError, TimeoutError):
    """A polling loop ran out of time before a match appeared."""

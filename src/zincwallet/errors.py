"""
Wallet exception hierarchy.

Everything except WalletConsistencyError is recoverable: the operation that
raised it did not mutate wallet state and the caller may retry with different
input. WalletConsistencyError means an internal invariant is broken and the
operation was aborted to avoid losing track of funds.
"""

from __future__ import annotations


class WalletError(Exception):
    pass


class InvalidPhrase(WalletError):
    """Seed phrase failed word-list or checksum validation."""


class InvalidAddress(WalletError):
    """Destination address is malformed or belongs to another network."""


class InvalidAmount(WalletError):
    """Payment amount is non-positive or below the dust limit."""


class InsufficientFunds(WalletError):
    def __init__(self, needed: int, available: int):
        self.needed = needed
        self.available = available
        super().__init__(f"Insufficient funds: need {needed}, have {available}")


class FeeTooLow(WalletError):
    pass


class SigningError(WalletError):
    pass


class TransactionParseError(WalletError):
    pass


class ProviderError(WalletError):
    """Sync provider failed; surfaced through the sync state, not raised across it."""


class BroadcastRejected(ProviderError):
    def __init__(self, txid: str, reason: str):
        self.txid = txid
        self.reason = reason
        super().__init__(f"Broadcast of {txid} rejected: {reason}")


class WalletConsistencyError(WalletError):
    """An internal invariant does not hold. Never caught inside the wallet."""

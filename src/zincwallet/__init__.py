"""
zincwallet - Non-custodial BIP84 Bitcoin wallet

Derives keys from a BIP39 seed, tracks the wallet's outputs through a sync
provider and builds signed P2WPKH payments. Keys never leave the process.
"""

__version__ = "0.3.0"

from zincwallet.config import SelectionPolicy, WalletSettings, get_settings
from zincwallet.errors import (
    BroadcastRejected,
    FeeTooLow,
    InsufficientFunds,
    InvalidAddress,
    InvalidAmount,
    InvalidPhrase,
    ProviderError,
    SigningError,
    TransactionParseError,
    WalletConsistencyError,
    WalletError,
)
from zincwallet.events import EventEmitter, SyncEvent, WalletEvent
from zincwallet.sync import SyncCoordinator, SyncState, SyncStatus
from zincwallet.wallet.bip32 import derive_key_pair, derive_seed, generate_random_seed
from zincwallet.wallet.service import WalletService

__all__ = [
    "BroadcastRejected",
    "EventEmitter",
    "FeeTooLow",
    "InsufficientFunds",
    "InvalidAddress",
    "InvalidAmount",
    "InvalidPhrase",
    "ProviderError",
    "SelectionPolicy",
    "SigningError",
    "SyncCoordinator",
    "SyncEvent",
    "SyncState",
    "SyncStatus",
    "TransactionParseError",
    "WalletConsistencyError",
    "WalletError",
    "WalletEvent",
    "WalletService",
    "WalletSettings",
    "derive_key_pair",
    "derive_seed",
    "generate_random_seed",
    "get_settings",
]

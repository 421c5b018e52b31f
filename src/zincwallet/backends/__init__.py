"""
Sync provider implementations.

Available providers:
- EsploraProvider: Esplora REST API (mempool.space, blockstream.info or self-hosted)
"""

from zincwallet.backends.base import (
    BroadcastResult,
    ObservedTransaction,
    ProviderListener,
    SyncProvider,
)
from zincwallet.backends.esplora import EsploraProvider

__all__ = [
    "BroadcastResult",
    "EsploraProvider",
    "ObservedTransaction",
    "ProviderListener",
    "SyncProvider",
]

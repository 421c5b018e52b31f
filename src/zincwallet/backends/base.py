"""
Base sync provider interface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from zincwallet.merkle import MerkleBlock


@dataclass
class ObservedTransaction:
    """A raw transaction touching a watched address, as reported by the provider"""

    txid: str
    raw: str
    block_height: int | None = None
    block_time: int | None = None
    # Provider-reported conflict with another transaction (we do not detect it ourselves)
    double_spend: bool = False


@dataclass
class BroadcastResult:
    accepted: bool
    txid: str | None = None
    reason: str | None = None


class ProviderListener(Protocol):
    """Callbacks a sync provider delivers data through"""

    async def on_transactions(self, transactions: Sequence[ObservedTransaction]) -> None: ...

    async def on_blocks(self, blocks: Sequence[MerkleBlock]) -> None: ...

    async def on_error(self, reason: str) -> None: ...

    async def on_caught_up(self) -> None: ...


class SyncProvider(ABC):
    """
    Abstract sync provider.
    Implementations deliver blockchain data for watched addresses and relay
    broadcasts; they never see keys or wallet state.
    """

    @abstractmethod
    async def watch(self, addresses: Sequence[str]) -> None:
        """Start reporting transactions for these addresses"""

    @abstractmethod
    async def unwatch(self, addresses: Sequence[str]) -> None:
        """Stop reporting transactions for these addresses"""

    @abstractmethod
    async def broadcast(self, tx_hex: str) -> BroadcastResult:
        """Relay a signed transaction. Rejections are returned, not raised."""

    @abstractmethod
    async def start(self, listener: ProviderListener) -> None:
        """Begin delivering data to listener (returns once delivery is running)"""

    @abstractmethod
    async def stop(self) -> None:
        """Stop delivering data; may be restarted with start()"""

    async def estimate_fee(self, target_blocks: int) -> Decimal | None:
        """Fee rate in sat/vB for the confirmation target, None if unavailable"""
        return None

    async def close(self) -> None:
        """Release provider resources"""
        await self.stop()

"""
Sync coordinator.

Drives a SyncProvider for one wallet:

    Idle --start--> Syncing --caught up--> Synced
                    Syncing --provider error--> Failed(reason)
    Failed/Synced --start--> Syncing
    any --stop--> Idle

Provider and save failures never raise out of the coordinator; they become a
Failed state plus a sync_failed event. A provider failure leaves the wallet
state as it was.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from loguru import logger

from zincwallet.backends.base import ObservedTransaction, SyncProvider
from zincwallet.errors import BroadcastRejected, ProviderError, WalletError
from zincwallet.events import EventEmitter, SyncEvent, WalletEvent
from zincwallet.merkle import MerkleBlock
from zincwallet.storage import StorageError
from zincwallet.wallet.models import SignedTransaction
from zincwallet.wallet.service import WalletService


class SyncStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    SYNCED = "synced"
    FAILED = "failed"


@dataclass(frozen=True)
class SyncState:
    status: SyncStatus = SyncStatus.IDLE
    reason: str | None = None

    def __str__(self) -> str:
        if self.reason:
            return f"{self.status.value}({self.reason})"
        return self.status.value


class SyncCoordinator:
    """Connects a wallet to a sync provider and tracks sync progress."""

    def __init__(
        self,
        wallet: WalletService,
        provider: SyncProvider,
        events: EventEmitter | None = None,
    ):
        self.wallet = wallet
        self.provider = provider
        self.events = events or EventEmitter()
        self.state = SyncState()

        self._watched: set[str] = set()
        # Transactions that failed to ingest, kept for the next start()
        self._retry: dict[str, ObservedTransaction] = {}
        # Applied in memory, but the last save failed
        self._unsaved = False

    @property
    def status(self) -> SyncStatus:
        return self.state.status

    def _set_state(self, status: SyncStatus, reason: str | None = None) -> None:
        previous = self.state
        self.state = SyncState(status, reason)
        if previous != self.state:
            logger.info(f"Sync state: {previous} -> {self.state}")

    async def start(self) -> None:
        """Begin (or resume) syncing. A no-op while already syncing."""
        if self.state.status == SyncStatus.SYNCING:
            logger.debug("Sync already in progress")
            return

        self._set_state(SyncStatus.SYNCING)
        self.events.emit(WalletEvent(SyncEvent.SYNC_STARTED))

        if self._unsaved:
            try:
                await self.wallet.save()
            except StorageError as e:
                await self.on_provider_error(f"could not save wallet state: {e}")
                return
            self._unsaved = False

        if self._retry:
            pending = list(self._retry.values())
            self._retry.clear()
            logger.info(f"Retrying {len(pending)} previously failed transaction(s)")
            await self.on_data_received(pending, [])
            if self.state.status != SyncStatus.SYNCING:
                return

        try:
            # Anything derived before now is covered by the full registration below
            self.wallet.address_book.drain_new_addresses()
            await self._watch(self.wallet.address_book.all_addresses())
            await self.provider.start(self)
        except ProviderError as e:
            await self.on_provider_error(str(e))

    async def _watch(self, addresses: Sequence[str]) -> None:
        new = [a for a in addresses if a not in self._watched]
        if not new:
            return

        await self.provider.watch(new)
        self._watched.update(new)
        if self.wallet.settings.sensitive_logging:
            logger.debug(f"Watching {', '.join(new)}")
        else:
            logger.debug(f"Watching {len(new)} new address(es), {len(self._watched)} total")

    async def _register_new_addresses(self) -> None:
        new = self.wallet.address_book.drain_new_addresses()
        if new:
            await self._watch(new)

    # ProviderListener

    async def on_transactions(self, transactions: Sequence[ObservedTransaction]) -> None:
        await self.on_data_received(transactions, [])

    async def on_blocks(self, blocks: Sequence[MerkleBlock]) -> None:
        await self.on_data_received([], blocks)

    async def on_error(self, reason: str) -> None:
        await self.on_provider_error(reason)

    async def on_caught_up(self) -> None:
        if self.state.status != SyncStatus.SYNCING:
            return
        self._set_state(SyncStatus.SYNCED)
        self.events.emit(WalletEvent(SyncEvent.SYNC_FINISHED))

    async def on_data_received(
        self,
        transactions: Sequence[ObservedTransaction],
        blocks: Sequence[MerkleBlock],
    ) -> None:
        """
        Apply provider data to the wallet.

        Merkle blocks are verified before anything is applied; one invalid block
        rejects the whole delivery. Block heights claimed next to transactions
        are ignored: only verified merkle blocks confirm a transaction, whether
        they arrive in the same delivery or a later one.

        Transactions that fail to ingest, or whose state could not be saved,
        are kept for retry and fail the sync; the rest of the batch is still
        applied.
        """
        network = self.wallet.network
        for block in blocks:
            if not block.is_valid(network):
                await self.on_provider_error(f"invalid merkle block {block.block_hash}")
                return

        failures: list[tuple[ObservedTransaction, WalletError]] = []
        save_error: StorageError | None = None

        if transactions:
            try:
                results, failures = await self.wallet.ingest(transactions, trust_heights=False)
            except StorageError as e:
                # Applied in memory; re-ingesting on retry saves it again
                save_error = e
                failures = []
                for tx in transactions:
                    self._retry[tx.txid] = tx
            else:
                for result in results:
                    self._retry.pop(result.txid, None)
                for tx, _ in failures:
                    # Kept for the next start(); the provider will not resend it
                    self._retry[tx.txid] = tx

        if blocks:
            try:
                await self.wallet.apply_blocks(blocks)
            except StorageError as e:
                save_error = e

        if save_error is not None:
            self._unsaved = True
            await self.on_provider_error(f"could not save wallet state: {save_error}")
            return

        try:
            await self._register_new_addresses()
        except ProviderError as e:
            await self.on_provider_error(str(e))
            return

        if failures:
            await self.on_provider_error(
                f"{len(failures)} transaction(s) could not be ingested: {failures[0][1]}"
            )

    async def on_provider_error(self, reason: str) -> None:
        if self.state.status == SyncStatus.IDLE:
            logger.debug(f"Ignoring provider error while idle: {reason}")
            return

        logger.warning(f"Sync failed: {reason}")
        self._set_state(SyncStatus.FAILED, reason)
        self.events.emit(WalletEvent(SyncEvent.SYNC_FAILED, reason))

    async def broadcast(self, tx: SignedTransaction) -> str:
        """
        Relay a signed transaction and record it locally as unconfirmed.

        Raises:
            BroadcastRejected: provider refused the transaction; its inputs are released
            ProviderError: provider unreachable; inputs stay reserved until expiry
        """
        await self._register_new_addresses()

        result = await self.provider.broadcast(tx.hex)
        if not result.accepted:
            await self.wallet.abandon(tx)
            raise BroadcastRejected(tx.txid, result.reason or "unknown reason")

        if result.txid is not None and result.txid != tx.txid:
            logger.warning(f"Provider reported txid {result.txid} for {tx.txid}")

        await self.wallet.ingest([ObservedTransaction(txid=tx.txid, raw=tx.hex)])
        logger.info(f"Broadcast transaction {tx.txid}")
        return tx.txid

    async def estimate_fee_rate(self, target_blocks: int = 6) -> Decimal:
        """Provider fee estimate, falling back to the configured rate"""
        settings = self.wallet.settings
        try:
            estimate = await self.provider.estimate_fee(target_blocks)
        except ProviderError as e:
            logger.warning(f"Fee estimation failed, using configured rate: {e}")
            estimate = None

        if estimate is None:
            return settings.fee_rate
        return max(estimate, settings.min_relay_fee_rate)

    async def stop(self) -> None:
        try:
            await self.provider.stop()
            if self._watched:
                await self.provider.unwatch(sorted(self._watched))
        except ProviderError as e:
            logger.warning(f"Error while stopping provider: {e}")
        self._watched.clear()

        await self.wallet.release_expired()
        self._set_state(SyncStatus.IDLE)

"""
Wallet service: one explicit, injectable wallet instance.

Owns the keychain, address book and UTXO set of a single seed. Every mutation
runs under ``lock`` and never awaits half-way, so the synchronous read
accessors always see the last consistent state, even while sync ingestion is
waiting on the provider.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Sequence
from decimal import Decimal

from loguru import logger

from zincwallet.backends.base import ObservedTransaction
from zincwallet.config import WalletSettings
from zincwallet.errors import TransactionParseError, WalletError
from zincwallet.merkle import MerkleBlock
from zincwallet.storage import PBKDF2_ITERATIONS, SeedCipher, StorageError, WalletStore
from zincwallet.wallet.address_book import AddressBook
from zincwallet.wallet.bip32 import KeyChain, KeyPair, Seed, derive_seed
from zincwallet.wallet.models import Chain, SignedTransaction, WalletState
from zincwallet.wallet.tx_builder import TransactionBuilder
from zincwallet.wallet.utxo import IngestResult, TransactionHistory, UTXOSet


class WalletService:
    """
    Wallet context passed to every operation.

    Derivation path: m/84'/{coin}'/{account}'/{chain}/{index}
    - chain: 0 (external/receive), 1 (internal/change)
    """

    def __init__(
        self,
        seed: Seed,
        settings: WalletSettings | None = None,
        store: WalletStore | None = None,
        cipher: SeedCipher | None = None,
        state: WalletState | None = None,
    ):
        self.settings = settings or WalletSettings()
        self.network = self.settings.network
        self.store = store
        self.cipher = cipher
        self.lock = asyncio.Lock()

        self._seed = seed
        self.keychain = KeyChain(seed, self.network, self.settings.account)

        if state is not None:
            self.address_book = AddressBook.from_state(
                self.keychain, state.address_book, self.settings.gap_limit
            )
            self.utxo_set = UTXOSet(
                self.address_book,
                self.network,
                self.settings.min_confirmations,
                state=state.utxo_set,
            )
        else:
            self.address_book = AddressBook(self.keychain, self.settings.gap_limit)
            self.utxo_set = UTXOSet(
                self.address_book, self.network, self.settings.min_confirmations
            )

        self.builder = TransactionBuilder(self.address_book, self.utxo_set, self.settings)

        logger.info(
            f"Initialized {self.network} wallet (account {self.settings.account}, "
            f"gap limit {self.settings.gap_limit})"
        )

    @classmethod
    def from_phrase(
        cls, phrase: str, passphrase: str = "", **kwargs: object
    ) -> WalletService:
        return cls(derive_seed(phrase, passphrase), **kwargs)  # type: ignore[arg-type]

    @classmethod
    async def create(
        cls,
        seed: Seed,
        store: WalletStore,
        password: str,
        settings: WalletSettings | None = None,
        kdf_iterations: int = PBKDF2_ITERATIONS,
    ) -> WalletService:
        """Create a new persisted wallet and write its initial state."""
        cipher = SeedCipher(password, iterations=kdf_iterations)
        wallet = cls(seed, settings, store=store, cipher=cipher)
        await wallet.save()
        return wallet

    @classmethod
    async def open(
        cls,
        store: WalletStore,
        password: str,
        settings: WalletSettings | None = None,
        kdf_iterations: int = PBKDF2_ITERATIONS,
    ) -> WalletService:
        """Load a persisted wallet. Raises StorageError if there is none."""
        state = await store.load()
        if state is None:
            raise StorageError("No wallet state to open")

        settings = settings or WalletSettings(network=state.network)
        if settings.network != state.network or settings.account != state.account:
            raise StorageError(
                f"Wallet state is for {state.network} account {state.account}, "
                f"settings ask for {settings.network} account {settings.account}"
            )

        cipher = SeedCipher(password, bytes.fromhex(state.salt), iterations=kdf_iterations)
        seed = cipher.decrypt(state.encrypted_seed)
        return cls(seed, settings, store=store, cipher=cipher, state=state)

    def to_state(self) -> WalletState:
        if self.cipher is None:
            raise StorageError("Wallet has no seed cipher, cannot produce persistable state")

        return WalletState(
            network=self.network,
            account=self.settings.account,
            encrypted_seed=self.cipher.encrypt(self._seed),
            salt=self.cipher.salt_hex,
            address_book=self.address_book.to_state(),
            utxo_set=self.utxo_set.to_state(),
        )

    async def save(self) -> None:
        if self.store is None:
            return
        await self.store.save(self.to_state())

    # Read accessors. Computed from the address book and UTXO set on every call.

    @property
    def balance(self) -> int:
        return self.utxo_set.balance()

    @property
    def pending_balance(self) -> int:
        return self.utxo_set.pending_balance()

    @property
    def receive_address(self) -> str:
        return self.address_book.next_unused(Chain.RECEIVE)

    def recent_transactions(self) -> TransactionHistory:
        return self.utxo_set.recent_transactions()

    def is_owned(self, address: str) -> bool:
        return self.address_book.is_owned(address)

    def key_pair(self, index: int, chain: Chain = Chain.RECEIVE) -> KeyPair:
        return self.keychain.key_pair(chain, index)

    # Mutations

    async def ingest(
        self, transactions: Sequence[ObservedTransaction], trust_heights: bool = True
    ) -> tuple[list[IngestResult], list[tuple[ObservedTransaction, WalletError]]]:
        """
        Ingest a batch of transactions.

        Pass trust_heights=False for data from a sync provider: confirmations
        then only come from merkle blocks applied with apply_blocks().

        Returns:
            (results, failures). Failed transactions left the wallet untouched
            and can be retried with the same data.

        Raises:
            StorageError: the new state could not be saved; it stays applied in memory
        """
        results: list[IngestResult] = []
        failures: list[tuple[ObservedTransaction, WalletError]] = []

        async with self.lock:
            for tx in transactions:
                try:
                    results.append(self.utxo_set.ingest(tx, trust_height=trust_heights))
                except TransactionParseError as e:
                    logger.error(f"Could not ingest transaction {tx.txid}: {e}")
                    failures.append((tx, e))

            if results:
                await self.save()

        return results, failures

    async def apply_blocks(self, blocks: Sequence[MerkleBlock]) -> int:
        """Record the heights of wallet transactions proven by merkle blocks."""
        updated = 0

        async with self.lock:
            for block in blocks:
                if block.height is not None:
                    self.utxo_set.set_tip_height(block.height)
                    for txid in block.tx_hashes():
                        if self.utxo_set.set_tx_height(txid, block.height, block.timestamp):
                            updated += 1

            if blocks:
                await self.save()

        if updated:
            logger.debug(f"Updated confirmation data for {updated} transaction(s)")
        return updated

    async def build_transaction(
        self,
        amount: int,
        destination: str,
        fee_rate: Decimal | int | str | None = None,
    ) -> SignedTransaction:
        """Build and sign a payment. See TransactionBuilder.build_transaction."""
        async with self.lock:
            now = time.time()
            self.utxo_set.release_expired(now)
            tx = self.builder.build_transaction(amount, destination, fee_rate, now=now)
            await self.save()
        return tx

    async def abandon(self, tx: SignedTransaction) -> None:
        async with self.lock:
            if self.builder.abandon(tx):
                await self.save()

    async def release_expired(self) -> int:
        async with self.lock:
            released = self.utxo_set.release_expired()
            if released:
                await self.save()
        return released

    async def close(self) -> None:
        await self.release_expired()
        logger.info("Wallet closed")

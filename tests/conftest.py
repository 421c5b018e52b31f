"""
Test configuration for zincwallet tests.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from decimal import Decimal

import pytest
from coincurve import PrivateKey

from zincwallet.backends.base import (
    BroadcastResult,
    ObservedTransaction,
    ProviderListener,
    SyncProvider,
)
from zincwallet.config import WalletSettings
from zincwallet.errors import ProviderError
from zincwallet.storage import MemoryWalletStore, SeedCipher
from zincwallet.wallet.address import address_to_scriptpubkey, pubkey_to_p2wpkh_address
from zincwallet.wallet.bip32 import Seed, derive_seed
from zincwallet.wallet.service import WalletService
from zincwallet.wallet.signing import Transaction, TxInput, TxOutput

TEST_MNEMONIC = (
    "abandon abandon abandon abandon abandon abandon "
    "abandon abandon abandon abandon abandon about"
)

# Low iteration count keeps the KDF fast in tests
TEST_KDF_ITERATIONS = 1_000


@pytest.fixture
def sample_mnemonic() -> str:
    """Test mnemonic (not for production use!)."""
    return TEST_MNEMONIC


@pytest.fixture(scope="session")
def seed() -> Seed:
    return derive_seed(TEST_MNEMONIC)


@pytest.fixture
def settings() -> WalletSettings:
    return WalletSettings(
        _env_file=None,
        network="regtest",
        gap_limit=20,
        fee_rate=Decimal("10"),
        min_relay_fee_rate=Decimal("1"),
    )


@pytest.fixture
def wallet(seed: Seed, settings: WalletSettings) -> WalletService:
    return WalletService(
        seed,
        settings,
        store=MemoryWalletStore(),
        cipher=SeedCipher("test password", iterations=TEST_KDF_ITERATIONS),
    )


@pytest.fixture
def external_address() -> str:
    """A regtest address the test wallet does not own."""
    return pubkey_to_p2wpkh_address(PrivateKey(b"\x07" * 32).public_key.format(), "regtest")


@pytest.fixture
def make_tx() -> Callable[..., ObservedTransaction]:
    """
    Build a real (unsigned) transaction paying the given addresses.

    Inputs default to a single outpoint of an unrelated transaction; the
    ``salt`` keeps otherwise identical test transactions distinct.
    """

    def _make_tx(
        outputs: Sequence[tuple[str, int]],
        inputs: Sequence[str] = (),
        height: int | None = None,
        block_time: int | None = None,
        network: str = "regtest",
        salt: int = 0,
    ) -> ObservedTransaction:
        if not inputs:
            inputs = [f"{(salt + 1).to_bytes(32, 'big').hex()}:0"]

        tx_inputs = []
        for outpoint in inputs:
            txid, vout = outpoint.split(":")
            tx_inputs.append(TxInput(bytes.fromhex(txid)[::-1], int(vout)))

        tx = Transaction(
            version=2,
            inputs=tx_inputs,
            outputs=[
                TxOutput(value, address_to_scriptpubkey(address, network))
                for address, value in outputs
            ],
            locktime=salt,
        )
        return ObservedTransaction(
            txid=tx.txid,
            raw=tx.serialize().hex(),
            block_height=height,
            block_time=block_time,
        )

    return _make_tx


@pytest.fixture
def fund(make_tx: Callable[..., ObservedTransaction]):
    """Ingest a transaction paying ``value`` sats to the wallet's next receive address."""
    counter = iter(range(1, 1_000_000))

    async def _fund(
        wallet: WalletService, value: int, height: int | None = None
    ) -> ObservedTransaction:
        tx = make_tx([(wallet.receive_address, value)], height=height, salt=next(counter))
        _, failures = await wallet.ingest([tx])
        assert not failures
        return tx

    return _fund


class FakeProvider(SyncProvider):
    """In-memory provider recording what the coordinator asks of it."""

    def __init__(self) -> None:
        self.watched: set[str] = set()
        self.listener: ProviderListener | None = None
        self.started = 0
        self.stopped = 0
        self.broadcasts: list[str] = []
        self.broadcast_result = BroadcastResult(accepted=True)
        self.fail_start: str | None = None
        self.fee_estimate: Decimal | None = None

    async def watch(self, addresses: Sequence[str]) -> None:
        self.watched.update(addresses)

    async def unwatch(self, addresses: Sequence[str]) -> None:
        self.watched.difference_update(addresses)

    async def broadcast(self, tx_hex: str) -> BroadcastResult:
        self.broadcasts.append(tx_hex)
        return self.broadcast_result

    async def start(self, listener: ProviderListener) -> None:
        if self.fail_start:
            raise ProviderError(self.fail_start)
        self.listener = listener
        self.started += 1

    async def stop(self) -> None:
        self.listener = None
        self.stopped += 1

    async def estimate_fee(self, target_blocks: int) -> Decimal | None:
        return self.fee_estimate


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()

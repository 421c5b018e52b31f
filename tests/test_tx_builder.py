"""
Tests for building and signing payments.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest
from coincurve import PublicKey

from zincwallet.config import SelectionPolicy
from zincwallet.errors import (
    FeeTooLow,
    InsufficientFunds,
    InvalidAddress,
    InvalidAmount,
)
from zincwallet.wallet.models import Chain, SignedTransaction
from zincwallet.wallet.service import WalletService
from zincwallet.wallet.signing import (
    compute_sighash_segwit,
    create_p2wpkh_script_code,
    deserialize_transaction,
)
from zincwallet.wallet.tx_builder import calculate_fee, estimate_vsize

P2WPKH_SCRIPT = bytes(22)


def assert_valid(tx: SignedTransaction, min_relay_fee_rate: Decimal = Decimal("1")) -> None:
    """Conservation, minimum fee and a valid signature for every input."""
    assert tx.total_in == tx.total_out + tx.fee
    assert tx.fee >= calculate_fee(tx.vsize, min_relay_fee_rate)

    parsed = deserialize_transaction(tx.raw)
    assert parsed.txid == tx.txid
    assert parsed.vsize == tx.vsize

    for i, output in enumerate(tx.inputs):
        signature, pubkey = parsed.witnesses[i]
        assert signature[-1] == 1  # SIGHASH_ALL
        sighash = compute_sighash_segwit(
            parsed, i, create_p2wpkh_script_code(pubkey), output.value
        )
        assert PublicKey(pubkey).verify(signature[:-1], sighash, hasher=None)


class TestFeeEstimation:
    def test_one_input_two_outputs(self) -> None:
        assert estimate_vsize(1, [P2WPKH_SCRIPT, P2WPKH_SCRIPT]) == 141

    def test_grows_with_inputs(self) -> None:
        assert estimate_vsize(2, [P2WPKH_SCRIPT]) - estimate_vsize(1, [P2WPKH_SCRIPT]) == 68

    def test_fee_rounds_up(self) -> None:
        assert calculate_fee(141, Decimal("7.09")) == 1000
        assert calculate_fee(141, Decimal("1")) == 141
        assert calculate_fee(100, Decimal("0.001")) == 1


class TestBuildTransaction:
    @pytest.mark.asyncio
    async def test_payment_with_change(self, wallet: WalletService, fund, external_address: str) -> None:
        await fund(wallet, 100_000)
        change_address = wallet.address_book.next_unused(Chain.CHANGE)

        tx = await wallet.build_transaction(60_000, external_address, Decimal("7.09"))

        assert [(o.address, o.value) for o in tx.outputs] == [
            (external_address, 60_000),
            (change_address, 39_000),
        ]
        assert tx.fee == 1_000
        assert tx.vsize <= 141
        assert tx.change_address == change_address
        assert_valid(tx)

    @pytest.mark.asyncio
    async def test_build_marks_change_used_and_reserves(
        self, wallet: WalletService, fund, external_address: str
    ) -> None:
        await fund(wallet, 100_000)

        tx = await wallet.build_transaction(60_000, external_address, 5)

        assert wallet.address_book.lookup(tx.change_address).used
        assert wallet.balance == 0
        assert wallet.pending_balance == 100_000

    @pytest.mark.asyncio
    async def test_dust_change_goes_to_fee(self, wallet: WalletService, fund, external_address: str) -> None:
        await fund(wallet, 100_000)

        # 110 vB without change at 10 sat/vB leaves 300 sats, below the dust limit
        tx = await wallet.build_transaction(98_600, external_address)

        assert len(tx.outputs) == 1
        assert tx.change_address is None
        assert tx.fee == 1_400
        assert_valid(tx)

    @pytest.mark.asyncio
    async def test_multiple_inputs(self, wallet: WalletService, fund, external_address: str) -> None:
        for value in (30_000, 30_000, 30_000):
            await fund(wallet, value)

        tx = await wallet.build_transaction(70_000, external_address)

        assert len(tx.inputs) == 3
        assert_valid(tx)

    @pytest.mark.asyncio
    async def test_oldest_first(self, wallet: WalletService, fund, external_address: str) -> None:
        newest = await fund(wallet, 80_000, height=200)
        oldest = await fund(wallet, 80_000, height=100)
        await fund(wallet, 80_000)

        tx = await wallet.build_transaction(10_000, external_address)

        assert [o.txid for o in tx.inputs] == [oldest.txid]
        assert newest.txid not in {o.txid for o in tx.inputs}

    @pytest.mark.asyncio
    async def test_largest_first_policy(self, wallet: WalletService, fund, external_address: str) -> None:
        wallet.settings.selection_policy = SelectionPolicy.LARGEST_FIRST
        await fund(wallet, 20_000)
        largest = await fund(wallet, 90_000)

        tx = await wallet.build_transaction(10_000, external_address)

        assert [o.txid for o in tx.inputs] == [largest.txid]

    @pytest.mark.asyncio
    async def test_selection_is_deterministic(
        self, seed, settings, make_tx, external_address: str
    ) -> None:
        selections = []
        for _ in range(2):
            wallet = WalletService(seed, settings.model_copy())
            for i, value in enumerate((30_000, 50_000, 40_000)):
                await wallet.ingest(
                    [make_tx([(wallet.receive_address, value)], height=100 + i, salt=i)]
                )
            tx = await wallet.build_transaction(60_000, external_address)
            selections.append([o.outpoint for o in tx.inputs])

        assert selections[0] == selections[1]

    @pytest.mark.asyncio
    async def test_mainnet_address_rejected_on_regtest(self, wallet: WalletService, fund) -> None:
        await fund(wallet, 100_000)

        with pytest.raises(InvalidAddress):
            await wallet.build_transaction(10_000, "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5, 545])
    async def test_invalid_amount(self, wallet: WalletService, fund, external_address: str, amount: int) -> None:
        await fund(wallet, 100_000)

        with pytest.raises(InvalidAmount):
            await wallet.build_transaction(amount, external_address)

    @pytest.mark.asyncio
    async def test_fee_rate_below_minimum(self, wallet: WalletService, fund, external_address: str) -> None:
        await fund(wallet, 100_000)

        with pytest.raises(FeeTooLow):
            await wallet.build_transaction(10_000, external_address, Decimal("0.5"))

    @pytest.mark.asyncio
    async def test_string_fee_rate(self, wallet: WalletService, fund, external_address: str) -> None:
        await fund(wallet, 100_000)

        tx = await wallet.build_transaction(10_000, external_address, "2.5")

        assert tx.fee == calculate_fee(141, Decimal("2.5"))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("fee_rate", ["abc", "", "NaN", "Infinity"])
    async def test_malformed_fee_rate(
        self, wallet: WalletService, fund, external_address: str, fee_rate: str
    ) -> None:
        await fund(wallet, 100_000)

        with pytest.raises(FeeTooLow, match="Invalid fee rate"):
            await wallet.build_transaction(10_000, external_address, fee_rate)
        assert wallet.utxo_set.spendable_outputs()


class TestInsufficientFunds:
    @pytest.mark.asyncio
    async def test_amount_above_balance(self, wallet: WalletService, fund, external_address: str) -> None:
        await fund(wallet, 100_000)
        address_book = wallet.address_book.to_state()
        utxo_set = wallet.utxo_set.to_state()

        with pytest.raises(InsufficientFunds) as exc_info:
            await wallet.build_transaction(200_000, external_address)

        assert exc_info.value.needed == 200_000
        assert exc_info.value.available == 100_000
        assert wallet.address_book.to_state() == address_book
        assert wallet.utxo_set.to_state() == utxo_set

    @pytest.mark.asyncio
    async def test_fee_not_covered(self, wallet: WalletService, fund, external_address: str) -> None:
        await fund(wallet, 100_000)
        address_book = wallet.address_book.to_state()
        utxo_set = wallet.utxo_set.to_state()

        with pytest.raises(InsufficientFunds):
            await wallet.build_transaction(99_900, external_address)

        assert wallet.address_book.to_state() == address_book
        assert wallet.utxo_set.to_state() == utxo_set
        assert wallet.balance == 100_000

    @pytest.mark.asyncio
    async def test_empty_wallet(self, wallet: WalletService, external_address: str) -> None:
        with pytest.raises(InsufficientFunds):
            await wallet.build_transaction(10_000, external_address)


class TestPendingSpends:
    @pytest.mark.asyncio
    async def test_concurrent_builds_do_not_overlap(
        self, wallet: WalletService, fund, external_address: str
    ) -> None:
        for _ in range(4):
            await fund(wallet, 50_000)

        txs = await asyncio.gather(
            *(wallet.build_transaction(40_000, external_address) for _ in range(4))
        )

        outpoints = [o.outpoint for tx in txs for o in tx.inputs]
        assert len(outpoints) == len(set(outpoints)) == 4
        change_addresses = [tx.change_address for tx in txs]
        assert len(set(change_addresses)) == 4
        for tx in txs:
            assert_valid(tx)

    @pytest.mark.asyncio
    async def test_reserved_outputs_not_reused(
        self, wallet: WalletService, fund, external_address: str
    ) -> None:
        await fund(wallet, 100_000)
        await wallet.build_transaction(60_000, external_address)

        with pytest.raises(InsufficientFunds):
            await wallet.build_transaction(10_000, external_address)

    @pytest.mark.asyncio
    async def test_abandon_releases_inputs(
        self, wallet: WalletService, fund, external_address: str
    ) -> None:
        await fund(wallet, 100_000)
        tx = await wallet.build_transaction(60_000, external_address)

        await wallet.abandon(tx)

        assert wallet.balance == 100_000
        retry = await wallet.build_transaction(60_000, external_address)
        assert [o.outpoint for o in retry.inputs] == [o.outpoint for o in tx.inputs]

    @pytest.mark.asyncio
    async def test_expired_reservation_released(
        self, wallet: WalletService, fund, external_address: str
    ) -> None:
        await fund(wallet, 100_000)
        tx = await wallet.build_transaction(60_000, external_address)
        for output in tx.inputs:
            wallet.utxo_set.get(output.outpoint).reserved_until = 1.0

        assert await wallet.release_expired() == 1
        assert wallet.balance == 100_000

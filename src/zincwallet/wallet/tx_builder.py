"""
Transaction builder for outgoing payments.

Builds and signs a P2WPKH-spending transaction from:
- the wallet's spendable outputs (deterministic selection order)
- one destination output
- an optional change output to a fresh change address
"""

from __future__ import annotations

import time
from decimal import ROUND_CEILING, Decimal, InvalidOperation

from loguru import logger

from zincwallet.config import SelectionPolicy, WalletSettings
from zincwallet.constants import (
    P2WPKH_INPUT_SIZE,
    P2WPKH_WITNESS_SIZE,
    SEGWIT_MARKER_SIZE,
    TX_OVERHEAD_SIZE,
)
from zincwallet.errors import (
    FeeTooLow,
    InsufficientFunds,
    InvalidAmount,
    SigningError,
    WalletConsistencyError,
)
from zincwallet.wallet.address import address_to_scriptpubkey, pubkey_to_p2wpkh_script
from zincwallet.wallet.address_book import AddressBook
from zincwallet.wallet.models import Chain, Output, Recipient, SignedTransaction
from zincwallet.wallet.signing import (
    SIGHASH_ALL,
    Transaction,
    TxInput,
    TxOutput,
    compute_sighash_segwit,
    create_p2wpkh_script_code,
    encode_varint,
)
from zincwallet.wallet.utxo import UTXOSet


def estimate_vsize(num_inputs: int, output_scripts: list[bytes]) -> int:
    """
    Estimate the virtual size of a transaction spending P2WPKH inputs.

    Signatures are counted at their maximum DER length, so the estimate is
    never smaller than the signed transaction.
    """
    outputs_size = sum(8 + len(encode_varint(len(s))) + len(s) for s in output_scripts)
    base_size = (
        TX_OVERHEAD_SIZE
        + len(encode_varint(num_inputs))
        + num_inputs * P2WPKH_INPUT_SIZE
        + len(encode_varint(len(output_scripts)))
        + outputs_size
    )
    witness_size = SEGWIT_MARKER_SIZE + num_inputs * P2WPKH_WITNESS_SIZE
    weight = base_size * 4 + witness_size
    return (weight + 3) // 4


def calculate_fee(vsize: int, fee_rate: Decimal) -> int:
    """Fee in sats for vsize at fee_rate sat/vB, rounded up."""
    return int((Decimal(vsize) * fee_rate).to_integral_value(rounding=ROUND_CEILING))


def parse_fee_rate(value: Decimal | int | str) -> Decimal:
    """
    Parse a fee rate in sat/vB.

    Raises:
        FeeTooLow: value is not a finite number
    """
    try:
        rate = Decimal(str(value).strip())
    except InvalidOperation:
        raise FeeTooLow(f"Invalid fee rate: {value!r}") from None
    if not rate.is_finite():
        raise FeeTooLow(f"Invalid fee rate: {value!r}")
    return rate


class TransactionBuilder:
    def __init__(self, address_book: AddressBook, utxo_set: UTXOSet, settings: WalletSettings):
        self.address_book = address_book
        self.utxo_set = utxo_set
        self.settings = settings

    def _ordered(self, candidates: list[Output]) -> list[Output]:
        policy = self.settings.selection_policy

        if policy == SelectionPolicy.SMALLEST_FIRST:
            return sorted(candidates, key=lambda o: (o.value, o.txid, o.vout))
        if policy == SelectionPolicy.LARGEST_FIRST:
            return sorted(candidates, key=lambda o: (-o.value, o.txid, o.vout))

        def age(o: Output) -> tuple:
            record = self.utxo_set.transaction(o.txid)
            first_seen = record.first_seen if record is not None else 0.0
            # Unconfirmed outputs are the youngest
            return (o.height is None, o.height or 0, first_seen, o.txid, o.vout)

        return sorted(candidates, key=age)

    def build_transaction(
        self,
        amount: int,
        destination: str,
        fee_rate: Decimal | int | str | None = None,
        now: float | None = None,
    ) -> SignedTransaction:
        """
        Select inputs, add change and sign a payment of amount sats to destination.

        Nothing is mutated unless the whole build succeeds; on success the change
        address is marked used and the inputs are reserved until the
        transaction is seen on chain, abandoned or the reservation expires.

        Raises:
            InvalidAddress: destination is malformed or for another network
            InvalidAmount: amount is not positive or below the dust limit
            FeeTooLow: fee_rate is below the minimum relay fee rate
            InsufficientFunds: balance cannot cover amount (plus fee)
            SigningError: an input could not be signed
        """
        settings = self.settings
        destination_script = address_to_scriptpubkey(destination, settings.network)

        if amount <= 0 or amount < settings.dust_limit:
            raise InvalidAmount(f"Amount {amount} is below the dust limit {settings.dust_limit}")

        rate = parse_fee_rate(fee_rate) if fee_rate is not None else settings.fee_rate
        if rate < settings.min_relay_fee_rate:
            raise FeeTooLow(
                f"Fee rate {rate} sat/vB is below the minimum relay fee rate "
                f"{settings.min_relay_fee_rate} sat/vB"
            )

        if now is None:
            now = time.time()

        balance = self.utxo_set.balance(now=now)
        if amount > balance:
            raise InsufficientFunds(amount, balance)

        change_address = self.address_book.next_unused(Chain.CHANGE)
        change_script = address_to_scriptpubkey(change_address, settings.network)

        selected: list[Output] = []
        total = 0
        fee = 0
        change = 0
        needed = amount

        for candidate in self._ordered(self.utxo_set.spendable_outputs(now=now)):
            selected.append(candidate)
            total += candidate.value

            fee_without_change = calculate_fee(
                estimate_vsize(len(selected), [destination_script]), rate
            )
            needed = amount + fee_without_change
            if total < needed:
                continue

            fee_with_change = calculate_fee(
                estimate_vsize(len(selected), [destination_script, change_script]), rate
            )
            change = total - amount - fee_with_change
            if change >= settings.dust_limit:
                fee = fee_with_change
            else:
                # Remainder too small to be worth an output: it goes to the miners
                change = 0
                fee = total - amount
            break
        else:
            raise InsufficientFunds(needed, total)

        outputs = [Recipient(destination, amount)]
        tx_outputs = [TxOutput(amount, destination_script)]
        if change:
            outputs.append(Recipient(change_address, change))
            tx_outputs.append(TxOutput(change, change_script))

        tx = Transaction(
            version=2,
            inputs=[TxInput(bytes.fromhex(o.txid)[::-1], o.vout) for o in selected],
            outputs=tx_outputs,
        )
        tx.witnesses = self._sign(tx, selected)

        min_fee = calculate_fee(tx.vsize, settings.min_relay_fee_rate)
        if fee < min_fee:
            raise FeeTooLow(f"Fee {fee} is below the network minimum {min_fee}")

        if change:
            self.address_book.mark_used(change_address)
        self.utxo_set.reserve(
            [o.outpoint for o in selected], until=now + settings.reservation_timeout
        )

        signed = SignedTransaction(
            txid=tx.txid,
            raw=tx.serialize(),
            inputs=[o.model_copy() for o in selected],
            outputs=outputs,
            fee=fee,
            vsize=tx.vsize,
            change_address=change_address if change else None,
        )
        logger.info(
            f"Built transaction {signed.txid}: {amount} sats to {destination}, "
            f"{len(selected)} input(s), change {change}, fee {fee} ({rate} sat/vB)"
        )
        return signed

    def _sign(self, tx: Transaction, inputs: list[Output]) -> list[list[bytes]]:
        """Produce every witness before any is attached, so partial signing is never visible."""
        witnesses: list[list[bytes]] = []

        for i, output in enumerate(inputs):
            if not self.address_book.is_owned(output.address):
                raise WalletConsistencyError(
                    f"Output {output.outpoint} pays {output.address}, which is not in the address book"
                )

            try:
                key = self.address_book.key_pair_for(output.address)
            except ValueError as e:
                raise SigningError(f"Cannot derive key for {output.outpoint}: {e}") from e
            if key is None:
                raise SigningError(f"No key for {output.outpoint}")

            if pubkey_to_p2wpkh_script(key.public_key).hex() != output.scriptpubkey:
                raise SigningError(f"Derived key does not control {output.outpoint}")

            sighash = compute_sighash_segwit(
                tx, i, create_p2wpkh_script_code(key.public_key), output.value, SIGHASH_ALL
            )
            signature = key.sign_digest(sighash) + bytes([SIGHASH_ALL])
            witnesses.append([signature, key.public_key])

        return witnesses

    def abandon(self, tx: SignedTransaction) -> int:
        """Release the reservations of a transaction that will not be broadcast."""
        released = self.utxo_set.release([o.outpoint for o in tx.inputs])
        logger.info(f"Abandoned transaction {tx.txid}, released {released} input(s)")
        return released

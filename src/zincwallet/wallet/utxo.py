"""
Unspent output tracking, balance and history.
"""

from __future__ import annotations

import time
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field

from loguru import logger

from zincwallet.backends.base import ObservedTransaction
from zincwallet.errors import TransactionParseError
from zincwallet.wallet.address import scriptpubkey_to_address
from zincwallet.wallet.address_book import AddressBook
from zincwallet.wallet.models import Output, TxRecord, TxSummary, UTXOSetState
from zincwallet.wallet.signing import deserialize_transaction

COINBASE_TXID = "00" * 32


@dataclass
class IngestResult:
    txid: str
    is_new: bool
    received: list[Output] = field(default_factory=list)
    spent: list[str] = field(default_factory=list)  # outpoints of ours consumed by this tx
    new_addresses: list[str] = field(default_factory=list)


class UTXOSet:
    """
    Outputs owned by the wallet, keyed by "txid:vout".

    Only ingest() adds outputs; spends are taken from the inputs of ingested
    transactions, including spends seen before the output they consume.
    """

    def __init__(
        self,
        address_book: AddressBook,
        network: str = "mainnet",
        min_confirmations: int = 0,
        state: UTXOSetState | None = None,
    ):
        self.address_book = address_book
        self.network = network
        self.min_confirmations = min_confirmations

        self._outputs: dict[str, Output] = {}
        self._transactions: dict[str, TxRecord] = {}
        self._spends: dict[str, str] = {}
        # Block data proven for transactions that have not been ingested yet
        self._proven: dict[str, tuple[int, int | None]] = {}
        self.tip_height = 0

        if state is not None:
            self._outputs = {o.outpoint: o.model_copy() for o in state.outputs}
            self._transactions = {t.txid: t.model_copy() for t in state.transactions}
            self._spends = dict(state.spends)
            self.tip_height = state.tip_height

    def ingest(
        self, tx: ObservedTransaction, now: float | None = None, trust_height: bool = True
    ) -> IngestResult:
        """
        Record a transaction touching the wallet.

        Parsing and validation happen before any mutation, so a failure leaves
        the set untouched. Re-ingesting a known transaction only refreshes its
        block data and double-spend flag.

        With trust_height=False the block height claimed in tx is ignored and
        the transaction stays unconfirmed until set_tx_height() applies proven
        block data. A report of the transaction as unconfirmed is always
        honoured, since it can only lower confirmations.

        Raises:
            TransactionParseError: raw data is malformed or does not hash to tx.txid
        """
        try:
            raw = bytes.fromhex(tx.raw)
        except ValueError as e:
            raise TransactionParseError(f"Transaction {tx.txid} is not valid hex") from e

        parsed = deserialize_transaction(raw)
        if parsed.txid != tx.txid:
            raise TransactionParseError(f"Transaction data hashes to {parsed.txid}, not {tx.txid}")

        if tx.txid in self._transactions:
            self._refresh(tx, trust_height)
            return IngestResult(txid=tx.txid, is_new=False)

        height, block_time = (
            (tx.block_height, tx.block_time) if trust_height else (None, None)
        )
        if tx.txid in self._proven:
            height, block_time = self._proven[tx.txid]

        result = IngestResult(txid=tx.txid, is_new=True)

        for vout, out in enumerate(parsed.outputs):
            address = scriptpubkey_to_address(out.script, self.network)
            if address is None or not self.address_book.is_owned(address):
                continue

            output = Output(
                txid=tx.txid,
                vout=vout,
                value=out.value,
                address=address,
                scriptpubkey=out.script.hex(),
                height=height,
                double_spend=tx.double_spend,
            )
            output.spent_by = self._spends.get(output.outpoint)
            result.received.append(output)

        for inp in parsed.inputs:
            if inp.txid == COINBASE_TXID:
                continue
            current = self._spends.get(inp.outpoint)
            if current is not None and current != tx.txid:
                logger.warning(f"Outpoint {inp.outpoint} spent by both {current} and {tx.txid}")
                if height is None:
                    continue
            self._spends[inp.outpoint] = tx.txid
            spent = self._outputs.get(inp.outpoint)
            if spent is not None:
                spent.spent_by = tx.txid
                spent.reserved_until = None
                result.spent.append(inp.outpoint)

        for output in result.received:
            self._outputs[output.outpoint] = output
            result.new_addresses.extend(self.address_book.mark_used(output.address))

        self._transactions[tx.txid] = TxRecord(
            txid=tx.txid,
            raw=tx.raw,
            height=height,
            block_time=block_time,
            first_seen=now if now is not None else time.time(),
            double_spend=tx.double_spend,
        )
        self._proven.pop(tx.txid, None)
        if height is not None:
            self.set_tip_height(height)

        logger.debug(
            f"Ingested {tx.txid}: {len(result.received)} output(s) received, "
            f"{len(result.spent)} spent"
        )
        return result

    def _refresh(self, tx: ObservedTransaction, trust_height: bool) -> None:
        record = self._transactions[tx.txid]
        if tx.block_height is None:
            if record.height is not None:
                # Reorged out of its block
                self.clear_tx_height(tx.txid)
        elif trust_height:
            self.set_tx_height(tx.txid, tx.block_height, tx.block_time)
        if record.double_spend != tx.double_spend:
            record.double_spend = tx.double_spend
            for output in self._outputs.values():
                if output.txid == tx.txid:
                    output.double_spend = tx.double_spend

    def set_tx_height(self, txid: str, height: int, block_time: int | None = None) -> bool:
        """
        Apply block data to a transaction.

        Returns False for txids not ingested yet; their block data is kept and
        applied when the transaction arrives.
        """
        record = self._transactions.get(txid)
        if record is None:
            self._proven[txid] = (height, block_time)
            self.set_tip_height(height)
            return False

        record.height = height
        if block_time is not None:
            record.block_time = block_time
        for output in self._outputs.values():
            if output.txid == txid:
                output.height = height

        self.set_tip_height(height)
        return True

    def clear_tx_height(self, txid: str) -> bool:
        """Mark a transaction unconfirmed again. Returns False for unknown txids."""
        record = self._transactions.get(txid)
        if record is None:
            return False

        logger.warning(f"Transaction {txid} is no longer confirmed (was at height {record.height})")
        record.height = None
        record.block_time = None
        for output in self._outputs.values():
            if output.txid == txid:
                output.height = None
        return True

    def set_tip_height(self, height: int) -> None:
        if height > self.tip_height:
            self.tip_height = height

    def confirmations(self, height: int | None) -> int:
        if height is None or height > self.tip_height:
            return 0
        return self.tip_height - height + 1

    def has_transaction(self, txid: str) -> bool:
        return txid in self._transactions

    def transaction(self, txid: str) -> TxRecord | None:
        return self._transactions.get(txid)

    def get(self, outpoint: str) -> Output | None:
        return self._outputs.get(outpoint)

    def unspent_outputs(self) -> list[Output]:
        return [o for o in self._outputs.values() if not o.is_spent]

    def spendable_outputs(
        self, min_confirmations: int | None = None, now: float | None = None
    ) -> list[Output]:
        """Unspent outputs that count towards the balance and may be selected"""
        if min_confirmations is None:
            min_confirmations = self.min_confirmations
        if now is None:
            now = time.time()

        return [
            o
            for o in self._outputs.values()
            if not o.is_spent
            and not o.double_spend
            and not o.is_reserved(now)
            and self.confirmations(o.height) >= min_confirmations
        ]

    def balance(self, min_confirmations: int | None = None, now: float | None = None) -> int:
        return sum(o.value for o in self.spendable_outputs(min_confirmations, now))

    def pending_balance(self, now: float | None = None) -> int:
        """Value locked in reservations of unconfirmed outgoing builds"""
        if now is None:
            now = time.time()
        return sum(o.value for o in self.unspent_outputs() if o.is_reserved(now))

    def reserve(self, outpoints: Iterable[str], until: float) -> None:
        for outpoint in outpoints:
            self._outputs[outpoint].reserved_until = until

    def release(self, outpoints: Iterable[str]) -> int:
        released = 0
        for outpoint in outpoints:
            output = self._outputs.get(outpoint)
            if output is not None and output.reserved_until is not None:
                output.reserved_until = None
                released += 1
        return released

    def release_expired(self, now: float | None = None) -> int:
        if now is None:
            now = time.time()
        expired = [
            o.outpoint
            for o in self._outputs.values()
            if o.reserved_until is not None and o.reserved_until <= now
        ]
        if expired:
            logger.info(f"Releasing {len(expired)} expired pending-spend reservation(s)")
        return self.release(expired)

    def recent_transactions(self) -> TransactionHistory:
        return TransactionHistory(self)

    def to_state(self) -> UTXOSetState:
        return UTXOSetState(
            outputs=[o.model_copy() for o in self._outputs.values()],
            transactions=[t.model_copy() for t in self._transactions.values()],
            spends=dict(self._spends),
            tip_height=self.tip_height,
        )


class TransactionHistory:
    """
    Wallet transactions, most recent first.

    Each iteration starts over from the current state; summaries are built
    one at a time as the iterator advances.
    """

    def __init__(self, utxo_set: UTXOSet):
        self._utxo_set = utxo_set

    def __iter__(self) -> Iterator[TxSummary]:
        utxo_set = self._utxo_set
        records = sorted(
            utxo_set._transactions.values(),
            key=lambda r: (r.height is None, r.height or 0, r.first_seen),
            reverse=True,
        )

        received: dict[str, int] = {}
        sent: dict[str, int] = {}
        for output in utxo_set._outputs.values():
            received[output.txid] = received.get(output.txid, 0) + output.value
            if output.spent_by is not None:
                sent[output.spent_by] = sent.get(output.spent_by, 0) + output.value

        for record in records:
            yield TxSummary(
                txid=record.txid,
                received=received.get(record.txid, 0),
                sent=sent.get(record.txid, 0),
                confirmations=utxo_set.confirmations(record.height),
                height=record.height,
                timestamp=record.block_time if record.block_time is not None else record.first_seen,
            )

    def __len__(self) -> int:
        return len(self._utxo_set._transactions)

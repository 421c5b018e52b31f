"""
Wallet data models.

Persisted records are pydantic models so the wallet store can serialize them
as-is; transient results are plain dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum

from pydantic import BaseModel, Field


class Chain(IntEnum):
    RECEIVE = 0
    CHANGE = 1


class AddressEntry(BaseModel):
    chain: Chain
    index: int = Field(..., ge=0)
    address: str
    public_key: str  # compressed, hex
    used: bool = False


class Output(BaseModel):
    """An output paying one of the wallet's addresses"""

    txid: str
    vout: int = Field(..., ge=0)
    value: int = Field(..., ge=0)
    address: str
    scriptpubkey: str
    height: int | None = None  # None while unconfirmed
    spent_by: str | None = None
    reserved_until: float | None = None  # pending-spend reservation (unix time)
    double_spend: bool = False

    @property
    def outpoint(self) -> str:
        return f"{self.txid}:{self.vout}"

    @property
    def is_spent(self) -> bool:
        return self.spent_by is not None

    def is_reserved(self, now: float) -> bool:
        return self.reserved_until is not None and self.reserved_until > now


class TxRecord(BaseModel):
    """A transaction that touched the wallet"""

    txid: str
    raw: str
    height: int | None = None
    block_time: int | None = None
    first_seen: float
    double_spend: bool = False


class AddressBookState(BaseModel):
    gap_limit: int
    entries: list[AddressEntry] = Field(default_factory=list)


class UTXOSetState(BaseModel):
    outputs: list[Output] = Field(default_factory=list)
    transactions: list[TxRecord] = Field(default_factory=list)
    spends: dict[str, str] = Field(default_factory=dict)  # "txid:vout" -> spending txid
    tip_height: int = 0


class WalletState(BaseModel):
    """Everything the wallet store persists. The seed is only kept encrypted."""

    version: int = 1
    network: str
    account: int = 0
    encrypted_seed: str
    salt: str
    address_book: AddressBookState
    utxo_set: UTXOSetState = Field(default_factory=UTXOSetState)


@dataclass
class TxSummary:
    """History entry; amounts are from the wallet's point of view"""

    txid: str
    received: int
    sent: int
    confirmations: int
    height: int | None
    timestamp: float

    @property
    def net(self) -> int:
        return self.received - self.sent


@dataclass
class Recipient:
    address: str
    value: int


@dataclass
class SignedTransaction:
    """Result of building a payment. Not broadcast yet."""

    txid: str
    raw: bytes
    inputs: list[Output]
    outputs: list[Recipient]
    fee: int
    vsize: int
    change_address: str | None = None

    @property
    def hex(self) -> str:
        return self.raw.hex()

    @property
    def total_in(self) -> int:
        return sum(inp.value for inp in self.inputs)

    @property
    def total_out(self) -> int:
        return sum(out.value for out in self.outputs)

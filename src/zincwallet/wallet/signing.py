"""
Bitcoin transaction serialization and BIP143 signing for P2WPKH inputs.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field

from zincwallet.errors import SigningError, TransactionParseError
from zincwallet.wallet.address import hash160

SIGHASH_ALL = 1


@dataclass
class TxInput:
    txid_le: bytes
    vout: int
    script: bytes = b""
    sequence: int = 0xFFFFFFFF

    @property
    def txid(self) -> str:
        return self.txid_le[::-1].hex()

    @property
    def outpoint(self) -> str:
        return f"{self.txid}:{self.vout}"


@dataclass
class TxOutput:
    value: int
    script: bytes


@dataclass
class Transaction:
    version: int
    inputs: list[TxInput]
    outputs: list[TxOutput]
    locktime: int = 0
    witnesses: list[list[bytes]] = field(default_factory=list)

    @property
    def has_witness(self) -> bool:
        return any(self.witnesses)

    def serialize(self, include_witness: bool = True) -> bytes:
        with_witness = include_witness and self.has_witness

        result = self.version.to_bytes(4, "little")
        if with_witness:
            result += b"\x00\x01"

        result += encode_varint(len(self.inputs))
        for inp in self.inputs:
            result += inp.txid_le + inp.vout.to_bytes(4, "little")
            result += encode_varint(len(inp.script)) + inp.script
            result += inp.sequence.to_bytes(4, "little")

        result += encode_varint(len(self.outputs))
        for out in self.outputs:
            result += out.value.to_bytes(8, "little")
            result += encode_varint(len(out.script)) + out.script

        if with_witness:
            for i in range(len(self.inputs)):
                stack = self.witnesses[i] if i < len(self.witnesses) else []
                result += encode_varint(len(stack))
                for item in stack:
                    result += encode_varint(len(item)) + item

        result += self.locktime.to_bytes(4, "little")
        return result

    @property
    def txid(self) -> str:
        """Transaction id (hash of the non-witness serialization, display byte order)"""
        return hash256(self.serialize(include_witness=False))[::-1].hex()

    @property
    def weight(self) -> int:
        base = len(self.serialize(include_witness=False))
        total = len(self.serialize(include_witness=True))
        return base * 3 + total

    @property
    def vsize(self) -> int:
        return (self.weight + 3) // 4


def hash256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def read_varint(data: bytes, offset: int) -> tuple[int, int]:
    first = data[offset]
    offset += 1

    if first < 0xFD:
        return first, offset
    size = {0xFD: 2, 0xFE: 4, 0xFF: 8}[first]
    if offset + size > len(data):
        raise IndexError("varint out of range")
    return int.from_bytes(data[offset : offset + size], "little"), offset + size


def encode_varint(value: int) -> bytes:
    if value < 0xFD:
        return bytes([value])
    if value <= 0xFFFF:
        return b"\xfd" + value.to_bytes(2, "little")
    if value <= 0xFFFFFFFF:
        return b"\xfe" + value.to_bytes(4, "little")
    return b"\xff" + value.to_bytes(8, "little")


def _read(data: bytes, offset: int, length: int) -> tuple[bytes, int]:
    if offset + length > len(data):
        raise IndexError(f"need {length} bytes at offset {offset}, have {len(data) - offset}")
    return data[offset : offset + length], offset + length


def deserialize_transaction(tx_bytes: bytes) -> Transaction:
    try:
        offset = 0
        version_bytes, offset = _read(tx_bytes, offset, 4)

        has_witness = False
        if tx_bytes[offset] == 0x00 and tx_bytes[offset + 1] == 0x01:
            has_witness = True
            offset += 2

        input_count, offset = read_varint(tx_bytes, offset)
        inputs: list[TxInput] = []

        for _ in range(input_count):
            txid_le, offset = _read(tx_bytes, offset, 32)
            vout_bytes, offset = _read(tx_bytes, offset, 4)
            script_len, offset = read_varint(tx_bytes, offset)
            script, offset = _read(tx_bytes, offset, script_len)
            sequence_bytes, offset = _read(tx_bytes, offset, 4)

            inputs.append(
                TxInput(
                    txid_le,
                    int.from_bytes(vout_bytes, "little"),
                    script,
                    int.from_bytes(sequence_bytes, "little"),
                )
            )

        output_count, offset = read_varint(tx_bytes, offset)
        outputs: list[TxOutput] = []

        for _ in range(output_count):
            value_bytes, offset = _read(tx_bytes, offset, 8)
            script_len, offset = read_varint(tx_bytes, offset)
            script, offset = _read(tx_bytes, offset, script_len)
            outputs.append(TxOutput(int.from_bytes(value_bytes, "little"), script))

        witnesses: list[list[bytes]] = []
        if has_witness:
            for _ in range(input_count):
                stack_count, offset = read_varint(tx_bytes, offset)
                stack = []
                for _ in range(stack_count):
                    item_len, offset = read_varint(tx_bytes, offset)
                    item, offset = _read(tx_bytes, offset, item_len)
                    stack.append(item)
                witnesses.append(stack)

        locktime_bytes, offset = _read(tx_bytes, offset, 4)

    except (IndexError, KeyError) as e:
        raise TransactionParseError(f"Failed to parse transaction: {e}") from e

    if offset != len(tx_bytes):
        raise TransactionParseError(f"{len(tx_bytes) - offset} trailing bytes after transaction")
    if not inputs or not outputs:
        raise TransactionParseError("Transaction has no inputs or no outputs")

    return Transaction(
        version=int.from_bytes(version_bytes, "little"),
        inputs=inputs,
        outputs=outputs,
        locktime=int.from_bytes(locktime_bytes, "little"),
        witnesses=witnesses,
    )


def compute_sighash_segwit(
    tx: Transaction,
    input_index: int,
    script_code: bytes,
    value: int,
    sighash_type: int = SIGHASH_ALL,
) -> bytes:
    """BIP143 signature hash for a segwit v0 input."""
    if input_index >= len(tx.inputs):
        raise SigningError(f"Input index {input_index} out of range")

    hash_prevouts = hash256(
        b"".join(inp.txid_le + inp.vout.to_bytes(4, "little") for inp in tx.inputs)
    )
    hash_sequence = hash256(b"".join(inp.sequence.to_bytes(4, "little") for inp in tx.inputs))
    hash_outputs = hash256(
        b"".join(
            out.value.to_bytes(8, "little") + encode_varint(len(out.script)) + out.script
            for out in tx.outputs
        )
    )

    target_input = tx.inputs[input_index]

    preimage = (
        tx.version.to_bytes(4, "little")
        + hash_prevouts
        + hash_sequence
        + target_input.txid_le
        + target_input.vout.to_bytes(4, "little")
        + encode_varint(len(script_code))
        + script_code
        + value.to_bytes(8, "little")
        + target_input.sequence.to_bytes(4, "little")
        + hash_outputs
        + tx.locktime.to_bytes(4, "little")
        + sighash_type.to_bytes(4, "little")
    )

    return hash256(preimage)


def create_p2wpkh_script_code(pubkey_bytes: bytes) -> bytes:
    """Create the scriptCode for P2WPKH signing (BIP 143).

    For P2WPKH, the scriptCode is the P2PKH script:
    OP_DUP OP_HASH160 <20-byte-pubkeyhash> OP_EQUALVERIFY OP_CHECKSIG
    """
    return b"\x76\xa9\x14" + hash160(pubkey_bytes) + b"\x88\xac"

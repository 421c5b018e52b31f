"""
BIP37 merkle blocks: a block header plus a partial merkle tree proving which
of the block's transactions match the wallet.

The partial tree is encoded depth first: one flag bit per visited node telling
whether it is an ancestor of (or is) a matched transaction, and one hash for
every node whose subtree is not descended into. For a block with three
transactions where only tx2 matches:

        root
       /    \\
     m1      m2
    /  \\    /  \\
  tx1  tx2 tx3  (tx3)

flag bits: root=1 m1=1 tx1=0 tx2=1 m2=0 -> 0b00001011, hashes: [tx1, tx2, m2]
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field

from zincwallet.constants import MAX_BLOCK_TIME_DRIFT, MAX_PROOF_OF_WORK
from zincwallet.wallet.signing import encode_varint, hash256, read_varint

HEADER_SIZE = 80


class MerkleBlockError(ValueError):
    pass


def compact_to_target(bits: int) -> int:
    """Expand a compact ("nBits") difficulty target. Negative targets raise."""
    size = bits >> 24
    word = bits & 0x007FFFFF
    if bits & 0x00800000:
        raise MerkleBlockError(f"Negative compact target: {bits:#010x}")
    if size <= 3:
        return word >> (8 * (3 - size))
    return word << (8 * (size - 3))


@dataclass
class MerkleBlock:
    version: int
    prev_block: bytes
    merkle_root: bytes
    timestamp: int
    target: int
    nonce: int
    total_transactions: int = 0
    hashes: list[bytes] = field(default_factory=list)
    flags: bytes = b""
    height: int | None = None

    @classmethod
    def from_bytes(cls, data: bytes, height: int | None = None) -> MerkleBlock:
        """Parse a merkleblock message (or a bare 80-byte header)."""
        if len(data) < HEADER_SIZE:
            raise MerkleBlockError(f"Merkle block too short: {len(data)} bytes")

        block = cls(
            version=int.from_bytes(data[0:4], "little"),
            prev_block=data[4:36],
            merkle_root=data[36:68],
            timestamp=int.from_bytes(data[68:72], "little"),
            target=int.from_bytes(data[72:76], "little"),
            nonce=int.from_bytes(data[76:80], "little"),
            height=height,
        )
        if len(data) == HEADER_SIZE:
            return block

        try:
            offset = HEADER_SIZE
            block.total_transactions = int.from_bytes(data[offset : offset + 4], "little")
            offset += 4

            hash_count, offset = read_varint(data, offset)
            for _ in range(hash_count):
                if offset + 32 > len(data):
                    raise MerkleBlockError("Truncated merkle block hashes")
                block.hashes.append(data[offset : offset + 32])
                offset += 32

            flag_len, offset = read_varint(data, offset)
            if offset + flag_len != len(data):
                raise MerkleBlockError("Merkle block flag length does not match payload")
            block.flags = data[offset : offset + flag_len]
        except IndexError as e:
            raise MerkleBlockError(f"Truncated merkle block: {e}") from e

        return block

    @classmethod
    def from_hex(cls, data: str, height: int | None = None) -> MerkleBlock:
        return cls.from_bytes(bytes.fromhex(data), height)

    def header(self) -> bytes:
        return (
            self.version.to_bytes(4, "little")
            + self.prev_block
            + self.merkle_root
            + self.timestamp.to_bytes(4, "little")
            + self.target.to_bytes(4, "little")
            + self.nonce.to_bytes(4, "little")
        )

    def serialize(self) -> bytes:
        result = self.header()
        if self.total_transactions > 0:
            result += self.total_transactions.to_bytes(4, "little")
            result += encode_varint(len(self.hashes)) + b"".join(self.hashes)
            result += encode_varint(len(self.flags)) + self.flags
        return result

    @property
    def block_hash(self) -> str:
        return hash256(self.header())[::-1].hex()

    def _tree_width(self, height: int) -> int:
        return (self.total_transactions + (1 << height) - 1) >> height

    def _tree_height(self) -> int:
        height = 0
        while self._tree_width(height) > 1:
            height += 1
        return height

    def _walk(self) -> tuple[bytes, list[bytes]]:
        """Rebuild the merkle root from the partial tree; returns (root, matched hashes)."""
        if self.total_transactions == 0:
            raise MerkleBlockError("Merkle block without transactions")
        if len(self.hashes) > self.total_transactions:
            raise MerkleBlockError("More hashes than transactions")
        if len(self.flags) * 8 < len(self.hashes):
            raise MerkleBlockError("Fewer flag bits than hashes")

        hash_idx = 0
        flag_idx = 0
        matched: list[bytes] = []

        def traverse(height: int, pos: int) -> bytes:
            nonlocal hash_idx, flag_idx

            if flag_idx >= len(self.flags) * 8:
                raise MerkleBlockError("Ran out of flag bits")
            flag = bool(self.flags[flag_idx // 8] & (1 << (flag_idx % 8)))
            flag_idx += 1

            if height == 0 or not flag:
                if hash_idx >= len(self.hashes):
                    raise MerkleBlockError("Ran out of hashes")
                node = self.hashes[hash_idx]
                hash_idx += 1
                if height == 0 and flag:
                    matched.append(node)
                return node

            left = traverse(height - 1, pos * 2)
            if pos * 2 + 1 < self._tree_width(height - 1):
                right = traverse(height - 1, pos * 2 + 1)
                if right == left:
                    # Identical siblings allow forging a tree with a duplicated tail
                    raise MerkleBlockError("Duplicate merkle branch")
            else:
                right = left
            return hash256(left + right)

        root = traverse(self._tree_height(), 0)

        if hash_idx != len(self.hashes):
            raise MerkleBlockError("Not all merkle hashes were consumed")
        if (flag_idx + 7) // 8 != len(self.flags):
            raise MerkleBlockError("Not all merkle flag bytes were consumed")

        return root, matched

    def tx_hashes(self) -> list[str]:
        """Matched transaction ids (display byte order)"""
        if self.total_transactions == 0:
            return []
        _, matched = self._walk()
        return [h[::-1].hex() for h in matched]

    def contains(self, txid: str) -> bool:
        return txid in self.tx_hashes()

    def is_valid(self, network: str = "mainnet", now: float | None = None) -> bool:
        """
        True if the partial merkle tree matches the header, the timestamp is not
        too far in the future and the header hash meets its own target.

        Whether the target is correct for this height is not checked here.
        """
        if self.total_transactions > 0:
            try:
                root, _ = self._walk()
            except MerkleBlockError:
                return False
            if root != self.merkle_root:
                return False

        if now is None:
            now = time.time()
        if self.timestamp > now + MAX_BLOCK_TIME_DRIFT:
            return False

        return self.meets_target(network)

    def meets_target(self, network: str = "mainnet") -> bool:
        try:
            target = compact_to_target(self.target)
            max_target = compact_to_target(MAX_PROOF_OF_WORK[network])
        except MerkleBlockError:
            return False

        if target == 0 or target > max_target:
            return False

        return int.from_bytes(hash256(self.header()), "little") <= target

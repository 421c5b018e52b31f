"""
Bitcoin address generation and validation utilities.
"""

from __future__ import annotations

import hashlib

import base58
from bip_utils import Bech32ChecksumError, SegwitBech32Decoder, SegwitBech32Encoder

from zincwallet.constants import BASE58_VERSIONS, BECH32_HRP
from zincwallet.errors import InvalidAddress


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))"""
    h = hashlib.new("ripemd160")
    h.update(hashlib.sha256(data).digest())
    return h.digest()


def _hrp(network: str) -> str:
    try:
        return BECH32_HRP[network]
    except KeyError:
        raise ValueError(f"Unknown network: {network}") from None


def pubkey_to_p2wpkh_address(pubkey: bytes, network: str = "mainnet") -> str:
    """
    Convert compressed public key to P2WPKH (native segwit) address.
    BIP173 bech32 encoding.
    """
    if len(pubkey) != 33:
        raise ValueError(f"Invalid compressed pubkey length: {len(pubkey)}")

    return SegwitBech32Encoder.Encode(_hrp(network), 0, hash160(pubkey))


def pubkey_to_p2wpkh_script(pubkey: bytes) -> bytes:
    """Create P2WPKH scriptPubKey (OP_0 <20-byte-hash>)"""
    return bytes([0x00, 0x14]) + hash160(pubkey)


def _decode_segwit(address: str, network: str) -> bytes:
    hrp = _hrp(network)
    if address.lower().rpartition("1")[0] != hrp:
        raise InvalidAddress(f"Address {address} is not a {network} address")

    if address not in (address.lower(), address.upper()):
        raise InvalidAddress(f"Mixed-case bech32 address: {address}")
    address = address.lower()

    try:
        witver, program = SegwitBech32Decoder.Decode(hrp, address)
    except (Bech32ChecksumError, ValueError) as e:
        raise InvalidAddress(f"Invalid bech32 address {address}: {e}") from e

    # v0 takes the bech32 checksum, v1+ bech32m (BIP350); the encoder picks
    # the variant from the version, so a mismatched checksum won't round-trip
    if SegwitBech32Encoder.Encode(hrp, witver, program) != address:
        raise InvalidAddress(f"Wrong checksum variant for witness v{witver}: {address}")

    program = bytes(program)
    if witver == 0:
        if len(program) not in (20, 32):
            raise InvalidAddress(f"Invalid witness v0 program length: {len(program)}")
        return bytes([0x00, len(program)]) + program
    if witver == 1 and len(program) == 32:
        # P2TR: OP_1 <32-byte-pubkey>
        return bytes([0x51, 0x20]) + program

    raise InvalidAddress(f"Unsupported witness version: {witver}")


def _decode_base58(address: str, network: str) -> bytes:
    try:
        decoded = base58.b58decode_check(address)
    except ValueError as e:
        raise InvalidAddress(f"Invalid base58 address {address}: {e}") from e

    if len(decoded) != 21:
        raise InvalidAddress(f"Invalid base58 payload length: {len(decoded)}")

    version, payload = decoded[0], decoded[1:]
    p2pkh_version, p2sh_version = BASE58_VERSIONS[network]

    if version == p2pkh_version:
        # OP_DUP OP_HASH160 <20-byte-pubkeyhash> OP_EQUALVERIFY OP_CHECKSIG
        return bytes([0x76, 0xA9, 0x14]) + payload + bytes([0x88, 0xAC])
    if version == p2sh_version:
        # OP_HASH160 <20-byte-scripthash> OP_EQUAL
        return bytes([0xA9, 0x14]) + payload + bytes([0x87])

    raise InvalidAddress(f"Address version {version} does not belong to {network}")


def address_to_scriptpubkey(address: str, network: str = "mainnet") -> bytes:
    """
    Convert a Bitcoin address to scriptPubKey.

    Supports:
    - P2WPKH / P2WSH (witness v0)
    - P2TR (witness v1)
    - P2PKH / P2SH (base58check)

    Raises:
        InvalidAddress: On malformed addresses, bad checksums or a network mismatch
    """
    if not address or not address.isascii():
        raise InvalidAddress(f"Invalid address: {address!r}")

    if address.lower().startswith(("bc1", "tb1", "bcrt1")):
        return _decode_segwit(address, network)

    return _decode_base58(address, network)


def validate_address(address: str, network: str = "mainnet") -> str:
    """Return the address unchanged if it is a valid destination on network."""
    address_to_scriptpubkey(address, network)
    return address


def scriptpubkey_to_address(scriptpubkey: bytes, network: str = "mainnet") -> str | None:
    """
    Convert a scriptPubKey to its address.

    Returns None for scripts that have no standard address form.
    """
    # P2WPKH / P2WSH
    if len(scriptpubkey) in (22, 34) and scriptpubkey[0] == 0x00 and scriptpubkey[1] == len(
        scriptpubkey
    ) - 2:
        return SegwitBech32Encoder.Encode(_hrp(network), 0, scriptpubkey[2:])

    # P2TR (bech32m)
    if len(scriptpubkey) == 34 and scriptpubkey[0] == 0x51 and scriptpubkey[1] == 0x20:
        return SegwitBech32Encoder.Encode(_hrp(network), 1, scriptpubkey[2:])

    p2pkh_version, p2sh_version = BASE58_VERSIONS[network]

    # P2PKH
    if (
        len(scriptpubkey) == 25
        and scriptpubkey[:3] == bytes([0x76, 0xA9, 0x14])
        and scriptpubkey[23:] == bytes([0x88, 0xAC])
    ):
        return base58.b58encode_check(bytes([p2pkh_version]) + scriptpubkey[3:23]).decode("ascii")

    # P2SH
    if len(scriptpubkey) == 23 and scriptpubkey[:2] == bytes([0xA9, 0x14]) and scriptpubkey[22] == 0x87:
        return base58.b58encode_check(bytes([p2sh_version]) + scriptpubkey[2:22]).decode("ascii")

    return None

"""
BIP39 seeds and BIP32 HD key derivation.
Implements BIP84 (Native SegWit) derivation paths.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass, field

from coincurve import PrivateKey, PublicKey
from mnemonic import Mnemonic

from zincwallet.constants import BIP84_PURPOSE
from zincwallet.errors import InvalidPhrase
from zincwallet.wallet.address import pubkey_to_p2wpkh_address, pubkey_to_p2wpkh_script
from zincwallet.wallet.models import Chain

# secp256k1 curve order
SECP256K1_N = int("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)

HARDENED = 0x80000000

_wordlist = Mnemonic("english")
_words = frozenset(_wordlist.wordlist)


@dataclass(frozen=True)
class Seed:
    """64-byte BIP39 seed. The bytes never appear in repr."""

    data: bytes = field(repr=False)

    def __post_init__(self) -> None:
        if len(self.data) != 64:
            raise ValueError(f"Seed must be 64 bytes, got {len(self.data)}")


class HDKey:
    """
    Hierarchical Deterministic Key for Bitcoin.
    Implements BIP32 private derivation.
    """

    def __init__(self, private_key: PrivateKey, chain_code: bytes, depth: int = 0):
        self._private_key = private_key
        self._public_key = private_key.public_key
        self.chain_code = chain_code
        self.depth = depth

    @property
    def private_key(self) -> PrivateKey:
        """Return the coincurve PrivateKey instance."""
        return self._private_key

    @property
    def public_key(self) -> PublicKey:
        """Return the coincurve PublicKey instance."""
        return self._public_key

    @classmethod
    def from_seed(cls, seed: bytes) -> HDKey:
        """Create master HD key from seed"""
        hmac_result = hmac.new(b"Bitcoin seed", seed, hashlib.sha512).digest()
        return cls(PrivateKey(hmac_result[:32]), hmac_result[32:], depth=0)

    def derive(self, path: str) -> HDKey:
        """
        Derive child key from path notation (e.g., "m/84'/0'/0'/0/0")
        ' indicates hardened derivation
        """
        if not path.startswith("m"):
            raise ValueError("Path must start with 'm'")

        key = self
        for part in path.split("/")[1:]:
            if not part:
                continue

            hardened = part.endswith("'") or part.endswith("h")
            index = int(part.rstrip("'h"))
            if hardened:
                index += HARDENED

            key = key.derive_child(index)

        return key

    def derive_child(self, index: int) -> HDKey:
        """Derive a child key at the given index (>= 2^31 is hardened)"""
        if index >= HARDENED:
            data = b"\x00" + self._private_key.secret + index.to_bytes(4, "big")
        else:
            data = self._public_key.format(compressed=True) + index.to_bytes(4, "big")

        hmac_result = hmac.new(self.chain_code, data, hashlib.sha512).digest()
        offset_int = int.from_bytes(hmac_result[:32], "big")
        if offset_int >= SECP256K1_N:
            raise ValueError(f"Invalid child key at index {index}")

        parent_key_int = int.from_bytes(self._private_key.secret, "big")
        child_key_int = (parent_key_int + offset_int) % SECP256K1_N
        if child_key_int == 0:
            raise ValueError(f"Invalid child key at index {index}")

        return HDKey(PrivateKey(child_key_int.to_bytes(32, "big")), hmac_result[32:], self.depth + 1)

    def get_public_key_bytes(self, compressed: bool = True) -> bytes:
        """Get public key bytes"""
        return self._public_key.format(compressed=compressed)


@dataclass(frozen=True)
class KeyPair:
    """A derived key with its P2WPKH address. The private key is only used to sign."""

    chain: Chain
    index: int
    path: str
    public_key: bytes
    address: str
    _private_key: PrivateKey = field(repr=False, compare=False)

    @property
    def scriptpubkey(self) -> bytes:
        return pubkey_to_p2wpkh_script(self.public_key)

    def sign_digest(self, digest: bytes) -> bytes:
        """DER-encoded low-S ECDSA signature over an already hashed 32-byte digest."""
        if len(digest) != 32:
            raise ValueError(f"Digest must be 32 bytes, got {len(digest)}")
        return self._private_key.sign(digest, hasher=None)


class KeyChain:
    """
    BIP84 account keychain.

    Derivation path: m/84'/{coin}'/{account}'/{chain}/{index}
    - coin: 0 on mainnet, 1 on test networks
    - chain: 0 (external/receive), 1 (internal/change)

    The chain-level extended keys are derived once, so deriving an address
    only costs a single non-hardened step.
    """

    def __init__(self, seed: Seed, network: str = "mainnet", account: int = 0):
        self.network = network
        self.account = account

        coin_type = 0 if network == "mainnet" else 1
        self.account_path = f"m/{BIP84_PURPOSE}'/{coin_type}'/{account}'"

        account_key = HDKey.from_seed(seed.data).derive(self.account_path)
        self._chain_keys = {chain: account_key.derive_child(int(chain)) for chain in Chain}

    def path(self, chain: Chain, index: int) -> str:
        return f"{self.account_path}/{int(chain)}/{index}"

    def key_pair(self, chain: Chain, index: int) -> KeyPair:
        if index < 0 or index >= HARDENED:
            raise ValueError(f"Address index out of range: {index}")

        key = self._chain_keys[Chain(chain)].derive_child(index)
        pubkey = key.get_public_key_bytes(compressed=True)

        return KeyPair(
            chain=Chain(chain),
            index=index,
            path=self.path(chain, index),
            public_key=pubkey,
            address=pubkey_to_p2wpkh_address(pubkey, self.network),
            _private_key=key.private_key,
        )

    def address(self, chain: Chain, index: int) -> str:
        return self.key_pair(chain, index).address


def _normalize_phrase(phrase: str) -> str:
    return " ".join(phrase.lower().split())


def generate_random_seed(passphrase: str = "", strength: int = 256) -> tuple[str, Seed]:
    """
    Generate a new BIP39 phrase and its seed from secure entropy.

    Args:
        passphrase: Optional BIP39 passphrase ("25th word")
        strength: Entropy bits (128 for 12 words, 256 for 24 words)

    Returns:
        (phrase, seed). The phrase must be shown to the user once and not stored.
    """
    if strength not in (128, 160, 192, 224, 256):
        raise ValueError(f"Invalid entropy strength: {strength}")

    phrase = _wordlist.to_mnemonic(secrets.token_bytes(strength // 8))
    return phrase, derive_seed(phrase, passphrase)


def derive_seed(phrase: str, passphrase: str = "") -> Seed:
    """Map a BIP39 phrase to its seed after word-list and checksum validation."""
    normalized = _normalize_phrase(phrase)

    words = normalized.split(" ")
    if len(words) not in (12, 15, 18, 21, 24):
        raise InvalidPhrase(f"Seed phrase must have 12-24 words, got {len(words)}")

    unknown = [w for w in words if w not in _words]
    if unknown:
        raise InvalidPhrase(f"{len(unknown)} word(s) not in the BIP39 word list")

    if not _wordlist.check(normalized):
        raise InvalidPhrase("Seed phrase checksum mismatch")

    return Seed(Mnemonic.to_seed(normalized, passphrase))


def derive_key_pair(
    seed: Seed,
    index: int,
    chain: Chain = Chain.RECEIVE,
    network: str = "mainnet",
    account: int = 0,
) -> KeyPair:
    """Deterministically derive the KeyPair at m/84'/coin'/account'/chain/index."""
    return KeyChain(seed, network, account).key_pair(chain, index)

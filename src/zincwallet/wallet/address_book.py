"""
Gap-limited pool of derived addresses.
"""

from __future__ import annotations

from loguru import logger

from zincwallet.errors import WalletConsistencyError
from zincwallet.wallet.bip32 import KeyChain, KeyPair
from zincwallet.wallet.models import AddressBookState, AddressEntry, Chain


class AddressBook:
    """
    Tracks derived receive and change addresses and which of them have been used.

    For each chain at least ``gap_limit`` unused addresses always exist after
    the highest-index used address, so a wallet restored from its seed finds
    every funded address when scanning up to the gap.
    """

    def __init__(
        self,
        keychain: KeyChain,
        gap_limit: int = 20,
        entries: list[AddressEntry] | None = None,
    ):
        if gap_limit < 1:
            raise ValueError(f"gap_limit must be >= 1, got {gap_limit}")

        self.keychain = keychain
        self.gap_limit = gap_limit

        self._chains: dict[Chain, list[AddressEntry]] = {chain: [] for chain in Chain}
        self._by_address: dict[str, AddressEntry] = {}
        self._new_addresses: list[str] = []

        for entry in sorted(entries or [], key=lambda e: (e.chain, e.index)):
            self._restore(entry)

        for chain in Chain:
            self._extend(chain)

    def _restore(self, entry: AddressEntry) -> None:
        """Re-derive a persisted entry; a mismatch means it belongs to another seed."""
        if entry.index != len(self._chains[entry.chain]):
            raise WalletConsistencyError(
                f"Gap in persisted {entry.chain.name.lower()} chain at index {entry.index}"
            )

        key = self.keychain.key_pair(entry.chain, entry.index)
        if key.address != entry.address:
            raise WalletConsistencyError(
                f"Persisted address at {key.path} does not match the wallet seed"
            )

        self._add(key)
        self._by_address[key.address].used = entry.used

    def _highest_used(self, chain: Chain) -> int:
        for entry in reversed(self._chains[chain]):
            if entry.used:
                return entry.index
        return -1

    def _extend(self, chain: Chain) -> list[str]:
        """Derive addresses until the gap invariant holds. No-op when it already does."""
        entries = self._chains[chain]
        target = self._highest_used(chain) + self.gap_limit + 1

        derived = []
        while len(entries) < target:
            key = self.keychain.key_pair(chain, len(entries))
            self._add(key)
            derived.append(key.address)

        if derived:
            self._new_addresses.extend(derived)
            logger.debug(f"Extended {chain.name.lower()} chain to {len(entries)} addresses")

        return derived

    def _add(self, key: KeyPair) -> None:
        if key.address in self._by_address:
            raise WalletConsistencyError(
                f"Address collision at {key.path}: already derived at "
                f"{self._by_address[key.address].chain.name}/{self._by_address[key.address].index}"
            )

        entry = AddressEntry(
            chain=key.chain, index=key.index, address=key.address, public_key=key.public_key.hex()
        )
        self._chains[key.chain].append(entry)
        self._by_address[key.address] = entry

    def mark_used(self, address: str) -> list[str]:
        """
        Flag an address as used and extend its chain if the gap shrank.

        Returns:
            Addresses derived by the extension (empty if none were needed or the
            address is not ours)
        """
        entry = self._by_address.get(address)
        if entry is None:
            return []

        if not entry.used:
            entry.used = True
            logger.debug(f"Address {entry.chain.name.lower()}/{entry.index} marked used")

        return self._extend(entry.chain)

    def is_owned(self, address: str) -> bool:
        return address in self._by_address

    def lookup(self, address: str) -> AddressEntry | None:
        return self._by_address.get(address)

    def next_unused(self, chain: Chain = Chain.RECEIVE) -> str:
        """Lowest-index address of the chain that has not been used"""
        for entry in self._chains[chain]:
            if not entry.used:
                return entry.address

        # Unreachable while the gap invariant holds
        raise WalletConsistencyError(f"No unused {chain.name.lower()} address available")

    def entries(self, chain: Chain) -> list[AddressEntry]:
        return list(self._chains[chain])

    def all_addresses(self) -> list[str]:
        return [entry.address for chain in Chain for entry in self._chains[chain]]

    def unused_after_highest_used(self, chain: Chain) -> int:
        return len(self._chains[chain]) - self._highest_used(chain) - 1

    def drain_new_addresses(self) -> list[str]:
        """Return and forget the addresses derived since the previous call."""
        new, self._new_addresses = self._new_addresses, []
        return new

    def key_pair_for(self, address: str) -> KeyPair | None:
        """Re-derive the key pair for an owned address"""
        entry = self._by_address.get(address)
        if entry is None:
            return None
        return self.keychain.key_pair(entry.chain, entry.index)

    def to_state(self) -> AddressBookState:
        return AddressBookState(
            gap_limit=self.gap_limit,
            entries=[entry.model_copy() for chain in Chain for entry in self._chains[chain]],
        )

    @classmethod
    def from_state(
        cls, keychain: KeyChain, state: AddressBookState, gap_limit: int | None = None
    ) -> AddressBook:
        book = cls(keychain, gap_limit or state.gap_limit, entries=state.entries)
        logger.debug(f"Restored address book with {len(book._by_address)} addresses")
        return book

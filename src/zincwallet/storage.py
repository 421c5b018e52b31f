"""
Wallet state persistence.

The wallet calls WalletStore.save() after every state-affecting mutation; the
last successful save is the recovery point after a crash.
"""

from __future__ import annotations

import asyncio
import base64
import contextlib
import os
import secrets
from abc import ABC, abstractmethod
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from loguru import logger

from zincwallet.errors import WalletError
from zincwallet.wallet.bip32 import Seed
from zincwallet.wallet.models import WalletState

PBKDF2_ITERATIONS = 600_000


class StorageError(WalletError):
    pass


class SeedCipher:
    """Encrypts the seed with a Fernet key stretched from a password."""

    def __init__(
        self, password: str, salt: bytes | None = None, iterations: int = PBKDF2_ITERATIONS
    ):
        self.salt = salt if salt is not None else secrets.token_bytes(16)
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(), length=32, salt=self.salt, iterations=iterations
        )
        key = base64.urlsafe_b64encode(kdf.derive(password.encode("utf-8")))
        self._fernet = Fernet(key)

    @property
    def salt_hex(self) -> str:
        return self.salt.hex()

    def encrypt(self, seed: Seed) -> str:
        return self._fernet.encrypt(seed.data).decode("ascii")

    def decrypt(self, token: str) -> Seed:
        try:
            return Seed(self._fernet.decrypt(token.encode("ascii")))
        except InvalidToken as e:
            raise StorageError("Wrong password or corrupted seed") from e


class WalletStore(ABC):
    @abstractmethod
    async def load(self) -> WalletState | None:
        """Return the last saved state, or None for a new wallet"""

    @abstractmethod
    async def save(self, state: WalletState) -> None:
        """Persist state atomically"""


class MemoryWalletStore(WalletStore):
    def __init__(self, state: WalletState | None = None):
        self._state = state
        self.save_count = 0

    async def load(self) -> WalletState | None:
        return self._state.model_copy(deep=True) if self._state is not None else None

    async def save(self, state: WalletState) -> None:
        self._state = state.model_copy(deep=True)
        self.save_count += 1


class FileWalletStore(WalletStore):
    """
    JSON file store.

    Saves go to a temporary file that is fsynced and then renamed over the
    wallet file, so a crash leaves either the old or the new state on disk.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    async def load(self) -> WalletState | None:
        return await asyncio.to_thread(self._load)

    def _load(self) -> WalletState | None:
        if not self.path.exists():
            return None
        try:
            return WalletState.model_validate_json(self.path.read_text(encoding="utf-8"))
        except ValueError as e:
            raise StorageError(f"Corrupted wallet file {self.path}: {e}") from e

    async def save(self, state: WalletState) -> None:
        await asyncio.to_thread(self._save, state.model_dump_json(indent=2))

    def _save(self, payload: str) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except OSError as e:
            with contextlib.suppress(OSError):
                tmp_path.unlink(missing_ok=True)
            raise StorageError(f"Could not write wallet file {self.path}: {e}") from e

        logger.debug(f"Saved wallet state to {self.path}")

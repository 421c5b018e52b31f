"""
Esplora REST API sync provider (blockstream.info, mempool.space or self-hosted).

Polls the API for every watched address and delivers new or re-confirmed
transactions together with their BIP37 merkle proofs, so confirmations are
checked against block headers instead of being taken on the server's word.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Sequence
from decimal import Decimal
from typing import Any

import httpx
from loguru import logger

from zincwallet.backends.base import (
    BroadcastResult,
    ObservedTransaction,
    ProviderListener,
    SyncProvider,
)
from zincwallet.errors import ProviderError
from zincwallet.merkle import MerkleBlock, MerkleBlockError

DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_POLL_INTERVAL = 30.0

# Esplora returns up to 25 confirmed transactions per address page
CHAIN_PAGE_SIZE = 25


class EsploraProvider(SyncProvider):
    def __init__(
        self,
        base_url: str = "https://mempool.space/api",
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.poll_interval = poll_interval
        self.client = client or httpx.AsyncClient(timeout=request_timeout)

        self._watched: set[str] = set()
        self._listener: ProviderListener | None = None
        self._task: asyncio.Task | None = None

        # txid -> confirmed height (None while in the mempool) as last delivered
        self._delivered: dict[str, int | None] = {}
        self._raw_cache: dict[str, str] = {}
        self._tip_height: int | None = None

    async def _get(self, path: str) -> httpx.Response:
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            response = await self.client.get(url)
            response.raise_for_status()
            return response
        except httpx.HTTPError as e:
            raise ProviderError(f"Esplora request {path} failed: {e}") from e

    async def _get_json(self, path: str) -> Any:
        response = await self._get(path)
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(f"Esplora returned invalid JSON for {path}") from e

    async def watch(self, addresses: Sequence[str]) -> None:
        self._watched.update(addresses)

    async def unwatch(self, addresses: Sequence[str]) -> None:
        self._watched.difference_update(addresses)

    async def get_tip_height(self) -> int:
        response = await self._get("blocks/tip/height")
        try:
            return int(response.text.strip())
        except ValueError as e:
            raise ProviderError(f"Invalid tip height: {response.text!r}") from e

    async def get_address_transactions(self, address: str) -> list[dict[str, Any]]:
        """All transactions of an address: mempool first, then confirmed, newest first."""
        txs: list[dict[str, Any]] = await self._get_json(f"address/{address}/txs")

        confirmed = [t for t in txs if t.get("status", {}).get("confirmed")]
        page = confirmed
        while len(page) >= CHAIN_PAGE_SIZE:
            page = await self._get_json(f"address/{address}/txs/chain/{page[-1]['txid']}")
            txs.extend(page)

        return txs

    async def get_raw_transaction(self, txid: str) -> str:
        raw = self._raw_cache.get(txid)
        if raw is None:
            raw = (await self._get(f"tx/{txid}/hex")).text.strip()
            self._raw_cache[txid] = raw
        return raw

    async def get_merkle_proof(self, txid: str, height: int) -> MerkleBlock:
        proof = (await self._get(f"tx/{txid}/merkleblock-proof")).text.strip()
        try:
            return MerkleBlock.from_hex(proof, height)
        except (MerkleBlockError, ValueError) as e:
            raise ProviderError(f"Invalid merkle proof for {txid}: {e}") from e

    async def get_block_header(self, height: int) -> MerkleBlock:
        block_hash = (await self._get(f"block-height/{height}")).text.strip()
        header = (await self._get(f"block/{block_hash}/header")).text.strip()
        try:
            return MerkleBlock.from_hex(header, height)
        except (MerkleBlockError, ValueError) as e:
            raise ProviderError(f"Invalid header for block {height}: {e}") from e

    async def poll_once(self) -> None:
        """Fetch changes since the last poll and hand them to the listener."""
        listener = self._listener
        if listener is None:
            return

        tip = await self.get_tip_height()

        seen: dict[str, dict[str, Any]] = {}
        for address in sorted(self._watched):
            for tx in await self.get_address_transactions(address):
                seen[tx["txid"]] = tx

        transactions: list[ObservedTransaction] = []
        blocks: list[MerkleBlock] = []
        for txid, tx in seen.items():
            status = tx.get("status", {})
            height = status.get("block_height") if status.get("confirmed") else None
            if txid in self._delivered and self._delivered[txid] == height:
                continue

            transactions.append(
                ObservedTransaction(
                    txid=txid,
                    raw=await self.get_raw_transaction(txid),
                    block_height=height,
                    block_time=status.get("block_time") if height is not None else None,
                )
            )
            if height is not None:
                blocks.append(await self.get_merkle_proof(txid, height))

        if tip != self._tip_height:
            blocks.append(await self.get_block_header(tip))

        if transactions:
            await listener.on_transactions(transactions)
        if blocks:
            await listener.on_blocks(blocks)

        for tx in transactions:
            self._delivered[tx.txid] = tx.block_height
        self._tip_height = tip

        logger.debug(
            f"Esplora poll: tip {tip}, {len(transactions)} transaction(s), "
            f"{len(self._watched)} watched address(es)"
        )
        await listener.on_caught_up()

    async def _run(self) -> None:
        while True:
            try:
                await self.poll_once()
            except (ProviderError, KeyError, TypeError) as e:
                # KeyError/TypeError: response did not have the expected shape
                logger.warning(f"Esplora poll failed: {e!r}")
                await self._report_error(str(e))
            except Exception as e:
                # Raised by the listener; the polling loop must outlive it
                logger.exception(f"Unexpected error while delivering Esplora data: {e}")
                await self._report_error(f"unexpected error: {e}")
            await asyncio.sleep(self.poll_interval)

    async def _report_error(self, reason: str) -> None:
        if self._listener is None:
            return
        try:
            await self._listener.on_error(reason)
        except Exception as e:
            logger.exception(f"Listener failed to handle error {reason!r}: {e}")

    async def start(self, listener: ProviderListener) -> None:
        self._listener = listener
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())
            logger.info(f"Esplora provider polling {self.base_url} every {self.poll_interval}s")

    async def stop(self) -> None:
        task, self._task = self._task, None
        self._listener = None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def broadcast(self, tx_hex: str) -> BroadcastResult:
        url = f"{self.base_url}/tx"
        try:
            response = await self.client.post(url, content=tx_hex)
        except httpx.HTTPError as e:
            raise ProviderError(f"Broadcast failed: {e}") from e

        if response.status_code == 200:
            return BroadcastResult(accepted=True, txid=response.text.strip())
        if 400 <= response.status_code < 500:
            return BroadcastResult(accepted=False, reason=response.text.strip())
        raise ProviderError(f"Broadcast failed with HTTP {response.status_code}")

    async def estimate_fee(self, target_blocks: int) -> Decimal | None:
        estimates: dict[str, float] = await self._get_json("fee-estimates")
        if not estimates:
            return None

        targets = sorted(int(k) for k in estimates)
        chosen = next((t for t in targets if t >= target_blocks), targets[-1])
        return Decimal(str(estimates[str(chosen)]))

    async def close(self) -> None:
        await self.stop()
        await self.client.aclose()

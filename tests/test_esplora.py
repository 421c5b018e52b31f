"""
Tests for the Esplora REST provider (mocked HTTP transport).
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from decimal import Decimal

import httpx
import pytest

from zincwallet.backends.base import ObservedTransaction
from zincwallet.backends.esplora import EsploraProvider
from zincwallet.errors import ProviderError
from zincwallet.events import SyncEvent, WalletEvent
from zincwallet.merkle import MerkleBlock
from zincwallet.storage import MemoryWalletStore, StorageError
from zincwallet.sync import SyncCoordinator, SyncStatus
from zincwallet.wallet.service import WalletService

BASE_URL = "https://esplora.test/api"
TIP = 150


def mined(block: MerkleBlock) -> MerkleBlock:
    while not block.meets_target("regtest"):
        block.nonce += 1
    return block


def proof_for(txid: str, height: int) -> MerkleBlock:
    leaf = bytes.fromhex(txid)[::-1]
    return mined(
        MerkleBlock(
            version=0x20000000,
            prev_block=b"\x00" * 32,
            merkle_root=leaf,
            timestamp=1_700_000_000,
            target=0x207FFFFF,
            nonce=0,
            total_transactions=1,
            hashes=[leaf],
            flags=b"\x01",
            height=height,
        )
    )


class FakeEsplora:
    """Just enough of the Esplora API for the provider."""

    def __init__(self) -> None:
        self.tip = TIP
        self.address_txs: dict[str, list[dict]] = {}
        self.raw: dict[str, str] = {}
        self.requests: list[str] = []
        self.tip_header = mined(
            MerkleBlock(0x20000000, b"\x00" * 32, b"\x11" * 32, 1_700_000_000, 0x207FFFFF, 0)
        )

    def add(self, address: str, tx: ObservedTransaction, height: int | None = None) -> None:
        status = {"confirmed": height is not None}
        if height is not None:
            status.update(block_height=height, block_time=1_700_000_000)
        self.address_txs.setdefault(address, []).insert(0, {"txid": tx.txid, "status": status})
        self.raw[tx.txid] = tx.raw

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/api/")
        self.requests.append(f"{request.method} {path}")
        parts = path.split("/")

        if path == "blocks/tip/height":
            return httpx.Response(200, text=str(self.tip))
        if parts[0] == "address":
            return httpx.Response(200, json=self.address_txs.get(parts[1], []))
        if parts[0] == "tx" and parts[-1] == "hex":
            return httpx.Response(200, text=self.raw[parts[1]])
        if parts[0] == "tx" and parts[-1] == "merkleblock-proof":
            height = next(
                t["status"]["block_height"]
                for txs in self.address_txs.values()
                for t in txs
                if t["txid"] == parts[1]
            )
            return httpx.Response(200, text=proof_for(parts[1], height).serialize().hex())
        if parts[0] == "block-height":
            return httpx.Response(200, text="22" * 32)
        if parts[0] == "block" and parts[-1] == "header":
            return httpx.Response(200, text=self.tip_header.header().hex())
        return httpx.Response(404, text="not found")


class RecordingListener:
    def __init__(self) -> None:
        self.transactions: list[ObservedTransaction] = []
        self.blocks: list[MerkleBlock] = []
        self.errors: list[str] = []
        self.caught_up = 0

    async def on_transactions(self, transactions) -> None:
        self.transactions.extend(transactions)

    async def on_blocks(self, blocks) -> None:
        self.blocks.extend(blocks)

    async def on_error(self, reason: str) -> None:
        self.errors.append(reason)

    async def on_caught_up(self) -> None:
        self.caught_up += 1


@pytest.fixture
def esplora() -> FakeEsplora:
    return FakeEsplora()


@pytest.fixture
def make_provider(esplora: FakeEsplora) -> Callable[..., EsploraProvider]:
    def _make(handler=None, poll_interval: float = 3600) -> EsploraProvider:
        transport = httpx.MockTransport(handler or esplora.handler)
        return EsploraProvider(
            BASE_URL, poll_interval=poll_interval, client=httpx.AsyncClient(transport=transport)
        )

    return _make


class TestPolling:
    @pytest.mark.asyncio
    async def test_poll_delivers_new_transactions(
        self, esplora: FakeEsplora, make_provider, wallet: WalletService, make_tx
    ) -> None:
        address = wallet.receive_address
        tx = make_tx([(address, 12_000)])
        esplora.add(address, tx)

        provider = make_provider()
        listener = RecordingListener()
        provider._listener = listener
        await provider.watch([address])

        await provider.poll_once()

        assert [t.txid for t in listener.transactions] == [tx.txid]
        assert listener.transactions[0].raw == tx.raw
        assert listener.transactions[0].block_height is None
        # Tip header delivered once
        assert [b.height for b in listener.blocks] == [TIP]
        assert listener.caught_up == 1

        await provider.poll_once()

        assert len(listener.transactions) == 1
        assert len(listener.blocks) == 1
        assert listener.caught_up == 2
        await provider.close()

    @pytest.mark.asyncio
    async def test_confirmation_redelivered_with_proof(
        self, esplora: FakeEsplora, make_provider, wallet: WalletService, make_tx
    ) -> None:
        address = wallet.receive_address
        tx = make_tx([(address, 12_000)])
        esplora.add(address, tx)

        provider = make_provider()
        listener = RecordingListener()
        provider._listener = listener
        await provider.watch([address])
        await provider.poll_once()

        esplora.address_txs[address][0]["status"] = {
            "confirmed": True,
            "block_height": 149,
            "block_time": 1_700_000_000,
        }
        await provider.poll_once()

        assert [t.block_height for t in listener.transactions] == [None, 149]
        proof = listener.blocks[-1]
        assert proof.height == 149
        assert proof.tx_hashes() == [tx.txid]
        # Raw transaction fetched only once
        assert esplora.requests.count(f"GET tx/{tx.txid}/hex") == 1
        await provider.close()

    @pytest.mark.asyncio
    async def test_address_paging(self, make_provider) -> None:
        first = [{"txid": f"{i:064x}", "status": {"confirmed": True}} for i in range(25)]
        second = [{"txid": f"{i:064x}", "status": {"confirmed": True}} for i in range(25, 28)]

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith(f"/txs/chain/{first[-1]['txid']}"):
                return httpx.Response(200, json=second)
            return httpx.Response(200, json=first)

        provider = make_provider(handler)
        txs = await provider.get_address_transactions("bcrt1qexample")

        assert len(txs) == 28
        await provider.close()

    @pytest.mark.asyncio
    async def test_http_error_becomes_provider_error(self, make_provider) -> None:
        provider = make_provider(lambda request: httpx.Response(503, text="unavailable"))

        with pytest.raises(ProviderError):
            await provider.get_tip_height()
        await provider.close()

    @pytest.mark.asyncio
    async def test_poll_loop_reports_errors(self, make_provider) -> None:
        provider = make_provider(lambda request: httpx.Response(500), poll_interval=3600)
        listener = RecordingListener()

        await provider.start(listener)
        for _ in range(20):
            if listener.errors:
                break
            await asyncio.sleep(0.01)
        await provider.close()

        assert len(listener.errors) == 1
        assert listener.caught_up == 0

    @pytest.mark.asyncio
    async def test_poll_loop_survives_listener_errors(
        self, esplora: FakeEsplora, make_provider, wallet: WalletService, make_tx
    ) -> None:
        address = wallet.receive_address
        esplora.add(address, make_tx([(address, 42_000)]))

        class BrokenListener(RecordingListener):
            async def on_transactions(self, transactions) -> None:
                raise RuntimeError("listener bug")

        provider = make_provider(poll_interval=0.01)
        await provider.watch([address])
        listener = BrokenListener()

        await provider.start(listener)
        for _ in range(100):
            if len(listener.errors) >= 2:
                break
            await asyncio.sleep(0.01)

        # Still polling after the listener raised
        assert not provider._task.done()
        await provider.close()

        assert len(listener.errors) >= 2
        assert all("unexpected error: listener bug" in e for e in listener.errors)
        assert listener.caught_up == 0


class TestBroadcast:
    @pytest.mark.asyncio
    async def test_accepted(self, make_provider) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "POST"
            assert request.content == b"0200abcd"
            return httpx.Response(200, text="ab" * 32)

        provider = make_provider(handler)
        result = await provider.broadcast("0200abcd")

        assert result.accepted
        assert result.txid == "ab" * 32
        await provider.close()

    @pytest.mark.asyncio
    async def test_rejected(self, make_provider) -> None:
        provider = make_provider(
            lambda request: httpx.Response(400, text="sendrawtransaction RPC error: bad-txns")
        )
        result = await provider.broadcast("0200abcd")

        assert not result.accepted
        assert "bad-txns" in result.reason
        await provider.close()

    @pytest.mark.asyncio
    async def test_unreachable(self, make_provider) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        provider = make_provider(handler)
        with pytest.raises(ProviderError):
            await provider.broadcast("0200abcd")
        await provider.close()


class TestFeeEstimates:
    ESTIMATES = {"1": 20.1, "3": 15.0, "6": 10.5, "144": 1.0}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("target", "expected"),
        [(6, Decimal("10.5")), (2, Decimal("15.0")), (1, Decimal("20.1")), (500, Decimal("1.0"))],
    )
    async def test_target_selection(self, make_provider, target: int, expected: Decimal) -> None:
        provider = make_provider(lambda request: httpx.Response(200, json=self.ESTIMATES))
        assert await provider.estimate_fee(target) == expected
        await provider.close()

    @pytest.mark.asyncio
    async def test_no_estimates(self, make_provider) -> None:
        provider = make_provider(lambda request: httpx.Response(200, content=json.dumps({})))
        assert await provider.estimate_fee(6) is None
        await provider.close()


class TestWithCoordinator:
    @pytest.mark.asyncio
    async def test_first_sync(
        self, esplora: FakeEsplora, make_provider, wallet: WalletService, make_tx
    ) -> None:
        address = wallet.receive_address
        tx = make_tx([(address, 42_000)])
        esplora.add(address, tx, height=149)

        provider = make_provider()
        coordinator = SyncCoordinator(wallet, provider)
        finished = asyncio.Event()

        def on_event(event: WalletEvent) -> None:
            if event.kind in (SyncEvent.SYNC_FINISHED, SyncEvent.SYNC_FAILED):
                finished.set()

        coordinator.events.subscribe(on_event)
        await coordinator.start()
        await asyncio.wait_for(finished.wait(), timeout=5)

        assert coordinator.status == SyncStatus.SYNCED
        assert wallet.balance == 42_000
        assert wallet.utxo_set.tip_height == TIP
        [summary] = list(wallet.recent_transactions())
        assert summary.confirmations == TIP - 149 + 1

        await coordinator.stop()
        await provider.close()

    @pytest.mark.asyncio
    async def test_save_failure_fails_sync(
        self, esplora: FakeEsplora, make_provider, wallet: WalletService, make_tx
    ) -> None:
        class FullDisk(MemoryWalletStore):
            async def save(self, state) -> None:
                raise StorageError("disk full")

        wallet.store = FullDisk()
        address = wallet.receive_address
        esplora.add(address, make_tx([(address, 42_000)]), height=149)

        provider = make_provider()
        coordinator = SyncCoordinator(wallet, provider)
        finished = asyncio.Event()
        coordinator.events.subscribe(
            lambda event: finished.set() if event.kind == SyncEvent.SYNC_FAILED else None
        )

        await coordinator.start()
        await asyncio.wait_for(finished.wait(), timeout=5)

        assert coordinator.status == SyncStatus.FAILED
        assert "could not save wallet state" in coordinator.state.reason
        assert not provider._task.done()

        await coordinator.stop()
        await provider.close()

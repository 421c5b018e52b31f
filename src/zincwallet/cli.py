"""
Zinc Wallet CLI - create and restore wallets, show balances, send payments.
"""

from __future__ import annotations

import asyncio
import sys
from decimal import Decimal
from pathlib import Path

import typer
from loguru import logger

from zincwallet.backends.esplora import EsploraProvider
from zincwallet.config import WalletSettings
from zincwallet.errors import WalletError
from zincwallet.events import SyncEvent, WalletEvent
from zincwallet.storage import FileWalletStore
from zincwallet.sync import SyncCoordinator
from zincwallet.wallet.bip32 import derive_seed, generate_random_seed
from zincwallet.wallet.service import WalletService
from zincwallet.wallet.tx_builder import parse_fee_rate

app = typer.Typer(
    name="zinc-wallet",
    help="Zinc non-custodial Bitcoin wallet",
    add_completion=False,
)

SYNC_TIMEOUT = 300.0


def setup_logging(level: str = "INFO") -> None:
    """Configure loguru logging."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )


def _settings(network: str | None, log_level: str | None) -> WalletSettings:
    overrides: dict[str, object] = {}
    if network:
        overrides["network"] = network
    if log_level:
        overrides["log_level"] = log_level
    settings = WalletSettings(**overrides)  # type: ignore[arg-type]
    setup_logging(settings.log_level)
    return settings


def _wallet_file(settings: WalletSettings, wallet_file: Path | None) -> Path:
    return wallet_file or settings.data_dir / f"{settings.network}.json"


def _read_mnemonic(mnemonic: str | None, mnemonic_file: Path | None) -> str:
    if mnemonic_file:
        if not mnemonic_file.exists():
            logger.error(f"Mnemonic file not found: {mnemonic_file}")
            raise typer.Exit(1)
        mnemonic = mnemonic_file.read_text().strip()

    if not mnemonic:
        logger.error("Mnemonic required. Use --mnemonic, --mnemonic-file, or ZINC_MNEMONIC env var")
        raise typer.Exit(1)
    return mnemonic


async def _create_wallet(
    phrase: str, passphrase: str, password: str, settings: WalletSettings, path: Path
) -> WalletService:
    if path.exists():
        logger.error(f"Wallet file already exists: {path}")
        raise typer.Exit(1)
    store = FileWalletStore(path)
    return await WalletService.create(derive_seed(phrase, passphrase), store, password, settings)


async def _open_wallet(settings: WalletSettings, path: Path, password: str) -> WalletService:
    if not path.exists():
        logger.error(f"Wallet file not found: {path}. Run 'zinc-wallet generate' first")
        raise typer.Exit(1)
    return await WalletService.open(FileWalletStore(path), password, settings)


async def _sync(wallet: WalletService, settings: WalletSettings) -> SyncCoordinator:
    """Start syncing and wait for the first pass to finish."""
    provider = EsploraProvider(
        settings.esplora_url,
        poll_interval=settings.poll_interval,
        request_timeout=settings.request_timeout,
    )
    coordinator = SyncCoordinator(wallet, provider)

    done = asyncio.Event()
    failure: list[str] = []

    def on_event(event: WalletEvent) -> None:
        if event.kind == SyncEvent.SYNC_FAILED:
            failure.append(event.reason or "unknown error")
            done.set()
        elif event.kind == SyncEvent.SYNC_FINISHED:
            done.set()

    unsubscribe = coordinator.events.subscribe(on_event)
    try:
        await coordinator.start()
        await asyncio.wait_for(done.wait(), timeout=SYNC_TIMEOUT)
    except asyncio.TimeoutError:
        failure.append(f"no response within {SYNC_TIMEOUT:.0f}s")
    finally:
        unsubscribe()

    if failure:
        await coordinator.stop()
        await provider.close()
        logger.error(f"Sync failed: {failure[0]}")
        raise typer.Exit(1)

    return coordinator


@app.command()
def generate(
    passphrase: str = typer.Option("", "--passphrase", help="Optional BIP39 passphrase"),
    password: str = typer.Option(
        ..., "--password", envvar="ZINC_PASSWORD", prompt=True, hide_input=True,
        confirmation_prompt=True, help="Password encrypting the wallet file",
    ),
    network: str | None = typer.Option(None, "--network", "-n", help="Bitcoin network"),
    wallet_file: Path | None = typer.Option(None, "--wallet-file", "-w"),
    log_level: str | None = typer.Option(None, "--log-level", "-l"),
) -> None:
    """Generate a new wallet and print its seed phrase."""
    settings = _settings(network, log_level)
    path = _wallet_file(settings, wallet_file)

    phrase, _ = generate_random_seed(passphrase)
    try:
        wallet = asyncio.run(_create_wallet(phrase, passphrase, password, settings, path))
    except WalletError as e:
        logger.error(f"Failed to create wallet: {e}")
        raise typer.Exit(1)

    typer.echo("\n" + "=" * 80)
    typer.echo("GENERATED SEED PHRASE - WRITE THIS DOWN AND KEEP IT SAFE!")
    typer.echo("=" * 80)
    typer.echo(f"\n{phrase}\n")
    typer.echo("=" * 80)
    typer.echo("Anyone with this phrase can spend your coins.")
    typer.echo("It is not stored anywhere: this is the only time it is shown.")
    typer.echo("=" * 80 + "\n")
    typer.echo(f"Wallet saved to: {path}")
    typer.echo(f"First receive address: {wallet.receive_address}")


@app.command()
def restore(
    mnemonic: str | None = typer.Option(
        None, "--mnemonic", envvar="ZINC_MNEMONIC", help="BIP39 seed phrase"
    ),
    mnemonic_file: Path | None = typer.Option(
        None, "--mnemonic-file", "-f", help="Path to seed phrase file"
    ),
    passphrase: str = typer.Option("", "--passphrase", help="Optional BIP39 passphrase"),
    password: str = typer.Option(
        ..., "--password", envvar="ZINC_PASSWORD", prompt=True, hide_input=True,
        confirmation_prompt=True,
    ),
    network: str | None = typer.Option(None, "--network", "-n"),
    wallet_file: Path | None = typer.Option(None, "--wallet-file", "-w"),
    log_level: str | None = typer.Option(None, "--log-level", "-l"),
) -> None:
    """Restore a wallet from an existing seed phrase."""
    settings = _settings(network, log_level)
    phrase = _read_mnemonic(mnemonic, mnemonic_file)
    path = _wallet_file(settings, wallet_file)

    try:
        wallet = asyncio.run(_create_wallet(phrase, passphrase, password, settings, path))
    except WalletError as e:
        logger.error(f"Failed to restore wallet: {e}")
        raise typer.Exit(1)

    typer.echo(f"Wallet restored to: {path}")
    typer.echo(f"First receive address: {wallet.receive_address}")


@app.command()
def address(
    password: str = typer.Option(
        ..., "--password", envvar="ZINC_PASSWORD", prompt=True, hide_input=True
    ),
    network: str | None = typer.Option(None, "--network", "-n"),
    wallet_file: Path | None = typer.Option(None, "--wallet-file", "-w"),
    log_level: str | None = typer.Option(None, "--log-level", "-l"),
) -> None:
    """Show the next unused receive address (from the last saved state)."""
    settings = _settings(network, log_level)

    try:
        wallet = asyncio.run(_open_wallet(settings, _wallet_file(settings, wallet_file), password))
    except WalletError as e:
        logger.error(f"Failed to open wallet: {e}")
        raise typer.Exit(1)

    typer.echo(wallet.receive_address)


@app.command()
def info(
    password: str = typer.Option(
        ..., "--password", envvar="ZINC_PASSWORD", prompt=True, hide_input=True
    ),
    network: str | None = typer.Option(None, "--network", "-n"),
    wallet_file: Path | None = typer.Option(None, "--wallet-file", "-w"),
    limit: int = typer.Option(10, "--limit", help="Number of transactions to show"),
    log_level: str | None = typer.Option(None, "--log-level", "-l"),
) -> None:
    """Sync the wallet and display its balance and recent transactions."""
    settings = _settings(network, log_level)
    asyncio.run(_show_wallet_info(settings, _wallet_file(settings, wallet_file), password, limit))


async def _show_wallet_info(
    settings: WalletSettings, path: Path, password: str, limit: int
) -> None:
    try:
        wallet = await _open_wallet(settings, path, password)
    except WalletError as e:
        logger.error(f"Failed to open wallet: {e}")
        raise typer.Exit(1)

    coordinator = await _sync(wallet, settings)
    try:
        balance = wallet.balance
        print(f"\nBalance: {balance:,} sats ({balance / 1e8:.8f} BTC)")
        pending = wallet.pending_balance
        if pending:
            print(f"Pending: {pending:,} sats reserved by unconfirmed payments")
        print(f"Receive address: {wallet.receive_address}")

        history = wallet.recent_transactions()
        print(f"\nTransactions ({len(history)}):")
        for i, tx in enumerate(history):
            if i >= limit:
                break
            print(f"  {tx.txid}  {tx.net:>+15,} sats  {tx.confirmations:>6} conf")
    finally:
        await coordinator.stop()
        await coordinator.provider.close()
        await wallet.close()


@app.command()
def send(
    destination: str = typer.Argument(..., help="Destination address"),
    amount: int = typer.Argument(..., help="Amount in sats"),
    fee_rate: str | None = typer.Option(
        None, "--fee-rate", help="Fee rate in sat/vB (default: provider estimate)"
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    password: str = typer.Option(
        ..., "--password", envvar="ZINC_PASSWORD", prompt=True, hide_input=True
    ),
    network: str | None = typer.Option(None, "--network", "-n"),
    wallet_file: Path | None = typer.Option(None, "--wallet-file", "-w"),
    log_level: str | None = typer.Option(None, "--log-level", "-l"),
) -> None:
    """Build, sign and broadcast a payment."""
    try:
        rate = parse_fee_rate(fee_rate) if fee_rate is not None else None
    except WalletError as e:
        raise typer.BadParameter(str(e), param_hint="--fee-rate") from e

    settings = _settings(network, log_level)
    asyncio.run(
        _send_payment(
            settings,
            _wallet_file(settings, wallet_file),
            password,
            destination,
            amount,
            rate,
            yes,
        )
    )


async def _send_payment(
    settings: WalletSettings,
    path: Path,
    password: str,
    destination: str,
    amount: int,
    fee_rate: Decimal | None,
    yes: bool,
) -> None:
    try:
        wallet = await _open_wallet(settings, path, password)
    except WalletError as e:
        logger.error(f"Failed to open wallet: {e}")
        raise typer.Exit(1)

    coordinator = await _sync(wallet, settings)
    try:
        if fee_rate is None:
            fee_rate = await coordinator.estimate_fee_rate()

        try:
            tx = await wallet.build_transaction(amount, destination, fee_rate)
        except WalletError as e:
            logger.error(f"Cannot build transaction: {e}")
            raise typer.Exit(1)

        print(f"\nPay {amount:,} sats to {destination}")
        print(f"Fee: {tx.fee:,} sats ({tx.vsize} vB)")
        if tx.change_address:
            print(f"Change: {tx.total_out - amount:,} sats to {tx.change_address}")

        if not yes and not typer.confirm("Broadcast this transaction?"):
            await wallet.abandon(tx)
            print("Cancelled")
            return

        try:
            txid = await coordinator.broadcast(tx)
        except WalletError as e:
            logger.error(f"Broadcast failed: {e}")
            raise typer.Exit(1)
        print(f"Broadcast: {txid}")
    finally:
        await coordinator.stop()
        await coordinator.provider.close()
        await wallet.close()


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()

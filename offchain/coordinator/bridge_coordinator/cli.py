"""
CLI entry point for the bridge coordinator.
"""

import asyncio
from pathlib import Path
from typing import Optional

import structlog
import typer
from dotenv import load_dotenv

from .bridge import TransferParams
from .config import Settings, load_settings
from .coordinator import BridgeCoordinator
from .errors import BridgeError, classify
from .registry import TransferRecord

structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ]
)

app = typer.Typer(
    name="bridge-coordinator",
    help="Cross-chain transfer lifecycle coordinator",
    add_completion=False,
)

ConfigOption = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to .env configuration file",
)


def _settings(config_path: Optional[Path]) -> Settings:
    if config_path:
        load_dotenv(config_path)
    return load_settings(config_path)


def _fail(error: BridgeError) -> None:
    classified = classify(error)
    typer.echo(f"✗ {classified.kind.value}: {classified.user_message}", err=True)
    raise typer.Exit(code=1)


def _print_record(record: TransferRecord) -> None:
    line = f"[{record.status.value}] {record.id}"
    if record.error is not None:
        line += f" - {record.error.kind.value}: {record.error.user_message}"
    elif record.dest_receipt is not None:
        line += f" - delivered in {record.dest_receipt.tx_hash}"
    typer.echo(line)


async def _watch(coordinator: BridgeCoordinator, transfer_id: str) -> TransferRecord:
    """Print every transition of a transfer until it is terminal."""
    unsubscribe = coordinator.subscribe(transfer_id, _print_record)
    try:
        return await coordinator.wait(transfer_id)
    finally:
        unsubscribe()


@app.command()
def networks(config_path: Optional[Path] = ConfigOption) -> None:
    """List supported networks."""
    settings = _settings(config_path)
    for network in settings.network_table():
        typer.echo(f"  {network.chain_id:>10}  {network.name or '-':<12} relay id {network.lz_chain_id}")
        typer.echo(f"              bridge:   {network.bridge_address or '(not configured)'}")
        typer.echo(f"              rpc:      {network.rpc_url or '(not configured)'}")
        typer.echo(f"              explorer: {network.block_explorer or '-'}")


@app.command()
def proof(
    pair_indexes: Optional[list[int]] = typer.Argument(None, help="Oracle pair indexes"),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Fetch a price proof from the oracle."""
    settings = _settings(config_path)

    async def run() -> None:
        coordinator = BridgeCoordinator.from_settings(settings, journal=False)
        result = await coordinator.fetch_proof(pair_indexes or None)
        typer.echo(f"Pairs: {list(result.pair_indexes)}")
        typer.echo(f"Proof ({len(result.proof_bytes)} bytes): {result.hex}")

    try:
        asyncio.run(run())
    except BridgeError as e:
        _fail(e)


@app.command()
def fee(
    source: str = typer.Argument(..., help="Source chain id"),
    dest: str = typer.Argument(..., help="Destination chain id"),
    amount: str = typer.Argument(..., help="Token amount, e.g. 1.5"),
    receiver: str = typer.Argument(..., help="Receiver address"),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Estimate the messaging fee for a transfer."""
    settings = _settings(config_path)

    async def run() -> None:
        coordinator = BridgeCoordinator.from_settings(settings, journal=False)
        quote = await coordinator.estimate_fee(source, dest, amount, receiver)
        symbol = coordinator.networks.get(source).native_symbol
        typer.echo(f"Native fee: {quote.native} wei ({quote.native / 1e18:.6f} {symbol})")
        if quote.auxiliary:
            typer.echo(f"Auxiliary fee: {quote.auxiliary} wei")

    try:
        asyncio.run(run())
    except BridgeError as e:
        _fail(e)


@app.command()
def bridge(
    source: str = typer.Argument(..., help="Source chain id"),
    dest: str = typer.Argument(..., help="Destination chain id"),
    amount: str = typer.Argument(..., help="Token amount, e.g. 1.5"),
    receiver: str = typer.Argument(..., help="Receiver address"),
    pair_indexes: Optional[list[int]] = typer.Option(None, "--pair", "-p", help="Oracle pair index (repeatable)"),
    wait: bool = typer.Option(False, "--wait", "-w", help="Wait for delivery, printing each transition"),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Fetch a proof, submit a transfer and optionally wait for delivery."""
    settings = _settings(config_path)
    if not settings.private_key:
        typer.echo("Error: PRIVATE_KEY is not configured", err=True)
        raise typer.Exit(code=1)

    async def run() -> TransferRecord:
        coordinator = BridgeCoordinator.from_settings(settings)
        await coordinator.start()
        try:
            params = TransferParams(
                source_chain_id=source,
                dest_chain_id=dest,
                amount=amount,
                receiver=receiver,
            )
            record = await coordinator.transfer(params, pair_indexes or None)
            typer.echo(f"✓ Submitted: {record.tx_hash}")
            explorer = coordinator.networks.get(source).explorer_tx_url(record.tx_hash)
            if explorer:
                typer.echo(f"  {explorer}")
            if wait:
                record = await _watch(coordinator, record.id)
            return record
        finally:
            await coordinator.stop()

    try:
        record = asyncio.run(run())
    except BridgeError as e:
        _fail(e)
        return

    if record.error is not None:
        raise typer.Exit(code=1)


@app.command()
def track(
    tx_hash: str = typer.Argument(..., help="Source transaction hash"),
    source: str = typer.Argument(..., help="Source chain id"),
    dest: str = typer.Argument(..., help="Destination chain id"),
    amount: str = typer.Argument(..., help="Token amount"),
    sender: str = typer.Option(..., "--sender", help="Sender address"),
    receiver: str = typer.Option(..., "--receiver", help="Receiver address"),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Watch an already submitted transfer until it completes or fails."""
    settings = _settings(config_path)

    async def run() -> TransferRecord:
        coordinator = BridgeCoordinator.from_settings(settings)
        await coordinator.start()
        try:
            transfer_id = coordinator.track(tx_hash, source, dest, amount, sender, receiver)
            typer.echo(f"Tracking {transfer_id}. Press Ctrl+C to stop.")
            return await _watch(coordinator, transfer_id)
        finally:
            await coordinator.stop()

    try:
        record = asyncio.run(run())
    except BridgeError as e:
        _fail(e)
        return
    except KeyboardInterrupt:
        typer.echo("\nStopped.")
        return

    if record.error is not None:
        raise typer.Exit(code=1)


@app.command()
def status(
    tx_hash: str = typer.Argument(..., help="Transaction hash"),
    chain_id: str = typer.Argument(..., help="Chain id"),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Show the status of a transaction on a supported chain."""
    settings = _settings(config_path)

    async def run() -> dict:
        coordinator = BridgeCoordinator.from_settings(settings, journal=False)
        return await coordinator.transaction_status(tx_hash, chain_id)

    try:
        result = asyncio.run(run())
    except BridgeError as e:
        _fail(e)
        return

    typer.echo(f"Status: {result['status']}")
    for key in ("confirmations", "block_number", "gas_used"):
        if result.get(key) is not None:
            typer.echo(f"  {key.replace('_', ' ').capitalize()}: {result[key]}")


@app.command()
def history(
    address: Optional[str] = typer.Option(None, "--address", "-a", help="Filter by sender or receiver"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum number of transfers"),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """List journaled transfers, newest first."""
    settings = _settings(config_path)
    coordinator = BridgeCoordinator.from_settings(settings, chains={})
    entries = coordinator.history(address, limit)
    coordinator.journal.close()

    if not entries:
        typer.echo("No transfers found.")
        return

    for entry in entries:
        typer.echo(f"  {entry.transfer_id}")
        typer.echo(f"    {entry.source_chain_id} -> {entry.dest_chain_id}  {entry.amount}  [{entry.status}]")
        if entry.error_kind:
            typer.echo(f"    error: {entry.error_kind}")
        typer.echo(f"    updated: {entry.updated_at.isoformat()}")


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port"),
) -> None:
    """Run the HTTP API."""
    from .api import run_server

    run_server(host, port)


@app.command()
def version() -> None:
    """Show the coordinator version."""
    from bridge_coordinator import __version__
    typer.echo(f"bridge-coordinator v{__version__}")


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()

"""CLI for Escrow Guard - risk-routed escrow payments from the terminal."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from escrow_guard.errors import EscrowGuardError

app = typer.Typer(
    name="escrow-guard",
    help="Risk-checked payments with on-chain escrow.",
    no_args_is_help=True,
)
console = Console()

_config_path: Path | None = None

LEVEL_STYLES = {
    "low": "green",
    "medium": "yellow",
    "high": "red",
    "critical": "bold red",
}

RISK_TRANSPORTS = ("direct", "tool_call", "none")


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        console.print(f"escrow-guard {version('escrow-guard')}")
        raise typer.Exit()


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@app.callback()
def main(
    config: Path = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to escrow-guard.yaml",
        envvar="ESCROW_GUARD_CONFIG",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level"),
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    ),
):
    """Risk-checked payments with on-chain escrow."""
    global _config_path
    from escrow_guard.config import default_config_path, load_config

    _config_path = config or default_config_path()
    level = "DEBUG" if verbose else load_config(_config_path).logging.level
    _setup_logging(level)


def _run(coro):
    """Run an async function synchronously, reporting engine errors."""
    try:
        return asyncio.run(coro)
    except EscrowGuardError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)


async def _load_engine(with_chain: bool = True):
    from escrow_guard.engine import Engine

    return await Engine.load(_config_path, with_chain=with_chain)


def _level_text(level: str) -> str:
    style = LEVEL_STYLES.get(level, "white")
    return f"[{style}]{level}[/{style}]"


def _print_assessment(title: str, assessment) -> None:
    reasons = "\n".join(f"  - {r}" for r in assessment.reasons)
    providers = ", ".join(assessment.metadata.providers)
    console.print(Panel(
        f"Risk level: {_level_text(assessment.risk_level.value)}\n"
        f"Score: [bold]{assessment.score}[/bold]/100\n"
        f"Recommendation: {assessment.recommendation}\n\n"
        f"Reasons:\n{reasons}\n\n"
        f"[dim]Providers: {providers} ({assessment.metadata.response_time_ms} ms)[/dim]",
        title=title,
    ))


@app.command()
def init(
    network: str = typer.Option("base_sepolia", "--network", "-n", help="Network name"),
    rpc_url: str = typer.Option(None, "--rpc-url", "-r", help="RPC endpoint (defaults to the network's public RPC)"),
    escrow_address: str = typer.Option("", "--escrow", help="Escrow manager contract address"),
    transport: str = typer.Option("direct", "--risk-transport", help="Risk signal transport (direct, tool_call, none)"),
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite an existing config"),
):
    """Write a starter escrow-guard.yaml."""
    from escrow_guard.chain.chains import get_chain, list_chain_names
    from escrow_guard.config import EndpointConfig, EngineConfig, save_config

    if _config_path.exists() and not force:
        console.print(f"[yellow]{_config_path} already exists.[/yellow] Use --force to overwrite.")
        raise typer.Exit(1)
    try:
        chain = get_chain(network)
    except KeyError:
        console.print(f"[red]Unknown network '{network}'.[/red] Choose from: {', '.join(list_chain_names())}")
        raise typer.Exit(1)
    if transport not in RISK_TRANSPORTS:
        console.print(f"[red]Unknown risk transport '{transport}'.[/red] Choose from: {', '.join(RISK_TRANSPORTS)}")
        raise typer.Exit(1)

    config = EngineConfig()
    config.chain.network = network
    config.chain.contracts.escrow_manager = escrow_address
    config.risk.transport = transport
    if rpc_url:
        config.chain.endpoints = [
            EndpointConfig(name=chain.display_name, rpc_url=rpc_url, chain_id=chain.chain_id)
        ]
    save_config(config, _config_path)

    console.print(Panel(
        f"[bold green]Config written![/bold green]\n\n"
        f"File: [cyan]{_config_path}[/cyan]\n"
        f"Network: {chain.display_name} (chain id {chain.chain_id})\n\n"
        f"[dim]Set ENCRYPTION_KEY, PRIVATE_KEY and DDXYZ_API_KEY in your environment.[/dim]",
        title="Escrow Guard",
    ))


@app.command()
def tokens():
    """List the tokens escrows may be created in."""
    from escrow_guard.chain.tokens import TokenRegistry

    table = Table(title="Supported Tokens")
    table.add_column("Symbol", style="cyan")
    table.add_column("Name")
    table.add_column("Decimals", justify="right")
    table.add_column("Address", style="dim")
    for token in TokenRegistry().list_tokens():
        table.add_row(token.symbol, token.name, str(token.decimals), token.address)
    console.print(table)


@app.command()
def networks():
    """List known networks."""
    from escrow_guard.chain.chains import CHAINS

    table = Table(title="Networks")
    table.add_column("Name", style="cyan")
    table.add_column("Display")
    table.add_column("Chain ID", justify="right")
    table.add_column("Symbol")
    table.add_column("RPC", style="dim")
    for name, chain in CHAINS.items():
        table.add_row(name, chain.display_name, str(chain.chain_id), chain.native_symbol, chain.rpc_url)
    console.print(table)


# ------------------------------------------------------------------
# wallet sub-commands
# ------------------------------------------------------------------

wallet_app = typer.Typer(
    name="wallet",
    help="Custodial wallet keys and balances.",
    no_args_is_help=True,
)
app.add_typer(wallet_app, name="wallet")


@wallet_app.command("create")
def wallet_create(
    password_hash: str = typer.Option(
        ..., "--password-hash", prompt=True, hide_input=True, help="Owner's password hash"
    ),
):
    """Generate a wallet and print its encrypted key."""
    from escrow_guard.config import load_config
    from escrow_guard.vault.keystore import KeyVault

    vault = KeyVault(load_config(_config_path).master_key())
    try:
        credential = vault.create_wallet(password_hash)
    except EscrowGuardError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    console.print(Panel(
        f"[bold green]Wallet created![/bold green]\n\n"
        f"Address: [cyan]{credential.address}[/cyan]\n"
        f"Encrypted key: {credential.encrypted_key}\n\n"
        f"[dim]Store the encrypted key with the owner's record. It can only be\n"
        f"decrypted with the same ENCRYPTION_KEY and password hash.[/dim]",
        title="Custodial Wallet",
    ))


@wallet_app.command("balance")
def wallet_balance(
    address: str = typer.Argument(None, help="Address to query (defaults to the signer)"),
):
    """Show the native balance of an address."""

    async def _balance():
        engine = await _load_engine()
        try:
            info = await engine.connector.get_network_info()
            balance = await engine.connector.get_balance(address)
            return info, balance, address or engine.connector.address
        finally:
            await engine.shutdown()

    info, balance, target = _run(_balance())
    console.print(f"[bold]{info.get('name', 'chain')}:[/bold] [cyan]{target}[/cyan] {balance}")


# ------------------------------------------------------------------
# risk sub-commands
# ------------------------------------------------------------------

risk_app = typer.Typer(
    name="risk",
    help="Run safety checks against the configured risk providers.",
    no_args_is_help=True,
)
app.add_typer(risk_app, name="risk")


@risk_app.command("wallet")
def risk_wallet(
    address: str = typer.Argument(help="Wallet address"),
    chain: str = typer.Option("ethereum", "--chain", help="Chain name"),
):
    """Assess a wallet."""

    async def _check():
        engine = await _load_engine(with_chain=False)
        try:
            return await engine.aggregator.check_wallet_safety(address, chain)
        finally:
            await engine.shutdown()

    _print_assessment(f"Wallet {address}", _run(_check()))


@risk_app.command("contract")
def risk_contract(
    address: str = typer.Argument(help="Contract address"),
    chain: str = typer.Option("ethereum", "--chain", help="Chain name"),
):
    """Assess a smart contract."""

    async def _check():
        engine = await _load_engine(with_chain=False)
        try:
            return await engine.aggregator.check_contract_safety(address, chain)
        finally:
            await engine.shutdown()

    _print_assessment(f"Contract {address}", _run(_check()))


@risk_app.command("url")
def risk_url(url: str = typer.Argument(help="URL to check")):
    """Assess a link."""

    async def _check():
        engine = await _load_engine(with_chain=False)
        try:
            return await engine.aggregator.check_url_safety(url)
        finally:
            await engine.shutdown()

    _print_assessment(url, _run(_check()))


@risk_app.command("transaction")
def risk_transaction(
    buyer: str = typer.Argument(help="Buyer wallet"),
    vendor: str = typer.Argument(help="Vendor wallet"),
    amount: str = typer.Argument(help="Amount (e.g. 0.5)"),
    chain: str = typer.Option("ethereum", "--chain", help="Chain name"),
):
    """Decide how a payment should be routed."""

    async def _evaluate():
        engine = await _load_engine(with_chain=False)
        try:
            return await engine.router.evaluate_transaction(buyer, vendor, amount, chain)
        finally:
            await engine.shutdown()

    decision = _run(_evaluate())
    method_style = {"direct": "green", "escrow": "yellow", "blocked": "bold red"}[decision.payment_method.value]
    console.print(
        f"Payment method: [{method_style}]{decision.payment_method.value}[/{method_style}]  "
        f"approved: {'yes' if decision.is_approved else 'no'}"
    )
    console.print(f"[dim]{decision.recommended_action}[/dim]")
    _print_assessment("Overall risk", decision.safety_data)


# ------------------------------------------------------------------
# escrow sub-commands
# ------------------------------------------------------------------

escrow_app = typer.Typer(
    name="escrow",
    help="Inspect and reconcile escrows.",
    no_args_is_help=True,
)
app.add_typer(escrow_app, name="escrow")


def _print_mirror(mirror) -> None:
    console.print(Panel(
        f"Escrow ID: [cyan]{mirror.escrow_id}[/cyan]\n"
        f"Status: [bold]{mirror.status.value}[/bold]\n"
        f"Amount: {mirror.amount} {mirror.currency}\n"
        f"Buyer: {mirror.buyer_email}\n"
        f"Seller: {mirror.seller_email}\n"
        f"Created in: [dim]{mirror.transaction_id}[/dim]",
        title=f"Escrow {mirror.escrow_id}",
    ))
    table = Table(title="Timeline")
    table.add_column("When", style="dim")
    table.add_column("Status", style="cyan")
    table.add_column("Description")
    table.add_column("Actor")
    for entry in mirror.timeline:
        table.add_row(
            entry.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            entry.status.value,
            entry.description,
            entry.actor or "",
        )
    console.print(table)


@escrow_app.command("show")
def escrow_show(
    escrow_id: int = typer.Argument(help="On-chain escrow id"),
    offline: bool = typer.Option(False, "--offline", help="Skip the chain read"),
):
    """Show an escrow's mirror, reconciled against the chain."""

    async def _show():
        engine = await _load_engine(with_chain=not offline)
        try:
            if offline:
                from escrow_guard.errors import MirrorNotFoundError

                mirror = await engine.store.get_by_escrow_id(escrow_id)
                if mirror is None:
                    raise MirrorNotFoundError(f"No mirror for escrow {escrow_id}")
                return mirror
            return await engine.require_ledger().reconcile(escrow_id)
        finally:
            await engine.shutdown()

    _print_mirror(_run(_show()))


@escrow_app.command("reconcile")
def escrow_reconcile(escrow_id: int = typer.Argument(help="On-chain escrow id")):
    """Force the mirror to agree with the chain."""

    async def _reconcile():
        engine = await _load_engine()
        try:
            return await engine.require_ledger().reconcile(escrow_id)
        finally:
            await engine.shutdown()

    mirror = _run(_reconcile())
    console.print(f"Escrow [cyan]{escrow_id}[/cyan] is [bold]{mirror.status.value}[/bold]")


@escrow_app.command("list")
def escrow_list(
    status: str = typer.Option(None, "--status", "-s", help="Filter by mirror status"),
    party: str = typer.Option(None, "--party", "-p", help="Filter by buyer or seller email"),
):
    """List mirrored escrows."""

    async def _list():
        engine = await _load_engine(with_chain=False)
        try:
            if party:
                return await engine.store.list_for_party(party)
            if status:
                return await engine.store.list_by_status(status)
            from escrow_guard.storage.models import MirrorStatus

            mirrors = []
            for s in MirrorStatus:
                mirrors.extend(await engine.store.list_by_status(s.value))
            return mirrors
        finally:
            await engine.shutdown()

    mirrors = _run(_list())
    if not mirrors:
        console.print("[dim]No escrows found.[/dim]")
        return

    table = Table(title="Escrows")
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Status")
    table.add_column("Amount", justify="right")
    table.add_column("Buyer")
    table.add_column("Seller")
    for m in mirrors:
        table.add_row(str(m.escrow_id), m.status.value, f"{m.amount} {m.currency}", m.buyer_email, m.seller_email)
    console.print(table)

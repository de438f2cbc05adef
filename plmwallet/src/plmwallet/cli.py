"""
Palladium chat CLI - keys, balances, contacts and on-chain messages.
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Awaitable, Callable
from decimal import Decimal, InvalidOperation
from typing import TypeVar

import typer
from loguru import logger
from plmcore.errors import ChatError
from plmcore.keys import generate_keypair, import_wif
from plmcore.models import BackendMode, ChatConfig

from plmwallet.config import get_settings
from plmwallet.wallet.scanner import MessageEvent
from plmwallet.wallet.service import Balance, ChatWallet
from plmwallet.wallet.storage import JsonFileStore, load_config

T = TypeVar("T")

app = typer.Typer(
    name="plm-chat",
    help="Encrypted messaging over Palladium transactions",
    add_completion=False,
)


def setup_logging(level: str = "INFO") -> None:
    """Configure loguru logging."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )


WifOption = typer.Option(..., "--wif", "-k", envvar="PLMCHAT_WIF", help="Secret key (WIF)")
ModeOption = typer.Option(None, "--mode", "-m", help="Backend: electrum | rpc")
HostOption = typer.Option(None, "--host", help="Backend host")
PortOption = typer.Option(None, "--port", "-p", help="Backend port")
UserOption = typer.Option(None, "--rpc-user", envvar="PLMCHAT_RPC_USER")
PasswordOption = typer.Option(None, "--rpc-password", envvar="PLMCHAT_RPC_PASSWORD")
SslOption = typer.Option(None, "--ssl/--no-ssl", help="Use TLS for the indexer")
LogLevelOption = typer.Option(None, "--log-level", "-l")


def _build_config(
    store: JsonFileStore,
    mode: BackendMode | None,
    host: str | None,
    port: int | None,
    rpc_user: str | None,
    rpc_password: str | None,
    use_ssl: bool | None,
) -> ChatConfig:
    """Stored config with command line overrides applied."""
    config = load_config(store) or ChatConfig()
    overrides = {
        "mode": mode,
        "host": host,
        "port": port,
        "user": rpc_user,
        "password": rpc_password,
        "use_ssl": use_ssl,
    }
    update = {k: v for k, v in overrides.items() if v is not None}
    if mode == BackendMode.RPC and port is None and config.mode != BackendMode.RPC:
        update["port"] = 2332
    if not update:
        return config
    return ChatConfig.model_validate({**config.model_dump(), **update})


def _run_session(
    wif: str,
    mode: BackendMode | None,
    host: str | None,
    port: int | None,
    rpc_user: str | None,
    rpc_password: str | None,
    use_ssl: bool | None,
    log_level: str | None,
    action: Callable[[ChatWallet], Awaitable[T]],
) -> T:
    settings = get_settings()
    setup_logging(log_level or settings.log_level)

    store = JsonFileStore(settings.store_path)
    config = _build_config(store, mode, host, port, rpc_user, rpc_password, use_ssl)

    async def run() -> T:
        wallet = ChatWallet(store)
        try:
            await wallet.open(config, wif)
            return await action(wallet)
        finally:
            await wallet.close()

    try:
        return asyncio.run(run())
    except ChatError as e:
        logger.error(str(e))
        raise typer.Exit(1)


def _parse_amount(amount: str | None) -> Decimal | None:
    if amount is None:
        return None
    try:
        return Decimal(amount)
    except InvalidOperation:
        logger.error(f"Invalid amount: {amount}")
        raise typer.Exit(1)


def _print_balance(balance: Balance) -> None:
    coins = balance.as_coins()
    typer.echo(f"Balance:   {coins['balance']} PLM")
    typer.echo(f"Spendable: {coins['spendable']} PLM")
    typer.echo(f"Pending:   {coins['pending']} PLM")


@app.command()
def generate() -> None:
    """Generate a new keypair."""
    setup_logging()

    keypair = generate_keypair()
    typer.echo("\n" + "=" * 80)
    typer.echo("GENERATED KEY - KEEP THE WIF SECRET, IT CONTROLS YOUR FUNDS AND MESSAGES!")
    typer.echo("=" * 80)
    typer.echo(f"\nWIF:        {keypair.to_wif()}")
    typer.echo(f"Public key: {keypair.public_key_hex()}")
    typer.echo(f"Address:    {keypair.address()}\n")
    typer.echo("=" * 80 + "\n")


@app.command()
def address(wif: str = WifOption) -> None:
    """Show the address and public key for a WIF."""
    setup_logging()
    try:
        keypair = import_wif(wif)
    except ChatError as e:
        logger.error(str(e))
        raise typer.Exit(1)

    typer.echo(f"Address:    {keypair.address()}")
    typer.echo(f"Public key: {keypair.public_key_hex()}")


@app.command()
def balance(
    wif: str = WifOption,
    mode: BackendMode | None = ModeOption,
    host: str | None = HostOption,
    port: int | None = PortOption,
    rpc_user: str | None = UserOption,
    rpc_password: str | None = PasswordOption,
    use_ssl: bool | None = SslOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Show wallet balance."""

    async def action(wallet: ChatWallet) -> Balance:
        return wallet.balance

    result = _run_session(
        wif, mode, host, port, rpc_user, rpc_password, use_ssl, log_level, action
    )
    _print_balance(result)


@app.command()
def send(
    recipient: str = typer.Argument(..., help="Recipient public key (hex)"),
    message: str = typer.Argument(..., help="Message text"),
    amount: str | None = typer.Option(None, "--amount", "-a", help="Payment in PLM"),
    fee_rate: int | None = typer.Option(None, "--fee-rate", help="Fee rate in sat/vB"),
    wif: str = WifOption,
    mode: BackendMode | None = ModeOption,
    host: str | None = HostOption,
    port: int | None = PortOption,
    rpc_user: str | None = UserOption,
    rpc_password: str | None = PasswordOption,
    use_ssl: bool | None = SslOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Send an encrypted message, optionally with a payment."""
    payment = _parse_amount(amount)

    async def action(wallet: ChatWallet) -> None:
        if fee_rate is not None:
            wallet.config.fee_rate = max(1, fee_rate)
        sent = await wallet.send_message(recipient, message, payment)
        typer.echo(f"Sent: {sent.txid}")
        typer.echo(f"Fee: {sent.fee} PLM, total spent: {sent.total_spent} PLM")

    _run_session(wif, mode, host, port, rpc_user, rpc_password, use_ssl, log_level, action)


@app.command()
def contacts(
    wif: str = WifOption,
    mode: BackendMode | None = ModeOption,
    host: str | None = HostOption,
    port: int | None = PortOption,
    rpc_user: str | None = UserOption,
    rpc_password: str | None = PasswordOption,
    use_ssl: bool | None = SslOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """List contacts."""

    async def action(wallet: ChatWallet) -> None:
        found = wallet.get_contacts()
        if not found:
            typer.echo("No contacts.")
            return
        for contact in found:
            unread = f" ({contact.unread} unread)" if contact.unread else ""
            typer.echo(f"{contact.display_name():<20} {contact.id}{unread}")

    _run_session(wif, mode, host, port, rpc_user, rpc_password, use_ssl, log_level, action)


@app.command()
def add_contact(
    pubkey: str = typer.Argument(..., help="Contact public key (hex)"),
    name: str = typer.Option("", "--name", "-n"),
    wif: str = WifOption,
    mode: BackendMode | None = ModeOption,
    host: str | None = HostOption,
    port: int | None = PortOption,
    rpc_user: str | None = UserOption,
    rpc_password: str | None = PasswordOption,
    use_ssl: bool | None = SslOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Add a contact."""

    async def action(wallet: ChatWallet) -> None:
        contact = await wallet.add_contact(pubkey, name)
        typer.echo(f"Added {contact.display_name()} ({contact.address})")

    _run_session(wif, mode, host, port, rpc_user, rpc_password, use_ssl, log_level, action)


@app.command()
def rename_contact(
    pubkey: str = typer.Argument(..., help="Contact public key (hex)"),
    name: str = typer.Argument(..., help="New name"),
    wif: str = WifOption,
    mode: BackendMode | None = ModeOption,
    host: str | None = HostOption,
    port: int | None = PortOption,
    rpc_user: str | None = UserOption,
    rpc_password: str | None = PasswordOption,
    use_ssl: bool | None = SslOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Rename a contact."""

    async def action(wallet: ChatWallet) -> None:
        contact = wallet.rename_contact(pubkey, name)
        typer.echo(f"Renamed {contact.id[:16]}... to {contact.display_name()}")

    _run_session(wif, mode, host, port, rpc_user, rpc_password, use_ssl, log_level, action)


@app.command()
def messages(
    contact_id: str = typer.Argument(..., help="Contact public key (hex) or 'anonymous'"),
    wif: str = WifOption,
    mode: BackendMode | None = ModeOption,
    host: str | None = HostOption,
    port: int | None = PortOption,
    rpc_user: str | None = UserOption,
    rpc_password: str | None = PasswordOption,
    use_ssl: bool | None = SslOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Scan the chain and show a conversation."""

    async def action(wallet: ChatWallet) -> None:
        await wallet.scan()
        show_txid = wallet.config.show_txid
        for msg in wallet.get_messages(contact_id):
            arrow = "->" if msg.direction == "outgoing" else "<-"
            line = f"[{msg.timestamp:%Y-%m-%d %H:%M}] {arrow} {msg.text}"
            if msg.amount:
                line += f" ({msg.amount} PLM)"
            if show_txid:
                line += f"  [{msg.status.name.lower()} {msg.txid[:16]}]"
            typer.echo(line)
        wallet.mark_read(contact_id)

    _run_session(wif, mode, host, port, rpc_user, rpc_password, use_ssl, log_level, action)


@app.command()
def watch(
    wif: str = WifOption,
    mode: BackendMode | None = ModeOption,
    host: str | None = HostOption,
    port: int | None = PortOption,
    rpc_user: str | None = UserOption,
    rpc_password: str | None = PasswordOption,
    use_ssl: bool | None = SslOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Poll for new messages and balance changes until interrupted."""

    def print_event(event: MessageEvent) -> None:
        if event.is_status_update:
            typer.echo(f"{event.message.txid[:16]} -> {event.message.status.name.lower()}")
        elif event.is_inbound:
            typer.echo(f"<- {event.contact_id[:16]}: {event.message.text}")
        else:
            typer.echo(f"-> {event.contact_id[:16]}: {event.message.text}")

    async def action(wallet: ChatWallet) -> None:
        wallet.on_message(print_event)
        wallet.start_polling()
        typer.echo(f"Watching {wallet.address} (Ctrl+C to stop)")
        try:
            await asyncio.Event().wait()
        finally:
            await wallet.stop_polling()

    try:
        _run_session(wif, mode, host, port, rpc_user, rpc_password, use_ssl, log_level, action)
    except KeyboardInterrupt:
        typer.echo("\nStopped.")


@app.command()
def rescan(
    wif: str = WifOption,
    mode: BackendMode | None = ModeOption,
    host: str | None = HostOption,
    port: int | None = PortOption,
    rpc_user: str | None = UserOption,
    rpc_password: str | None = PasswordOption,
    use_ssl: bool | None = SslOption,
    log_level: str | None = LogLevelOption,
) -> None:
    """Forget processed transactions and rebuild all conversations."""

    async def action(wallet: ChatWallet) -> int:
        return await wallet.rescan()

    added = _run_session(
        wif, mode, host, port, rpc_user, rpc_password, use_ssl, log_level, action
    )
    typer.echo(f"Rescan complete: {added} message(s) recovered")


def main() -> None:
    app()


if __name__ == "__main__":
    main()

"""
SMS CLI

Command-line interface for SMS Messaging Engine administration.

Commands:
- add-service: Register a messaging service for an organization
- list-services: List messaging services
- send: Send one queued message now
- replay-failed: Re-send messages that failed before reaching a provider
- process-pending: Convert stored inbound parts whose texts are complete
"""

import asyncio
from datetime import datetime
from typing import Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from basecore.db import get_sessionmaker
from basecore.logging import setup_logging

app = typer.Typer(
    name="sms-cli",
    help="SMS Messaging Engine CLI",
)

console = Console()


def _parse_datetime(value: Optional[str], option: str) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        rprint(f"[red]Invalid {option}: {value} (expected ISO 8601)[/red]")
        raise typer.Exit(1)


@app.command()
def add_service(
    organization_id: int = typer.Argument(..., help="Organization ID"),
    messaging_service_sid: str = typer.Argument(..., help="Provider-side service identifier"),
    service_type: str = typer.Option("twilio", help="Provider (twilio, nexmo, assemble-numbers, fakeservice)"),
    account_sid: Optional[str] = typer.Option(None, help="Provider account id (or API endpoint for Assemble)"),
    auth_token: Optional[str] = typer.Option(None, help="Provider secret (will be encrypted)"),
):
    """
    Register a messaging service for an organization.

    The secret is encrypted with CREDENTIAL_ENCRYPTION_KEY before it is stored.
    """
    from messaging_sms.providers.registry import PROVIDER_TYPES

    if service_type not in PROVIDER_TYPES:
        rprint(f"[red]Unknown service type: {service_type}[/red]")
        raise typer.Exit(1)

    if PROVIDER_TYPES[service_type].requires_signature() and not auth_token:
        rprint(f"[red]{service_type} requires --auth-token[/red]")
        raise typer.Exit(1)

    async def create():
        from basecore.crypto import CredentialError, get_vault
        from messaging_sms.persistence.repo import MessagingRepository

        encrypted_token = None
        if auth_token:
            try:
                encrypted_token = get_vault().encrypt(auth_token)
            except CredentialError as e:
                rprint(f"[red]Cannot encrypt auth token: {e}[/red]")
                raise typer.Exit(1)

        async with get_sessionmaker()() as db:
            repo = MessagingRepository(db)
            existing = await repo.get_service(messaging_service_sid)
            if existing:
                rprint(f"[yellow]Service already exists: {messaging_service_sid}[/yellow]")
                rprint(f"  Organization: {existing.organization_id}")
                rprint(f"  Active: {existing.is_active}")
                raise typer.Exit(1)

            service = repo.create_service(
                messaging_service_sid=messaging_service_sid,
                organization_id=organization_id,
                service_type=service_type,
                account_sid=account_sid,
                encrypted_auth_token=encrypted_token,
            )
            await db.commit()
            return service

    service = asyncio.run(create())

    rprint("[green]Successfully created messaging service:[/green]")
    rprint(f"  SID: {service.messaging_service_sid}")
    rprint(f"  Organization: {service.organization_id}")
    rprint(f"  Type: {service.service_type}")


@app.command()
def list_services(
    organization_id: Optional[int] = typer.Option(None, help="Filter by organization ID"),
    all_: bool = typer.Option(False, "--all", "-a", help="Show inactive services too"),
):
    """
    List messaging services.
    """
    async def fetch():
        from messaging_sms.persistence.repo import MessagingRepository

        async with get_sessionmaker()() as db:
            return await MessagingRepository(db).list_services(
                organization_id=organization_id,
                include_inactive=all_,
            )

    services = asyncio.run(fetch())

    if not services:
        rprint("[yellow]No messaging services found[/yellow]")
        raise typer.Exit(0)

    table = Table(title="Messaging Services")
    table.add_column("SID", style="dim")
    table.add_column("Organization")
    table.add_column("Type")
    table.add_column("Account")
    table.add_column("Active")

    for service in services:
        table.add_row(
            service.messaging_service_sid,
            str(service.organization_id),
            service.service_type,
            service.account_sid or "-",
            "Yes" if service.is_active else "No",
        )

    console.print(table)


@app.command()
def send(
    message_id: int = typer.Argument(..., help="Message ID"),
    organization_id: int = typer.Argument(..., help="Organization owning the message's campaign"),
):
    """
    Send one queued (or failed) message now.
    """
    setup_logging()

    async def run():
        from messaging_sms.errors import MessagingError
        from messaging_sms.service.outbound_handler import OutboundHandler

        async with get_sessionmaker()() as db:
            try:
                return await OutboundHandler(db).send_message(message_id, organization_id)
            except MessagingError as e:
                rprint(f"[red]Cannot send message {message_id}: {e}[/red]")
                raise typer.Exit(1)

    result = asyncio.run(run())

    if result["status"] == "sent":
        rprint("[green]Message sent successfully![/green]")
        rprint(f"  Service ID: {result['service_id']}")
    elif result["status"] == "skipped":
        rprint(f"[yellow]Message {message_id} is not in a sendable state[/yellow]")
    else:
        rprint("[red]Failed to send message[/red]")
        rprint(f"  Error: {result.get('error')}")
        raise typer.Exit(1)


@app.command()
def replay_failed(
    since: Optional[str] = typer.Option(None, help="Only messages created at or after (ISO 8601)"),
    until: Optional[str] = typer.Option(None, help="Only messages created before (ISO 8601)"),
    service_type: Optional[str] = typer.Option(None, help="Only contacts bound to this service type"),
    batch_size: int = typer.Option(1000, help="Maximum messages to replay"),
    concurrency: int = typer.Option(100, help="Sends in flight at once"),
):
    """
    Re-send messages whose last attempt failed without a provider id.

    Contacts who opted out are skipped.
    """
    setup_logging()

    since_dt = _parse_datetime(since, "--since")
    until_dt = _parse_datetime(until, "--until")

    from messaging_sms.service.replay import replay_failed_messages

    counts = asyncio.run(
        replay_failed_messages(
            get_sessionmaker(),
            since=since_dt,
            until=until_dt,
            service_type=service_type,
            batch_size=batch_size,
            concurrency=concurrency,
        )
    )

    if not counts:
        rprint("[yellow]No failed messages to replay[/yellow]")
        raise typer.Exit(0)

    rprint(f"[green]Replayed {sum(counts.values())} messages[/green]")
    for status, count in sorted(counts.items()):
        rprint(f"  {status}: {count}")


@app.command()
def process_pending(
    limit: int = typer.Option(500, help="Maximum stored parts to look at"),
):
    """
    Convert stored inbound parts whose texts are complete.
    """
    setup_logging()

    async def run():
        from messaging_sms.service.inbound_handler import MessageReassembler

        async with get_sessionmaker()() as db:
            return await MessageReassembler(db).process_all_pending(limit=limit)

    counts = asyncio.run(run())

    if not counts:
        rprint("[yellow]No pending message parts[/yellow]")
        raise typer.Exit(0)

    for status, count in sorted(counts.items()):
        rprint(f"  {status}: {count}")


if __name__ == "__main__":
    app()

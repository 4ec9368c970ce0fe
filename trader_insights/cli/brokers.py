"""Broker integration CLI commands."""

from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from trader_insights.config import get_settings
from trader_insights.core.brokers import (
    BrokerDataStore,
    BrokerError,
    BrokerSyncService,
    ConnectionFlow,
    CredentialStore,
    SessionRepository,
    SnapTradeClient,
    WebullClient,
    WebullCredentials,
)
from trader_insights.core.scheduler import SyncScheduler
from trader_insights.db.database import get_db
from trader_insights.db.models import User

settings = get_settings()
console = Console()
app = typer.Typer()

USER_OPTION = typer.Option(None, "--user", "-u", help="User email (default: default user)")


def _get_user(db, email: Optional[str]) -> User:
    """Look up a user, creating the default user on first use."""
    email = email or settings.default_user_email
    user = db.query(User).filter_by(email=email).first()
    if user is None and email == settings.default_user_email:
        user = User(email=email)
        db.add(user)
        db.flush()
    if user is None:
        console.print(f"[red]Error: User {email} not found[/red]")
        raise typer.Exit(1)
    return user


def _client() -> SnapTradeClient:
    try:
        return SnapTradeClient.from_settings()
    except BrokerError as e:
        console.print(f"[red]Error:[/red] {e}")
        console.print("  Set SNAPTRADE_CLIENT_ID and SNAPTRADE_CONSUMER_KEY in .env")
        raise typer.Exit(1)


def _flow(db, client: SnapTradeClient, open_browser: bool = False) -> ConnectionFlow:
    def navigate(url: str) -> None:
        console.print(f"[bold]Open:[/bold] {url}")
        if open_browser:
            typer.launch(url)

    return ConnectionFlow(
        client=client,
        credentials=CredentialStore(db),
        sessions=SessionRepository(db),
        store=BrokerDataStore(client),
        redirect_uri=settings.snaptrade_redirect_uri,
        dashboard_url=settings.dashboard_url,
        navigator=navigate,
    )


@app.command("status")
def broker_status(
    user: Optional[str] = USER_OPTION,
    check: bool = typer.Option(False, "--check", help="Call the SnapTrade status endpoint"),
):
    """Show broker integration status."""
    console.print("[bold]Broker Integration Status[/bold]\n")

    if settings.snaptrade_client_id and settings.snaptrade_consumer_key:
        console.print(f"[green]SnapTrade:[/green] Configured (auth={settings.snaptrade_auth_scheme})")
    else:
        console.print("[yellow]SnapTrade:[/yellow] Not configured")
        console.print("  Set SNAPTRADE_CLIENT_ID and SNAPTRADE_CONSUMER_KEY in .env")
        return

    if not settings.snaptrade_redirect_uri:
        console.print("[yellow]Redirect URI:[/yellow] Not set (SNAPTRADE_REDIRECT_URI)")

    if check:
        try:
            console.print(f"[bold]API:[/bold] {_client().check_status()}")
        except BrokerError as e:
            console.print(f"[red]API check failed:[/red] {e}")

    console.print()

    with get_db() as db:
        user_obj = _get_user(db, user)
        credential = CredentialStore(db).get(user_obj.id)
        if credential is None:
            console.print("[dim]Not registered with SnapTrade[/dim]")
            return
        console.print(f"Registered as [cyan]{credential.user_id}[/cyan]")

        sessions = SessionRepository(db).list_for_user(user_obj.id)
        if not sessions:
            console.print("[dim]No connection attempts[/dim]")
            return

        table = Table(title="Connection Sessions")
        table.add_column("Session", style="dim")
        table.add_column("Broker")
        table.add_column("Status")
        table.add_column("Created")
        table.add_column("Error")

        for s in sessions[:10]:
            status = {
                "completed": "[green]Completed[/green]",
                "error": "[red]Error[/red]",
            }.get(s.status, "[yellow]Pending[/yellow]")
            table.add_row(
                s.session_id[:8] + "...",
                s.broker_id or "-",
                status,
                s.created_at.strftime("%Y-%m-%d %H:%M"),
                (s.error_message[:30] + "...") if s.error_message else "-",
            )

        console.print(table)


@app.command("register")
def register(user: Optional[str] = USER_OPTION):
    """Register the user with SnapTrade (no-op if already registered)."""
    client = _client()
    with get_db() as db:
        user_obj = _get_user(db, user)
        try:
            credential = _flow(db, client).ensure_registered(user_obj.id)
        except BrokerError as e:
            console.print(f"[red]Registration failed:[/red] {e}")
            raise typer.Exit(1)
        console.print(f"[green]Registered as {credential.user_id}[/green]")


@app.command("connect")
def connect(
    broker: Optional[str] = typer.Option(None, "--broker", "-b", help="Brokerage slug or id"),
    open_browser: bool = typer.Option(False, "--open", help="Open the portal in a browser"),
    user: Optional[str] = USER_OPTION,
):
    """Start a brokerage connection and print the portal URL."""
    client = _client()
    with get_db() as db:
        user_obj = _get_user(db, user)
        try:
            session = _flow(db, client, open_browser).start(user_obj.id, broker_id=broker)
        except BrokerError as e:
            console.print(f"[red]Connection failed:[/red] {e}")
            raise typer.Exit(1)

        console.print(f"\nSession: [cyan]{session.session_id}[/cyan]")
        console.print("After finishing in the portal, run:")
        console.print(f"  trader-insights brokers callback {session.session_id}")


@app.command("callback")
def callback(
    session_id: Optional[str] = typer.Argument(None, help="Session ID from 'connect' (default: latest pending)"),
    authorization_id: Optional[str] = typer.Option(
        None, "--authorization-id", "-a", help="Authorization id reported by the portal"
    ),
    user: Optional[str] = USER_OPTION,
):
    """Resolve a finished portal session and sync."""
    client = _client()
    with get_db() as db:
        if session_id is None:
            user_obj = _get_user(db, user)
            pending = SessionRepository(db).latest_pending(user_obj.id)
            if pending is None:
                console.print("[yellow]No pending connection session.[/yellow]")
                raise typer.Exit(1)
            session_id = pending.session_id

        flow = _flow(db, client)
        try:
            session = flow.resolve_callback(session_id, authorization_id)
        except BrokerError as e:
            console.print(f"[red]Callback failed:[/red] {e}")
            db.commit()
            raise typer.Exit(1)

        console.print(f"[green]Connected![/green] Authorization {session.authorization_id}")
        console.print(f"  Accounts: {len(flow.store.accounts)}")
        if flow.store.error:
            console.print(f"  [yellow]Sync warning:[/yellow] {flow.store.error}")


@app.command("sync")
def sync(
    user: Optional[str] = USER_OPTION,
    all_users: bool = typer.Option(False, "--all", help="Sync every connected user"),
):
    """Sync broker data and import filled orders as trades."""
    client = _client()
    with get_db() as db:
        sync_service = BrokerSyncService(db, client_factory=lambda: client)

        if all_users:
            results = sync_service.sync_all_users()
            if not results:
                console.print("[yellow]No connected users to sync.[/yellow]")
                return
            for user_id, result in results.items():
                if result.success:
                    console.print(f"  [green]OK[/green] {user_id[:8]}... - {result.created} created, {result.updated} updated")
                else:
                    console.print(f"  [red]Failed[/red] {user_id[:8]}... - {result.errors[0]}")
            return

        user_obj = _get_user(db, user)
        console.print("Syncing...")
        try:
            sync_result, result = sync_service.sync_user(user_obj)
        except BrokerError as e:
            console.print(f"[red]Sync failed:[/red] {e}")
            raise typer.Exit(1)

        console.print("[green]Sync complete![/green]")
        console.print(f"  Accounts: {sync_result.accounts_synced}")
        console.print(f"  Orders:   {result.fetched}")
        console.print(f"  Created:  {result.created}")
        console.print(f"  Updated:  {result.updated}")
        console.print(f"  Skipped:  {result.skipped}")
        for err in result.errors:
            console.print(f"  [yellow]-[/yellow] {err}")


@app.command("accounts")
def list_accounts(user: Optional[str] = USER_OPTION):
    """Fetch and list brokerage accounts with positions."""
    client = _client()
    with get_db() as db:
        user_obj = _get_user(db, user)
        credential = CredentialStore(db).get(user_obj.id)

    if credential is None:
        console.print("[yellow]Not registered.[/yellow] Run 'trader-insights brokers connect' first.")
        raise typer.Exit(1)

    store = BrokerDataStore(client, credential)
    try:
        store.sync_all()
    except BrokerError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    if not store.accounts:
        console.print("[yellow]No brokerage accounts.[/yellow]")
        return

    table = Table(title="Brokerage Accounts")
    table.add_column("ID", style="dim")
    table.add_column("Institution")
    table.add_column("Name")
    table.add_column("Number")
    table.add_column("Balance", justify="right")
    table.add_column("Positions", justify="right")

    for acc in store.accounts:
        table.add_row(
            acc.id[:8] + "...",
            acc.institution_name,
            acc.name,
            f"...{acc.number[-4:]}" if acc.number else "-",
            f"{acc.balance:,.2f} {acc.currency}" if acc.balance is not None else "-",
            str(len(store.positions.get(acc.id, []))),
        )

    console.print(table)
    if store.error:
        console.print(f"[yellow]Warning:[/yellow] {store.error}")


@app.command("disconnect")
def disconnect(
    user: Optional[str] = USER_OPTION,
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation"),
):
    """Delete the SnapTrade user and the stored credential."""
    if not force:
        if not typer.confirm("Disconnect all brokerages for this user?"):
            console.print("[yellow]Cancelled.[/yellow]")
            raise typer.Exit(0)

    client = _client()
    with get_db() as db:
        user_obj = _get_user(db, user)
        try:
            removed = _flow(db, client).disconnect(user_obj.id)
        except BrokerError as e:
            console.print(f"[red]Disconnect failed:[/red] {e}")
            raise typer.Exit(1)

    if removed:
        console.print("[green]Disconnected.[/green]")
    else:
        console.print("[yellow]Nothing to disconnect.[/yellow]")


@app.command("webull-import")
def webull_import(
    username: str = typer.Option(..., "--username", prompt=True),
    password: str = typer.Option(..., "--password", prompt=True, hide_input=True),
    mfa_code: Optional[str] = typer.Option(None, "--mfa", help="MFA code if required"),
    user: Optional[str] = USER_OPTION,
):
    """Log in to Webull and import filled orders as trades."""
    client = WebullClient.from_settings()
    try:
        client.login(WebullCredentials(username=username, password=password, mfa_code=mfa_code))
    except (BrokerError, ValueError) as e:
        console.print(f"[red]Login failed:[/red] {e}")
        raise typer.Exit(1)

    try:
        with get_db() as db:
            user_obj = _get_user(db, user)
            result = BrokerSyncService(db).import_webull(user_obj, client)
    except BrokerError as e:
        console.print(f"[red]Import failed:[/red] {e}")
        raise typer.Exit(1)
    finally:
        client.logout()

    console.print(f"[green]Imported {result.created} new trade(s)[/green], {result.updated} updated, {result.skipped} skipped")


@app.command("schedule")
def schedule(
    interval: Optional[int] = typer.Option(None, "--interval", "-i", help="Minutes between syncs"),
):
    """Run scheduled syncs for every connected user (blocking)."""
    SyncScheduler(interval_minutes=interval).start()

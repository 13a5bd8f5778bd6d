"""
Sessions CLI

Command-line interface for operating the session service.

Commands:
- serve: Run the HTTP API
- start: Start pairing a tenant (optionally waiting for the QR code)
- status: Show a tenant's session, rendering the QR code in the terminal
- send: Send a message through a tenant's session
- disconnect: Log a tenant out and remove its session
"""

import time
from typing import Any, Optional

import httpx
import typer
from rich import print as rprint
from rich.console import Console
from rich.table import Table

app = typer.Typer(
    name="messaging-sessions",
    help="Multi-tenant chat session manager",
)

console = Console()

DEFAULT_URL = "http://localhost:8080"

ServerUrl = typer.Option(DEFAULT_URL, "--url", envvar="MESSAGING_SESSIONS_URL", help="Session service base URL")


def _request(method: str, url: str, path: str, **kwargs: Any) -> dict[str, Any]:
    """Call the running service; exits with a readable error on failure."""
    try:
        response = httpx.request(method, f"{url.rstrip('/')}{path}", timeout=30.0, **kwargs)
    except httpx.RequestError as e:
        rprint(f"[red]Could not reach {url}: {e}[/red]")
        raise typer.Exit(1)

    try:
        data = response.json()
    except ValueError:
        data = {"error": response.text}

    if response.status_code >= 400:
        error = data.get("error") or data.get("detail") or response.text
        rprint(f"[red]Request failed ({response.status_code}): {error}[/red]")
        raise typer.Exit(1)
    return data


def _print_qr(pairing_code: str) -> None:
    import qrcode

    qr = qrcode.QRCode(border=1)
    qr.add_data(pairing_code)
    qr.print_ascii(invert=True)


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Bind address (defaults to HOST)"),
    port: Optional[int] = typer.Option(None, help="Port (defaults to PORT)"),
    reload: bool = typer.Option(False, help="Reload on code changes"),
):
    """
    Run the HTTP API.
    """
    import uvicorn

    from messaging_sessions.logging import setup_logging
    from messaging_sessions.settings import get_settings

    settings = get_settings()
    setup_logging()

    uvicorn.run(
        "messaging_sessions.api.app:create_app",
        factory=True,
        host=host or settings.HOST,
        port=port or settings.PORT,
        reload=reload,
        log_config=None,
    )


@app.command()
def start(
    merchant_id: str = typer.Argument(..., help="Tenant (merchant) id"),
    wait: bool = typer.Option(True, help="Wait for the QR code and show it"),
    timeout: float = typer.Option(60.0, help="Seconds to wait for the QR code"),
    url: str = ServerUrl,
):
    """
    Start pairing a tenant.

    Scan the QR code with the phone to connect the session.
    """
    result = _request("POST", url, "/auth/start", json={"merchantId": merchant_id})

    if result.get("status") == "already_connected":
        rprint(f"[green]Already connected[/green] ({result.get('phone') or 'unknown phone'})")
        return

    rprint(f"[cyan]{result.get('message', 'Connecting...')}[/cyan]")
    if not wait:
        return

    deadline = time.monotonic() + timeout
    shown_code = None
    with console.status("Waiting for the session..."):
        while time.monotonic() < deadline:
            status = _request("GET", url, f"/status/{merchant_id}")
            if status.get("connected"):
                break

            code = status.get("pairingCode")
            if code and code != shown_code:
                console.print(f"[green]QR Code for {merchant_id}:[/green]")
                _print_qr(code)
                shown_code = code

            if status.get("status") == "absent":
                rprint(f"[red]Session failed to start: {status.get('lastError') or 'unknown error'}[/red]")
                raise typer.Exit(1)
            time.sleep(1.0)
        else:
            rprint(f"[yellow]Timed out after {timeout}s; check `status {merchant_id}`[/yellow]")
            raise typer.Exit(1)

    rprint(f"[green]Connected![/green]")


@app.command()
def status(
    merchant_id: str = typer.Argument(..., help="Tenant (merchant) id"),
    show_qr: bool = typer.Option(True, help="Show QR code in terminal"),
    url: str = ServerUrl,
):
    """
    Show a tenant's session.
    """
    data = _request("GET", url, f"/status/{merchant_id}")

    table = Table(title=f"Session {merchant_id}")
    table.add_column("Field", style="dim")
    table.add_column("Value")

    for label, key in (
        ("State", "status"),
        ("Connected", "connected"),
        ("Phone", "phone"),
        ("Name", "pushName"),
        ("Connected at", "connectedAt"),
        ("Last activity", "lastActivity"),
        ("Reconnect attempts", "reconnectAttempts"),
        ("Last error", "lastError"),
    ):
        value = data.get(key)
        table.add_row(label, "-" if value is None else str(value))

    console.print(table)

    code = data.get("pairingCode")
    if code:
        if show_qr:
            _print_qr(code)
        else:
            rprint(f"[cyan]QR Code available (use --show-qr to display)[/cyan]")


@app.command()
def send(
    merchant_id: str = typer.Argument(..., help="Tenant (merchant) id"),
    to: str = typer.Argument(..., help="Recipient phone number or JID"),
    text: str = typer.Option("Hello from messaging-sessions!", help="Message text"),
    wait: bool = typer.Option(False, help="Wait for the delivery receipt"),
    url: str = ServerUrl,
):
    """
    Send a message through a tenant's session.
    """
    result = _request(
        "POST",
        url,
        "/send-message",
        json={
            "merchantId": merchant_id,
            "to": to,
            "message": text,
            "options": {"waitForDelivery": wait},
        },
    )

    rprint(f"[green]Message sent successfully![/green]")
    rprint(f"  Message ID: {result.get('messageId')}")
    rprint(f"  To: {result.get('to')}")
    if wait:
        if result.get("confirmed"):
            rprint(f"  Delivery: [green]confirmed[/green]")
        else:
            rprint(f"  Delivery: [yellow]not confirmed yet[/yellow]")


@app.command()
def disconnect(
    merchant_id: str = typer.Argument(..., help="Tenant (merchant) id"),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation"),
    url: str = ServerUrl,
):
    """
    Log a tenant out and remove its session and credentials.
    """
    if not force:
        confirm = typer.confirm(f"Disconnect {merchant_id}? The next start will need a new scan.")
        if not confirm:
            rprint("[yellow]Cancelled[/yellow]")
            raise typer.Exit(0)

    result = _request("POST", url, "/auth/disconnect", json={"merchantId": merchant_id})
    if result.get("loggedOut"):
        rprint(f"[green]Disconnected[/green]")
    else:
        rprint(f"[yellow]Session removed (logout could not be confirmed)[/yellow]")


if __name__ == "__main__":
    app()

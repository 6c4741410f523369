"""VaultGate entrypoint and admin CLI."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import typer
import uvicorn
from rich.console import Console

from vaultgate.config.settings import get_settings

if TYPE_CHECKING:
    from vaultgate.client.platform import SoftwareAuthenticator

app = typer.Typer(
    name="vaultgate",
    help="Admin sign-in service: password, biometric and vault PIN.",
    no_args_is_help=True,
)

console = Console()
error_console = Console(stderr=True)


@app.command()
def serve(
    host: Annotated[str, typer.Option(help="Interface to bind")] = "127.0.0.1",
    port: Annotated[int, typer.Option(help="Port to listen on")] = 8000,
    reload: Annotated[bool, typer.Option(help="Reload on code changes")] = False,
) -> None:
    """Run the HTTP API."""
    uvicorn.run("vaultgate.web.app:create_app", factory=True, host=host, port=port, reload=reload)


@app.command("init-db")
def init_db_command() -> None:
    """Create all tables (use Alembic migrations in production)."""
    from vaultgate.storage.database import init_db

    asyncio.run(init_db())
    console.print("[green]Tables created.[/green]")


@app.command("create-admin")
def create_admin(
    email: Annotated[str, typer.Option(prompt=True, help="Admin email")],
    password: Annotated[
        str, typer.Option(prompt=True, hide_input=True, confirmation_prompt=True)
    ],
    name: Annotated[str, typer.Option(help="Display name")] = "",
    super_admin: Annotated[bool, typer.Option(help="Grant SUPER_ADMIN")] = False,
) -> None:
    """Create an admin account in the database."""
    from vaultgate.storage.database import get_engine, init_db
    from vaultgate.storage.repositories.users import DatabaseUserRepository
    from vaultgate.types import AdminRole

    async def _create() -> str | None:
        engine = get_engine()
        await init_db(engine)
        repo = DatabaseUserRepository(engine)
        if await repo.get_by_email(email):
            return None
        role = AdminRole.SUPER_ADMIN if super_admin else AdminRole.ADMIN
        user = await repo.create(email=email, password=password, name=name, role=role)
        return user.id

    user_id = asyncio.run(_create())
    if user_id is None:
        error_console.print(f"[red]Error:[/red] An account for {email} already exists")
        raise typer.Exit(1)
    console.print(f"[green]Created admin[/green] {email} ({user_id})")


@app.command("hash-pin")
def hash_pin(
    pin: Annotated[str, typer.Option(prompt=True, hide_input=True, confirmation_prompt=True)],
) -> None:
    """Print a bcrypt hash for a 3-digit vault PIN (set it as VAULT_PIN_HASH)."""
    from vaultgate.auth.passwords import hash_secret
    from vaultgate.auth.vault_pin import PIN_PATTERN

    if not PIN_PATTERN.fullmatch(pin):
        error_console.print("[red]Error:[/red] The vault PIN must be exactly 3 digits")
        raise typer.Exit(1)
    console.print(hash_secret(pin))


@app.command()
def login(
    url: Annotated[str, typer.Option(help="Base URL of the API")] = "http://localhost:8000",
    email: Annotated[str, typer.Option(prompt=True)] = "",
    device_name: Annotated[str, typer.Option(help="Label for a new device")] = "CLI Device",
    authenticator_file: Annotated[
        Path | None,
        typer.Option(help="JSON file holding this device's passkeys between runs"),
    ] = None,
) -> None:
    """Sign in interactively using a software authenticator.

    Without ``--authenticator-file`` the keys live in memory only and the
    device has to enroll again on the next run.
    """
    asyncio.run(_interactive_login(url, email, device_name, authenticator_file))


async def _interactive_login(
    url: str, email: str, device_name: str, authenticator_file: Path | None = None
) -> None:
    from vaultgate.client.platform import SoftwareAuthenticator

    origin = get_settings().expected_origin
    if authenticator_file is not None:
        platform = SoftwareAuthenticator.load(authenticator_file, origin)
    else:
        platform = SoftwareAuthenticator(origin)
    try:
        await _run_login(url, email, device_name, platform)
    finally:
        if authenticator_file is not None:
            platform.save(authenticator_file)


async def _run_login(
    url: str, email: str, device_name: str, platform: SoftwareAuthenticator
) -> None:
    import httpx

    from vaultgate.client.backend import HttpAuthBackend
    from vaultgate.client.countdown import LockoutCountdown
    from vaultgate.client.sequencer import (
        AuthSequencer,
        BiometricPrompt,
        EnrollmentOffered,
        Failed,
        Locked,
        PasswordVerified,
        PinChallenge,
        SessionIssued,
        Unauthenticated,
        Unavailable,
    )

    async with httpx.AsyncClient(base_url=url, timeout=30.0) as client:
        sequencer = AuthSequencer(HttpAuthBackend(client), platform, device_name=device_name)
        while True:
            state = sequencer.state
            if isinstance(state, Unauthenticated):
                if state.error:
                    error_console.print(f"[red]{state.error}[/red]")
                password = typer.prompt("Password", hide_input=True)
                await sequencer.submit_password(email, password)
            elif isinstance(state, PasswordVerified):
                if state.error:
                    error_console.print(f"[red]{state.error}[/red]")
                typer.confirm("Retry the biometric check?", abort=True)
                await sequencer.check_biometrics()
            elif isinstance(state, EnrollmentOffered):
                if state.error:
                    error_console.print(f"[red]{state.error}[/red]")
                typer.confirm(f"Enroll this device as {device_name!r}?", abort=True)
                await sequencer.enroll()
            elif isinstance(state, BiometricPrompt):
                if state.error:
                    error_console.print(f"[red]{state.error}[/red]")
                    typer.confirm("Try the biometric prompt again?", abort=True)
                await sequencer.authenticate_biometric()
            elif isinstance(state, PinChallenge):
                if state.error:
                    left = state.remaining_attempts
                    suffix = f" ({left} attempts left)" if left is not None else ""
                    error_console.print(f"[red]{state.error}{suffix}[/red]")
                pin = typer.prompt("Vault PIN", hide_input=True)
                await sequencer.submit_pin(pin)
            elif isinstance(state, Locked):
                console.print(f"[yellow]Locked for {state.remaining_seconds}s[/yellow]")
                await LockoutCountdown(
                    sequencer,
                    on_tick=lambda s: console.print(
                        f"  {getattr(s, 'remaining_seconds', 0)}s", end="\r"
                    ),
                ).run()
            elif isinstance(state, SessionIssued):
                console.print(f"[green]Signed in as {state.email}[/green]")
                console.print(state.token)
                return
            elif isinstance(state, (Unavailable, Failed)):
                error_console.print(f"[red]{state.reason}[/red]")
                raise typer.Exit(1)
            else:
                error_console.print(f"[red]Unexpected state {state.stage}[/red]")
                raise typer.Exit(1)


def cli() -> None:
    """CLI entrypoint."""
    app()


if __name__ == "__main__":
    cli()

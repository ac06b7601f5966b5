#!/usr/bin/env python

import asyncio
import sys
from datetime import datetime, timezone

import typer
from rich.console import Console
from rich.panel import Panel

from osgen import logger
from osgen.config import Settings
from osgen.credentials import CredentialCache
from osgen.errors import ConfigurationError, OSGenError
from osgen.orchestrator import WorkflowOrchestrator

app = typer.Typer(help="osgen - create and deploy OutSystems applications from a prompt.")
console = Console()


def _load_settings() -> Settings:
    try:
        return Settings.from_env()
    except ConfigurationError as e:
        console.print(f"[bold red]Configuration error: {e.message}[/bold red]")
        raise typer.Exit(code=2)


def _build_orchestrator(settings: Settings) -> WorkflowOrchestrator:
    return WorkflowOrchestrator.from_settings(settings)


async def _deploy(orch: WorkflowOrchestrator, prompt: str) -> str:
    try:
        return await orch.create_and_deploy(
            prompt,
            on_progress=lambda line: console.print(line, markup=False, highlight=False),
        )
    finally:
        await orch.aclose()


@app.command("deploy", help="Generate, publish and print the URL of a new application.")
def deploy_command(
    prompt: str = typer.Argument(None, help="A detailed description of the application."),
):
    """
    Runs the full generation and publication workflow, printing progress as it happens.
    """
    if not prompt:
        prompt = typer.prompt("Describe the application to generate")
        if not prompt or not prompt.strip():
            console.print("[bold red]A prompt is required.[/bold red]")
            raise typer.Exit(code=1)

    settings = _load_settings()
    try:
        orch = _build_orchestrator(settings)
    except ConfigurationError as e:
        console.print(f"[bold red]Configuration error: {e.message}[/bold red]")
        raise typer.Exit(code=2)

    logger.info(f"CLI: Creating application on {settings.hostname}")
    try:
        url = asyncio.run(_deploy(orch, prompt))
    except OSGenError as e:
        console.print(f"[bold red]{e.code}: {e.message}[/bold red]")
        logger.error(f"CLI: Deployment failed during {e.stage}: {e.message}")
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        console.print("[yellow]Cancelled.[/yellow]")
        raise typer.Exit(code=130)

    console.print(Panel(url, title="Application is live", border_style="green"))


@app.command("check-auth", help="Obtain a token with the configured credentials.")
def check_auth_command():
    """
    Authenticates once and reports when the token expires.
    """
    settings = _load_settings()
    try:
        cache = CredentialCache.from_settings(settings)
        credential = asyncio.run(cache.get_token())
    except OSGenError as e:
        console.print(f"[bold red]{e.code}: {e.message}[/bold red]")
        raise typer.Exit(code=1)

    expires = datetime.fromtimestamp(credential.expires_at, tz=timezone.utc)
    console.print(
        f"[green]Authenticated against {settings.hostname}.[/green] "
        f"Token expires at {expires.isoformat()}"
    )


@app.command("version", help="Show osgen version information")
def show_version():
    """Display version and system information"""
    try:
        import importlib.metadata
        version = importlib.metadata.version("osgen")
    except Exception:
        version = "development"

    version_info = f"""
[bold cyan]osgen[/bold cyan] v{version}
Python: {sys.version.split()[0]}
Platform: {sys.platform}
"""
    console.print(Panel(version_info, title="Version Info", border_style="blue"))


if __name__ == "__main__":
    app()

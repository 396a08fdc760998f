"""
CMDFORGE CLI — The Interface

Two modes:
  1. cmdforge run "<request>"        (one request, review, execute)
  2. cmdforge interactive            (a session; earlier runs feed later prompts)

Plus utilities:
  - cmdforge status                  (providers, keys, interpreter)
  - cmdforge models                  (models available for a provider)
  - cmdforge use <provider>          (select provider / model)
  - cmdforge set-key <provider> <k>  (store an API key)
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Confirm
from rich.syntax import Syntax
from rich.table import Table

from cmdforge.audit_logger import AuditLogger
from cmdforge.config_loader import USER_CONFIG_PATH, CmdForgeConfig, load_config
from cmdforge.controller import Controller
from cmdforge.identity import BANNER, __codename__, __tagline__, __version__
from cmdforge.models import ConversationEntry, GenerationResult
from cmdforge.providers import Provider
from cmdforge.settings import DEFAULT_SETTINGS_PATH, SettingsStore

# Load .env from current directory or home
load_dotenv()
load_dotenv(Path.home() / ".cmdforge" / ".env")

app = typer.Typer(
    name="cmdforge",
    help=f"{__codename__} — {__tagline__}\nNatural language to reviewed Python execution.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()

SETTINGS_PATH = DEFAULT_SETTINGS_PATH


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


# ---------------------------------------------------------------------------
# Banner
# ---------------------------------------------------------------------------


def _print_banner():
    console.print(f"[bright_green]{BANNER}[/]")
    console.print(f"  [dim]v{__version__} — {__tagline__}[/]\n")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def run(
    request: str = typer.Argument(..., help="What you want done, in plain language"),
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help="Provider to use for this run"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model override for this run"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Execute without asking for confirmation"),
    allow_unsafe: bool = typer.Option(False, "--allow-unsafe", help="Run code even if the safety check rejects it"),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Extra config.yaml to merge"),
    audit_log: Optional[Path] = typer.Option(None, "--audit-log", help="Append pipeline events to this JSONL file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Generate code for one request, review it, and run it."""
    _print_banner()
    config = _load(config_file)
    _configure_logging(verbose, config)

    controller = _build_controller(config, audit_log)
    entry = asyncio.run(_run_once(controller, request, provider, model, yes, allow_unsafe))

    if entry is None or (entry.execution_result or "").startswith("Error"):
        raise typer.Exit(1)


@app.command()
def interactive(
    provider: Optional[str] = typer.Option(None, "--provider", "-p"),
    model: Optional[str] = typer.Option(None, "--model", "-m"),
    allow_unsafe: bool = typer.Option(False, "--allow-unsafe"),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c"),
    audit_log: Optional[Path] = typer.Option(None, "--audit-log"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Interactive mode — describe, review, approve, repeat. Earlier runs give context."""
    _print_banner()
    config = _load(config_file)
    _configure_logging(verbose, config)

    controller = _build_controller(config, audit_log)
    console.print("[dim]Meta-commands: history, clear, exit[/]")

    while True:
        request = typer.prompt(">>", default="", show_default=False).strip()
        if not request:
            continue
        if request.lower() in ("exit", "quit"):
            break
        if request.lower() == "history":
            _print_history(controller.history)
            continue
        if request.lower() == "clear":
            controller.clear_history()
            console.print("[dim]History cleared.[/]")
            continue

        asyncio.run(_run_once(controller, request, provider, model, False, allow_unsafe))


@app.command()
def status(
    config_file: Optional[Path] = typer.Option(None, "--config", "-c"),
):
    """Check CMDFORGE configuration and readiness."""
    _print_banner()
    config = _load(config_file)
    controller = _build_controller(config, None)
    selected = controller.settings.get_selected_provider()

    table = Table(title="Providers", border_style="cyan")
    table.add_column("Provider")
    table.add_column("Model")
    table.add_column("Status")
    table.add_column("API Key")

    for p in Provider:
        name = p.info.display_name + (" [bold](selected)[/]" if p is selected else "")
        connected = controller.is_connected(p)
        status_str = "[green]✓ Connected[/]" if connected else "[red]✗ Missing key[/]"
        key_hint = p.info.api_key_url or "[dim]not required[/]"
        table.add_row(name, controller.settings.get_selected_model(p), status_str, key_hint)

    console.print(table)

    interpreter = controller.executor.interpreter
    console.print("\n[bold]Execution:[/]")
    console.print(f"  Interpreter: {interpreter or '[red]not found[/]'}")
    console.print(f"  Working dir: {config.execution.working_path}")
    console.print(f"  Timeout:     {config.execution.timeout_seconds:g}s")
    console.print(f"  Safety gate: {'on' if config.safety.enforce else '[yellow]off[/]'}")


@app.command()
def models(
    provider: Optional[str] = typer.Option(None, "--provider", "-p"),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c"),
):
    """List the models available for a provider."""
    config = _load(config_file)
    controller = _build_controller(config, None)
    target = _parse_provider(provider) if provider else controller.settings.get_selected_provider()

    names = asyncio.run(controller.available_models(target))
    if not names:
        console.print(f"[yellow]No models found for {target.info.display_name}.[/]")
        raise typer.Exit(1)

    current = controller.settings.get_selected_model(target)
    for name in names:
        marker = "[green]●[/]" if name == current else " "
        console.print(f" {marker} {name}")


@app.command()
def use(
    provider: str = typer.Argument(..., help="deepseek | openai | claude | groq | ollama"),
    model: Optional[str] = typer.Option(None, "--model", "-m"),
):
    """Select the default provider (and optionally its model)."""
    target = _parse_provider(provider)
    settings = SettingsStore(SETTINGS_PATH)
    settings.set_selected_provider(target)
    if model:
        settings.set_selected_model(target, model)
    console.print(
        f"[green]✅ Using {target.info.display_name} ({settings.get_selected_model(target)})[/]"
    )


@app.command("set-key")
def set_key(
    provider: str = typer.Argument(...),
    key: str = typer.Argument(..., help="API key value"),
):
    """Store an API key for a provider."""
    target = _parse_provider(provider)
    if not target.info.requires_api_key:
        console.print(f"[yellow]{target.info.display_name} does not need an API key.[/]")
        return
    SettingsStore(SETTINGS_PATH).set_credential(target, key)
    console.print(f"[green]✅ Key saved for {target.info.display_name}[/]")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _run_once(
    controller: Controller,
    request: str,
    provider: Optional[str],
    model: Optional[str],
    auto_approve: bool,
    allow_unsafe: bool,
) -> ConversationEntry | None:
    target = _parse_provider(provider) if provider else None
    if not controller.is_connected(target):
        chosen = target or controller.settings.get_selected_provider()
        console.print(
            f"[red]🚫 {chosen.info.display_name} is not connected. "
            f"Get a key at {chosen.info.api_key_url} and run `cmdforge set-key {chosen.value} <key>`.[/]"
        )
        return None

    with console.status("[cyan]Generating code...[/]"):
        generated = await controller.generate(request, provider=target, model=model)

    if not generated.ok:
        console.print(f"[red]{escape(generated.error)}[/]")
        return controller.history[-1]

    _print_generated(generated)

    override = False
    if generated.verdict.acceptable:
        console.print(f"[green]✓ Safety check passed: {escape(generated.verdict.reason)}[/]")
    else:
        console.print(f"[red]🚫 Safety check failed: {escape(generated.verdict.reason)}[/]")
        if not allow_unsafe and (auto_approve or not Confirm.ask("[bold]Override safety block?[/]")):
            controller.cancel()
            console.print("[yellow]Cancelled.[/]")
            return None
        override = True

    if not auto_approve and not Confirm.ask("[bold]Execute this code?[/]"):
        controller.cancel()
        console.print("[yellow]Cancelled.[/]")
        return None

    with console.status("[cyan]Running...[/]"):
        entry = await controller.confirm(override_safety=override)

    result = entry.execution_result or ""
    color = "red" if result.startswith("Error") else "green"
    console.print(Panel(escape(result), title="Result", border_style=color))
    return entry


def _print_generated(generated: GenerationResult) -> None:
    console.print(Panel(
        Syntax(generated.code.code, "python", line_numbers=True),
        title=f"⚡ {generated.code.description}",
        subtitle=f"{generated.provider} / {generated.model}",
        border_style="bright_green",
    ))


def _print_history(entries: tuple[ConversationEntry, ...]) -> None:
    if not entries:
        console.print("[dim]No history yet.[/]")
        return

    table = Table(title="Session History", border_style="cyan")
    table.add_column("Time", style="dim")
    table.add_column("Request")
    table.add_column("Result")

    # Newest first
    for entry in reversed(entries):
        result = (entry.execution_result or "").splitlines()
        table.add_row(
            entry.timestamp.strftime("%H:%M:%S"),
            entry.user_request[:60],
            (result[0] if result else "")[:60],
        )
    console.print(table)


def _parse_provider(value: str) -> Provider:
    try:
        return Provider.parse(value)
    except ValueError as e:
        console.print(f"[red]{escape(str(e))}[/]")
        raise typer.Exit(1)


def _load(config_file: Optional[Path]) -> CmdForgeConfig:
    try:
        return load_config(config_file, USER_CONFIG_PATH)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Config error: {escape(str(e))}[/]")
        raise typer.Exit(1)


def _build_controller(config: CmdForgeConfig, audit_log: Optional[Path]) -> Controller:
    settings = SettingsStore(SETTINGS_PATH, default_provider=config.default_provider)
    controller = Controller(config=config, settings=settings)
    if audit_log:
        AuditLogger(str(audit_log), controller.bus)
    return controller


def _console_sink(message) -> None:
    # Log text is not markup; brackets in exception messages must print as-is
    console.print(f"[dim]{escape(str(message).rstrip())}[/]", highlight=False)


def _configure_logging(verbose: bool, config: CmdForgeConfig | None = None) -> None:
    logger.remove()
    if verbose:
        logger.add(
            _console_sink,
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            _console_sink,
            level="WARNING",
            format="{message}",
        )

    if config and config.logging.file_logging:
        log_dir = Path(config.logging.log_dir).expanduser()
        log_dir.mkdir(parents=True, exist_ok=True)
        logger.add(log_dir / "cmdforge.log", level="DEBUG", rotation="1 MB", retention=5)


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()

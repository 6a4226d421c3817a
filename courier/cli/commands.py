"""CLI commands for courier."""

import asyncio
import sys

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from courier import __version__, __logo__

app = typer.Typer(
    name="courier",
    help=f"{__logo__} courier - reliable reply delivery for chat bridges",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} courier v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-V", callback=version_callback, is_eager=True
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logs"),
):
    """courier - reliable reply delivery for chat bridges."""
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "WARNING")


# ============================================================================
# Config
# ============================================================================

config_app = typer.Typer(help="Inspect and initialize configuration")
app.add_typer(config_app, name="config")


@config_app.command("show")
def config_show():
    """Show the effective delivery settings."""
    from courier.config.loader import get_config_path, load_config

    config = load_config()

    table = Table(title=f"Delivery settings ({get_config_path()})")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    r = config.retry
    table.add_row("retry.maxRetries", str(r.max_retries))
    table.add_row("retry.baseDelay", f"{r.base_delay} ms")
    table.add_row("retry.maxDelay", f"{r.max_delay} ms")
    table.add_row("retry.jitter", f"{r.jitter:.2f}")

    s = config.streaming
    table.add_row("streaming.enabled", "✓" if s.enabled else "✗")
    table.add_row("streaming.limit", f"{s.limit} chars")
    table.add_row("streaming.editInterval", f"{s.edit_interval:g} s")

    from courier.channels.reactions import build_emoji_table

    emojis = build_emoji_table(config.reactions.emojis)
    table.add_row("reactions.enabled", "✓" if config.reactions.enabled else "✗")
    table.add_row("reactions.emojis", " ".join(f"{k.value}={v}" for k, v in emojis.items()))

    b = config.bridge
    timeout = f"{b.response_timeout:g} s" if b.response_timeout else "[dim]off[/dim]"
    table.add_row("bridge.responseTimeout", timeout)
    table.add_row("bridge.typingIndicator", "✓" if b.typing_indicator else "✗")
    table.add_row("bridge.chunkSize", f"{b.chunk_size} chars")

    console.print(table)


@config_app.command("init")
def config_init():
    """Write a default config file."""
    from courier.config.loader import get_config_path, save_config
    from courier.config.schema import Config

    config_path = get_config_path()
    if config_path.exists():
        console.print(f"[yellow]Config already exists at {config_path}[/yellow]")
        if not typer.confirm("Overwrite?"):
            raise typer.Exit()

    save_config(Config())
    console.print(f"[green]✓[/green] Created config at {config_path}")


# ============================================================================
# Simulation
# ============================================================================


@app.command()
def simulate(
    text: str = typer.Argument(..., help="Reply text the fake backend streams"),
    chunk: int = typer.Option(12, "--chunk", "-c", help="Characters per backend fragment"),
    delay: float = typer.Option(0.05, "--delay", "-d", help="Seconds between fragments"),
    limit: int | None = typer.Option(None, "--limit", "-l", help="Per-message limit (defaults to config)"),
    interval: float | None = typer.Option(None, "--interval", "-i", help="Flush interval in seconds"),
    fail_sends: int = typer.Option(0, "--fail-sends", help="Fail the first N new-message sends"),
):
    """Stream TEXT through the bridge into a console transport."""
    from courier.bus.events import InboundMessage
    from courier.channels.bridge import ConversationBridge
    from courier.channels.console import ConsoleTransport
    from courier.config.loader import load_config

    config = load_config()
    if limit is not None:
        config.streaming.limit = limit
    if interval is not None:
        config.streaming.edit_interval = interval

    async def backend(message: InboundMessage, on_fragment) -> str:
        for i in range(0, len(text), max(1, chunk)):
            on_fragment(text[i : i + chunk])
            await asyncio.sleep(delay)
        return text

    async def run():
        transport = ConsoleTransport(console, fail_sends=fail_sends)
        bridge = ConversationBridge(transport, backend, config)
        message = InboundMessage(
            id="sim-1",
            conversation_id="+1 555 000 1111",
            text="simulate",
            sender="you",
        )
        try:
            await bridge.handle_inbound(message)
        finally:
            await bridge.shutdown()
        console.print(f"\n{__logo__} delivered {len(transport.messages)} message(s)")

    try:
        asyncio.run(run())
    except Exception as e:
        console.print(f"[red]Delivery failed: {e}[/red]")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()

"""Console transport: prints sends, edits and reactions instead of delivering them."""

from typing import Any

from rich.console import Console

from courier.channels.base import BaseTransport
from courier.channels.errors import TemporaryDeliveryError


class ConsoleTransport(BaseTransport):
    """
    Local stand-in for a messaging network, used by ``courier simulate``.

    ``fail_sends`` makes the first N new-message sends raise a temporary
    error so retry and flush-recovery paths can be watched.
    """

    name = "console"

    def __init__(self, console: Console | None = None, fail_sends: int = 0):
        self.console = console or Console()
        self._fail_sends = fail_sends
        self._next_id = 0
        self.messages: dict[str, str] = {}

    async def send(self, target: str, content: dict[str, Any]) -> Any:
        text = content.get("text", "")
        handle = content.get("edit")
        if handle is not None:
            self.messages[handle] = text
            self.console.print(f"[yellow]✎ edit {handle}[/yellow] → {target} ({len(text)} chars)")
            self.console.print(text, style="dim", markup=False)
            return handle

        if self._fail_sends > 0:
            self._fail_sends -= 1
            self.console.print(f"[red]✗ send to {target} failed (simulated)[/red]")
            raise TemporaryDeliveryError("connection closed (simulated)")

        self._next_id += 1
        handle = f"msg-{self._next_id}"
        self.messages[handle] = text
        self.console.print(f"[green]➤ send {handle}[/green] → {target} ({len(text)} chars)")
        self.console.print(text, markup=False)
        return handle

    async def send_reaction(self, target: str, message_id: str, emoji: str) -> None:
        shown = emoji or "(cleared)"
        self.console.print(f"[cyan]reaction[/cyan] {shown} on {message_id}")

    async def send_presence(self, target: str, state: str) -> None:
        self.console.print(f"[dim]presence {state} → {target}[/dim]")

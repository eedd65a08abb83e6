#!/usr/bin/env python3
"""main.py

Interactive CLI for qrforce.
Runs the full generation pipeline against a host JSON file using Rich.

Usage:
    python main.py [host.json]

Settings come from ``QRF_*`` environment variables (and ``.env``), or from the
JSON file named by ``QRF_SETTINGS_FILE``.
"""

from __future__ import annotations

# Standard Library
import asyncio
import logging
import os
import sys

# Third-Party Libraries
from dotenv import load_dotenv
from rich.panel import Panel
from rich.theme import Theme
from rich.table import Table
from rich.prompt import Prompt
from rich.console import Console
from rich.markdown import Markdown

# Local Modules
from qrforce.config import GenerationSettings
from qrforce.engine import GenerationEngine
from qrforce.errors import NoticeKind
from qrforce.history import ContextWindow
from qrforce.host import FileHost, HostDocument
from qrforce.models import ChatTurn

# Load environment variables from .env file
load_dotenv()

logging.basicConfig(
    level=os.getenv("QRF_LOG_LEVEL", "WARNING").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

custom_theme = Theme(
    {
        "info": "cyan",
        "warning": "yellow",
        "error": "bold red",
        "success": "bold green",
        "user": "bold blue",
        "assistant": "green",
    }
)
console = Console(theme=custom_theme)

_NOTICE_STYLES: dict[NoticeKind, str] = {
    NoticeKind.CONFIGURATION: "error",
    NoticeKind.TIMEOUT: "error",
    NoticeKind.VALIDATION: "error",
    NoticeKind.FAILURE: "error",
    NoticeKind.WARNING: "warning",
    NoticeKind.SUCCESS: "success",
    NoticeKind.INFO: "info",
}


class RichNotifier:
    """Prints engine notices as coloured panels."""

    def notify(self, kind: NoticeKind, message: str, title: str = "") -> None:
        style = _NOTICE_STYLES.get(kind, "info")
        console.print(
            Panel(message, title=f"[{style}]{title or kind.value}[/{style}]", border_style=style)
        )


def display_banner() -> None:
    """Display the welcome banner."""
    console.print(
        Panel.fit(
            "[bold cyan]qrforce[/bold cyan]\n"
            "Prompt assembly and resilient dispatch for role-play chats",
            border_style="cyan",
        )
    )
    console.print()


def display_help() -> None:
    """Display available commands and usage information."""
    help_text = """
**Available Commands:**

- `/help` - Show this help message
- `/models` - List the models offered by the configured provider
- `/test` - Send a short connectivity probe
- `/optimize` - Rewrite the target-tag block of the latest assistant reply
- `/stats` - Show the active configuration and chat statistics
- `/quit` or `/exit` - Exit
- Any other text - Send it as the pending user message

**Tips:**

- Set `QRF_API_MODE`, `QRF_API_URL`, `QRF_API_KEY` and `QRF_MODEL` in `.env`
- Use `/test` before the first message to check credentials
    """
    console.print(Panel(Markdown(help_text), title="Help", border_style="cyan"))


def display_stats(engine: GenerationEngine, host: FileHost) -> None:
    """Display configuration and context statistics.

    Args:
        engine: The GenerationEngine instance.
        host: The loaded host document.
    """
    settings = engine.settings
    turns = host.turns()
    window = ContextWindow(settings.context_turn_count)
    plots = sum(1 for turn in turns if turn.plot)

    stats_text = f"""
**Context Statistics:**

- Chat records: {len(turns)} ({len(window.select(turns))} in context window)
- Stored plots: {plots}
- Mode: `{settings.api_mode.value}` (streaming: {settings.use_streaming})
- Endpoint: `{settings.api_url or settings.tavern_profile or "-"}`
- Model: `{settings.model}`
- Knowledge: {"on" if settings.worldbook_enabled else "off"} (`{settings.worldbook_source.value}`)
- Required keywords: `{settings.required_keywords or "-"}`, max retries: {settings.max_retries}
    """
    console.print(Panel(Markdown(stats_text), title="Statistics", border_style="cyan"))


def display_models(models: list[dict]) -> None:
    table = Table(title="Models", border_style="cyan")
    table.add_column("id", style="info")
    table.add_column("owned by")
    for model in models:
        table.add_row(str(model.get("id", "")), str(model.get("owned_by", "")))
    console.print(table)


async def optimize_latest(engine: GenerationEngine, host: FileHost) -> None:
    """Run the optimization pass on the newest assistant record."""
    turns = host.turns()
    index = next(
        (i for i in range(len(turns) - 1, -1, -1) if not turns[i].is_user and not turns[i].is_system),
        None,
    )
    if index is None:
        console.print("No assistant reply to optimize.\n", style="warning")
        return

    window = ContextWindow(engine.settings.context_turn_count)
    with console.status("[bold green]Optimizing...", spinner="dots"):
        content = await engine.optimize(turns[index], window.select(turns[:index]))
    if content is None:
        console.print("Nothing was optimized.\n", style="warning")
        return

    turns[index].text = content
    console.print(Panel(Markdown(content), title="[bold green]Optimized[/bold green]", border_style="green"))


def load_settings() -> GenerationSettings:
    path = os.getenv("QRF_SETTINGS_FILE")
    return GenerationSettings.from_json(path) if path else GenerationSettings()


def load_host(path: str | None) -> FileHost:
    if path:
        return FileHost.from_file(path)
    return FileHost(HostDocument())


async def run(host: FileHost, settings: GenerationSettings) -> int:
    async with GenerationEngine(
        settings,
        host,
        knowledge=host,
        persona=host,
        notifier=RichNotifier(),
    ) as engine:
        console.print("Type [bold]/help[/bold] for commands, or start chatting!\n", style="info")

        while True:
            try:
                user_input = Prompt.ask("[bold blue]You[/bold blue]").strip()
            except (KeyboardInterrupt, EOFError):
                console.print("\n\nInterrupted. Goodbye!\n", style="warning")
                return 0

            if not user_input:
                continue

            command = user_input.lower()
            if command in ["/quit", "/exit"]:
                console.print("\nGoodbye!\n", style="success")
                return 0

            elif command == "/help":
                display_help()
                continue

            elif command == "/stats":
                display_stats(engine, host)
                continue

            elif command == "/models":
                with console.status("[bold green]Fetching models...", spinner="dots"):
                    models = await engine.fetch_models()
                if models:
                    display_models(models)
                continue

            elif command == "/test":
                with console.status("[bold green]Testing connection...", spinner="dots"):
                    await engine.test_connection()
                continue

            elif command == "/optimize":
                await optimize_latest(engine, host)
                continue

            turn = ChatTurn(text=user_input, is_user=True, name="You")
            host.add_turn(turn)

            console.print()
            with console.status("[bold green]Generating...", spinner="dots"):
                content = await engine.generate(user_input)

            if content is None:
                console.print("No content was generated.\n", style="warning")
                continue

            # The reply is the plan for the next turn.
            turn.plot = content
            console.print(
                Panel(
                    Markdown(content),
                    title="[bold green]qrforce[/bold green]",
                    border_style="green",
                )
            )
            console.print()


def main() -> None:
    """Main entry point for the qrforce CLI."""
    display_banner()

    path = sys.argv[1] if len(sys.argv) > 1 else os.getenv("QRF_HOST_FILE")
    try:
        settings = load_settings()
        host = load_host(path)
    except Exception as exc:
        console.print(f"Failed to initialize: {exc}", style="error")
        sys.exit(1)

    console.print(f"Mode: {settings.api_mode.value}", style="info")
    console.print(f"Host file: {path or '(empty chat)'}\n", style="info")

    sys.exit(asyncio.run(run(host, settings)))


if __name__ == "__main__":
    main()

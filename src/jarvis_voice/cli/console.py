"""Interactive console for a Jarvis voice session.

Shows state and transcript changes as they happen while the microphone
session runs, and accepts typed commands plus slash commands for the
manual signals (activate, cancel, stop, pause, connectivity).
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from pathlib import Path

from prompt_toolkit import PromptSession
from prompt_toolkit.auto_suggest import AutoSuggestFromHistory
from prompt_toolkit.completion import WordCompleter
from prompt_toolkit.history import FileHistory
from prompt_toolkit.patch_stdout import patch_stdout
from prompt_toolkit.styles import Style
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from jarvis_voice.utils.logging import get_logger
from jarvis_voice.voice.controller import AssistantState, TurnController
from jarvis_voice.voice.history import Role

log = get_logger(__name__)

STATE_STYLES = {
    AssistantState.IDLE: "dim",
    AssistantState.LISTENING: "bold cyan",
    AssistantState.THINKING: "bold yellow",
    AssistantState.SPEAKING: "bold green",
    AssistantState.ERROR: "bold red",
}


class JarvisConsole:
    """Console front end for a TurnController.

    Commands:
    - /help - Show available commands
    - /listen - Start listening without the wake phrase
    - /cancel - Stop listening
    - /stop - Stop the spoken response
    - /pause - Pause or resume the spoken response
    - /history - Show the conversation history
    - /online, /offline - Override connectivity
    - /quit - Exit

    Any other line is sent as a typed command.
    """

    COMMANDS = {
        "/help": "Show available commands",
        "/listen": "Start listening without the wake phrase",
        "/cancel": "Stop listening",
        "/stop": "Stop the spoken response",
        "/pause": "Pause or resume the spoken response",
        "/history": "Show the conversation history",
        "/online": "Mark the session online",
        "/offline": "Mark the session offline",
        "/quit": "Exit",
    }

    PROMPT_STYLE = Style.from_dict({
        "prompt": "ansicyan bold",
        "input": "ansiwhite",
    })

    def __init__(
        self,
        controller: TurnController,
        history_file: str = "~/.jarvis/console_history",
        console: Console | None = None,
    ) -> None:
        self.controller = controller
        self.console = console or Console()

        history_path = Path(history_file).expanduser()
        history_path.parent.mkdir(parents=True, exist_ok=True)
        self._session = PromptSession(
            history=FileHistory(str(history_path)),
            auto_suggest=AutoSuggestFromHistory(),
            completer=WordCompleter(list(self.COMMANDS.keys()), ignore_case=True),
            style=self.PROMPT_STYLE,
        )
        self._running = False

        controller.on_state_change = self._show_state
        controller.on_transcript = self._show_transcript

    async def run(self) -> None:
        """Read commands until /quit or EOF."""
        self._running = True
        self._display_welcome()

        with patch_stdout():
            while self._running:
                try:
                    user_input = await self._get_input()
                    if user_input is None:
                        break
                    user_input = user_input.strip()
                    if not user_input:
                        continue
                    if user_input.startswith("/"):
                        await self._handle_command(user_input)
                        continue
                    if not self.controller.submit_text(user_input):
                        self.console.print("[dim]Command too short[/dim]")

                except KeyboardInterrupt:
                    self.console.print("\n[dim]Use /quit to exit[/dim]")
                    continue

        self.console.print("[dim]Jarvis offline.[/dim]")
        log.info("console_closed")

    async def _get_input(self) -> str | None:
        prompt_text = [("class:prompt", "jarvis"), ("", " > ")]
        try:
            return await self._session.prompt_async(prompt_text)
        except EOFError:
            return None

    async def _handle_command(self, command: str) -> None:
        cmd = command.lower().split()[0]
        log.debug("console_command", command=cmd)

        if cmd == "/help":
            self._display_help()
        elif cmd == "/listen":
            if not await self.controller.activate():
                self.console.print("[dim]Already busy[/dim]")
        elif cmd == "/cancel":
            self.controller.deactivate()
        elif cmd == "/stop":
            await self.controller.stop_voice()
        elif cmd == "/pause":
            paused = await self.controller.toggle_pause()
            self.console.print("[dim]Paused[/dim]" if paused else "[dim]Playing[/dim]")
        elif cmd == "/history":
            self._display_history()
        elif cmd == "/online":
            self.controller.set_online(True)
        elif cmd == "/offline":
            self.controller.set_online(False)
        elif cmd == "/quit":
            self._running = False
        else:
            self.console.print(
                f"[yellow]Unknown command: {cmd}[/yellow]\n"
                f"[dim]Type /help for available commands[/dim]"
            )

    def _show_state(self, state: AssistantState) -> None:
        style = STATE_STYLES.get(state, "")
        line = Text.assemble(("● ", style), (state.value, style))
        if self.controller.degraded_modes:
            line.append(f"  degraded: {', '.join(sorted(self.controller.degraded_modes))}", "dim")
        if not self.controller.is_online:
            line.append("  offline", "dim red")
        self.console.print(line)

    def _show_transcript(self, text: str) -> None:
        if text:
            self.console.print(Text(f"  {text}", style="italic"))

    def _display_welcome(self) -> None:
        welcome = Panel(
            Text.from_markup(
                "[bold cyan]J.A.R.V.I.S.[/bold cyan]\n\n"
                'Say "Jarvis" followed by a command, or type it here.\n'
                "Use [bold]/help[/bold] for commands, [bold]/quit[/bold] to exit."
            ),
            title="Voice Session",
            border_style="cyan",
            padding=(1, 2),
        )
        self.console.print(welcome)

    def _display_help(self) -> None:
        table = Table(title="Commands", show_header=False, border_style="dim")
        table.add_column("Command", style="bold cyan")
        table.add_column("Description")
        for cmd, desc in self.COMMANDS.items():
            table.add_row(cmd, desc)
        self.console.print(table)

    def _display_history(self) -> None:
        messages = self.controller.messages
        if not messages:
            self.console.print("[dim]No conversation yet[/dim]")
            return

        table = Table(border_style="dim")
        table.add_column("Time", style="dim", no_wrap=True)
        table.add_column("Who", no_wrap=True)
        table.add_column("Message")
        for message in messages:
            who = "[cyan]you[/cyan]" if message.role == Role.USER else "[green]jarvis[/green]"
            content = message.content
            if message.sources:
                content += "\n" + "\n".join(f"[dim]{uri}[/dim]" for uri in message.sources)
            table.add_row(
                datetime.fromtimestamp(message.timestamp).strftime("%H:%M:%S"),
                who,
                content,
            )
        self.console.print(table)


async def run_console(controller: TurnController) -> None:
    """Run the console until the user quits, then close the session."""
    console = JarvisConsole(controller)
    try:
        await controller.start()
        await console.run()
    finally:
        await controller.close()
        # Let cancelled tasks settle before the loop shuts down
        await asyncio.sleep(0)

"""Terminal dictation screen: a rich Live view observing the session controller."""

import asyncio
import logging
from typing import Optional

from pubsub import pub
from rich.align import Align
from rich.console import Console, Group
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from ..errors import ScribeError
from ..models.events import ConnectionState, ConnectionStatus, ControllerState
from ..models.session import ClinicalNote, PatientContext
from ..models.transcription import Transcript
from ..services.session_controller import SessionController
from .keyboard_input import create_input_handler

logger = logging.getLogger(__name__)

_STATE_BADGES = {
    ControllerState.IDLE: ("⏹️  IDLE", "bold yellow"),
    ControllerState.RECORDING: ("🔴 RECORDING", "bold red"),
    ControllerState.PROCESSING: ("📝 GENERATING NOTE", "bold magenta"),
}

_CONNECTION_STYLES = {
    ConnectionState.STREAMING: "green",
    ConnectionState.CONNECTED: "green",
    ConnectionState.RECONNECTING: "yellow",
    ConnectionState.FAILED: "bold red",
}


class TranscriptionScreen:
    """Live terminal view of one controller, driven by its pypubsub topics."""

    def __init__(self, controller: SessionController, patient_id: str,
                 patient: Optional[PatientContext] = None):
        self.console = Console()
        self.controller = controller
        self.patient_id = patient_id
        self.patient = patient

        # Latest values received from the controller
        self.state = controller.state
        self.connection = controller.connection_status
        self.transcript = controller.transcript
        self.note: Optional[ClinicalNote] = controller.note
        self.error: Optional[ScribeError] = controller.error

        self.running = False
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.input_handler = None

        pub.subscribe(self.on_state, controller.topic("state"))
        pub.subscribe(self.on_connection, controller.topic("connection"))
        pub.subscribe(self.on_transcript, controller.topic("transcript"))
        pub.subscribe(self.on_note, controller.topic("note"))
        pub.subscribe(self.on_error, controller.topic("error"))

    # Controller listeners

    def on_state(self, state: ControllerState) -> None:
        self.state = state

    def on_connection(self, status: ConnectionStatus) -> None:
        self.connection = status

    def on_transcript(self, transcript: Transcript) -> None:
        self.transcript = transcript

    def on_note(self, note: Optional[ClinicalNote]) -> None:
        self.note = note

    def on_error(self, error: Optional[ScribeError]) -> None:
        self.error = error

    # Layout

    def create_layout(self) -> Layout:
        layout = Layout()
        layout.split_column(
            Layout(name="header", size=3),
            Layout(name="main", ratio=1),
            Layout(name="footer", size=3)
        )
        layout["main"].split_row(
            Layout(name="status_panel", ratio=1),
            Layout(name="transcript_panel", ratio=2),
            Layout(name="note_panel", ratio=2)
        )
        return layout

    def update_header(self, layout: Layout) -> None:
        badge, style = _STATE_BADGES[self.state]
        patient = self.patient.name if self.patient else self.patient_id
        header_text = Text.assemble(
            ("🩺 clinscribe", "bold blue"), "  |  ",
            (badge, style), "  |  ",
            f"Patient: {patient}"
        )
        layout["header"].update(Panel(Align.center(header_text), style="bright_blue"))

    def update_status_panel(self, layout: Layout) -> None:
        table = Table(title="Session", show_header=False)
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="white")

        table.add_row("Connection", Text(self.connection.describe(),
                                         style=_CONNECTION_STYLES.get(self.connection.state, "white")))

        stats = self.controller.get_audio_stats()
        if stats is not None:
            table.add_row("Duration", f"{stats.duration_seconds:.1f}s")
            table.add_row("Chunks", str(stats.total_chunks))
            peak_bar = "█" * int(stats.peak_level * 20)
            table.add_row("Level", f"{peak_bar:<20} {stats.peak_level:.2f}")

        table.add_row("Segments", str(len(self.transcript.segments)))

        body = [table]
        if self.error is not None:
            body.append(Text(f"\n{self.error.user_message()}", style="bold red"))
        layout["status_panel"].update(Panel(Group(*body), border_style="green"))

    def update_transcript_panel(self, layout: Layout) -> None:
        text = Text()
        for segment in self.transcript.segments:
            text.append(f"{segment.label}: ", style="bold cyan")
            text.append(f"{segment.text}\n")
        if self.transcript.partial is not None:
            text.append(self.transcript.partial.text, style="dim italic")
        if not text.plain:
            text = Text("Press SPACE to start recording", style="dim white italic")

        layout["transcript_panel"].update(Panel(text, title="📝 Transcript", border_style="blue"))

    def update_note_panel(self, layout: Layout) -> None:
        if self.note is None:
            if self.state is ControllerState.PROCESSING:
                body = Text("Generating SOAP note...", style="yellow italic")
            else:
                body = Text("No note yet", style="dim white italic")
        else:
            body = Text()
            for title, content in (("Subjective", self.note.subjective),
                                   ("Objective", self.note.objective),
                                   ("Assessment", self.note.assessment),
                                   ("Plan", self.note.plan)):
                body.append(f"{title}\n", style="bold")
                body.append(f"{content}\n\n")
            for warning in self.note.warnings:
                body.append(f"⚠️  {warning}\n", style="yellow")

        layout["note_panel"].update(Panel(body, title="🩺 SOAP Note", border_style="magenta"))

    def update_footer(self, layout: Layout) -> None:
        controls = Text.assemble(
            ("Controls: ", "bold"),
            ("SPACE", "bold green"), " Start/Stop  ",
            ("R", "bold blue"), " Reset  ",
            ("G", "bold magenta"), " Regenerate Note  ",
            ("Q", "bold red"), " Quit"
        )
        layout["footer"].update(Panel(Align.center(controls), style="bright_black"))

    def update_display(self, layout: Layout) -> None:
        self.update_header(layout)
        self.update_status_panel(layout)
        self.update_transcript_panel(layout)
        self.update_note_panel(layout)
        self.update_footer(layout)

    # Input

    def handle_key_input(self, key: str) -> bool:
        """Runs on the keyboard thread. Returns False to quit."""
        if key == 'q':
            self.loop.call_soon_threadsafe(self._request_quit)
            return False
        if key in (' ', '\r', '\n'):
            self._submit(self.controller.toggle(self.patient_id, self.patient))
        elif key == 'r':
            self._submit(self.controller.reset())
        elif key == 'g':
            self._submit(self.controller.regenerate_note())
        else:
            logger.debug(f"Unhandled key: {key!r}")
        return True

    def _submit(self, coro) -> None:
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        future.add_done_callback(self._log_failure)

    @staticmethod
    def _log_failure(future) -> None:
        if not future.cancelled() and future.exception() is not None:
            logger.error(f"Command failed: {future.exception()!r}")

    def _request_quit(self) -> None:
        self.running = False

    async def run(self) -> None:
        """Run the screen until the user quits."""
        self.loop = asyncio.get_running_loop()
        self.running = True
        layout = self.create_layout()

        self.input_handler = create_input_handler(self.handle_key_input)
        self.input_handler.start()

        try:
            with Live(layout, console=self.console, refresh_per_second=10, screen=True):
                while self.running:
                    self.update_display(layout)
                    await asyncio.sleep(0.1)
        finally:
            self.input_handler.stop()
            await self.controller.reset()
            self.console.print("👋 clinscribe session ended", style="bold blue")

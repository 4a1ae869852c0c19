"""Compile progress reporting.

Defines the callback protocol the compilation queue reports through, a no-op
implementation, and a Rich-based live table that shows every kernel of the
build on one line as it moves through its phases:

    Queued -> Compiling (spinner) -> Done (checkmark) 1.4s
    Cached (reused from the previous pass)

Thread-safe: worker threads call on_progress() concurrently while the
display renders in the main thread.
"""

import threading
import time
from enum import Enum
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from rich.console import Console, Group
from rich.live import Live
from rich.table import Table
from rich.text import Text

# Braille spinner frames for the COMPILING phase animation
_SPINNER_FRAMES = ("⠋", "⠙", "⠹", "⠸", "⠼", "⠴", "⠦", "⠧", "⠇", "⠏")


class CompilePhase(Enum):
    """Phase of one kernel in the build."""

    QUEUED = "queued"
    COMPILING = "compiling"
    CACHED = "cached"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


@runtime_checkable
class CompileCallback(Protocol):
    """Protocol for receiving per-kernel progress updates."""

    def on_progress(self, source: Path, phase: CompilePhase, detail: str) -> None:
        """Called when a kernel changes phase.

        Args:
            source: Kernel source path.
            phase: New phase.
            detail: Human-readable detail (elapsed time, error summary).
        """
        ...


class NullCallback:
    """No-op callback for non-interactive builds and tests."""

    def on_progress(self, source: Path, phase: CompilePhase, detail: str) -> None:
        """Discard progress update."""
        pass


class _KernelDisplayState:
    """Display state of one kernel line."""

    __slots__ = ("name", "phase", "detail", "start_time", "elapsed")

    def __init__(self, name: str) -> None:
        self.name = name
        self.phase = CompilePhase.QUEUED
        self.detail = ""
        self.start_time: float | None = None
        self.elapsed = 0.0


class CompileProgressDisplay:
    """Live compile table using Rich.

    Args:
        console: Rich Console instance for rendering. If None, creates a new one.
        title: Header line (e.g. "Compiling kernels for sm_86").
        refresh_per_second: Display refresh rate.
    """

    def __init__(self, console: Console | None, title: str, refresh_per_second: int = 10) -> None:
        self._console = console if console is not None else Console(stderr=True)
        self._title = title
        self._refresh_per_second = refresh_per_second
        self._states: dict[Path, _KernelDisplayState] = {}
        self._order: list[Path] = []
        self._lock = threading.Lock()
        self._live: Live | None = None

    def on_progress(self, source: Path, phase: CompilePhase, detail: str) -> None:
        """Update the display state for a kernel. Thread-safe."""
        with self._lock:
            state = self._states.get(source)
            if state is None:
                state = _KernelDisplayState(source.name)
                self._states[source] = state
                self._order.append(source)

            if phase is CompilePhase.COMPILING:
                state.start_time = time.monotonic()
            elif state.start_time is not None:
                state.elapsed = time.monotonic() - state.start_time

            state.phase = phase
            state.detail = detail

        if self._live is not None:
            self._live.update(self._render_display())

    def start(self) -> None:
        """Start the live display."""
        self._live = Live(
            self._render_display(),
            console=self._console,
            refresh_per_second=self._refresh_per_second,
            transient=False,
        )
        self._live.start()

    def stop(self) -> None:
        """Stop the live display after a final render."""
        if self._live is not None:
            self._live.update(self._render_display())
            self._live.stop()
            self._live = None

    def _render_display(self) -> Group:
        header = Text(f"{self._title}\n", style="bold")
        return Group(header, self._render_table(), self._render_footer())

    def _render_table(self) -> Table:
        table = Table(show_header=False, show_edge=False, box=None, padding=(0, 1), expand=False)
        table.add_column("Kernel", style="bold", no_wrap=True, min_width=24)
        table.add_column("Phase", no_wrap=True, min_width=10)
        table.add_column("Status", no_wrap=True)

        with self._lock:
            for source in self._order:
                state = self._states[source]
                table.add_row(self._format_name(state), self._format_phase(state), self._format_status(state))
        return table

    def _render_footer(self) -> Text:
        with self._lock:
            phases = [s.phase for s in self._states.values()]

        parts = [f"{len(phases)} kernels"]
        for phase, label in (
            (CompilePhase.COMPILING, "compiling"),
            (CompilePhase.DONE, "compiled"),
            (CompilePhase.CACHED, "cached"),
            (CompilePhase.FAILED, "failed"),
        ):
            count = phases.count(phase)
            if count:
                parts.append(f"{count} {label}")
        return Text(f"\n  {', '.join(parts)}", style="dim")

    def _format_name(self, state: _KernelDisplayState) -> Text:
        styles = {
            CompilePhase.DONE: "green",
            CompilePhase.CACHED: "green",
            CompilePhase.FAILED: "red",
            CompilePhase.COMPILING: "bold cyan",
        }
        return Text(state.name, style=styles.get(state.phase, "dim"))

    def _format_phase(self, state: _KernelDisplayState) -> Text:
        labels = {
            CompilePhase.QUEUED: ("Queued", "dim"),
            CompilePhase.COMPILING: ("Compiling", "blue"),
            CompilePhase.CACHED: ("Cached", "green"),
            CompilePhase.DONE: ("Done", "green"),
            CompilePhase.FAILED: ("Failed", "red bold"),
            CompilePhase.CANCELLED: ("Skipped", "yellow"),
        }
        label, style = labels[state.phase]
        return Text(label, style=style)

    def _format_status(self, state: _KernelDisplayState) -> Text:
        if state.phase is CompilePhase.COMPILING:
            spinner = _SPINNER_FRAMES[int(time.monotonic() * 8) % len(_SPINNER_FRAMES)]
            return Text(spinner, style="blue")
        if state.phase is CompilePhase.DONE:
            elapsed = f"{state.elapsed:.1f}s" if state.elapsed > 0 else ""
            return Text(f"✓ {elapsed}", style="green")
        if state.phase is CompilePhase.CACHED:
            return Text("✓ up to date", style="green")
        if state.phase is CompilePhase.FAILED:
            first_line = state.detail.splitlines()[0] if state.detail else "Error"
            return Text(f"✗ {first_line}", style="red")
        return Text("")

    def get_snapshot(self) -> list[dict[str, Any]]:
        """Get a snapshot of current display states for testing."""
        with self._lock:
            return [
                {
                    "name": self._states[source].name,
                    "phase": self._states[source].phase,
                    "detail": self._states[source].detail,
                    "elapsed": self._states[source].elapsed,
                }
                for source in self._order
            ]

    def __enter__(self) -> "CompileProgressDisplay":
        self.start()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.stop()

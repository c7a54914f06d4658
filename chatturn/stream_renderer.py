"""Terminal rendering of a streaming turn, driven by planner transitions."""

import time
from typing import Optional

from rich.console import Console
from rich.status import Status

from .response_flow import RenderAction, RenderTransition, StreamingTurn

__all__ = ["TerminalRenderer"]

DIM = "#8B949E"
ACCENT = "#7FA6D9"
SEPARATOR = "#30363D"


def _compress_reasoning_line(text: str) -> str:
    compact = " ".join(text.strip().split())
    if len(compact) > 96:
        return "..." + compact[-93:]
    return compact


class TerminalRenderer:
    """Renderer hook for ``LLMAdapter.run_turn``.

    Answer text is written straight to the console as it grows; while only
    reasoning has arrived a spinner shows its tail.
    """

    def __init__(self, console: Console, show_reasoning: bool = True):
        self.console = console
        self.show_reasoning = show_reasoning
        self._written = 0
        self._status: Optional[Status] = None
        self._started_at: Optional[float] = None
        self._message_counter = 0

    def __call__(self, transition: RenderTransition, turn: StreamingTurn) -> None:
        action = transition.action
        if action is RenderAction.NOOP:
            return
        if action is RenderAction.FIRST_CHUNK:
            self._started_at = time.perf_counter()
            self._message_counter += 1
            turn.bind_message(f"term-{self._message_counter}")
        self._render(turn, force=transition.force_refresh)

    def _render(self, turn: StreamingTurn, force: bool = False) -> None:
        if not turn.answer.strip():
            self._update_thinking(turn.thoughts)
            return
        if force or self._status is not None:
            self._stop_thinking()
        if self._written == 0:
            text = turn.answer.lstrip("\n")
            self._written = len(turn.answer) - len(text)
        chunk = turn.answer[self._written:]
        if chunk:
            self.console.print(chunk, end="", markup=False, highlight=False, soft_wrap=True)
            self._written = len(turn.answer)

    def _update_thinking(self, thoughts: str) -> None:
        if not self.show_reasoning:
            return
        lines = [line for line in thoughts.splitlines() if line.strip()]
        brief = _compress_reasoning_line(lines[-1]) if lines else "Thinking..."
        message = f"  [{DIM}]💭 {brief}[/{DIM}]"
        if self._status is None:
            self._status = Status(message, console=self.console, spinner="dots",
                                  spinner_style=ACCENT)
            self._status.start()
        else:
            self._status.update(message)

    def _stop_thinking(self) -> None:
        if self._status is not None:
            self._status.stop()
            self._status = None

    def finish(self, thoughts: str = "") -> None:
        self._stop_thinking()
        if self._written:
            self.console.print()
        if thoughts and self.show_reasoning:
            elapsed = time.perf_counter() - self._started_at if self._started_at else 0.0
            self.console.print(
                f"  [{SEPARATOR}]{'─' * 20}[/{SEPARATOR}] "
                f"[{DIM}]💭 Reasoning: {len(thoughts):,} chars, {elapsed:.1f}s[/{DIM}] "
                f"[{SEPARATOR}]{'─' * 20}[/{SEPARATOR}]"
            )
        self._written = 0
        self._started_at = None

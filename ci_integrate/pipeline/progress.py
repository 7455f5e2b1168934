"""
Progress reporter — the single consumer of pipeline stage events.

Runs on its own thread and drains the event queue until the driver's
end-of-stream marker.  Workers never wait on it: the queue is unbounded
and rendering happens only here.

Rendering:
  - a tqdm bar of ``2 × IR files + linkers + 1`` steps, prefixed
    ``Building`` and followed by the labels of the stages in flight;
  - ``Integrating`` / ``Skipped`` / ``Linking`` lines printed above it.

The first error event freezes the bar and prints the failure.  Later
events are still drained, because workers that already started keep
sending until they finish.
"""
import logging
import queue
import shutil
import sys
import threading
from typing import List, Optional, TextIO

from tqdm import tqdm

from ci_integrate.pipeline.events import END_OF_STREAM, Stage, StageEvent

logger = logging.getLogger(__name__)

STATUS_WIDTH = 12
BAR_FORMAT = "{desc:>12} [{bar:27}] {n_fmt}/{total_fmt}{postfix}"
NARROW_BAR_FORMAT = "{desc:>12} {n_fmt}/{total_fmt}{postfix}"
WIDE_TERMINAL = 80


def progress_length(ir_count: int, linker_count: int) -> int:
    return ir_count * 2 + linker_count + 1


def status_line(status: str, text: str) -> str:
    return f"{status:>{STATUS_WIDTH}} {text}"


def human_duration(seconds: float) -> str:
    """``1m 05s`` from a minute on, ``3.27s`` below."""
    if seconds >= 60:
        secs = int(seconds)
        return f"{secs // 60}m {secs % 60:02d}s"
    return f"{seconds:.2f}s"


def render_labels(labels: List[str], width: int) -> str:
    """Join *labels* with ``, `` and cut with ``...`` to fit *width* columns."""
    prefix_size = 50 if width > WIDE_TERMINAL else 20
    budget = width - prefix_size - 15
    if not labels:
        return ""
    msg = labels[0]
    for label in labels[1:]:
        msg += ", "
        if len(msg) + len(label) < budget:
            msg += label
        else:
            msg += "..."
            break
    return msg


class ProgressReporter:
    """Consumes ``StageEvent``s from *channel* on a background thread."""

    def __init__(
        self,
        channel: "queue.Queue[Optional[StageEvent]]",
        total: int,
        enabled: bool = True,
        stream: TextIO = sys.stderr,
    ):
        self.channel = channel
        self.total = total
        self.enabled = enabled
        self.stream = stream
        self.active: List[str] = []
        self.failed = False
        self.error_message: Optional[str] = None
        self._bar: Optional[tqdm] = None
        self._thread = threading.Thread(target=self._run, name="ci-progress", daemon=True)

    # ── Lifecycle ────────────────────────────────────────────────────

    def start(self) -> "ProgressReporter":
        self._thread.start()
        return self

    def join(self) -> bool:
        """Wait for end-of-stream; True when an error event was seen."""
        self._thread.join()
        return self.failed

    # ── Rendering helpers ────────────────────────────────────────────

    def _print(self, text: str) -> None:
        if self.enabled:
            tqdm.write(text, file=self.stream)

    def _refresh_labels(self) -> None:
        width = shutil.get_terminal_size().columns
        self._bar.bar_format = BAR_FORMAT if width > WIDE_TERMINAL else NARROW_BAR_FORMAT
        self._bar.set_postfix_str(render_labels(self.active, width))

    def _remove(self, label: str) -> None:
        if label in self.active:
            self.active.remove(label)
        else:
            logger.debug(f"progress: no active stage {label!r}")

    # ── Event handling ───────────────────────────────────────────────

    def handle(self, event: StageEvent) -> None:
        if self.failed:
            return

        if event.stage == Stage.ERROR:
            self.failed = True
            self.error_message = event.message
            self._bar.close()
            print(status_line("Error", "Compiler Interrupts integration has unexpectedly failed"),
                  file=self.stream)
            print(status_line("Warning", event.message or event.unit), file=self.stream)
            return

        if event.stage == Stage.SKIP:
            if event.announce:
                self._print(status_line("Skipped", event.unit))
            self._bar.update(1)
        elif event.finished:
            self._remove(event.label)
        else:
            if event.stage == Stage.REWRITE:
                self._print(status_line("Integrating", event.unit))
            elif event.stage == Stage.LINK:
                self._print(status_line("Linking", event.unit))
            self._bar.update(1)
            self.active.insert(0, event.label)

        self._refresh_labels()

    def _run(self) -> None:
        self._bar = tqdm(
            total=self.total,
            desc="Building",
            bar_format=BAR_FORMAT,
            ascii=" =",
            file=self.stream,
            disable=not self.enabled,
            leave=False,
        )
        while True:
            event = self.channel.get()
            if event is END_OF_STREAM:
                break
            self.handle(event)

        if not self.failed:
            self._bar.update(1)
            self._bar.close()

"""Terminal spinner and progress bar that stay silent in quiet mode."""

from __future__ import annotations

import sys
import threading
from typing import TextIO

from tqdm import tqdm

quiet = False

_FRAMES = ("▉", "▊", "▋", "▌", "▍", "▎", "▏", "▎", "▍", "▌", "▋", "▊", "▉")


class Spinner:
    """Animated spinner drawn on a background thread."""

    def __init__(
        self,
        suffix: str = "",
        *,
        stream: TextIO | None = None,
        interval: float = 0.1,
        enabled: bool = True,
    ) -> None:
        self.suffix = suffix
        self.interval = interval
        self.enabled = enabled
        self._stream = stream if stream is not None else sys.stderr
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def _run(self) -> None:
        index = 0
        while True:
            self._stream.write(f"\r{_FRAMES[index % len(_FRAMES)]}{self.suffix}")
            self._stream.flush()
            index += 1
            if self._stop_event.wait(self.interval):
                break

    def start(self) -> None:
        if not self.enabled or self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join()
        self._thread = None
        self._stream.write("\r\033[K")
        self._stream.flush()

    def __enter__(self) -> Spinner:
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()


def new_spinner(suffix: str) -> Spinner:
    """A spinner on stderr, disabled when the module is in quiet mode."""
    return Spinner(suffix, enabled=not quiet)


class ProgressBar:
    """Counting progress bar; does nothing when disabled."""

    def __init__(self, total: int, *, enabled: bool = True) -> None:
        self._bar = tqdm(total=total) if enabled else None

    def increment(self) -> None:
        if self._bar is not None:
            self._bar.update(1)

    def finish(self) -> None:
        if self._bar is not None:
            self._bar.close()

    def __enter__(self) -> ProgressBar:
        return self

    def __exit__(self, *exc: object) -> None:
        self.finish()


def start_progress(total: int) -> ProgressBar:
    """Start a progress bar on stderr, disabled when the module is in quiet mode."""
    return ProgressBar(total, enabled=not quiet)
"""A text progress display with one bar per named task."""

from __future__ import annotations

import sys
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import BinaryIO, TextIO

from termcolor import colored

from cqhub.ui import Progress, Status


def _status_value(status: object) -> str:
    return status.value if isinstance(status, Status) else str(status)


def _emoji(status: object) -> str:
    value = _status_value(status)
    if value == Status.OK.value:
        return colored("✓", "green")
    if value == Status.ERROR.value:
        return colored("❌", "red")
    if value == Status.WARN.value:
        return "⚠️"
    if value == Status.IN_PROGRESS.value:
        return "⌛"
    return ""


def _format_elapsed(seconds: float) -> str:
    total = int(seconds)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


@dataclass
class Bar:
    """State of one progress bar."""

    name: str
    display_name: str
    message: str
    total: int
    status: str = Status.IN_PROGRESS.value
    current: int = 0
    completed: bool = False
    aborted: bool = False
    started: float = field(default_factory=time.monotonic)
    finished: float | None = None

    @property
    def elapsed(self) -> float:
        end = self.finished if self.finished is not None else time.monotonic()
        return end - self.started

    def set_total(self, total: int, trigger_complete: bool) -> None:
        """Change the total; a non-positive total means the current count."""
        self.total = total if total > 0 else self.current
        if trigger_complete and not self.completed:
            self.current = self.total
            self._complete()

    def _incr_by(self, n: int) -> None:
        self.current += n
        if self.total > 0 and self.current >= self.total:
            self.current = self.total
            self._complete()

    def _complete(self) -> None:
        self.completed = True
        if self.finished is None:
            self.finished = time.monotonic()

    def _abort(self) -> None:
        self.aborted = True
        if self.finished is None:
            self.finished = time.monotonic()


def _default_status(bar: Bar) -> str:
    return _emoji(bar.status)


def _default_message(bar: Bar) -> str:
    return bar.message


@dataclass
class ProgressOptions:
    """Appearance of a ConsoleProgress."""

    filler: str = "[=>-|"
    status_func: Callable[[Bar], str] | None = _default_status
    message_hook: Callable[[Bar], str] | None = _default_message
    append_decorators: list[Callable[[Bar], str]] = field(default_factory=list)
    width: int = 64

    def __post_init__(self) -> None:
        if len(self.filler) < 5:
            raise ValueError("filler needs five characters: left, fill, tip, empty, right")


class _ProxyReader:
    """Reads at most `limit` bytes and advances a bar by what was read."""

    def __init__(self, bar: Bar, source: BinaryIO, limit: int) -> None:
        self._bar = bar
        self._source = source
        self._remaining = max(limit, 0)

    def read(self, size: int = -1) -> bytes:
        if self._remaining <= 0:
            return b""
        if size is None or size < 0 or size > self._remaining:
            size = self._remaining
        chunk = self._source.read(size)
        self._remaining -= len(chunk)
        self._bar._incr_by(len(chunk))
        return chunk


class ConsoleProgress(Progress):
    """Progress display that renders bars as lines of text."""

    def __init__(self, options: ProgressOptions | None = None, stream: TextIO | None = None) -> None:
        self.options = options or ProgressOptions()
        self._stream = stream
        self._bars: dict[str, Bar] = {}
        self._lock = threading.RLock()

    def add(self, name: str, display_name: str, message: str, total: int) -> None:
        with self._lock:
            self._bars[name] = Bar(name=name, display_name=display_name, message=message, total=total)

    def increment(self, name: str, n: int) -> None:
        with self._lock:
            bar = self._bars.get(name)
            if bar is not None:
                bar._incr_by(n)

    def update(self, name: str, status: str, msg: str, n: int) -> None:
        with self._lock:
            bar = self._bars.get(name)
            if bar is None:
                return
            bar.message = msg
            bar.status = _status_value(status)
            if n > 0:
                bar._incr_by(n)

    def attach_reader(self, name: str, data: BinaryIO) -> BinaryIO:
        with self._lock:
            bar = self._bars.get(name)
            if bar is None:
                return data
            return _ProxyReader(bar, data, bar.total)  # type: ignore[return-value]

    def wait(self) -> None:
        stream = self._stream or sys.stdout
        rendered = self.render()
        if rendered:
            stream.write(rendered + "\n")
        stream.write("\n")
        stream.flush()

    def get_bar(self, name: str) -> Bar | None:
        with self._lock:
            return self._bars.get(name)

    def abort_all(self) -> None:
        with self._lock:
            for bar in self._bars.values():
                bar._abort()
            self.wait()

    def render(self) -> str:
        """Return the current display, one line per visible bar."""
        with self._lock:
            return "\n".join(self._render_bar(bar) for bar in self._bars.values() if not bar.aborted)

    def _render_bar(self, bar: Bar) -> str:
        opts = self.options
        status = opts.status_func(bar) if opts.status_func else ""
        message = opts.message_hook(bar) if opts.message_hook else ""
        head = (
            status.ljust(2)
            + bar.display_name.ljust(len(bar.display_name) + 1)
            + message.ljust(len(bar.name) + 1)
            + _format_elapsed(bar.elapsed).rjust(4)
        )
        filler = "" if bar.completed else self._filler(bar)
        tail = "".join(decorator(bar) for decorator in opts.append_decorators)
        return " ".join(part for part in (head, filler, tail) if part)

    def _filler(self, bar: Bar) -> str:
        left, fill, tip, empty, right = self.options.filler[:5]
        inner = max(self.options.width - 2, 0)
        filled = inner * bar.current // bar.total if bar.total > 0 else 0
        filled = max(0, min(filled, inner))
        if filled == 0:
            body = empty * inner
        elif filled >= inner:
            body = fill * inner
        else:
            body = fill * (filled - 1) + tip + empty * (inner - filled)
        return left + body + right
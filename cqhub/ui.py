"""Terminal output helpers and the progress reporting interface."""

from __future__ import annotations

import abc
import logging
import sys
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import BinaryIO

from termcolor import colored

_log = logging.getLogger(__name__)


class Status(str, Enum):
    """State of a single progress bar."""

    OK = "ok"
    ERROR = "error"
    WARN = "warn"
    IN_PROGRESS = "in_progress"


@dataclass(frozen=True)
class _Style:
    color: str | None = None
    attrs: tuple[str, ...] = ()

    def paint(self, text: str) -> str:
        return colored(text, self.color, attrs=list(self.attrs) or None)


COLOR_HEADER = _Style(attrs=("bold",))
COLOR_INFO = _Style()
COLOR_PROGRESS = _Style("cyan")
COLOR_PROGRESS_BOLD = _Style("cyan", ("bold",))
COLOR_ERROR = _Style("red")
COLOR_ERROR_BOLD = _Style("red", ("bold",))
COLOR_SUCCESS = _Style("green")
COLOR_SUCCESS_BOLD = _Style("green", ("bold",))
COLOR_WARNING = _Style("yellow")
COLOR_WARNING_BOLD = _Style("yellow", ("bold",))


@dataclass
class _Settings:
    console_log: bool = False


_settings = _Settings()


def set_console_log(enabled: bool) -> None:
    """Route colorized output to the log instead of the terminal."""
    _settings.console_log = bool(enabled)


def is_terminal() -> bool:
    """Return True when output goes to an interactive terminal."""
    if _settings.console_log:
        return False
    isatty = getattr(sys.stdout, "isatty", None)
    return bool(isatty and isatty())


def colorized_output(color: _Style, msg: str, *args: object) -> None:
    """Print a formatted message in the given color, or log it when not on a terminal."""
    text = msg % args if args else msg
    if not is_terminal():
        _log.info("%s", text.replace("\n", ""))
        return
    sys.stdout.write(color.paint(text))
    sys.stdout.flush()


class Progress(abc.ABC):
    """An updating progress display made of one or more bars."""

    @abc.abstractmethod
    def add(self, id: str, display_name: str, message: str, total: int) -> None:
        """Add another bar to the display."""

    @abc.abstractmethod
    def update(self, id: str, status: str, msg: str, amount: int) -> None:
        """Change a bar's status and message and advance it by amount."""

    @abc.abstractmethod
    def increment(self, id: str, amount: int) -> None:
        """Advance a bar by amount."""

    @abc.abstractmethod
    def attach_reader(self, id: str, data: BinaryIO) -> BinaryIO:
        """Wrap a reader so that reading from it advances the bar."""

    @abc.abstractmethod
    def wait(self) -> None:
        """Wait for all bars to finish."""


ProgressUpdateFunc = Callable[[BinaryIO, int], BinaryIO]


def create_progress_updater(progress: Progress, display_name: str) -> ProgressUpdateFunc:
    """Build a callback that registers a download bar and wraps its reader."""

    def updater(reader: BinaryIO, total: int) -> BinaryIO:
        bar_id = str(uuid.uuid4())
        progress.add(bar_id, display_name, "downloading...", total + 2)
        return progress.attach_reader(bar_id, reader)

    return updater
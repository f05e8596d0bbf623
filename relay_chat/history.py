"""
Relay Chat — History Store
~~~~~~~~~~~~~~~~~~~~~~~~~~~
Append-only transcript of chat messages kept in a flat text file.

Each line looks like::

    Mon, 02 Jan 2006 15:04:05 GMT: Alice - hello
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import format_datetime, parsedate_to_datetime
from typing import Callable, TextIO

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_FILE = "history.log"
DEFAULT_REPLAY_DELAY = 0.01  # seconds between replayed lines

OPEN_ERROR = "Error reading history.\n"
READ_ERROR = "Error occurred while reading history.\n"


@dataclass(frozen=True)
class HistoryEntry:
    timestamp: datetime
    nickname: str
    message: str


def format_entry(nickname: str, message: str, when: datetime | None = None) -> str:
    """Render one log line, RFC1123 timestamp first."""
    when = when or datetime.now(timezone.utc)
    stamp = format_datetime(when.astimezone(timezone.utc), usegmt=True)
    return f"{stamp}: {nickname} - {message}\n"


def parse_entry(line: str) -> HistoryEntry:
    """Inverse of :func:`format_entry`. Raises ValueError on malformed lines."""
    # The RFC1123 stamp itself contains colons, but always ends in " GMT".
    stamp, sep, rest = line.rstrip("\n").partition(" GMT: ")
    if not sep:
        raise ValueError(f"not a history entry: {line!r}")
    nickname, sep, message = rest.partition(" - ")
    if not sep:
        raise ValueError(f"not a history entry: {line!r}")
    return HistoryEntry(parsedate_to_datetime(stamp + " GMT"), nickname, message)


class HistoryWriter:
    """A single session's append handle on the history file."""

    def __init__(self, path: str) -> None:
        self.path = path
        self._file: TextIO | None = None
        try:
            self._file = open(path, "a", encoding="utf-8")
        except OSError as exc:
            logger.error("Error opening history log file %s: %s", path, exc)

    @property
    def available(self) -> bool:
        return self._file is not None

    def append(self, nickname: str, message: str) -> bool:
        if self._file is None:
            logger.warning("History unavailable, message from %s not persisted", nickname)
            return False
        try:
            self._file.write(format_entry(nickname, message))
            self._file.flush()
        except (OSError, ValueError) as exc:
            logger.error("Error writing to history log %s: %s", self.path, exc)
            return False
        return True

    def close(self) -> None:
        if self._file is not None:
            try:
                self._file.close()
            except OSError as exc:
                logger.warning("Error closing history log %s: %s", self.path, exc)
            self._file = None


class HistoryStore:
    """Factory for per-session writers plus full-log replay."""

    def __init__(self, path: str = DEFAULT_HISTORY_FILE,
                 replay_delay: float = DEFAULT_REPLAY_DELAY) -> None:
        self.path = path
        self.replay_delay = replay_delay

    def open_writer(self) -> HistoryWriter:
        return HistoryWriter(self.path)

    def replay(self, send: Callable[[str], bool]) -> int:
        """
        Stream the whole log to *send*, one line at a time.

        *send* returns False when the recipient is gone; replay stops there.
        Returns the number of lines delivered.
        """
        try:
            log_file = open(self.path, "r", encoding="utf-8", errors="replace")
        except OSError as exc:
            logger.error("Error opening history log %s: %s", self.path, exc)
            send(OPEN_ERROR)
            return 0

        sent = 0
        with log_file:
            try:
                for line in log_file:
                    if not send(line.rstrip("\n") + "\n"):
                        logger.info("Error sending history to client, replay stopped")
                        break
                    sent += 1
                    if self.replay_delay > 0:
                        time.sleep(self.replay_delay)
            except OSError as exc:
                logger.error("Error reading from history file %s: %s", self.path, exc)
                send(READ_ERROR)
        return sent

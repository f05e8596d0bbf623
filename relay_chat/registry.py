"""
Relay Chat — Session Registry
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Tracks live connections and the identity attached to each one.
All reads and writes go through a single lock that the server
shares with the task ledger.
"""

from __future__ import annotations

import logging
import socket
import threading
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

DEFAULT_NICKNAME = "Anonymous"


class RegistryError(RuntimeError):
    """Raised when the registry would end up in an inconsistent state."""


@dataclass(eq=False)
class Session:
    """One connected client."""

    handle: socket.socket
    address: str
    nickname: str = DEFAULT_NICKNAME
    _write_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def send(self, text: str) -> bool:
        """Write *text* to the client. Returns False if the socket is gone."""
        data = text.encode("utf-8")
        with self._write_lock:
            try:
                self.handle.sendall(data)
            except OSError as exc:
                logger.debug("Write to %s failed: %s", self.address, exc)
                return False
        return True

    def close(self) -> None:
        """Shut down and close the connection, ignoring errors from a dead socket."""
        try:
            self.handle.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        try:
            self.handle.close()
        except OSError:
            pass


class SessionRegistry:
    """Mapping of connection handle -> :class:`Session`."""

    def __init__(self, lock: threading.RLock | None = None) -> None:
        self.lock = lock if lock is not None else threading.RLock()
        self._sessions: dict[socket.socket, Session] = {}

    def register(self, handle: socket.socket, address: str) -> Session:
        """Add a session for *handle* under the default nickname."""
        with self.lock:
            if handle in self._sessions:
                raise RegistryError(f"connection from {address} is already registered")
            session = Session(handle=handle, address=address)
            self._sessions[handle] = session
        return session

    def deregister(self, handle: socket.socket) -> Session | None:
        """Remove *handle*; a no-op when it is not registered."""
        with self.lock:
            return self._sessions.pop(handle, None)

    def set_nickname(self, handle: socket.socket, nickname: str) -> str | None:
        """Rename the session and return its previous nickname."""
        with self.lock:
            session = self._sessions.get(handle)
            if session is None:
                return None
            old = session.nickname
            session.nickname = nickname
        return old

    def nickname(self, handle: socket.socket) -> str | None:
        """Current nickname for *handle*, or None if it is not registered."""
        with self.lock:
            session = self._sessions.get(handle)
            return session.nickname if session is not None else None

    def list_nicknames(self) -> list[str]:
        """Snapshot of every current nickname, in no particular order."""
        with self.lock:
            return [s.nickname for s in self._sessions.values()]

    def list_sessions(self) -> list[Session]:
        """Snapshot of the registered sessions."""
        with self.lock:
            return list(self._sessions.values())

    def list_handles(self) -> list[socket.socket]:
        """Snapshot of the registered connection handles."""
        with self.lock:
            return list(self._sessions.keys())

    def __contains__(self, handle: object) -> bool:
        """True if *handle* is currently registered."""
        with self.lock:
            return handle in self._sessions

    def __len__(self) -> int:
        with self.lock:
            return len(self._sessions)

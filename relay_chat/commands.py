"""
Relay Chat — Command Dispatcher
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Turns one inbound line into a command or a chat message and runs it.

Commands are matched by case-sensitive prefix, so ``/users are great``
is still a ``/users`` request. Commands missing their argument are
ignored without a reply.
"""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from relay_chat.history import HistoryWriter
from relay_chat.registry import Session

if TYPE_CHECKING:
    from relay_chat.server import ChatServer

logger = logging.getLogger(__name__)

QUIT = "/quit"
HISTORY = "/history"
NICKNAME = "/nickname"
USERS = "/users"
TASK_ADD = "/task add"
TASK_LIST = "/task list"
TASK_DELETE = "/task delete"
CHAT = "chat"

# Checked in this order; the first matching prefix wins.
_PREFIXES = (QUIT, HISTORY, NICKNAME, USERS, TASK_ADD, TASK_LIST, TASK_DELETE)

# How many pieces a command line splits into on single spaces, for the
# commands that take an argument.
_ARG_SPLIT = {NICKNAME: 2, TASK_ADD: 3, TASK_DELETE: 3}


@dataclass(frozen=True)
class Command:
    name: str
    argument: str | None = None

    @property
    def malformed(self) -> bool:
        return self.name in _ARG_SPLIT and self.argument is None


def parse_command(line: str) -> Command:
    """Map an already-trimmed line to a :class:`Command`."""
    for prefix in _PREFIXES:
        if not line.startswith(prefix):
            continue
        pieces = _ARG_SPLIT.get(prefix)
        if pieces is None:
            return Command(prefix)
        parts = line.split(" ", pieces - 1)
        argument = parts[-1] if len(parts) == pieces else None
        return Command(prefix, argument)
    return Command(CHAT, line)


class CommandDispatcher:
    """Executes commands against the server's shared state."""

    def __init__(self, server: "ChatServer") -> None:
        self.server = server

    def dispatch(self, session: Session, line: str, history: HistoryWriter) -> bool:
        """
        Run one line from *session*.

        Returns False when the session should end.
        """
        command = parse_command(line)
        if command.malformed:
            return True

        if command.name == QUIT:
            session.send("Goodbye!\n")
            return False
        elif command.name == HISTORY:
            self.server.history.replay(session.send)
        elif command.name == NICKNAME:
            self.change_nickname(session, command.argument)
        elif command.name == USERS:
            self.send_users(session)
        elif command.name == TASK_ADD:
            self.add_task(session, command.argument)
        elif command.name == TASK_LIST:
            session.send(self.server.tasks.summary() + "\n")
        elif command.name == TASK_DELETE:
            self.delete_task(session, command.argument)
        else:
            self.chat(session, command.argument, history)
        return True

    # ── commands ─────────────────────────────
    def change_nickname(self, session: Session, nickname: str) -> None:
        """Rename the caller and tell the others."""
        old = self.server.registry.set_nickname(session.handle, nickname)
        if old is None:
            return
        session.send(f"Nickname changed to {nickname}\n")
        logger.info("Client %s (%s) changed nickname to %s.", session.address, old, nickname)
        self.server.broadcast(f"'{old}' changed nickname to '{nickname}'\n", exclude=session.handle)

    def send_users(self, session: Session) -> None:
        """Reply with every connected nickname."""
        users = ", ".join(self.server.registry.list_nicknames())
        session.send(f"Connected users: {users}\n")

    def add_task(self, session: Session, description: str) -> None:
        """Record a task owned by the caller."""
        # Owner lookup and insert happen under the one shared lock.
        with self.server.lock:
            owner = session.nickname
            task = self.server.tasks.add(owner, description)
        session.send(f"Task added with ID {task.id}\n")

    def delete_task(self, session: Session, task_id: str) -> None:
        """Remove a task by id and report the outcome."""
        if self.server.tasks.delete(task_id):
            session.send("Task deleted successfully.\n")
        else:
            session.send("Task not found.\n")

    def chat(self, session: Session, message: str, history: HistoryWriter) -> None:
        """Persist a chat line and relay it to everyone else."""
        with self.server.lock:
            nickname = session.nickname
        history.append(nickname, message)
        self.server.broadcast(f"{nickname}: {message}\n", exclude=session.handle)

"""
Relay Chat — Task Ledger
~~~~~~~~~~~~~~~~~~~~~~~~~
In-memory to-do list shared by everyone on the server.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass

NO_TASKS = "No tasks found."


@dataclass(frozen=True)
class Task:
    id: str
    description: str
    owner: str

    def summary(self) -> str:
        """Render the task the way /task list shows it."""
        return f"ID: {self.id}, Owner: {self.owner}, Description: {self.description}"


class TaskLedger:
    """Task id -> :class:`Task`. Ids come from a counter and are never reused."""

    def __init__(self, lock: threading.RLock | None = None) -> None:
        self.lock = lock if lock is not None else threading.RLock()
        self._tasks: dict[str, Task] = {}
        self._counter = 0

    def add(self, owner: str, description: str) -> Task:
        """Create a task with the next id."""
        with self.lock:
            self._counter += 1
            task = Task(id=str(self._counter), description=description, owner=owner)
            self._tasks[task.id] = task
        return task

    def delete(self, task_id: str) -> bool:
        """Remove a task. Returns False if *task_id* is unknown."""
        with self.lock:
            return self._tasks.pop(task_id, None) is not None

    def list_tasks(self) -> list[Task]:
        """Snapshot of all tasks in id order."""
        with self.lock:
            return list(self._tasks.values())

    def summary(self) -> str:
        """One line describing every task, or :data:`NO_TASKS`."""
        tasks = self.list_tasks()
        if not tasks:
            return NO_TASKS
        return "; ".join(task.summary() for task in tasks)

    def __len__(self) -> int:
        with self.lock:
            return len(self._tasks)

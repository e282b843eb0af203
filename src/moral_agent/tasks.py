# tasks.py
# Task store: operator suggestions and the agent's own work items.
#
# One JSON file per task under /self/tasks. The agent edits a task by
# overwriting its file with a write action, so reads tolerate damaged
# files (skipped with a warning) instead of failing the whole listing.

import logging
import secrets
import time

from pydantic import ValidationError

from moral_agent.models import PRIORITY_ORDER, Task, TaskPriority, TaskStatus, utc_now
from moral_agent.storage import AgentStorage

logger = logging.getLogger(__name__)

TASKS_DIR = "/self/tasks"
BRIEFING_TASK_LIMIT = 10

UPDATABLE_FIELDS = frozenset({"title", "description", "priority", "status", "agent_notes", "category"})


def _task_path(task_id: str) -> str:
    return f"{TASKS_DIR}/{task_id}.json"


class TaskStore:
    def __init__(self, storage: AgentStorage) -> None:
        self._storage = storage

    def list_tasks(
        self,
        status: TaskStatus | None = None,
        priority: TaskPriority | None = None,
    ) -> list[Task]:
        """All readable tasks, most urgent first, oldest first within a priority."""
        tasks: list[Task] = []
        for name in self._storage.listdir(TASKS_DIR):
            if not name.endswith(".json"):
                continue
            raw = self._storage.read(f"{TASKS_DIR}/{name}")
            if raw is None:
                continue
            try:
                task = Task.model_validate_json(raw)
            except ValidationError:
                logger.warning("Skipping unreadable task", extra={"data": {"file": name}})
                continue
            if status and task.status != status:
                continue
            if priority and task.priority != priority:
                continue
            tasks.append(task)

        tasks.sort(key=lambda task: (PRIORITY_ORDER.get(task.priority, 2), task.created_at))
        return tasks

    def active(self) -> list[Task]:
        return [task for task in self.list_tasks() if task.active]

    def get(self, task_id: str) -> Task | None:
        raw = self._storage.read(_task_path(task_id))
        if raw is None:
            return None
        try:
            return Task.model_validate_json(raw)
        except ValidationError:
            logger.warning("Unreadable task", extra={"data": {"id": task_id}})
            return None

    def create(
        self,
        title: str,
        description: str = "",
        priority: TaskPriority = "medium",
        created_by: str = "operator",
        category: str | None = None,
    ) -> Task:
        """Operator tasks start as suggestions; the agent's own start accepted."""
        now = utc_now()
        task = Task(
            id=f"task-{int(time.time() * 1000)}-{secrets.token_hex(2)}",
            created_at=now,
            updated_at=now,
            created_by=created_by,
            title=title,
            description=description,
            priority=priority,
            status="suggested" if created_by == "operator" else "accepted",
            category=category,
        )
        self._save(task)
        logger.info("Task created", extra={"data": {"id": task.id, "priority": priority, "created_by": created_by}})
        return task

    def update(self, task_id: str, **updates) -> Task | None:
        """Apply field updates. Returns None when the task does not exist."""
        task = self.get(task_id)
        if task is None:
            return None

        unknown = set(updates) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update task fields: {', '.join(sorted(unknown))}")

        now = utc_now()
        changes = {**updates, "updated_at": now}
        if updates.get("status") == "completed" and task.completed_at is None:
            changes["completed_at"] = now
        task = Task.model_validate({**task.model_dump(), **changes})
        self._save(task)
        logger.info("Task updated", extra={"data": {"id": task_id, "fields": sorted(updates)}})
        return task

    def archive(self, task_id: str) -> Task | None:
        task = self.get(task_id)
        if task is None:
            return None
        notes = (task.agent_notes or "") + "\n[Archived by operator]"
        return self.update(task_id, status="completed", agent_notes=notes)

    def _save(self, task: Task) -> None:
        self._storage.write(_task_path(task.id), task.model_dump_json(indent=2))


def format_tasks(tasks: list[Task], limit: int = BRIEFING_TASK_LIMIT) -> str:
    """Briefing text for the open tasks."""
    if not tasks:
        return "No tasks."
    active = [task for task in tasks if task.active]
    if not active:
        return "All tasks completed or declined."

    lines: list[str] = []
    for task in active[:limit]:
        lines.append(f"[{task.priority.upper()}] {task.title}")
        lines.append(f"  ID: {task.id} | Status: {task.status} | By: {task.created_by}")
        if task.description:
            lines.append(f"  Description: {task.description}")
        if task.agent_notes:
            lines.append(f"  Your notes: {task.agent_notes}")
    if len(active) > limit:
        lines.append(f"... and {len(active) - limit} more in {TASKS_DIR}/")
    return "\n".join(lines)

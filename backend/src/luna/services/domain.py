"""Domain API boundary and an in-process implementation for demos and tests."""

from __future__ import annotations

import threading
import uuid
from typing import Any, Protocol

from luna.contracts.intents import ActionKind, ExecutionResult
from luna.errors import ExecutionError
from luna.logging_config import get_logger

logger = get_logger(__name__)


class DomainAPI(Protocol):
    """Executes confirmed write operations against tasks and programmes."""

    def execute(self, action_type: ActionKind, payload: dict[str, Any]) -> ExecutionResult:
        """Perform the operation or raise ExecutionError."""
        ...


def plural(count: int, noun: str) -> str:
    return f"{count} {noun}{'' if count == 1 else 's'}"


class InMemoryDomainAPI:
    """Dictionary-backed task/programme store honouring the DomainAPI protocol.

    ``fail_next`` makes the following N calls raise ExecutionError, which is
    how tests and demos exercise the failure path.
    """

    def __init__(self) -> None:
        self.tasks: dict[str, dict[str, Any]] = {}
        self.programmes: dict[str, dict[str, Any]] = {}
        # Team member name -> ISO date of the latest check-in.
        self.members: dict[str, str | None] = {}
        self.executed: list[tuple[ActionKind, dict[str, Any]]] = []
        self._failures_remaining = 0
        self._failure_message = "Domain API unavailable"
        self._lock = threading.Lock()

    def fail_next(self, count: int = 1, message: str = "Domain API unavailable") -> None:
        """Fail the next ``count`` executions."""
        with self._lock:
            self._failures_remaining = count
            self._failure_message = message

    def add_programme(self, name: str, status: str = "draft") -> str:
        """Seed a programme; returns its id."""
        programme_id = uuid.uuid4().hex[:8]
        with self._lock:
            self.programmes[programme_id] = {"id": programme_id, "name": name, "status": status}
        return programme_id

    def add_task(
        self,
        title: str,
        status: str = "todo",
        programme_id: str | None = None,
        due_date: str | None = None,
    ) -> str:
        """Seed a task; returns its id."""
        task_id = uuid.uuid4().hex[:8]
        with self._lock:
            self.tasks[task_id] = {
                "id": task_id,
                "title": title,
                "status": status,
                "programme_id": programme_id,
                "due_date": due_date,
            }
        return task_id

    def add_member(self, name: str, last_checkin: str | None = None) -> None:
        with self._lock:
            self.members[name] = last_checkin

    def record_checkin(self, name: str, on: str) -> None:
        with self._lock:
            self.members[name] = on

    def query_tasks(
        self,
        *,
        status: str | None = None,
        programme_name: str | None = None,
        open_only: bool = False,
    ) -> list[dict[str, Any]]:
        """Copies of matching tasks; an unknown programme matches nothing."""
        with self._lock:
            programme = None
            if programme_name is not None:
                programme = self._find_programme(programme_name)
                if programme is None:
                    return []
            tasks = []
            for task in self.tasks.values():
                if status is not None and task["status"] != status:
                    continue
                if open_only and task["status"] == "done":
                    continue
                if programme is not None and task["programme_id"] != programme["id"]:
                    continue
                tasks.append(dict(task))
            return tasks

    def get_programme(self, name: Any) -> dict[str, Any] | None:
        with self._lock:
            programme = self._find_programme(name)
            return dict(programme) if programme else None

    def missing_checkins(self, since: str) -> list[str]:
        """Members with no check-in on or after ``since``."""
        with self._lock:
            return sorted(name for name, last in self.members.items() if not last or last < since)

    def execute(self, action_type: ActionKind, payload: dict[str, Any]) -> ExecutionResult:
        with self._lock:
            if self._failures_remaining > 0:
                self._failures_remaining -= 1
                raise ExecutionError(self._failure_message, action_type=action_type.value)
            self.executed.append((action_type, dict(payload)))

            if action_type == ActionKind.CREATE_TASK:
                return self._create_task(payload)
            elif action_type == ActionKind.UPDATE_TASK_STATUS:
                return self._update_task_status(payload)
            elif action_type == ActionKind.CREATE_PROGRAMME:
                return self._create_programme(payload)
            elif action_type == ActionKind.UPDATE_PROGRAMME_STATUS:
                return self._update_programme(payload, {"status": str(payload["programme_status"])})
            elif action_type == ActionKind.UPDATE_PROGRAMME_FIELDS:
                return self._update_programme(
                    payload, {str(payload["update_field"]): payload["update_value"]}
                )
            elif action_type == ActionKind.PLAYBOOK_STEP:
                return self._run_playbook_step(payload)
            raise ExecutionError(
                f"{action_type.value} is not executable",
                action_type=action_type.value,
                retry_hint=False,
            )

    # Must be called with lock held.
    def _create_task(self, payload: dict[str, Any]) -> ExecutionResult:
        task_id = uuid.uuid4().hex[:8]
        programme = self._find_programme(payload.get("programme_name"))
        self.tasks[task_id] = {
            "id": task_id,
            "title": str(payload["title"]),
            "status": "todo",
            "priority": payload.get("priority") or "medium",
            "due_date": payload.get("due_date"),
            "programme_id": programme["id"] if programme else None,
            "assignee_name": payload.get("assignee_name"),
        }
        logger.debug("domain_task_created", task_id=task_id)
        return ExecutionResult(
            result_href=f"/tasks/{task_id}",
            result_message=f'Task "{payload["title"]}" created.',
        )

    def _update_task_status(self, payload: dict[str, Any]) -> ExecutionResult:
        wanted = str(payload["task_title"]).strip().lower()
        for task in self.tasks.values():
            if task["title"].lower() == wanted:
                task["status"] = str(payload["new_status"])
                return ExecutionResult(
                    result_href=f"/tasks/{task['id']}",
                    result_message=f'"{task["title"]}" is now {task["status"]}.',
                )
        raise ExecutionError(
            f'Task "{payload["task_title"]}" not found',
            action_type=ActionKind.UPDATE_TASK_STATUS.value,
            retry_hint=False,
        )

    def _create_programme(self, payload: dict[str, Any]) -> ExecutionResult:
        programme_id = uuid.uuid4().hex[:8]
        self.programmes[programme_id] = {
            "id": programme_id,
            "name": str(payload["name"]),
            "status": "draft",
            "description": payload.get("description"),
            "start_date": payload.get("start_date"),
            "end_date": payload.get("end_date"),
        }
        return ExecutionResult(
            result_href=f"/programmes/{programme_id}",
            result_message=f'Programme "{payload["name"]}" created.',
        )

    def _update_programme(self, payload: dict[str, Any], changes: dict[str, Any]) -> ExecutionResult:
        programme = self._require_programme(payload.get("programme_name"))
        programme.update(changes)
        return ExecutionResult(
            result_href=f"/programmes/{programme['id']}",
            result_message=f'"{programme["name"]}" updated.',
        )

    def _run_playbook_step(self, payload: dict[str, Any]) -> ExecutionResult:
        step_id = payload.get("step_id")
        context = payload.get("context") or {}
        target = context.get("target_name")

        if step_id == "complete_tasks":
            programme = self._require_programme(target)
            open_tasks = [
                t for t in self.tasks.values()
                if t["programme_id"] == programme["id"] and t["status"] != "done"
            ]
            for task in open_tasks:
                task["status"] = "done"
            return ExecutionResult(
                result_message=f"{plural(len(open_tasks), 'task')} marked as done.",
                context={"tasks_completed": len(open_tasks)},
            )
        elif step_id in ("close_status", "activate"):
            programme = self._require_programme(target)
            programme["status"] = "completed" if step_id == "close_status" else "active"
            return ExecutionResult(
                result_href=f"/programmes/{programme['id']}",
                result_message=f'"{programme["name"]}" is now {programme["status"]}.',
            )
        elif step_id == "kickoff":
            programme = self._require_programme(target)
            result = self._create_task(
                {"title": f"Kickoff: {programme['name']}", "priority": "high", "programme_name": programme["name"]}
            )
            return ExecutionResult(result_href=result.result_href, result_message="Kickoff task created.")

        raise ExecutionError(
            f"Unknown playbook step {step_id!r}",
            action_type=ActionKind.PLAYBOOK_STEP.value,
            retry_hint=False,
        )

    def _find_programme(self, name: Any) -> dict[str, Any] | None:
        wanted = str(name or "").strip().lower()
        if wanted:
            for programme in self.programmes.values():
                if programme["name"].lower() == wanted:
                    return programme
        return None

    def _require_programme(self, name: Any) -> dict[str, Any]:
        programme = self._find_programme(name)
        if programme is None:
            raise ExecutionError(
                f'Programme "{name}" not found',
                action_type="programme_lookup",
                retry_hint=False,
            )
        return programme

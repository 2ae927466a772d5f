"""JSON-backed project and task catalog.

The session core needs only existence and tenant checks from here, plus
flipping a task's status when it is marked done or reset.  Creation and
listing exist so the CLI can run without an external task system.
"""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path

from pydantic import BaseModel, Field

from devsuite.catalog.models import Project, Task, TaskStatus
from devsuite.errors import NotFound, ValidationError

logger = logging.getLogger(__name__)

CATALOG_FILENAME = ".devsuite-catalog.json"


def _now_ms() -> int:
    return int(time.time() * 1000)


class _CatalogData(BaseModel):
    """Internal wrapper for JSON serialization."""

    projects: list[Project] = Field(default_factory=list)
    tasks: list[Task] = Field(default_factory=list)


class CatalogStore:
    """Projects and tasks, persisted after every mutation when a directory is given."""

    def __init__(self, data_dir: Path | None = None) -> None:
        self._path = data_dir / CATALOG_FILENAME if data_dir is not None else None
        self._data = self._load()

    # ── Private helpers ──────────────────────────────────────────

    def _load(self) -> _CatalogData:
        if self._path is None or not self._path.exists():
            return _CatalogData()
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
            return _CatalogData.model_validate(raw)
        except (json.JSONDecodeError, ValueError, KeyError):
            logger.warning("Corrupt catalog at %s, starting fresh", self._path)
            return _CatalogData()

    def _save(self) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(self._data.model_dump_json(indent=2), encoding="utf-8")

    # ── Write operations ─────────────────────────────────────────

    def add_project(self, tenant_id: str, name: str) -> Project:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Project name cannot be empty.")
        project = Project(tenant_id=tenant_id, name=name, created_at=_now_ms())
        self._data.projects.append(project)
        self._save()
        return project

    def add_task(self, tenant_id: str, title: str, project_id: str | None = None) -> Task:
        title = (title or "").strip()
        if not title:
            raise ValidationError("Task title cannot be empty.")
        if project_id is not None:
            self.require_project(tenant_id, project_id)
        ts = _now_ms()
        task = Task(
            tenant_id=tenant_id,
            project_id=project_id,
            title=title,
            created_at=ts,
            updated_at=ts,
        )
        self._data.tasks.append(task)
        self._save()
        return task

    def set_task_status(self, tenant_id: str, task_id: str, status: TaskStatus) -> None:
        """Update a task's status.

        Raises NotFound if the task is not in the tenant.
        """
        task = self.require_task(tenant_id, task_id)
        task.status = status
        task.updated_at = _now_ms()
        self._save()

    # ── Read operations ──────────────────────────────────────────

    def get_task(self, task_id: str) -> Task | None:
        return next((t for t in self._data.tasks if t.id == task_id), None)

    def get_project(self, project_id: str) -> Project | None:
        return next((p for p in self._data.projects if p.id == project_id), None)

    def require_task(self, tenant_id: str, task_id: str) -> Task:
        """Return the task, or raise NotFound if missing or in another tenant."""
        task = self.get_task(task_id)
        if task is None or task.tenant_id != tenant_id:
            raise NotFound(f"Task {task_id} not found")
        return task

    def require_project(self, tenant_id: str, project_id: str) -> Project:
        """Return the project, or raise NotFound if missing or in another tenant."""
        project = self.get_project(project_id)
        if project is None or project.tenant_id != tenant_id:
            raise NotFound(f"Project {project_id} not found")
        return project

    def list_tasks(self, tenant_id: str, project_id: str | None = None) -> list[Task]:
        results = [t for t in self._data.tasks if t.tenant_id == tenant_id]
        if project_id is not None:
            results = [t for t in results if t.project_id == project_id]
        return results

    def list_projects(self, tenant_id: str) -> list[Project]:
        return [p for p in self._data.projects if p.tenant_id == tenant_id]

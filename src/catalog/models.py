"""Catalog models — the projects and tasks sessions refer to."""

from __future__ import annotations

from enum import StrEnum
from uuid import uuid4

from pydantic import BaseModel, Field


def _new_id() -> str:
    return uuid4().hex


class TaskStatus(StrEnum):
    """Workflow status of a task."""

    TODO = "todo"
    DOING = "doing"
    DONE = "done"


class Project(BaseModel):
    """A tenant-scoped project."""

    id: str = Field(default_factory=_new_id)
    tenant_id: str
    name: str
    created_at: int = 0


class Task(BaseModel):
    """A tenant-scoped task, optionally filed under a project."""

    id: str = Field(default_factory=_new_id)
    tenant_id: str
    project_id: str | None = None
    title: str
    status: TaskStatus = TaskStatus.TODO
    created_at: int = 0
    updated_at: int = 0

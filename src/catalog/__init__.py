"""Catalog domain — tenant-scoped projects and tasks.

Public API re-exports for the catalog domain.
"""

from devsuite.catalog.models import Project, Task, TaskStatus
from devsuite.catalog.store import CATALOG_FILENAME, CatalogStore

__all__ = [
    # models
    "Project",
    "Task",
    "TaskStatus",
    # store
    "CATALOG_FILENAME",
    "CatalogStore",
]

"""Roll-ups over derived task summaries."""

from __future__ import annotations

from collections.abc import Callable, Iterable

from devsuite.sessions.models import ProjectSummary, TaskSummary


def sort_task_summaries(summaries: Iterable[TaskSummary]) -> list[TaskSummary]:
    """Longest active time first; ties by task id ascending."""
    return sorted(summaries, key=lambda s: (-s.active_duration_ms, s.task_id))


def build_project_summaries(
    task_summaries: Iterable[TaskSummary],
    project_of: Callable[[str], str | None],
) -> list[ProjectSummary]:
    """Sum task active time into the owning project's bucket.

    Args:
        task_summaries: Per-task summaries for one session.
        project_of: Maps a task id to its project id, or None when the
            task is unknown or has no project.

    Returns:
        One ``ProjectSummary`` per project with tracked time, longest first.
    """
    totals: dict[str, int] = {}
    for summary in task_summaries:
        if summary.active_duration_ms <= 0:
            continue
        project_id = project_of(summary.task_id)
        if project_id is None:
            continue
        totals[project_id] = totals.get(project_id, 0) + summary.active_duration_ms

    projects = [
        ProjectSummary(project_id=project_id, active_duration_ms=total)
        for project_id, total in totals.items()
    ]
    return sorted(projects, key=lambda p: (-p.active_duration_ms, p.project_id))

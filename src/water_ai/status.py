from __future__ import annotations

from .jobs import JobManager, JobStatusSnapshot

__all__ = ["JobStatusQuery", "JobStatusSnapshot"]


class JobStatusQuery:
    """Read-only view of job state for polling clients.

    Only ``status``, ``result`` and ``error`` are exposed. ``None`` means the
    id is unknown or already cleaned up, which is not the same as ``error``.
    """

    def __init__(self, manager: JobManager) -> None:
        self._manager = manager

    def get(self, job_id: str) -> JobStatusSnapshot | None:
        return self._manager.get_job_status(job_id)

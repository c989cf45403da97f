"""
Correlation ids for log lines.

request_id is set by the request logging middleware, job_id by a build job
when it starts work. Tasks copy the context when they are created, so the
build and log tail tasks of a job log with its ids.
"""
from contextvars import ContextVar

request_id_var: ContextVar[str] = ContextVar("request_id", default="")
job_id_var: ContextVar[str] = ContextVar("job_id", default="")


def set_request_id(request_id: str) -> str:
    request_id_var.set(request_id)
    return request_id


def set_job_id(job_id: str) -> str:
    job_id_var.set(job_id)
    return job_id


def current_ids() -> dict[str, str]:
    """The ids that are set in this context."""
    ids = {"request_id": request_id_var.get(), "job_id": job_id_var.get()}
    return {name: value for name, value in ids.items() if value}

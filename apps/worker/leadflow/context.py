from __future__ import annotations

from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
job_id_var: ContextVar[str | None] = ContextVar("job_id", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def set_job_id(value: str | None) -> Token[str | None]:
    return job_id_var.set(value)


def reset_job_id(token: Token[str | None]) -> None:
    job_id_var.reset(token)


def get_job_id() -> str | None:
    return job_id_var.get()

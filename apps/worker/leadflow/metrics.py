from __future__ import annotations

from prometheus_client import Counter, Histogram, generate_latest, start_http_server


automation_jobs_total = Counter(
    "automation_jobs_total",
    "Total automation queue jobs by kind and status",
    ["job_kind", "status"],
)

automation_job_duration_seconds = Histogram(
    "automation_job_duration_seconds",
    "Automation queue job duration in seconds",
    ["job_kind"],
)

automation_job_retries_total = Counter(
    "automation_job_retries_total",
    "Total automation job retries scheduled by the queue",
    ["job_kind"],
)

automation_enrollments_total = Counter(
    "automation_enrollments_total",
    "Enrollment transitions by resulting status",
    ["status"],
)

automation_steps_total = Counter(
    "automation_steps_total",
    "Executed automation steps by action kind and outcome",
    ["action_kind", "outcome"],
)

automation_jobs_skipped_total = Counter(
    "automation_jobs_skipped_total",
    "Automation jobs acknowledged without work, by reason",
    ["reason"],
)


def observe_job(job_kind: str, status: str, duration: float) -> None:
    automation_jobs_total.labels(job_kind=job_kind, status=status).inc()
    automation_job_duration_seconds.labels(job_kind=job_kind).observe(duration)


def observe_job_retry(job_kind: str) -> None:
    automation_job_retries_total.labels(job_kind=job_kind).inc()


def observe_enrollment_transition(status: str) -> None:
    automation_enrollments_total.labels(status=status).inc()


def observe_step(action_kind: str, outcome: str) -> None:
    automation_steps_total.labels(action_kind=action_kind, outcome=outcome).inc()


def observe_job_skipped(reason: str) -> None:
    automation_jobs_skipped_total.labels(reason=reason).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def start_metrics_server(port: int) -> None:
    start_http_server(port)

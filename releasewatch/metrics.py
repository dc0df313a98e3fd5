"""Prometheus metrics for Release Watch."""

import time

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("releasewatch", "Release Watch application info")
app_info.info({"version": "0.1.0", "name": "releasewatch"})

# Digest metrics
digests_built_total = Counter(
    "digests_built_total",
    "Total number of digest payloads assembled",
    ["kind"],  # updates | all_quiet
)

digest_product_errors_total = Counter(
    "digest_product_errors_total",
    "Products skipped during digest assembly because of a lookup error",
)

# Queue metrics
queue_enqueued_total = Counter(
    "queue_enqueued_total",
    "Total number of enqueue attempts",
    ["email_type", "result"],  # inserted | duplicate | rejected
)

queue_suppressed_total = Counter(
    "queue_suppressed_total",
    "Subscribers skipped before enqueue because of hard bounces",
)

emails_sent_total = Counter(
    "emails_sent_total",
    "Total number of dispatch outcomes",
    ["email_type", "status"],  # sent | retry | failed
)

dispatch_duration_seconds = Histogram(
    "dispatch_duration_seconds",
    "Time spent in one dispatch invocation",
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0],
)

send_latency_seconds = Histogram(
    "send_latency_seconds",
    "Email transport request latency",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
)

bounces_recorded_total = Counter(
    "bounces_recorded_total",
    "Total number of bounce records written",
    ["bounce_type"],
)

# Scheduler metrics
scheduler_runs_total = Counter(
    "scheduler_runs_total",
    "Total number of scheduler runs",
    ["job_type", "status"],
)

scheduler_last_run_timestamp = Gauge(
    "scheduler_last_run_timestamp",
    "Timestamp of last scheduler run",
    ["job_type"],
)


def record_digest_built(has_updates: bool):
    """Record an assembled digest payload."""
    digests_built_total.labels(kind="updates" if has_updates else "all_quiet").inc()


def record_enqueue(email_type: str, result: str):
    """Record the outcome of an enqueue call."""
    queue_enqueued_total.labels(email_type=email_type, result=result).inc()


def record_send(email_type: str, status: str, duration: float | None = None):
    """Record a dispatch outcome and, when known, the transport latency."""
    emails_sent_total.labels(email_type=email_type, status=status).inc()
    if duration is not None:
        send_latency_seconds.observe(duration)


def record_scheduler_run(job_type: str, success: bool):
    """Record a scheduler job run."""
    status = "success" if success else "error"
    scheduler_runs_total.labels(job_type=job_type, status=status).inc()
    scheduler_last_run_timestamp.labels(job_type=job_type).set(time.time())

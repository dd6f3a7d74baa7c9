"""Prometheus metrics for the Listing Healer."""

import time

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("listing_healer", "Listing Healer application info")
app_info.info({"version": "0.1.0", "name": "listing-healer"})

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

items_considered = Gauge(
    "items_considered",
    "Number of items considered by the last probe scheduling run",
)

tasks_enqueued_total = Counter(
    "tasks_enqueued_total",
    "Total number of tasks pushed to the task queue",
    ["queue", "status"],
)

# Task consumer metrics
tasks_processed_total = Counter(
    "tasks_processed_total",
    "Total number of tasks processed by consumers",
    ["queue", "status"],
)

task_duration_seconds = Histogram(
    "task_duration_seconds",
    "Time spent processing a single task",
    ["queue"],
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0],
)

# Probe metrics
probes_total = Counter(
    "probes_total",
    "Total number of probes by classified outcome",
    ["outcome"],
)

probe_duration_seconds = Histogram(
    "probe_duration_seconds",
    "Time spent probing a listing",
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
)

# Heal metrics
heal_attempts_total = Counter(
    "heal_attempts_total",
    "Total number of removal handler runs by outcome",
    ["outcome"],
)

vetting_verdicts_total = Counter(
    "vetting_verdicts_total",
    "Total number of candidate vetting verdicts",
    ["verdict"],
)

# Price change metrics
price_changes_total = Counter(
    "price_changes_total",
    "Total number of price changes detected",
    ["direction"],
)

# Alert metrics
alerts_sent_total = Counter(
    "alerts_sent_total",
    "Total number of user alerts",
    ["kind", "status"],
)


def record_scheduler_run(job_type: str, success: bool):
    """Record a scheduler job run."""
    status = "success" if success else "error"
    scheduler_runs_total.labels(job_type=job_type, status=status).inc()
    scheduler_last_run_timestamp.labels(job_type=job_type).set(time.time())


def record_enqueue(queue: str, success: bool):
    """Record a task enqueue attempt."""
    status = "success" if success else "error"
    tasks_enqueued_total.labels(queue=queue, status=status).inc()


def record_task_result(queue: str, status: str, duration: float):
    """Record the result of a consumed task (ok, retry, dead, timeout)."""
    tasks_processed_total.labels(queue=queue, status=status).inc()
    task_duration_seconds.labels(queue=queue).observe(duration)


def record_probe(outcome: str, duration: float):
    """Record a classified probe."""
    probes_total.labels(outcome=outcome).inc()
    probe_duration_seconds.observe(duration)


def record_heal(outcome: str):
    """Record the outcome of a removal handler run."""
    heal_attempts_total.labels(outcome=outcome).inc()


def record_vetting(approved: bool):
    """Record a vetting verdict."""
    vetting_verdicts_total.labels(verdict="approved" if approved else "rejected").inc()


def record_price_change(old_price, new_price):
    """Record a price change."""
    direction = "up" if new_price > old_price else "down"
    price_changes_total.labels(direction=direction).inc()


def record_alert(kind: str, success: bool):
    """Record an alert delivery attempt."""
    status = "success" if success else "error"
    alerts_sent_total.labels(kind=kind, status=status).inc()

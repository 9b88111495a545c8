"""Prometheus metrics for the integration broker."""

import time

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("integration_broker", "Integration broker application info")
app_info.info({"version": "0.1.0", "name": "integration-broker"})

# Provider call metrics
provider_calls_total = Counter(
    "provider_calls_total",
    "Total number of outbound provider API calls",
    ["provider", "operation", "outcome"],
)

provider_call_duration_seconds = Histogram(
    "provider_call_duration_seconds",
    "Time spent waiting on provider APIs",
    ["provider", "operation"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
)

# OAuth metrics
oauth_callbacks_total = Counter(
    "oauth_callbacks_total",
    "Total number of OAuth callbacks handled",
    ["provider", "environment", "status"],
)

token_refreshes_total = Counter(
    "token_refreshes_total",
    "Total number of OAuth token refresh attempts",
    ["provider", "status"],
)

# Webhook metrics
webhook_deliveries_total = Counter(
    "webhook_deliveries_total",
    "Total number of outbound webhook deliveries",
    ["event", "status"],
)

webhook_latency_seconds = Histogram(
    "webhook_latency_seconds",
    "Outbound webhook request latency",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
)

inbound_webhooks_total = Counter(
    "inbound_webhooks_total",
    "Total number of provider webhooks received",
    ["provider", "status"],
)

# Rate limiting
rate_limit_decisions_total = Counter(
    "rate_limit_decisions_total",
    "Rate limiter decisions",
    ["plan", "decision"],
)

# Sync metrics
sync_jobs_total = Counter(
    "sync_jobs_total",
    "Total number of sync jobs by terminal status",
    ["provider", "status"],
)

sync_jobs_running = Gauge(
    "sync_jobs_running",
    "Sync jobs currently running in this process",
)

# Vault
decryption_failures_total = Counter(
    "decryption_failures_total",
    "Ciphertexts that failed to decrypt",
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


def record_provider_call(provider: str, operation: str, outcome: str, duration: float):
    """Record a provider call and how it ended."""
    provider_calls_total.labels(provider=provider, operation=operation, outcome=outcome).inc()
    provider_call_duration_seconds.labels(provider=provider, operation=operation).observe(duration)


def record_oauth_callback(provider: str, environment: str, success: bool):
    status = "success" if success else "error"
    oauth_callbacks_total.labels(provider=provider, environment=environment, status=status).inc()


def record_token_refresh(provider: str, success: bool):
    status = "success" if success else "error"
    token_refreshes_total.labels(provider=provider, status=status).inc()


def record_webhook_delivery(event: str, success: bool, duration: float):
    """Record an outbound webhook delivery."""
    status = "success" if success else "error"
    webhook_deliveries_total.labels(event=event, status=status).inc()
    webhook_latency_seconds.observe(duration)


def record_inbound_webhook(provider: str, status: str):
    inbound_webhooks_total.labels(provider=provider, status=status).inc()


def record_rate_limit(plan: str, allowed: bool):
    decision = "allow" if allowed else "deny"
    rate_limit_decisions_total.labels(plan=plan, decision=decision).inc()


def record_sync_finished(provider: str, status: str):
    sync_jobs_total.labels(provider=provider, status=status).inc()


def record_decryption_failure():
    decryption_failures_total.inc()


def record_scheduler_run(job_type: str, success: bool):
    """Record a scheduler job run."""
    status = "success" if success else "error"
    scheduler_runs_total.labels(job_type=job_type, status=status).inc()
    scheduler_last_run_timestamp.labels(job_type=job_type).set(time.time())

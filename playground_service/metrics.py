"""Prometheus metrics for plan runs.

Metrics are module-level collectors registered once on the default registry
and exposed by the service at ``/metrics``.
"""

from prometheus_client import Counter, Histogram

runs_total = Counter("playground_runs_total", "Plan runs finished", ["mode", "status"])
steps_total = Counter("playground_steps_total", "Trace steps recorded", ["action", "status"])
validation_failures_total = Counter("playground_validation_failures_total", "Plans rejected by validation")
run_duration_seconds = Histogram("playground_run_duration_seconds", "Wall-clock duration of plan runs", ["mode"])

"""Central registry for Prometheus metrics used across the backend."""

from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest


REQUEST_COUNTER = Counter(
	"mod_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"mod_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

MOD_REPORTS_TOTAL = Counter(
	"mod_reports_total",
	"Moderation reports submitted",
	["reason", "outcome"],
)

MOD_ESCALATIONS_TOTAL = Counter(
	"mod_escalations_total",
	"Moderation escalations processed",
	["level"],
)

MOD_REPORT_TRANSITIONS_TOTAL = Counter(
	"mod_report_transitions_total",
	"Moderation report state transitions",
	["transition"],
)

MOD_SANCTIONS_TOTAL = Counter(
	"mod_sanctions_total",
	"Sanctions applied or lifted",
	["action"],
)

MOD_AUDIT_LATENCY_SECONDS = Histogram(
	"mod_audit_write_latency_seconds",
	"Latency of moderation audit writes",
	buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
)

MOD_SIDE_EFFECT_FAILURES_TOTAL = Counter(
	"mod_side_effect_failures_total",
	"Best-effort moderation side effects that failed",
	["kind"],
)

MOD_ACCESS_DENIED_TOTAL = Counter(
	"mod_access_denied_total",
	"Requests rejected by moderation access checks",
	["code"],
)

MOD_REPORT_RATE_LIMITED_TOTAL = Counter(
	"mod_report_rate_limited_total",
	"Report submissions rejected by the rate limiter",
)

MOD_AUDIT_EXPORTS_TOTAL = Counter(
	"mod_audit_exports_total",
	"Audit log CSV exports",
	["result"],
)

REDIS_UP = Gauge("mod_redis_up", "Redis availability (1=up,0=down)")
POSTGRES_UP = Gauge("mod_postgres_up", "Postgres availability (1=up,0=down)")


def observe_request(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)


def render_latest() -> tuple[bytes, str]:
	return generate_latest(), CONTENT_TYPE_LATEST

"""Prometheus collectors shared by the services and the HTTP layer."""

from prometheus_client import Counter, Gauge, Histogram

REQUEST_COUNT = Counter(
    "token_authority_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
AUTH_EVENTS = Counter(
    "token_authority_auth_events_total",
    "Authentication events by outcome",
    ["event", "success"],
)
AUDIT_FAILURES = Counter(
    "token_authority_audit_failures_total",
    "Audit trail writes that failed and were dropped",
)
TOKEN_REUSE_DETECTED = Counter(
    "token_authority_token_reuse_detected_total",
    "Refresh token reuse attempts (family revoked)",
)
KEY_ROTATIONS = Counter(
    "token_authority_key_rotations_total",
    "Signing key rotations",
    ["reason"],
)
KEY_ROTATION_FAILURES = Counter(
    "token_authority_key_rotation_failures_total",
    "Scheduled key rotation checks that failed",
)
KEY_AUTHORITY_DEGRADED = Gauge(
    "token_authority_key_authority_degraded",
    "1 while signing with the static fallback key",
)
ROTATION_WORKER_UP = Gauge(
    "token_authority_key_rotation_worker_up",
    "Key rotation worker liveness (1 running, 0 stopped)",
)
REQUEST_LATENCY = Histogram(
    "token_authority_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

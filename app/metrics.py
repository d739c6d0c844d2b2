from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "path", "status"],
)
REQUEST_ERRORS = Counter(
    "http_request_errors_total",
    "HTTP requests that ended in a server error",
    ["method", "path", "status"],
)

APPLICATION_TRANSITIONS = Counter(
    "enrollment_application_transitions_total",
    "Successful enrollment application status transitions",
    ["status"],
)
CASCADE_FAILURES = Counter(
    "approval_cascade_failures_total",
    "Approval cascade runs that stopped before the final commit",
    ["stage"],
)
INVITATIONS_ISSUED = Counter(
    "parent_invitations_issued_total",
    "Parent invitations inserted (duplicates excluded)",
)

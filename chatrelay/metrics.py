from prometheus_client import Counter, Histogram

# Process and platform collectors are registered on the default registry by prometheus_client.

HTTP_REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "Duration of HTTP requests in seconds",
    ["method", "route", "code"],
    buckets=(0.1, 0.5, 1, 2, 5),
)

MIRROR_WRITE_FAILURES = Counter(
    "chatrelay_mirror_write_failures",
    "User records committed to the primary store but not written to the mirror",
)


def observe_request(method: str, route: str, code: int, seconds: float) -> None:
    HTTP_REQUEST_DURATION.labels(method=method, route=route, code=str(code)).observe(seconds)

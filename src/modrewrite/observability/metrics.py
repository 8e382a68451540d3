from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

DISPATCH_OUTCOMES = Counter(
    "modrewrite_dispatch_total",
    "Requests dispatched by the rewrite engine",
    ["action"],  # terminal, proxied, continue
)

PROXY_REQUESTS = Counter(
    "modrewrite_proxy_requests_total",
    "Requests forwarded to proxy upstreams",
    ["status"],  # 1xx..5xx, error, disconnect
)

BYTES_TRANSFERRED = Counter(
    "modrewrite_bytes_total",
    "Body bytes relayed by the proxy forwarder",
    ["direction"],  # in: client -> upstream, out: upstream -> client
)

PROXY_DURATION = Histogram(
    "modrewrite_proxy_duration_seconds",
    "Proxied request latency",
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)


def bucket_status(status: int) -> str:
    """Bucket HTTP status to prevent cardinality explosion."""
    if 100 <= status < 600:
        return f"{status // 100}xx"
    return "other"


def generate_metrics() -> bytes:
    return generate_latest()


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST

from modrewrite.observability.metrics import (
    BYTES_TRANSFERRED,
    DISPATCH_OUTCOMES,
    PROXY_DURATION,
    PROXY_REQUESTS,
    bucket_status,
    generate_metrics,
    get_content_type,
)

__all__ = [
    "DISPATCH_OUTCOMES",
    "PROXY_REQUESTS",
    "BYTES_TRANSFERRED",
    "PROXY_DURATION",
    "bucket_status",
    "generate_metrics",
    "get_content_type",
]

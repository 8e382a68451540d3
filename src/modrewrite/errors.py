"""Exception types raised by the rewrite engine and proxy forwarder.

Terminal rule outcomes (403, 410, redirects) are not exceptions: the
dispatcher reports them as results and the pipeline writes the response.
"""

from __future__ import annotations


class RewriteError(Exception):
    """Base class for modrewrite errors."""


class CompileError(RewriteError, ValueError):
    """A rule line could not be compiled.

    Raised at construction time; no partial rule set is ever produced.
    """

    def __init__(self, message: str, line: str | None = None, index: int | None = None):
        self.line = line
        self.index = index
        if index is not None:
            message = f"rule {index}: {message}"
        if line is not None:
            message = f"{message} ({line!r})"
        super().__init__(message)


class MalformedURLError(RewriteError):
    """An inbound URL or a computed redirect/proxy target failed to parse."""

    def __init__(self, url: str, reason: str = "malformed URL"):
        self.url = url
        super().__init__(f"{reason}: {url!r}")


class UpstreamTransportError(RewriteError):
    """Connecting to, or streaming from, the proxy upstream failed."""

    def __init__(
        self, target: str, cause: BaseException | None = None, streaming: bool = False
    ):
        self.target = target
        self.cause = cause
        # The client response had already started when the failure hit
        self.streaming = streaming
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"upstream request to {target} failed{detail}")


class ClientDisconnectedError(RewriteError):
    """The inbound client went away while a proxied response was streaming."""

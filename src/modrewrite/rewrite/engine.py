"""Rewrite rule dispatcher.

Evaluates a ``RuleSet`` against one request and decides what happens to it:
rewrite the URL and continue down the pipeline, finish the response here
(403, 410, redirect), or hand it to the proxy forwarder.

Rules are evaluated in order against the *current* URL, so a rule sees the
rewrites made by the rules before it. Evaluation never restarts from the top.

Example:
    engine = RewriteEngine.from_lines([
        r"^/old$ /new [R=302]",
        r"^/pages/(.+)$ /page.php?page=$1 [QSA,L]",
    ])

    result = engine.dispatch(RequestContext(
        url="/pages/123?one=two",
        headers={"Host": "example.com"},
    ))

    if result.action is Action.CONTINUE:
        # Forward result.url ("/page.php?page=123&one=two") downstream
        pass
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from urllib.parse import urlsplit

import structlog
from multidict import CIMultiDict, CIMultiDictProxy, MultiDictProxy

from modrewrite.errors import MalformedURLError
from modrewrite.rewrite.query import merge_query, parse_query, split_url
from modrewrite.rewrite.rules import RewriteRule, RuleSet, compile_rules

logger = structlog.get_logger()

RELATIVE_REDIRECTS_HEADER = "X-Use-Relative-Redirects"
FORWARDED_PROTO_HEADER = "X-Forwarded-Proto"


class Action(Enum):
    """What the pipeline should do once dispatch returns."""

    TERMINAL = "terminal"
    """Response is complete (status and headers in the result); stop."""

    PROXIED = "proxied"
    """Proxy the request using ``result.rule``; stop."""

    CONTINUE = "continue"
    """Pass the (possibly rewritten) request to the next stage."""


class Step(Enum):
    """Outcome of evaluating a single rule."""

    NEXT = "next"
    STOP = "stop"
    TERMINAL = "terminal"
    PROXY = "proxy"


@dataclass
class RequestContext:
    """Snapshot of the inbound request that rules are evaluated against."""

    url: str
    """Raw path plus query string, e.g. ``/pages/123?one=two``."""

    method: str = "GET"
    headers: Mapping[str, str] = field(default_factory=dict)
    encrypted: bool = False
    """Whether the client connection is TLS."""

    def __post_init__(self) -> None:
        if not isinstance(self.headers, (CIMultiDict, CIMultiDictProxy)):
            self.headers = CIMultiDict(self.headers)

    @property
    def host(self) -> str:
        return self.headers.get("Host", "")

    @property
    def scheme(self) -> str:
        if self.encrypted or self.headers.get(FORWARDED_PROTO_HEADER) == "https":
            return "https"
        return "http"

    @property
    def prefers_relative_redirects(self) -> bool:
        return bool(self.headers.get(RELATIVE_REDIRECTS_HEADER))


@dataclass
class DispatchResult:
    """Result of dispatching one request."""

    action: Action
    url: str
    status: int | None = None
    headers: dict[str, str] = field(default_factory=dict)
    rule: RewriteRule | None = None
    """Rule that ended evaluation, if any."""

    query: MultiDictProxy[str] = field(default_factory=lambda: parse_query(""))


@dataclass
class _Evaluation:
    """Mutable state threaded through one dispatch pass."""

    url: str
    status: int | None = None
    headers: dict[str, str] = field(default_factory=dict)
    rule: RewriteRule | None = None


class RewriteEngine:
    """Evaluates an ordered rule set against requests.

    Holds no per-request state; one engine serves any number of concurrent
    requests.
    """

    def __init__(self, rules: RuleSet | Iterable[RewriteRule] = ()) -> None:
        self._rules = rules if isinstance(rules, RuleSet) else RuleSet(rules)

    @classmethod
    def from_lines(cls, lines: Iterable[str] | None) -> RewriteEngine:
        """Compile rule lines and build an engine from them.

        Raises:
            CompileError: If any line fails to compile.
        """
        return cls(compile_rules(lines))

    @property
    def rules(self) -> RuleSet:
        return self._rules

    def dispatch(self, context: RequestContext) -> DispatchResult:
        """Evaluate every applicable rule against the request.

        Args:
            context: The inbound request.

        Returns:
            The dispatch outcome. For ``CONTINUE`` results ``url`` holds the
            rewritten URL and ``query`` its parsed query string.

        Raises:
            MalformedURLError: If a redirect target cannot be built.
        """
        state = _Evaluation(url=context.url)
        index = 0
        step = Step.NEXT

        while index < len(self._rules):
            rule = self._rules[index]
            step = self._evaluate(rule, context, state)
            if step is not Step.NEXT:
                break
            index += 1

        if step is Step.TERMINAL:
            action = Action.TERMINAL
        elif step is Step.PROXY:
            action = Action.PROXIED
        else:
            action = Action.CONTINUE

        if state.rule is not None:
            logger.debug(
                "Rewrite dispatched",
                action=action.value,
                rule=state.rule.source,
                url=state.url,
                status=state.status,
            )

        return DispatchResult(
            action=action,
            url=state.url,
            status=state.status,
            headers=state.headers,
            rule=state.rule,
            query=parse_query(state.url),
        )

    def _evaluate(self, rule: RewriteRule, context: RequestContext, state: _Evaluation) -> Step:
        if not rule.matches_host(context.host):
            return Step.NEXT

        path, _ = split_url(state.url)

        if not rule.matches(path):
            if not rule.inverted:
                return Step.NEXT
            # Inverted rules rewrite to their literal replacement on a miss
            if rule.rewrites:
                state.url = rule.replacement
            state.rule = rule
            return Step.STOP if rule.last else Step.NEXT

        if rule.content_type:
            state.headers["Content-Type"] = rule.content_type

        if rule.gone:
            return self._finish(state, rule, 410)

        if rule.forbidden:
            return self._finish(state, rule, 403)

        if rule.proxy:
            state.rule = rule
            return Step.PROXY

        if rule.redirect is not None:
            state.headers["Location"] = self._redirect_location(rule, context, state.url)
            return self._finish(state, rule, rule.redirect)

        if rule.inverted:
            return Step.NEXT

        if rule.rewrites:
            state.url = rule.substitute(path) + merge_query(
                state.url, rule.replacement, rule.query_append
            )
        state.rule = rule
        return Step.STOP if rule.last else Step.NEXT

    @staticmethod
    def _finish(state: _Evaluation, rule: RewriteRule, status: int) -> Step:
        state.status = status
        state.rule = rule
        return Step.TERMINAL

    @staticmethod
    def _redirect_location(rule: RewriteRule, context: RequestContext, url: str) -> str:
        path, _ = split_url(url)
        template = rule.replacement

        if "://" in template:
            target = urlsplit(template)
            if not target.scheme or not target.netloc:
                raise MalformedURLError(template, "invalid redirect target")
            origin = f"{target.scheme}://{target.netloc}"
            template = template[len(origin) :]
        elif context.prefers_relative_redirects or not context.host:
            origin = ""
        else:
            origin = f"{context.scheme}://{context.host}"

        return (
            origin
            + rule.substitute(path, template)
            + merge_query(url, rule.replacement, rule.query_append)
        )


def create_request_context(
    url: str,
    method: str = "GET",
    host: str = "",
    headers: Mapping[str, str] | None = None,
    encrypted: bool = False,
) -> RequestContext:
    """Helper to create a request context.

    Args:
        url: Request path and query.
        method: HTTP method (default: GET).
        host: Host header value; overrides any Host in ``headers``.
        headers: Request headers.
        encrypted: Whether the connection is TLS.

    Returns:
        RequestContext for use with RewriteEngine.dispatch().
    """
    merged = CIMultiDict(headers or {})
    if host:
        merged["Host"] = host
    return RequestContext(url=url, method=method.upper(), headers=merged, encrypted=encrypted)

"""Rewrite rule compiler.

Turns ``mod_rewrite`` style rule lines into immutable ``RewriteRule`` records.

Rule grammar:
    [!]<pattern> <replacement> [FLAG,FLAG,...]

Flags:
- NC: Case-insensitive pattern
- L: Stop evaluating rules after this one fires
- P: Proxy the request to the substituted URL
- R, R=<code>: Redirect (301 by default)
- F: 403 Forbidden
- G: 410 Gone
- T=<mime>: Force the response Content-Type (text/plain by default)
- H=<pattern>: Only apply when the Host header matches
- QSA: Append the original query string to a replacement that has its own

Example:
    >>> rule = parse_rule(r"^/pages/(.+)$ /page.php?page=$1 [QSA,L]")
    >>> rule.substitute("/pages/123")
    '/page.php?page=123'
    >>> rule.last, rule.query_append
    (True, True)
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from typing import overload

import structlog

from modrewrite.errors import CompileError

logger = structlog.get_logger()

NO_REWRITE = "-"
DEFAULT_REDIRECT_STATUS = 301
DEFAULT_CONTENT_TYPE = "text/plain"

_FLAG_GROUP = re.compile(r"\s+\[([^\]]*)\]\s*$")
_BACKREFERENCE = re.compile(r"\$(\$|\d)")


@dataclass(frozen=True)
class RewriteRule:
    """A compiled rewrite rule.

    Never mutated after compilation; safe to share between concurrent
    requests.
    """

    pattern: re.Pattern[str]
    replacement: str
    inverted: bool = False
    last: bool = False
    proxy: bool = False
    redirect: int | None = None
    forbidden: bool = False
    gone: bool = False
    content_type: str | None = None
    host: re.Pattern[str] | None = None
    query_append: bool = False
    source: str = field(default="", compare=False)

    @property
    def rewrites(self) -> bool:
        """True unless the replacement is the ``-`` no-op marker."""
        return self.replacement != NO_REWRITE

    def matches(self, path: str) -> bool:
        return self.pattern.search(path) is not None

    def matches_host(self, host: str) -> bool:
        """Check the host filter. Rules without one match every host."""
        if self.host is None:
            return True
        return self.host.search(host) is not None

    def substitute(self, subject: str, template: str | None = None) -> str:
        """Replace the first pattern match in ``subject``.

        Args:
            subject: String to rewrite (a path or a full URL).
            template: Replacement template, defaults to the rule's own
                replacement. ``$0``-``$9`` refer to match groups.

        Returns:
            The rewritten string, or ``subject`` unchanged if nothing matched.
        """
        if template is None:
            template = self.replacement
        return self.pattern.sub(lambda m: expand_template(template, m), subject, count=1)

    def to_dict(self) -> dict[str, object]:
        """Convert rule to dictionary for display."""
        return {
            "pattern": self.pattern.pattern,
            "replacement": self.replacement,
            "inverted": self.inverted,
            "nocase": bool(self.pattern.flags & re.IGNORECASE),
            "last": self.last,
            "proxy": self.proxy,
            "redirect": self.redirect,
            "forbidden": self.forbidden,
            "gone": self.gone,
            "content_type": self.content_type,
            "host": self.host.pattern if self.host is not None else None,
            "query_append": self.query_append,
        }


class RuleSet(Sequence[RewriteRule]):
    """Ordered, immutable collection of compiled rules.

    Evaluation order is list order.
    """

    __slots__ = ("_rules",)

    def __init__(self, rules: Iterable[RewriteRule] = ()) -> None:
        self._rules = tuple(rules)

    @overload
    def __getitem__(self, index: int) -> RewriteRule: ...

    @overload
    def __getitem__(self, index: slice) -> RuleSet: ...

    def __getitem__(self, index: int | slice) -> RewriteRule | RuleSet:
        if isinstance(index, slice):
            return RuleSet(self._rules[index])
        return self._rules[index]

    def __len__(self) -> int:
        return len(self._rules)

    def __iter__(self) -> Iterator[RewriteRule]:
        return iter(self._rules)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RuleSet):
            return NotImplemented
        return self._rules == other._rules

    def __hash__(self) -> int:
        return hash(self._rules)

    def __repr__(self) -> str:
        return f"RuleSet({len(self._rules)} rules)"


def expand_template(template: str, match: re.Match[str]) -> str:
    """Expand ``$N`` back-references in ``template`` against ``match``.

    Groups that did not participate in the match expand to ``""``, as do
    references past the last group. ``$$`` is a literal ``$``.
    """

    def _group(ref: re.Match[str]) -> str:
        if ref.group(1) == "$":
            return "$"
        index = int(ref.group(1))
        if index > match.re.groups:
            return ""
        return match.group(index) or ""

    return _BACKREFERENCE.sub(_group, template)


def _split_flags(line: str) -> tuple[str, list[str]]:
    found = _FLAG_GROUP.search(line)
    if found is None:
        return line, []
    tokens = [token.strip() for token in found.group(1).split(",")]
    return line[: found.start()], [token for token in tokens if token]


def _compile(pattern: str, flags: int, line: str, what: str) -> re.Pattern[str]:
    try:
        return re.compile(pattern, flags)
    except re.error as e:
        raise CompileError(f"invalid {what} {pattern!r}: {e}", line=line) from e


def parse_rule(line: str) -> RewriteRule:
    """Compile a single rule line.

    Args:
        line: ``<pattern> <replacement> [FLAGS]``.

    Returns:
        The compiled rule.

    Raises:
        CompileError: If the line is malformed or a regular expression in it
            is invalid.
    """
    remainder, flags = _split_flags(line)
    parts = remainder.split()
    if len(parts) != 2:
        raise CompileError("expected '<pattern> <replacement> [FLAGS]'", line=line)

    pattern, replacement = parts
    inverted = pattern.startswith("!")
    if inverted:
        pattern = pattern[1:]

    nocase = False
    last = False
    proxy = False
    redirect: int | None = None
    forbidden = False
    gone = False
    content_type: str | None = None
    host: re.Pattern[str] | None = None
    query_append = False

    for token in flags:
        name, has_value, value = token.partition("=")
        name = name.strip().upper()
        value = value.strip()

        if name == "NC":
            nocase = True
        elif name == "L":
            last = True
        elif name == "P":
            proxy = True
        elif name == "R":
            if not has_value or not value:
                redirect = DEFAULT_REDIRECT_STATUS
            elif value.isdigit():
                redirect = int(value)
            else:
                raise CompileError(f"invalid redirect status {value!r}", line=line)
        elif name == "F":
            forbidden = True
        elif name == "G":
            gone = True
        elif name == "T":
            content_type = value or DEFAULT_CONTENT_TYPE
        elif name == "H":
            if not value:
                raise CompileError("H flag requires a host pattern", line=line)
            host = _compile(value, 0, line, "host pattern")
        elif name == "QSA":
            query_append = True
        else:
            logger.warning("Ignoring unknown rewrite flag", flag=token, rule=line)

    return RewriteRule(
        pattern=_compile(pattern, re.IGNORECASE if nocase else 0, line, "pattern"),
        replacement=replacement,
        inverted=inverted,
        last=last,
        proxy=proxy,
        redirect=redirect,
        forbidden=forbidden,
        gone=gone,
        content_type=content_type,
        host=host,
        query_append=query_append,
        source=line.strip(),
    )


def compile_rules(lines: Iterable[str] | None) -> RuleSet:
    """Compile rule lines into a ``RuleSet``.

    Either every line compiles or ``CompileError`` is raised with the index
    of the first bad line.
    """
    rules = []
    for index, line in enumerate(lines or ()):
        try:
            rules.append(parse_rule(line))
        except CompileError as e:
            error = CompileError(str(e), index=index)
            error.line = e.line
            raise error from e
    return RuleSet(rules)

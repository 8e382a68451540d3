"""Query-string handling for rewritten URLs.

From the mod_rewrite documentation: by default the query string is passed
through unchanged. A substitution that carries its own query string replaces
the existing one, unless the QSA flag asks for the two to be combined:

    RewriteRule /pages/(.+) /page.php?page=$1 [QSA]

maps ``/pages/123?one=two`` to ``/page.php?page=123&one=two``; without QSA
the result is ``/page.php?page=123``.
"""

from __future__ import annotations

from multidict import MultiDict, MultiDictProxy
from yarl import URL


def split_url(url: str) -> tuple[str, str]:
    """Split a request URL into its path and its (possibly empty) query."""
    path, _, query = url.partition("?")
    return path, query


def merge_query(url: str, replacement: str, append: bool = False) -> str:
    """Compute the query suffix to add to a rewritten path.

    Args:
        url: The URL being rewritten; its query string is the one carried over.
        replacement: The rule's replacement template.
        append: Whether the rule has the QSA flag.

    Returns:
        ``""``, ``"&<query>"`` or ``"?<query>"``.
    """
    _, query = split_url(url)
    if not query:
        return ""
    if "?" in replacement:
        return f"&{query}" if append else ""
    return f"?{query}"


def parse_query(url: str) -> MultiDictProxy[str]:
    """Parse the query string of ``url`` into a read-only multi-valued mapping."""
    _, query = split_url(url)
    if not query:
        return MultiDictProxy(MultiDict())
    return URL.build(query_string=query, encoded=True).query

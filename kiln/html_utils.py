"""HTML utility functions for kiln.

This module provides the HTML string manipulation used after markup and
template rendering: escaping, classifying URLs, rewriting URL attributes
and injecting default attributes.

Functions:
    escape_html: Escape special HTML characters in a string.
    is_external_url: Check whether a reference leaves the site.
    split_url: Split a reference into path, query and fragment.
    rewrite_url_attributes: Rewrite href/src attributes with a callback.
    rewrite_image_sources: Rewrite src/srcset of img and source tags.
    inject_default_attributes: Add attributes to elements that lack them.
"""

from __future__ import annotations

import re
from collections.abc import Callable

# URL attribute regex pattern for finding href and src attributes
_URL_ATTR_RE = re.compile(
    r'(?P<prefix>\b(?P<attr>href|src)=["\'])(?P<url>[^"\']*)(?P<suffix>["\'])'
)

_IMAGE_TAG_RE = re.compile(r"<(?:img|source)\b[^>]*>", re.IGNORECASE)
_IMAGE_ATTR_RE = re.compile(
    r'(?P<prefix>\b(?P<attr>src|srcset)=(?P<quote>["\']))(?P<value>.*?)(?P=quote)',
    re.IGNORECASE | re.DOTALL,
)

_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.\-]*:")


def escape_html(text: str) -> str:
    """Escape special HTML characters in a string.

    Converts the following characters to their HTML entity equivalents:
    - & becomes &amp;
    - < becomes &lt;
    - > becomes &gt;
    - " becomes &quot;

    Args:
        text: The string to escape.

    Returns:
        The escaped string, safe for inclusion in HTML.

    Examples:
        >>> escape_html('Tom & Jerry')
        'Tom &amp; Jerry'
    """
    return (
        text.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
    )


def is_external_url(url: str) -> bool:
    """Return True for references with a scheme, protocol-relative URLs and anchors."""
    return bool(_SCHEME_RE.match(url)) or url.startswith(("//", "#"))


def split_url(url: str) -> tuple[str, str, str]:
    """Split a reference into (path, query, fragment) without separators.

    Examples:
        >>> split_url("img/a.png?w=10#top")
        ('img/a.png', 'w=10', 'top')
    """
    path, _, fragment = url.partition("#")
    path, _, query = path.partition("?")
    return path, query, fragment


def rewrite_url_attributes(html: str, callback: Callable[[str, str], str]) -> str:
    """Rewrite every href and src attribute value.

    Args:
        html: HTML fragment.
        callback: Called with (attribute name, url); returns the new url.

    Returns:
        HTML with rewritten attribute values.
    """

    def repl(match: re.Match) -> str:
        url = match.group("url")
        rewritten = callback(match.group("attr").lower(), url)
        if rewritten == url:
            return match.group(0)
        return f"{match.group('prefix')}{rewritten}{match.group('suffix')}"

    return _URL_ATTR_RE.sub(repl, html)


def rewrite_image_sources(html: str, callback: Callable[[str], str]) -> str:
    """Rewrite the src and srcset URLs of ``<img>`` and ``<source>`` tags.

    Each srcset candidate is passed to ``callback`` separately; width and
    density descriptors are preserved.

    Args:
        html: Full HTML document or fragment.
        callback: Called with one URL; returns the new URL.

    Returns:
        HTML with rewritten image references.
    """

    def rewrite_attr(match: re.Match) -> str:
        value = match.group("value")
        if match.group("attr").lower() == "src":
            new_value = callback(value.strip())
        else:
            candidates = []
            for candidate in value.split(","):
                pieces = candidate.strip().split(None, 1)
                if not pieces:
                    continue
                pieces[0] = callback(pieces[0])
                candidates.append(" ".join(pieces))
            new_value = ", ".join(candidates)
        return f"{match.group('prefix')}{new_value}{match.group('quote')}"

    def rewrite_tag(match: re.Match) -> str:
        return _IMAGE_ATTR_RE.sub(rewrite_attr, match.group(0))

    return _IMAGE_TAG_RE.sub(rewrite_tag, html)


def inject_default_attributes(html: str, defaults: dict[str, dict[str, str]]) -> str:
    """Add default attributes to opening tags that do not set them already.

    Args:
        html: HTML fragment.
        defaults: Mapping of element name to attribute name/value pairs.

    Returns:
        HTML with the attributes added.

    Examples:
        >>> inject_default_attributes('<table>', {"table": {"class": "t"}})
        '<table class="t">'
    """
    for element, attributes in defaults.items():
        if not attributes:
            continue
        tag_re = re.compile(rf"<{re.escape(element)}(?P<attrs>(?:\s[^>]*?)?)(?P<end>/?>)")

        def repl(match: re.Match, attributes: dict[str, str] = attributes) -> str:
            existing = match.group("attrs")
            added = "".join(
                f' {name}="{escape_html(value)}"'
                for name, value in attributes.items()
                if not re.search(rf"\s{re.escape(name)}(\s*=|\s|$)", existing)
            )
            return f"<{element}{existing}{added}{match.group('end')}"

        html = tag_re.sub(repl, html)
    return html

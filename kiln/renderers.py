"""Markup renderers for kiln.

Content bodies (``.dj`` and ``.md``) are rendered to HTML with mistune.
Highlighting, heading anchors, bare-URL autolinking, external link
attributes, smart quotes, mentions and default attributes are driven by
``MarkupOptions``; this module only wires those settings into mistune and
Pygments.

Key classes:
- Heading: A heading collected for the table of contents.
- RenderedMarkup: HTML plus collected headings.
- CodeHighlighter: Pygments highlighting with optional multi-theme output.
- CodeGroupExpander: Expands ``::: code-group`` blocks into tab groups.
- MarkdownRenderer: Renders a body with all configured behaviours.
- RendererRegistry: Maps source files to renderers.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

import mistune
from mistune.util import escape_url
from pygments import highlight
from pygments.formatters import HtmlFormatter
from pygments.lexers import get_lexer_by_name
from pygments.styles import get_style_by_name
from pygments.util import ClassNotFound

from .config import (
    ExternalLinkOptions,
    HeaderAnchorOptions,
    HighlightOptions,
    MarkupOptions,
    MentionOptions,
    SmartQuoteOptions,
)
from .errors import ConfigError
from .html_utils import escape_html, inject_default_attributes
from .protocols import MarkupRenderer
from .utils import CONTENT_SUFFIXES, fenced_code_ranges

MENTION_PATTERN = r"(?<![\w@/.])@[A-Za-z0-9_](?:[A-Za-z0-9_-]*[A-Za-z0-9_])?"

_CODE_GROUP_RE = re.compile(
    r"^:{3,}[ \t]*code-group[ \t]*\n(?P<body>.*?)^:{3,}[ \t]*$",
    re.MULTILINE | re.DOTALL,
)
_FENCED_CODE_RE = re.compile(
    r"^(?P<fence>`{3,}|~{3,})(?P<info>[^\n]*)\n(?P<code>.*?)^(?P=fence)[ \t]*$",
    re.MULTILINE | re.DOTALL,
)
_CODE_INFO_RE = re.compile(r"^(?P<lang>[A-Za-z0-9_+-]+)?(?:\s*\[(?P<label>[^\]]+)\])?")
_TAG_RE = re.compile(r"<[^>]+>")


@dataclass
class Heading:
    """Represents a heading extracted from markup for TOC generation.

    Attributes:
        id: Anchor ID for the heading (URL-friendly slug).
        text: The text content of the heading.
        level: Heading level (1-6).
    """

    id: str
    text: str
    level: int


@dataclass
class RenderedMarkup:
    html: str
    toc: list[Heading] = field(default_factory=list)


def _generate_heading_id(text: str) -> str:
    """Generate a URL-friendly ID from heading text.

    Args:
        text: The heading text.

    Returns:
        URL-friendly slug suitable for anchor links.
    """
    slug = text.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[-\s]+", "-", slug)
    return slug.strip("-") or "section"


class CodeHighlighter:
    """Renders code blocks, highlighted with Pygments when enabled.

    With ``themes`` configured each token carries the primary theme's
    colour plus a ``--kiln-<name>`` CSS variable per alternate theme, so a
    stylesheet can switch themes without re-rendering.

    Attributes:
        options: Highlight settings.
    """

    def __init__(self, options: HighlightOptions):
        self.options = options
        self.style = _load_style(options.theme)
        self.alternates = {name: _load_style(theme) for name, theme in options.themes.items()}

    def render(self, code: str, language: str | None) -> str:
        """Render one code block.

        Args:
            code: The code content.
            language: Language identifier, or None.

        Returns:
            HTML for the block. Unknown languages render as plain code.
        """
        if self.options.enabled and language:
            try:
                lexer = get_lexer_by_name(language)
            except ClassNotFound:
                lexer = None
            if lexer is not None:
                if self.alternates:
                    return self._render_multi_theme(code, lexer, language)
                formatter = HtmlFormatter(
                    style=self.style,
                    noclasses=True,
                    cssclass="highlight",
                    linenos="inline" if self.options.gutter else False,
                )
                return highlight(code, lexer, formatter)
        lang_class = f' class="language-{escape_html(language)}"' if language else ""
        return f"<pre><code{lang_class}>{escape_html(code.rstrip(chr(10)))}</code></pre>\n"

    def _render_multi_theme(self, code: str, lexer, language: str) -> str:
        lines: list[list[str]] = [[]]
        for token_type, value in lexer.get_tokens(code):
            declarations = []
            color = self.style.style_for_token(token_type)["color"]
            if color:
                declarations.append(f"color:#{color}")
            for name, style in self.alternates.items():
                alt_color = style.style_for_token(token_type)["color"]
                if alt_color:
                    declarations.append(f"--kiln-{name}:#{alt_color}")
            for index, part in enumerate(value.split("\n")):
                if index:
                    lines.append([])
                if not part:
                    continue
                escaped = escape_html(part)
                if declarations:
                    escaped = f'<span style="{";".join(declarations)}">{escaped}</span>'
                lines[-1].append(escaped)
        if len(lines) > 1 and not lines[-1]:
            lines.pop()

        rendered_lines = []
        for number, line in enumerate(lines, start=1):
            gutter = f'<span class="lineno">{number}</span>' if self.options.gutter else ""
            rendered_lines.append(gutter + "".join(line))

        background = [f"background-color:{self.style.background_color}"]
        for name, style in self.alternates.items():
            background.append(f"--kiln-{name}-bg:{style.background_color}")
        return (
            f'<pre class="highlight" style="{";".join(background)}">'
            f'<code class="language-{escape_html(language)}">'
            + "\n".join(rendered_lines)
            + "</code></pre>\n"
        )


def _load_style(name: str):
    try:
        return get_style_by_name(name)
    except ClassNotFound as exc:
        raise ConfigError(f"Unknown highlight theme '{name}'") from exc


class CodeGroupExpander:
    """Expands ``::: code-group`` blocks into tab-group markup.

    Groups are cut out of the source before markup parsing and replaced by
    placeholder paragraphs; ``restore`` swaps the rendered groups back in.
    """

    def __init__(self, highlighter: CodeHighlighter):
        self.highlighter = highlighter
        self._groups: dict[str, str] = {}

    def extract(self, source: str) -> str:
        """Replace every code group in ``source`` with a placeholder.

        Groups shown as examples inside a fenced code block are left alone.
        """
        fenced = fenced_code_ranges(source)

        def repl(match: re.Match) -> str:
            if any(start <= match.start() < end for start, end in fenced):
                return match.group(0)
            blocks = list(_FENCED_CODE_RE.finditer(match.group("body")))
            if not blocks:
                return match.group(0)
            key = f"KILNCODEGROUP{len(self._groups) + 1}X"
            self._groups[key] = self._render_group(len(self._groups) + 1, blocks)
            return f"\n\n{key}\n\n"

        return _CODE_GROUP_RE.sub(repl, source)

    def restore(self, html: str) -> str:
        for key, group_html in self._groups.items():
            html = html.replace(f"<p>{key}</p>", group_html)
        return html

    def _render_group(self, index: int, blocks: list[re.Match]) -> str:
        name = f"kiln-code-group-{index}"
        parts = ['<div class="kiln-code-group" role="tablist">']
        for position, block in enumerate(blocks, start=1):
            language, label = parse_code_info(block.group("info"), position)
            checked = ' checked="checked"' if position == 1 else ""
            parts.append(
                f'<input type="radio" name="{name}" role="tab" '
                f'class="kiln-code-group-tab" aria-label="{escape_html(label)}"{checked}>'
            )
            parts.append('<div role="tabpanel" class="kiln-code-group-panel">')
            parts.append(self.highlighter.render(block.group("code"), language))
            parts.append("</div>")
        parts.append("</div>")
        return "".join(parts)


def parse_code_info(info: str, position: int) -> tuple[str | None, str]:
    """Parse a fence info string such as ``js [npm]`` into (language, label).

    The label falls back to the language, then to ``Code N``.

    Examples:
        >>> parse_code_info("sh [yarn]", 2)
        ('sh', 'yarn')
        >>> parse_code_info("", 3)
        (None, 'Code 3')
    """
    match = _CODE_INFO_RE.match(info.strip())
    language = (match.group("lang") or "").strip() or None if match else None
    label = (match.group("label") or "").strip() if match else ""
    return language, label or language or f"Code {position}"


class _KilnRenderer(mistune.HTMLRenderer):
    """mistune HTML renderer applying the configured markup behaviours.

    Attributes:
        headings: Headings collected during rendering.
    """

    def __init__(
        self,
        highlighter: CodeHighlighter,
        anchors: HeaderAnchorOptions,
        external_links: ExternalLinkOptions,
        smart_quotes: SmartQuoteOptions,
        mentions: MentionOptions,
    ):
        super().__init__(escape=False)
        self.highlighter = highlighter
        self.anchors = anchors
        self.external_links = external_links
        self.smart_quotes = smart_quotes
        self.mentions = mentions
        self.headings: list[Heading] = []
        self._heading_id_counts: dict[str, int] = {}

    def heading(self, text: str, level: int, **attrs) -> str:
        plain = _TAG_RE.sub("", text).strip()
        base_id = _generate_heading_id(plain)
        if base_id in self._heading_id_counts:
            self._heading_id_counts[base_id] += 1
            heading_id = f"{base_id}-{self._heading_id_counts[base_id]}"
        else:
            self._heading_id_counts[base_id] = 0
            heading_id = base_id
        self.headings.append(Heading(id=heading_id, text=plain, level=level))

        if self.anchors.enabled and level in self.anchors.levels:
            anchor = (
                f'<a class="{escape_html(self.anchors.css_class)}" href="#{heading_id}" '
                f'aria-label="{escape_html(self.anchors.aria_label)}">'
                f"{escape_html(self.anchors.symbol)}</a>"
            )
            if self.anchors.position == "before":
                text = f"{anchor} {text}"
            else:
                text = f"{text} {anchor}"
        return f'<h{level} id="{heading_id}">{text}</h{level}>\n'

    def block_code(self, code: str, info: str | None = None) -> str:
        language, _ = parse_code_info(info or "", 1)
        return self.highlighter.render(code, language)

    def link(self, text: str, url: str, title: str | None = None) -> str:
        html = super().link(text, url, title)
        if self.external_links.enabled and self._is_external(url):
            rel = self.external_links.rel
            if self.external_links.nofollow and "nofollow" not in rel.split():
                rel = f"{rel} nofollow".strip()
            attrs = []
            if self.external_links.target:
                attrs.append(f'target="{escape_html(self.external_links.target)}"')
            if rel:
                attrs.append(f'rel="{escape_html(rel)}"')
            if attrs:
                html = html.replace("<a ", f"<a {' '.join(attrs)} ", 1)
        return html

    def text(self, text: str) -> str:
        if self.smart_quotes.enabled:
            text = self._smarten(text)
        return super().text(text)

    def mention(self, username: str) -> str:
        url = self.mentions.url_template.replace("{username}", username)
        return (
            f'<a href="{escape_html(url)}" class="{escape_html(self.mentions.css_class)}">'
            f"@{escape_html(username)}</a>"
        )

    def _is_external(self, url: str) -> bool:
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            return False
        return parsed.hostname.lower() not in self.external_links.internal_hosts

    def _smarten(self, text: str) -> str:
        quotes = self.smart_quotes
        result: list[str] = []
        previous = ""
        for char in text:
            opens = previous == "" or previous.isspace() or previous in "([{-–—"
            if char == '"':
                result.append(quotes.open_double if opens else quotes.close_double)
            elif char == "'":
                result.append(quotes.open_single if opens else quotes.close_single)
            else:
                result.append(char)
            previous = char
        return "".join(result)


def _mention_plugin(md: mistune.Markdown) -> None:
    def parse_mention(inline, m, state):
        text = m.group(0)
        if state.in_link:
            inline.process_text(text, state)
            return m.end()
        state.append_token({"type": "mention", "raw": text[1:]})
        return m.end()

    md.inline.register("mention", MENTION_PATTERN, parse_mention, before="link")


def _autolink_plugin(schemes: tuple[str, ...]):
    alternatives = []
    for scheme in schemes:
        if scheme == "mailto":
            alternatives.append(r"mailto:[^\s<>@]+@[^\s<>]*[^\s<>.,:;\"')\]]")
        else:
            alternatives.append(re.escape(scheme) + r"://[^\s<]*[^<.,:;\"')\]\s]")
    pattern = r"(?<![\w/\"'=(<])(?:" + "|".join(alternatives) + ")"

    def parse_bare_url(inline, m, state):
        text = m.group(0)
        if state.in_link:
            inline.process_text(text, state)
            return m.end()
        state.append_token(
            {
                "type": "link",
                "children": [{"type": "text", "raw": text}],
                "attrs": {"url": escape_url(text)},
            }
        )
        return m.end()

    def plugin(md: mistune.Markdown) -> None:
        md.inline.register("bare_url", pattern, parse_bare_url, before="link")

    return plugin


class MarkdownRenderer:
    """Renders content bodies to HTML with the configured markup options.

    Attributes:
        options: Markup settings.
        highlighter: Code block highlighter shared by all renders.
    """

    source_type = "markup"

    def __init__(self, options: MarkupOptions | None = None):
        self.options = options or MarkupOptions()
        self.highlighter = CodeHighlighter(self.options.highlight)

    def can_render(self, path: Path) -> bool:
        return path.suffix.lower() in CONTENT_SUFFIXES

    def render(self, body: str) -> RenderedMarkup:
        """Render a markup body.

        Args:
            body: Markup source without its metadata block.

        Returns:
            RenderedMarkup with the HTML fragment and collected headings.
        """
        expander = CodeGroupExpander(self.highlighter)
        source = expander.extract(body)
        renderer = _KilnRenderer(
            self.highlighter,
            self.options.header_anchors,
            self.options.external_links,
            self.options.smart_quotes,
            self.options.mentions,
        )
        plugins: list = ["strikethrough", "footnotes", "table"]
        if self.options.autolink.enabled and self.options.autolink.schemes:
            plugins.append(_autolink_plugin(self.options.autolink.schemes))
        if self.options.mentions.enabled:
            plugins.append(_mention_plugin)
        markdown = mistune.create_markdown(renderer=renderer, plugins=plugins)
        html = expander.restore(markdown(source))
        if self.options.default_attributes:
            html = inject_default_attributes(html, self.options.default_attributes)
        return RenderedMarkup(html=html, toc=renderer.headings)


class RendererRegistry:
    """Registry mapping source files to markup renderers."""

    def __init__(self, renderers: list[MarkupRenderer] | None = None):
        self._renderers: list[MarkupRenderer] = list(renderers or [])

    def register(self, renderer: MarkupRenderer) -> None:
        self._renderers.append(renderer)

    def get_renderer(self, path: Path) -> MarkupRenderer | None:
        """Return the first renderer that can handle ``path``, or None."""
        for renderer in self._renderers:
            if renderer.can_render(path):
                return renderer
        return None


def create_default_renderer_registry(options: MarkupOptions) -> RendererRegistry:
    return RendererRegistry([MarkdownRenderer(options)])

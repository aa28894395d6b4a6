"""Matrix HTML in both directions: markdown rendering and mention-aware parsing."""

from __future__ import annotations

import html
import re
from collections.abc import Callable
from html.parser import HTMLParser

import nh3
from loguru import logger
from mistune import HTMLRenderer, create_markdown

from qqbridge.core.elements import AtElement, TextElement

MATRIX_HTML_FORMAT = "org.matrix.custom.html"
MATRIX_TO_PREFIX = "https://matrix.to/#/"

MATRIX_MARKDOWN = create_markdown(
    escape=True,
    # mistune rewrites unknown URL schemes to "#harmful-link"; inline images point at mxc://.
    renderer=HTMLRenderer(escape=True, allow_harmful_protocols=("mxc:",)),
    plugins=["table", "strikethrough", "url", "superscript", "subscript"],
)

MATRIX_ALLOWED_HTML_TAGS = {
    "p", "a", "strong", "em", "del", "code", "pre", "blockquote",
    "ul", "ol", "li", "h1", "h2", "h3", "h4", "h5", "h6",
    "hr", "br", "table", "thead", "tbody", "tr", "th", "td",
    "caption", "sup", "sub", "img",
}
MATRIX_ALLOWED_HTML_ATTRIBUTES: dict[str, set[str]] = {
    "a": {"href"}, "code": {"class"}, "ol": {"start"},
    "img": {"src", "alt", "title", "width", "height"},
    "th": {"align", "colspan", "rowspan"},
    "td": {"align", "colspan", "rowspan"},
    "table": {"border"},
}
MATRIX_ALLOWED_URL_SCHEMES = {"https", "http", "matrix", "mailto", "mxc"}


def _filter_matrix_html_attribute(tag: str, attr: str, value: str) -> str | None:
    """Filter attribute values to a safe Matrix-compatible subset."""
    if tag == "a" and attr == "href":
        return value if value.lower().startswith(("https://", "http://", "matrix:", "mailto:")) else None
    if tag == "img" and attr == "src":
        return value if value.lower().startswith("mxc://") else None
    if tag == "code" and attr == "class":
        classes = [c for c in value.split() if c.startswith("language-") and not c.startswith("language-_")]
        return " ".join(classes) if classes else None
    return value


MATRIX_HTML_CLEANER = nh3.Cleaner(
    tags=MATRIX_ALLOWED_HTML_TAGS,
    attributes=MATRIX_ALLOWED_HTML_ATTRIBUTES,
    attribute_filter=_filter_matrix_html_attribute,
    url_schemes=MATRIX_ALLOWED_URL_SCHEMES,
    strip_comments=True,
    link_rel="noopener noreferrer",
)


def render_markdown(text: str) -> str | None:
    """Render markdown to sanitized HTML; returns None for plain text."""
    try:
        formatted = MATRIX_HTML_CLEANER.clean(MATRIX_MARKDOWN(text)).strip()
    except Exception:
        logger.opt(exception=True).debug("Markdown rendering failed")
        return None
    if not formatted:
        return None
    if formatted.startswith("<p>") and formatted.endswith("</p>"):
        inner = formatted[3:-4]
        if "<" not in inner and ">" not in inner:
            return None
    return formatted


def mention_html(mxid: str, name: str) -> str:
    return f'<a href="{MATRIX_TO_PREFIX}{html.escape(mxid, quote=True)}">{html.escape(name)}</a>'


def text_to_html(text: str) -> str:
    return html.escape(text).replace("\n", "<br>")


_REPLY_FALLBACK_LINE = re.compile(r"^> ?")


def strip_reply_fallback(body: str) -> str:
    """Drop the ``> <@user> quoted`` lines clients prepend to plain-text replies."""
    lines = body.split("\n")
    if not lines or not lines[0].startswith("> "):
        return body
    idx = 0
    while idx < len(lines) and _REPLY_FALLBACK_LINE.match(lines[idx]):
        idx += 1
    if idx < len(lines) and lines[idx] == "":
        idx += 1
    return "\n".join(lines[idx:])


# ── Matrix HTML → QQ elements ────────────────────────────────────────

_BLOCK_TAGS = {"p", "div", "li", "blockquote", "pre", "tr", "h1", "h2", "h3", "h4", "h5", "h6"}


class _MatrixHTMLParser(HTMLParser):
    """Splits a formatted body into ordered text runs and user pills."""

    def __init__(self, resolve_uin: Callable[[str], str | None]) -> None:
        super().__init__(convert_charrefs=True)
        self.resolve_uin = resolve_uin
        self.elements: list[TextElement | AtElement] = []
        self._reply_depth = 0
        # uin of the pill being read; its link text is replaced by the mention.
        self._pill: str | None = None
        self._ol_counters: list[int] = []

    def _append_text(self, text: str) -> None:
        if not text:
            return
        if self.elements and isinstance(self.elements[-1], TextElement):
            self.elements[-1] = TextElement(content=self.elements[-1].content + text)
        else:
            self.elements.append(TextElement(content=text))

    def _newline(self) -> None:
        if self.elements and isinstance(self.elements[-1], TextElement):
            if not self.elements[-1].content.endswith("\n"):
                self._append_text("\n")
        elif self.elements:
            self._append_text("\n")

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag == "mx-reply":
            self._reply_depth += 1
            return
        if self._reply_depth:
            return
        if tag == "br":
            self._append_text("\n")
        elif tag == "a":
            href = dict(attrs).get("href") or ""
            if href.startswith(MATRIX_TO_PREFIX):
                target = href[len(MATRIX_TO_PREFIX):].split("?", 1)[0]
                if target.startswith("@"):
                    uin = self.resolve_uin(target)
                    if uin is not None:
                        self._pill = uin
                        self.elements.append(AtElement(target=uin, display=f"@{uin}"))
        elif tag == "ol":
            self._ol_counters.append(0)
        elif tag == "li":
            self._newline()
            if self._ol_counters:
                self._ol_counters[-1] += 1
                self._append_text(f"{self._ol_counters[-1]}. ")
            else:
                self._append_text("* ")
        elif tag in _BLOCK_TAGS:
            self._newline()

    def handle_endtag(self, tag: str) -> None:
        if tag == "mx-reply":
            self._reply_depth = max(0, self._reply_depth - 1)
            return
        if self._reply_depth:
            return
        if tag == "a":
            self._pill = None
        elif tag == "ol" and self._ol_counters:
            self._ol_counters.pop()
        elif tag in _BLOCK_TAGS:
            self._newline()

    def handle_data(self, data: str) -> None:
        if self._reply_depth or self._pill is not None:
            return
        self._append_text(data)

    def result(self) -> list[TextElement | AtElement]:
        if self.elements and isinstance(self.elements[-1], TextElement):
            trimmed = self.elements[-1].content.rstrip("\n")
            if trimmed:
                self.elements[-1] = TextElement(content=trimmed)
            else:
                self.elements.pop()
        return self.elements


def parse_matrix_html(formatted_body: str, resolve_uin: Callable[[str], str | None]) -> list[TextElement | AtElement]:
    """Convert a Matrix ``formatted_body`` into QQ text and mention elements, in source order.

    ``resolve_uin`` maps a Matrix user ID to a QQ uin, or None when the user is
    not bridged. Unresolved pills keep their link text.
    """
    parser = _MatrixHTMLParser(resolve_uin)
    parser.feed(formatted_body)
    parser.close()
    return parser.result()

"""Lightweight HTML-to-text extraction using Python stdlib.

The page ``<title>`` becomes a markdown heading. When the page marks its main
content (``<main>``, ``<article>`` or ``role="main"``) only that region is
kept; otherwise the whole body is used. Navigation chrome is always dropped.
"""

import re
from html.parser import HTMLParser

_SKIP_TAGS = frozenset(
    {"script", "style", "noscript", "svg", "template", "iframe", "nav", "header", "footer", "aside"}
)
_MAIN_TAGS = frozenset({"main", "article"})
# Tags that start a new line of text
_BLOCK_TAGS = frozenset(
    "p div section article main blockquote pre figure figcaption "
    "h1 h2 h3 h4 h5 h6 ul ol li dl dt dd table tr br hr".split()
)


class _PageTextParser(HTMLParser):
    """Collects visible text, the title and the main-region text in one pass."""

    def __init__(self) -> None:
        super().__init__()
        self._pieces: list[str] = []
        self._main_pieces: list[str] = []
        self._title: list[str] = []
        self._skip_depth: int = 0
        self._in_title: bool = False
        self._main_tag: str | None = None
        self._main_nest: int = 0

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag == "title":
            self._in_title = True
            return
        if tag in _SKIP_TAGS:
            self._skip_depth += 1
            return
        if self._main_tag is None:
            if tag in _MAIN_TAGS or dict(attrs).get("role") == "main":
                self._main_tag = tag
                self._main_nest = 1
        elif tag == self._main_tag:
            self._main_nest += 1
        if tag in _BLOCK_TAGS and self._skip_depth == 0:
            self._emit("\n")

    def handle_endtag(self, tag: str) -> None:
        if tag == "title":
            self._in_title = False
            return
        if tag in _SKIP_TAGS:
            self._skip_depth = max(0, self._skip_depth - 1)
            return
        if tag in _BLOCK_TAGS and self._skip_depth == 0:
            self._emit("\n")
        if tag == self._main_tag:
            self._main_nest -= 1
            if self._main_nest <= 0:
                self._main_tag = None

    def handle_data(self, data: str) -> None:
        if self._in_title:
            self._title.append(data)
        elif self._skip_depth == 0:
            self._emit(data)

    def _emit(self, text: str) -> None:
        self._pieces.append(text)
        if self._main_tag is not None:
            self._main_pieces.append(text)

    @property
    def title(self) -> str:
        return " ".join("".join(self._title).split())

    def get_text(self) -> str:
        main = "".join(self._main_pieces)
        return main if main.strip() else "".join(self._pieces)


def _tidy_whitespace(text: str) -> str:
    # Inline runs of whitespace become one space
    text = re.sub(r"[^\S\n]+", " ", text)
    text = re.sub(r" *\n *", "\n", text)
    # At most one blank line between blocks
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def html_to_text(html: str) -> str:
    """Convert HTML to plain text, stripping tags and normalizing whitespace."""
    parser = _PageTextParser()
    parser.feed(html)
    parser.close()
    body = _tidy_whitespace(parser.get_text())
    title = parser.title
    if title and body:
        return f"# {title}\n\n{body}"
    return f"# {title}" if title else body

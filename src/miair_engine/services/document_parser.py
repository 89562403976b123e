"""Document parsing — split a body into typed, offset-addressed units.

Parsing is deterministic: identical input always yields identical units.
Lightweight markup is split line by line with regexes; HTML is parsed into a
DOM with BeautifulSoup.  Every format shares the same line scanner, which
also resolves the sensitivity marker lines::

    <!-- sensitive:start -->      .. public:start      % sensitive:end

Marker lines delimit regions and never become units themselves.

Notebooks are parsed through a *view*: the cell sources joined by blank
lines.  Unit offsets always refer to the body returned by :func:`body_of`.
"""

from __future__ import annotations

import bisect
import html
import json
import re
from dataclasses import dataclass
from typing import Any, Callable

from bs4 import BeautifulSoup, Tag
from bs4.element import (
    CData,
    Comment,
    Declaration,
    Doctype,
    PageElement,
    PreformattedString,
    ProcessingInstruction,
)

from miair_engine.domain.entities import (
    Document,
    DocumentFormat,
    SensitivityLabel,
    StructuralUnit,
    UnitKind,
)
from miair_engine.domain.exceptions import MalformedInputError
from miair_engine.domain.value_objects import Span

WORD_RE = re.compile(r"\w+")

_LINE_RE = re.compile(r"[^\n]*\n?")
_MARKER_RE = re.compile(
    r"^\s*(?:<!--|\.\.|%|//|#)?\s*(?P<label>sensitive|public):(?P<edge>start|end)\s*(?:-->)?\s*$",
    re.IGNORECASE,
)
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")

_CELL_SEPARATOR = "\n\n"


# ── Line scanning ───────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class _Line:
    start: int
    end: int  # excludes the newline
    text: str
    label: SensitivityLabel
    is_marker: bool

    @property
    def blank(self) -> bool:
        return self.is_marker or not self.text.strip()


@dataclass(frozen=True, slots=True)
class _Block:
    kind: UnitKind
    first: int
    last: int
    level: int = 0


def _scan_lines(body: str, start: int = 0, end: int | None = None) -> list[_Line]:
    """Split ``body[start:end]`` into lines carrying the active marker label."""
    end = len(body) if end is None else end
    lines: list[_Line] = []
    stack: list[SensitivityLabel] = []
    for match in _LINE_RE.finditer(body, start, end):
        raw = match.group()
        if not raw:
            break
        text = raw.rstrip("\r\n")
        pos = match.start()
        marker = _MARKER_RE.match(text)
        if marker:
            label = SensitivityLabel(marker["label"].lower())
            if marker["edge"].lower() == "start":
                stack.append(label)
            elif label in stack:
                # Tolerate unbalanced nesting: close the innermost matching region.
                del stack[len(stack) - 1 - stack[::-1].index(label)]
        current = stack[-1] if stack else SensitivityLabel.UNLABELED
        lines.append(_Line(pos, pos + len(text), text, current, marker is not None))
    return lines


def _consume_until_blank(lines: list[_Line], i: int, stop: Callable[[str], bool]) -> int:
    """Return the last line index of a block starting at *i*."""
    j = i
    while j + 1 < len(lines) and not lines[j + 1].blank and not stop(lines[j + 1].text):
        j += 1
    return j


def _consume_until_closing(
    lines: list[_Line], i: int, closing: re.Pattern[str], *, same_line: bool = True
) -> tuple[int, int]:
    """Consume from *i* through the first line matching *closing*.

    Returns ``(last, next)``.  An unterminated block ends before the next
    marker line (or at the end of input), minus trailing blank lines.
    """
    if same_line and closing.search(lines[i].text):
        return i, i + 1
    j = i + 1
    while j < len(lines) and not lines[j].is_marker:
        if closing.search(lines[j].text):
            return j, j + 1
        j += 1
    last = j - 1
    while last > i and not lines[last].text.strip():
        last -= 1
    return last, j


def _trim_trailing_blank(lines: list[_Line], first: int, last: int) -> int:
    while last > first and not lines[last].text.strip():
        last -= 1
    return last


# ── Markdown ────────────────────────────────────────────────────────────────

_MD_ATX_RE = re.compile(r"^ {0,3}(#{1,6})(?:[ \t]+|$)")
_MD_FENCE_RE = re.compile(r"^ {0,3}(`{3,}|~{3,})")
_MD_SETEXT_RE = re.compile(r"^ {0,3}(=+|-{2,})[ \t]*$", re.MULTILINE)
_MD_LIST_RE = re.compile(r"^\s{0,3}(?:[-*+]|\d{1,9}[.)])[ \t]+\S")
_MD_HR_RE = re.compile(r"^ {0,3}([-*_])(?:[ \t]*\1){2,}[ \t]*$")
_INDENT = ("    ", "\t")


def _md_interrupts(text: str) -> bool:
    return bool(
        _MD_ATX_RE.match(text)
        or _MD_FENCE_RE.match(text)
        or _MD_LIST_RE.match(text)
        or _MD_HR_RE.match(text)
        or _MD_SETEXT_RE.match(text)
        or text.lstrip().startswith("|")
    )


def _parse_markdown(lines: list[_Line]) -> list[_Block]:
    blocks: list[_Block] = []
    i, n = 0, len(lines)
    while i < n:
        line = lines[i]
        text = line.text
        if line.blank or _MD_HR_RE.match(text):
            i += 1
            continue

        atx = _MD_ATX_RE.match(text)
        if atx:
            blocks.append(_Block(UnitKind.HEADING, i, i, level=len(atx.group(1))))
            i += 1
            continue

        fence = _MD_FENCE_RE.match(text)
        if fence:
            marker = fence.group(1)
            closing = re.compile(r"^ {0,3}" + re.escape(marker[0]) + "{" + str(len(marker)) + r",}\s*$")
            last, nxt = _consume_until_closing(lines, i, closing, same_line=False)
            blocks.append(_Block(UnitKind.CODE_BLOCK, i, last))
            i = nxt
            continue

        if text.lstrip().startswith("|"):
            last = _consume_until_blank(lines, i, lambda t: not t.lstrip().startswith("|"))
            blocks.append(_Block(UnitKind.TABLE, i, last))
            i = last + 1
            continue

        if _MD_LIST_RE.match(text):
            last = _consume_until_blank(
                lines, i, lambda t: bool(_MD_ATX_RE.match(t) or _MD_FENCE_RE.match(t))
            )
            blocks.append(_Block(UnitKind.LIST, i, last))
            i = last + 1
            continue

        if text.startswith(_INDENT):
            j = i
            while j + 1 < n and not lines[j + 1].is_marker and (
                lines[j + 1].text.startswith(_INDENT)
                or (not lines[j + 1].text.strip() and j + 2 < n and lines[j + 2].text.startswith(_INDENT))
            ):
                j += 1
            blocks.append(_Block(UnitKind.CODE_BLOCK, i, j))
            i = j + 1
            continue

        if i + 1 < n and not lines[i + 1].is_marker and _MD_SETEXT_RE.match(lines[i + 1].text):
            level = 1 if "=" in lines[i + 1].text else 2
            blocks.append(_Block(UnitKind.HEADING, i, i + 1, level=level))
            i += 2
            continue

        last = _consume_until_blank(lines, i, _md_interrupts)
        blocks.append(_Block(UnitKind.PARAGRAPH, i, last))
        i = last + 1
    return blocks


# ── reStructuredText ────────────────────────────────────────────────────────

_RST_ADORNMENT_RE = re.compile(r"^([=\-`:'\"~^_*+#<>.])\1{2,}\s*$")
_RST_DIRECTIVE_RE = re.compile(r"^\.\.\s+([\w-]+)::")
_RST_CODE_DIRECTIVES = frozenset({"code-block", "code", "sourcecode", "literalinclude"})
_RST_GRID_RE = re.compile(r"^\s*\+[-=+]+\+\s*$")
_RST_SIMPLE_TABLE_RE = re.compile(r"^\s*=+(?:\s+=+)+\s*$")
_RST_LIST_RE = re.compile(r"^\s*(?:[-*+•]|\d+[.)]|#\.)\s+\S")


def _parse_rst(lines: list[_Line]) -> list[_Block]:
    blocks: list[_Block] = []
    styles: list[tuple[str, bool]] = []

    def level_for(char: str, overline: bool) -> int:
        key = (char, overline)
        if key not in styles:
            styles.append(key)
        return styles.index(key) + 1

    def is_adornment(idx: int) -> bool:
        return idx < len(lines) and not lines[idx].is_marker and bool(
            _RST_ADORNMENT_RE.match(lines[idx].text)
        )

    def is_title(idx: int) -> bool:
        return (
            idx + 1 < len(lines)
            and not lines[idx].blank
            and not is_adornment(idx)
            and is_adornment(idx + 1)
            and len(lines[idx + 1].text.strip()) >= len(lines[idx].text.strip())
        )

    literal_next = False
    i, n = 0, len(lines)
    while i < n:
        line = lines[i]
        text = line.text
        if line.blank:
            i += 1
            continue

        if literal_next and text.startswith((" ", "\t")):
            j = i
            while j + 1 < n and not lines[j + 1].is_marker and (
                lines[j + 1].text.startswith((" ", "\t")) or not lines[j + 1].text.strip()
            ):
                j += 1
            j = _trim_trailing_blank(lines, i, j)
            blocks.append(_Block(UnitKind.CODE_BLOCK, i, j))
            literal_next = False
            i = j + 1
            continue
        literal_next = False

        if is_adornment(i):
            if i + 2 < n and not lines[i + 1].blank and is_adornment(i + 2):
                char = text.strip()[0]
                blocks.append(_Block(UnitKind.HEADING, i, i + 2, level=level_for(char, True)))
                i += 3
            else:
                i += 1  # transition
            continue

        if is_title(i) and not text.startswith(" "):
            char = lines[i + 1].text.strip()[0]
            blocks.append(_Block(UnitKind.HEADING, i, i + 1, level=level_for(char, False)))
            i += 2
            continue

        if _RST_GRID_RE.match(text):
            last = _consume_until_blank(lines, i, lambda t: not t.lstrip().startswith(("+", "|")))
            blocks.append(_Block(UnitKind.TABLE, i, last))
            i = last + 1
            continue

        if _RST_SIMPLE_TABLE_RE.match(text):
            last = _consume_until_blank(lines, i, lambda t: False)
            blocks.append(_Block(UnitKind.TABLE, i, last))
            i = last + 1
            continue

        directive = _RST_DIRECTIVE_RE.match(text)
        if directive:
            kind = (
                UnitKind.CODE_BLOCK
                if directive.group(1).lower() in _RST_CODE_DIRECTIVES
                else UnitKind.PARAGRAPH
            )
            j = i
            while j + 1 < n and not lines[j + 1].is_marker and (
                lines[j + 1].text.startswith((" ", "\t")) or not lines[j + 1].text.strip()
            ):
                j += 1
            j = _trim_trailing_blank(lines, i, j)
            blocks.append(_Block(kind, i, j))
            i = j + 1
            continue

        if _RST_LIST_RE.match(text):
            last = _consume_until_blank(lines, i, lambda t: False)
            blocks.append(_Block(UnitKind.LIST, i, last))
            i = last + 1
            continue

        j = i
        while j + 1 < n and not lines[j + 1].blank and not is_title(j + 1) and not is_adornment(j + 1):
            j += 1
        blocks.append(_Block(UnitKind.PARAGRAPH, i, j))
        literal_next = lines[j].text.rstrip().endswith("::")
        i = j + 1
    return blocks


# ── AsciiDoc ────────────────────────────────────────────────────────────────

_ADOC_HEADING_RE = re.compile(r"^(={1,6})\s+\S")
_ADOC_DELIMITER_RE = re.compile(r"^(-{4,}|\.{4,}|={4,}|\*{4,}|_{4,}|\+{4,}|/{4,})\s*$")
_ADOC_TABLE_RE = re.compile(r"^\|===\s*$")
_ADOC_SKIP_RE = re.compile(r"^(?:\[.*\]|:[\w-]+:.*|//(?!/).*)\s*$")
_ADOC_LIST_RE = re.compile(r"^\s*(?:\*+|-|\.+|\d+\.)\s+\S")


def _parse_adoc(lines: list[_Line]) -> list[_Block]:
    blocks: list[_Block] = []
    i, n = 0, len(lines)
    while i < n:
        line = lines[i]
        text = line.text
        if line.blank or _ADOC_SKIP_RE.match(text):
            i += 1
            continue

        heading = _ADOC_HEADING_RE.match(text)
        if heading:
            blocks.append(_Block(UnitKind.HEADING, i, i, level=len(heading.group(1))))
            i += 1
            continue

        if _ADOC_TABLE_RE.match(text):
            last, nxt = _consume_until_closing(lines, i, _ADOC_TABLE_RE, same_line=False)
            blocks.append(_Block(UnitKind.TABLE, i, last))
            i = nxt
            continue

        delimiter = _ADOC_DELIMITER_RE.match(text)
        if delimiter:
            fence = delimiter.group(1)
            closing = re.compile(r"^" + re.escape(fence) + r"\s*$")
            last, nxt = _consume_until_closing(lines, i, closing, same_line=False)
            if fence[0] != "/":  # //// is a comment block
                kind = UnitKind.CODE_BLOCK if fence[0] in "-.+" else UnitKind.PARAGRAPH
                blocks.append(_Block(kind, i, last))
            i = nxt
            continue

        if _ADOC_LIST_RE.match(text):
            last = _consume_until_blank(lines, i, lambda t: bool(_ADOC_HEADING_RE.match(t)))
            blocks.append(_Block(UnitKind.LIST, i, last))
            i = last + 1
            continue

        last = _consume_until_blank(
            lines,
            i,
            lambda t: bool(
                _ADOC_HEADING_RE.match(t) or _ADOC_DELIMITER_RE.match(t) or _ADOC_TABLE_RE.match(t)
            ),
        )
        blocks.append(_Block(UnitKind.PARAGRAPH, i, last))
        i = last + 1
    return blocks


# ── HTML ────────────────────────────────────────────────────────────────────
#
# HTML is parsed into a DOM with BeautifulSoup.  Headings and leaf blocks
# become units; containers are walked, and inline content directly inside a
# container forms a paragraph.  The tree builder records where every start
# tag begins, which :class:`_HtmlLocator` extends to full source ranges.

_HTML_HEADING_LEVEL: dict[str, int] = {f"h{n}": n for n in range(1, 7)}
_HTML_LEAF_KIND: dict[str, UnitKind] = {
    "pre": UnitKind.CODE_BLOCK,
    "table": UnitKind.TABLE,
    "ul": UnitKind.LIST,
    "ol": UnitKind.LIST,
    "dl": UnitKind.LIST,
}
_HTML_PARAGRAPH_TAGS = frozenset(
    {"p", "blockquote", "li", "dt", "dd", "figcaption", "summary", "address", "caption"}
)
_HTML_CONTAINER_TAGS = frozenset(
    {
        "html", "body", "main", "article", "section", "header", "footer",
        "nav", "aside", "div", "form", "fieldset", "details", "figure",
    }
)
_HTML_NOISE_TAGS = frozenset({"head", "title", "script", "style", "noscript", "template"})
_HTML_BLOCK_TAGS = (
    frozenset(_HTML_HEADING_LEVEL)
    | frozenset(_HTML_LEAF_KIND)
    | _HTML_PARAGRAPH_TAGS
    | _HTML_CONTAINER_TAGS
)
_HTML_VOID_TAGS = frozenset(
    {
        "area", "base", "br", "col", "embed", "hr", "img",
        "input", "link", "meta", "source", "track", "wbr",
    }
)
_HTML_OPEN_TAG_RE = re.compile(
    r"""<[A-Za-z][^\s/>]*(?:\s+[^\s"'>/=]+(?:\s*=\s*(?:"[^"]*"|'[^']*'|[^\s"'>]+))?)*\s*/?>"""
)
# CData, Comment and friends keep their raw text; only the delimiters are stripped.
_HTML_SPECIAL: tuple[tuple[type[PreformattedString], str, str], ...] = (
    (CData, "<![CDATA[", "]]>"),
    (Comment, "<!--", "-->"),
    (ProcessingInstruction, "<?", ">"),
    (Doctype, "<!", ">"),
    (Declaration, "<!", ">"),
)


class _HtmlLocator:
    """Source ranges of parsed nodes; the tree itself only knows where start tags begin."""

    def __init__(self, body: str) -> None:
        self.body = body
        self._line_starts = [0] + [m.end() for m in re.finditer("\n", body)]
        self._closing: dict[int, tuple[int, int] | None] = {}

    def start(self, tag: Tag) -> int:
        return self._line_starts[tag.sourceline - 1] + tag.sourcepos

    def open_end(self, tag: Tag) -> int:
        start = self.start(tag)
        match = _HTML_OPEN_TAG_RE.match(self.body, start)
        if match:
            return match.end()
        close = self.body.find(">", start)
        return len(self.body) if close < 0 else close + 1

    def closing(self, tag: Tag) -> tuple[int, int] | None:
        """Range of *tag*'s own end tag, skipping nested elements of the same name."""
        key = id(tag)
        if key not in self._closing:
            self._closing[key] = self._find_closing(tag)
        return self._closing[key]

    def _find_closing(self, tag: Tag) -> tuple[int, int] | None:
        opened = self.open_end(tag)
        if tag.name in _HTML_VOID_TAGS or self.body[opened - 2 : opened] == "/>":
            return None
        depth = 0
        pattern = re.compile(rf"<(/?){re.escape(tag.name)}(?=[\s/>])", re.IGNORECASE)
        for match in pattern.finditer(self.body, opened):
            if not match.group(1):
                depth += 1
            elif depth:
                depth -= 1
            else:
                close = self.body.find(">", match.end())
                return match.start(), len(self.body) if close < 0 else close + 1
        return None

    def end(self, tag: Tag) -> int:
        closing = self.closing(tag)
        if closing is not None:
            return closing[1]
        if tag.name in _HTML_VOID_TAGS:
            return self.open_end(tag)
        return self._unclosed_end(tag)

    def content_end(self, tag: Tag) -> int:
        closing = self.closing(tag)
        return closing[0] if closing is not None else self._unclosed_end(tag)

    def _unclosed_end(self, tag: Tag) -> int:
        """An unclosed element stops at the next element outside it or an enclosing end tag."""
        last: PageElement = tag
        while isinstance(last, Tag) and last.contents:
            last = last.contents[-1]
        following = last.find_next(True)
        opened = self.open_end(tag)
        bound = len(self.body) if following is None else max(opened, self.start(following))
        enclosing = sorted(
            {parent.name for parent in tag.parents if not isinstance(parent, BeautifulSoup)}
        )
        if enclosing:
            pattern = re.compile(
                r"</(?:" + "|".join(map(re.escape, enclosing)) + r")\s*>", re.IGNORECASE
            )
            match = pattern.search(self.body, opened, bound)
            if match:
                bound = match.start()
        return opened + len(self.body[opened:bound].rstrip())

    def special(self, node: PreformattedString, cursor: int) -> tuple[int, int]:
        """Range of a comment, doctype or similar node found at or after *cursor*."""
        for cls, opener, closer in _HTML_SPECIAL:
            if isinstance(node, cls):
                start = self.body.find(opener, cursor)
                if start < 0:
                    break
                close = self.body.find(closer, start + len(opener) + len(node))
                return start, len(self.body) if close < 0 else close + len(closer)
        return cursor, cursor


def _parse_html(body: str) -> list[tuple[UnitKind, Span, int]]:
    """Return ``(kind, span, level)`` for every block of an HTML body, in order."""
    soup = BeautifulSoup(body, "html.parser")
    locator = _HtmlLocator(body)
    blocks: list[tuple[UnitKind, Span, int]] = []

    def walk(container: Tag, cursor: int, limit: int) -> None:
        run: list[int] = []

        def extend(start: int, end: int) -> None:
            if run:
                run[1] = end
            else:
                run.extend((start, end))

        def flush() -> None:
            if run:
                blocks.append((UnitKind.PARAGRAPH, Span(run[0], run[1]), 0))
                run.clear()

        children = list(container.children)
        for position, child in enumerate(children):
            if isinstance(child, Tag):
                start, end = locator.start(child), locator.end(child)
                name = child.name
                if name in _HTML_NOISE_TAGS:
                    flush()
                elif name in _HTML_HEADING_LEVEL:
                    flush()
                    blocks.append((UnitKind.HEADING, Span(start, end), _HTML_HEADING_LEVEL[name]))
                elif name in _HTML_LEAF_KIND:
                    flush()
                    blocks.append((_HTML_LEAF_KIND[name], Span(start, end), 0))
                elif name in _HTML_CONTAINER_TAGS or child.find(sorted(_HTML_BLOCK_TAGS)) is not None:
                    flush()
                    walk(child, locator.open_end(child), locator.content_end(child))
                elif name in _HTML_PARAGRAPH_TAGS:
                    flush()
                    blocks.append((UnitKind.PARAGRAPH, Span(start, end), 0))
                else:
                    extend(start, end)
                cursor = max(cursor, end)
            elif isinstance(child, PreformattedString):
                flush()
                cursor = max(cursor, locator.special(child, cursor)[1])
            else:
                end = limit
                for sibling in children[position + 1 :]:
                    if isinstance(sibling, Tag):
                        end = locator.start(sibling)
                        break
                    if isinstance(sibling, PreformattedString):
                        end = locator.special(sibling, cursor)[0]
                        break
                end = max(cursor, min(end, limit))
                segment = body[cursor:end]
                if segment.strip():
                    extend(
                        cursor + len(segment) - len(segment.lstrip()),
                        cursor + len(segment.rstrip()),
                    )
                cursor = end
        flush()

    walk(soup, 0, len(body))
    return blocks


def _html_text(fragment: str, separator: str = " ") -> str:
    soup = BeautifulSoup(fragment, "html.parser")
    for tag in soup.find_all(sorted(_HTML_NOISE_TAGS)):
        tag.decompose()
    return soup.get_text(separator, strip=bool(separator))


# ── TeX ─────────────────────────────────────────────────────────────────────

_TEX_HEADING_RE = re.compile(
    r"^\s*\\(part|chapter|section|subsection|subsubsection|paragraph)\*?\s*(?:\[[^\]]*\])?\s*\{"
)
_TEX_LEVELS = {
    "part": 1,
    "chapter": 1,
    "section": 2,
    "subsection": 3,
    "subsubsection": 4,
    "paragraph": 5,
}
_TEX_BEGIN_RE = re.compile(r"^\s*\\begin\{(\w+\*?)\}")
_TEX_ENV_KIND: dict[str, UnitKind] = {
    "verbatim": UnitKind.CODE_BLOCK,
    "Verbatim": UnitKind.CODE_BLOCK,
    "lstlisting": UnitKind.CODE_BLOCK,
    "minted": UnitKind.CODE_BLOCK,
    "tabular": UnitKind.TABLE,
    "tabularx": UnitKind.TABLE,
    "table": UnitKind.TABLE,
    "longtable": UnitKind.TABLE,
    "itemize": UnitKind.LIST,
    "enumerate": UnitKind.LIST,
    "description": UnitKind.LIST,
}
_TEX_COMMAND_ONLY_RE = re.compile(r"^\s*\\[A-Za-z]+\*?(?:\[[^\]]*\])?(?:\{[^}]*\})*\s*$")


def _parse_tex(lines: list[_Line]) -> list[_Block]:
    blocks: list[_Block] = []
    i, n = 0, len(lines)
    while i < n:
        line = lines[i]
        text = line.text
        if line.blank or text.lstrip().startswith("%"):
            i += 1
            continue

        heading = _TEX_HEADING_RE.match(text)
        if heading:
            blocks.append(_Block(UnitKind.HEADING, i, i, level=_TEX_LEVELS[heading.group(1)]))
            i += 1
            continue

        begin = _TEX_BEGIN_RE.match(text)
        if begin:
            env = begin.group(1)
            if env == "document":
                i += 1
                continue
            closing = re.compile(r"\\end\{" + re.escape(env) + r"\}")
            last, nxt = _consume_until_closing(lines, i, closing)
            blocks.append(_Block(_TEX_ENV_KIND.get(env, UnitKind.PARAGRAPH), i, last))
            i = nxt
            continue

        if _TEX_COMMAND_ONLY_RE.match(text):
            i += 1
            continue

        last = _consume_until_blank(
            lines,
            i,
            lambda t: bool(_TEX_HEADING_RE.match(t) or _TEX_BEGIN_RE.match(t) or t.lstrip().startswith("%")),
        )
        blocks.append(_Block(UnitKind.PARAGRAPH, i, last))
        i = last + 1
    return blocks


# ── Plain text ──────────────────────────────────────────────────────────────

_PLAIN_UNDERLINE_RE = re.compile(r"^\s*(={3,}|-{3,})\s*$", re.MULTILINE)
_PLAIN_LIST_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+\S")


def _is_caps_heading(text: str) -> bool:
    stripped = text.strip()
    return (
        0 < len(stripped) <= 60
        and stripped.isupper()
        and any(c.isalpha() for c in stripped)
        and not stripped.endswith((".", ",", ";"))
    )


def _parse_plain(lines: list[_Line]) -> list[_Block]:
    blocks: list[_Block] = []
    i, n = 0, len(lines)
    while i < n:
        line = lines[i]
        text = line.text
        if line.blank or _PLAIN_UNDERLINE_RE.match(text):
            i += 1
            continue

        if i + 1 < n and not lines[i + 1].is_marker and _PLAIN_UNDERLINE_RE.match(lines[i + 1].text):
            level = 1 if "=" in lines[i + 1].text else 2
            blocks.append(_Block(UnitKind.HEADING, i, i + 1, level=level))
            i += 2
            continue

        if _is_caps_heading(text) and (i + 1 >= n or lines[i + 1].blank):
            blocks.append(_Block(UnitKind.HEADING, i, i, level=1))
            i += 1
            continue

        if text.startswith(_INDENT):
            last = _consume_until_blank(lines, i, lambda t: not t.startswith(_INDENT))
            blocks.append(_Block(UnitKind.CODE_BLOCK, i, last))
            i = last + 1
            continue

        if _PLAIN_LIST_RE.match(text):
            last = _consume_until_blank(lines, i, lambda t: False)
            blocks.append(_Block(UnitKind.LIST, i, last))
            i = last + 1
            continue

        last = _consume_until_blank(lines, i, lambda t: bool(_PLAIN_UNDERLINE_RE.match(t)))
        if last > i and last + 1 < n and _PLAIN_UNDERLINE_RE.match(lines[last + 1].text):
            last -= 1  # the final line is an underlined title
        blocks.append(_Block(UnitKind.PARAGRAPH, i, last))
        i = last + 1
    return blocks


_PARSERS: dict[DocumentFormat, Callable[[list[_Line]], list[_Block]]] = {
    DocumentFormat.MARKDOWN: _parse_markdown,
    DocumentFormat.RST: _parse_rst,
    DocumentFormat.ADOC: _parse_adoc,
    DocumentFormat.TEX: _parse_tex,
    DocumentFormat.PLAIN: _parse_plain,
}


# ── Markup stripping ────────────────────────────────────────────────────────

_MD_IMAGE_RE = re.compile(r"!\[([^\]]*)\]\([^)]*\)")
_MD_LINK_RE = re.compile(r"\[([^\]]+)\]\([^)]*\)")
_MD_EMPHASIS_RE = re.compile(r"(\*\*|__|~~|\*|`+)")
_HTML_COMMENT_RE = re.compile(r"<!--.*?-->", re.DOTALL)
_RST_LINK_RE = re.compile(r"`([^`<]+?)\s*<[^>]+>`_+")
_RST_ROLE_RE = re.compile(r":[\w-]+:`([^`]+)`")
_ADOC_LINK_RE = re.compile(r"(?:link:)?\S+?\[([^\]]*)\]")
_TEX_COMMAND_RE = re.compile(r"\\[A-Za-z]+\*?(?:\[[^\]]*\])?")
_TEX_COMMENT_RE = re.compile(r"(?<!\\)%.*$", re.MULTILINE)
_BULLET_RE = re.compile(r"^\s*(?:[-*+•]|\d+[.)]|#\.|\.+)\s+", re.MULTILINE)
_TABLE_RULE_RE = re.compile(r"^[\s|+:=\-]*$", re.MULTILINE)


def _strip_code_fences(text: str, fmt: DocumentFormat) -> str:
    lines = text.splitlines()
    if fmt in (DocumentFormat.MARKDOWN, DocumentFormat.NOTEBOOK):
        if lines and _MD_FENCE_RE.match(lines[0]):
            lines = lines[1:]
            if lines and _MD_FENCE_RE.match(lines[-1]):
                lines = lines[:-1]
    elif fmt is DocumentFormat.ADOC:
        lines = [ln for ln in lines if not _ADOC_DELIMITER_RE.match(ln)]
    elif fmt is DocumentFormat.RST:
        if lines and _RST_DIRECTIVE_RE.match(lines[0]):
            lines = [ln for ln in lines[1:] if not ln.strip().startswith(":")]
    elif fmt is DocumentFormat.HTML:
        return _html_text(text, "")
    elif fmt is DocumentFormat.TEX:
        lines = [ln for ln in lines if not re.match(r"^\s*\\(?:begin|end)\{", ln)]
    return "\n".join(lines)


def strip_markup(text: str, kind: UnitKind, fmt: DocumentFormat) -> str:
    """Return the human-readable content of a unit's raw text."""
    if kind is UnitKind.CODE_BLOCK:
        return _strip_code_fences(text, fmt)

    content = text
    if fmt in (DocumentFormat.MARKDOWN, DocumentFormat.NOTEBOOK):
        content = _HTML_COMMENT_RE.sub(" ", content)
        if kind is UnitKind.HEADING:
            content = _MD_SETEXT_RE.sub("", content)
            content = re.sub(r"^\s*#+\s*|\s*#+\s*$", "", content, flags=re.MULTILINE)
        content = _MD_IMAGE_RE.sub(r"\1", content)
        content = _MD_LINK_RE.sub(r"\1", content)
        content = _MD_EMPHASIS_RE.sub("", content)
    elif fmt is DocumentFormat.RST:
        if kind is UnitKind.HEADING:
            content = "\n".join(ln for ln in content.splitlines() if not _RST_ADORNMENT_RE.match(ln))
        content = _RST_LINK_RE.sub(r"\1", content)
        content = _RST_ROLE_RE.sub(r"\1", content)
        content = content.replace("``", "").replace("**", "")
    elif fmt is DocumentFormat.ADOC:
        if kind is UnitKind.HEADING:
            content = re.sub(r"^=+\s*", "", content)
        content = _ADOC_LINK_RE.sub(r"\1", content)
        content = _ADOC_TABLE_RE.sub("", content)
    elif fmt is DocumentFormat.HTML:
        content = _html_text(content)
    elif fmt is DocumentFormat.TEX:
        content = _TEX_COMMENT_RE.sub("", content)
        content = _TEX_COMMAND_RE.sub(" ", content)
        content = content.replace("{", "").replace("}", "").replace("&", " ").replace("\\\\", " ")
    elif fmt is DocumentFormat.PLAIN and kind is UnitKind.HEADING:
        content = _PLAIN_UNDERLINE_RE.sub("", content)

    if kind is UnitKind.LIST:
        content = _BULLET_RE.sub("", content)
    if kind is UnitKind.TABLE:
        content = _TABLE_RULE_RE.sub("", content).replace("|", " ").replace("+", " ")
    return " ".join(content.split())


# ── Notebook view ───────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class NotebookCell:
    cell_type: str
    span: Span  # within the view


@dataclass(frozen=True, slots=True)
class NotebookView:
    """Cell sources joined into one addressable body."""

    text: str
    cells: tuple[NotebookCell, ...]
    data: dict[str, Any]


def _cell_source(cell: dict[str, Any]) -> str:
    source = cell.get("source", "")
    if isinstance(source, list):
        return "".join(str(part) for part in source)
    return str(source)


def notebook_view(document: Document) -> NotebookView:
    """Load a notebook document; invalid JSON is malformed input."""
    try:
        data = json.loads(document.text)
    except json.JSONDecodeError as exc:
        raise MalformedInputError(f"Notebook is not valid JSON: {exc.msg}") from exc
    if not isinstance(data, dict) or not isinstance(data.get("cells"), list):
        raise MalformedInputError("Notebook has no 'cells' list.")

    parts: list[str] = []
    cells: list[NotebookCell] = []
    pos = 0
    for cell in data["cells"]:
        if not isinstance(cell, dict):
            raise MalformedInputError("Notebook cell is not an object.")
        source = _cell_source(cell)
        if parts:
            pos += len(_CELL_SEPARATOR)
        cells.append(NotebookCell(str(cell.get("cell_type", "raw")), Span(pos, pos + len(source))))
        parts.append(source)
        pos += len(source)
    return NotebookView(_CELL_SEPARATOR.join(parts), tuple(cells), data)


def render_notebook(view: NotebookView, sources: list[str]) -> str:
    """Serialise *view*'s notebook with replaced cell sources."""
    data = json.loads(json.dumps(view.data))
    for cell, source in zip(data["cells"], sources):
        cell["source"] = source.splitlines(keepends=True)
    return json.dumps(data, indent=1, ensure_ascii=False) + "\n"


def body_of(document: Document) -> str:
    """The text unit offsets refer to."""
    if document.format is DocumentFormat.NOTEBOOK:
        return notebook_view(document).text
    return document.text


# ── Public API ──────────────────────────────────────────────────────────────


def _check_text(body: str) -> None:
    if not body.strip():
        raise MalformedInputError("Document is empty.")
    if "\x00" in body:
        raise MalformedInputError("Document contains NUL bytes (binary content).")
    control = len(_CONTROL_RE.findall(body))
    if control / len(body) > 0.05:
        raise MalformedInputError("Document is mostly control characters (binary content).")


def _append_unit(
    out: list[StructuralUnit],
    body: str,
    kind: UnitKind,
    span: Span,
    level: int,
    label: SensitivityLabel,
    fmt: DocumentFormat,
) -> None:
    text = body[span.start : span.end]
    content = strip_markup(text, kind, fmt)
    if kind is UnitKind.CODE_BLOCK:
        if not content.strip():
            return
    elif not WORD_RE.search(content):
        return
    out.append(
        StructuralUnit(
            index=len(out),
            kind=kind,
            span=span,
            text=text,
            content=content,
            level=level,
            marker=label,
            sensitivity=label,
        )
    )


def _units_from_blocks(
    body: str,
    lines: list[_Line],
    blocks: list[_Block],
    fmt: DocumentFormat,
    out: list[StructuralUnit],
) -> None:
    for block in blocks:
        span = Span(lines[block.first].start, lines[block.last].end)
        _append_unit(out, body, block.kind, span, block.level, lines[block.first].label, fmt)


def _units_from_html(body: str, out: list[StructuralUnit]) -> None:
    lines = _scan_lines(body)
    starts = [line.start for line in lines]
    for kind, span, level in _parse_html(body):
        line = lines[max(0, bisect.bisect_right(starts, span.start) - 1)]
        _append_unit(out, body, kind, span, level, line.label, DocumentFormat.HTML)


def parse(document: Document) -> list[StructuralUnit]:
    """Split *document* into its ordered structural units.

    Raises :class:`MalformedInputError` for empty or binary content and for
    documents that yield no unit at all.
    """
    units: list[StructuralUnit] = []
    if document.format is DocumentFormat.NOTEBOOK:
        view = notebook_view(document)
        _check_text(view.text)
        for cell in view.cells:
            lines = _scan_lines(view.text, cell.span.start, cell.span.end)
            if not lines:
                continue
            if cell.cell_type == "code":
                first = next((k for k, ln in enumerate(lines) if ln.text.strip()), None)
                if first is None:
                    continue
                last = _trim_trailing_blank(lines, first, len(lines) - 1)
                blocks = [_Block(UnitKind.CODE_BLOCK, first, last)]
            elif cell.cell_type == "markdown":
                blocks = _parse_markdown(lines)
            else:
                blocks = _parse_plain(lines)
            _units_from_blocks(view.text, lines, blocks, DocumentFormat.MARKDOWN, units)
    else:
        body = document.text
        _check_text(body)
        if document.format is DocumentFormat.HTML:
            _units_from_html(body, units)
        else:
            lines = _scan_lines(body)
            _units_from_blocks(
                body, lines, _PARSERS[document.format](lines), document.format, units
            )

    if not units:
        raise MalformedInputError("Document contains no parseable structural units.")
    return units


# ── Rendering helpers ───────────────────────────────────────────────────────

_RST_UNDERLINES = {1: "=", 2: "-", 3: "~", 4: "^"}
_TEX_COMMANDS = {1: "chapter", 2: "section", 3: "subsection", 4: "subsubsection"}


def render_section(fmt: DocumentFormat, title: str, body: str, level: int = 2) -> str:
    """Render a new heading plus one paragraph in the document's own markup."""
    level = max(1, min(level, 6))
    if fmt in (DocumentFormat.MARKDOWN, DocumentFormat.NOTEBOOK):
        return f"{'#' * level} {title}\n\n{body}"
    if fmt is DocumentFormat.RST:
        char = _RST_UNDERLINES.get(level, "^")
        return f"{title}\n{char * len(title)}\n\n{body}"
    if fmt is DocumentFormat.ADOC:
        return f"{'=' * level} {title}\n\n{body}"
    if fmt is DocumentFormat.HTML:
        return f"<h{level}>{html.escape(title)}</h{level}>\n\n<p>{html.escape(body)}</p>"
    if fmt is DocumentFormat.TEX:
        command = _TEX_COMMANDS.get(level, "paragraph")
        return f"\\{command}{{{title}}}\n\n{body}"
    underline = "=" if level == 1 else "-"
    return f"{title}\n{underline * max(3, len(title))}\n\n{body}"

"""Tests for the document parser."""

from __future__ import annotations

import pytest

from miair_engine.domain.entities import (
    Document,
    DocumentFormat,
    DocumentKind,
    SensitivityLabel,
    UnitKind,
)
from miair_engine.domain.exceptions import MalformedInputError
from miair_engine.services.document_parser import body_of, notebook_view, parse, render_section

MARKDOWN = """\
# Title

Intro paragraph with **bold** and a [link](https://example.com).

- first item
- second item

| a | b |
|---|---|
| 1 | 2 |

```python
print("hi")
```

    indented code line
"""


def _kinds(document: Document) -> list[UnitKind]:
    return [u.kind for u in parse(document)]


class TestMarkdown:
    def test_block_kinds_in_order(self):
        assert _kinds(Document(MARKDOWN)) == [
            UnitKind.HEADING,
            UnitKind.PARAGRAPH,
            UnitKind.LIST,
            UnitKind.TABLE,
            UnitKind.CODE_BLOCK,
            UnitKind.CODE_BLOCK,
        ]

    def test_spans_address_the_body(self):
        document = Document(MARKDOWN)
        for i, unit in enumerate(parse(document)):
            assert unit.index == i
            assert document.text[unit.span.start : unit.span.end] == unit.text
            assert not unit.text.endswith("\n")

    def test_content_strips_markup(self):
        units = parse(Document(MARKDOWN))
        assert units[0].content == "Title"
        assert units[0].level == 1
        assert units[1].content == "Intro paragraph with bold and a link."
        assert units[2].content == "first item second item"
        assert units[3].content == "a b 1 2"
        assert units[4].content == 'print("hi")'

    def test_setext_headings(self):
        units = parse(Document("Title\n=====\n\nSub\n---\n\nBody text here.\n"))
        assert [(u.kind, u.level, u.content) for u in units[:2]] == [
            (UnitKind.HEADING, 1, "Title"),
            (UnitKind.HEADING, 2, "Sub"),
        ]

    def test_unterminated_fence_runs_to_end(self):
        units = parse(Document("Intro text.\n\n```\nline one\nline two\n"))
        assert units[-1].kind is UnitKind.CODE_BLOCK
        assert units[-1].content == "line one\nline two"

    def test_fence_hides_heading_syntax(self):
        units = parse(Document("```\n# not a heading\n```\n"))
        assert [u.kind for u in units] == [UnitKind.CODE_BLOCK]

    def test_horizontal_rules_are_skipped(self):
        assert _kinds(Document("First part.\n\n---\n\nSecond part.\n")) == [
            UnitKind.PARAGRAPH,
            UnitKind.PARAGRAPH,
        ]


class TestSensitivityMarkers:
    def test_marker_lines_are_not_units(self):
        text = "Public intro.\n\n<!-- sensitive:start -->\nSecret plan.\n<!-- sensitive:end -->\n\nOutro.\n"
        units = parse(Document(text))
        assert [u.content for u in units] == ["Public intro.", "Secret plan.", "Outro."]

    def test_region_labels(self):
        text = (
            "<!-- public:start -->\nOpen text.\n<!-- public:end -->\n\n"
            "<!-- sensitive:start -->\nHidden text.\n<!-- sensitive:end -->\n\n"
            "Unmarked text.\n"
        )
        assert [u.marker for u in parse(Document(text))] == [
            SensitivityLabel.PUBLIC,
            SensitivityLabel.SENSITIVE,
            SensitivityLabel.UNLABELED,
        ]

    def test_nested_regions_restore_outer_label(self):
        text = (
            "<!-- sensitive:start -->\nOuter one.\n\n"
            "<!-- public:start -->\nInner part.\n<!-- public:end -->\n\n"
            "Outer two.\n<!-- sensitive:end -->\n"
        )
        assert [u.marker for u in parse(Document(text))] == [
            SensitivityLabel.SENSITIVE,
            SensitivityLabel.PUBLIC,
            SensitivityLabel.SENSITIVE,
        ]

    def test_markers_in_other_comment_syntaxes(self):
        rst = "Intro text.\n\n.. sensitive:start\n\nHidden text.\n\n.. sensitive:end\n"
        units = parse(Document(rst, format=DocumentFormat.RST))
        assert units[-1].marker is SensitivityLabel.SENSITIVE

        tex = "Intro text.\n\n% sensitive:start\nHidden text.\n% sensitive:end\n"
        units = parse(Document(tex, format=DocumentFormat.TEX))
        assert units[-1].marker is SensitivityLabel.SENSITIVE


class TestOtherFormats:
    def test_rst(self):
        text = (
            "Project\n=======\n\nSome intro text.\n\nSection\n-------\n\n"
            "Example::\n\n    pip install project\n\n"
            ".. code-block:: python\n\n   import project\n"
        )
        units = parse(Document(text, format=DocumentFormat.RST))
        assert [(u.kind, u.level) for u in units] == [
            (UnitKind.HEADING, 1),
            (UnitKind.PARAGRAPH, 0),
            (UnitKind.HEADING, 2),
            (UnitKind.PARAGRAPH, 0),
            (UnitKind.CODE_BLOCK, 0),
            (UnitKind.CODE_BLOCK, 0),
        ]
        assert units[0].content == "Project"

    def test_adoc(self):
        text = (
            "= Guide\n\n== Install\n\nRun the installer.\n\n"
            "----\nmake install\n----\n\n"
            "|===\n| Name | Value\n| a | b\n|===\n"
        )
        units = parse(Document(text, format=DocumentFormat.ADOC))
        assert [(u.kind, u.level) for u in units] == [
            (UnitKind.HEADING, 1),
            (UnitKind.HEADING, 2),
            (UnitKind.PARAGRAPH, 0),
            (UnitKind.CODE_BLOCK, 0),
            (UnitKind.TABLE, 0),
        ]
        assert units[1].content == "Install"
        assert units[3].content == "make install"

    def test_html(self):
        text = (
            "<!DOCTYPE html>\n<html>\n<body>\n<h1>Guide</h1>\n"
            "<p>Install the tool &amp; run it.</p>\n"
            "<pre>\nmake build\n</pre>\n"
            "<ul>\n<li>First</li>\n<li>Second</li>\n</ul>\n"
            "</body>\n</html>\n"
        )
        units = parse(Document(text, format=DocumentFormat.HTML))
        assert [u.kind for u in units] == [
            UnitKind.HEADING,
            UnitKind.PARAGRAPH,
            UnitKind.CODE_BLOCK,
            UnitKind.LIST,
        ]
        assert units[0].content == "Guide"
        assert units[1].content == "Install the tool & run it."

    def test_html_blocks_on_one_line(self):
        text = (
            "<h1>Tool</h1><p>Converts data files.</p>"
            "<h2>Installation</h2><h2>Usage</h2><h2>License</h2>\n"
        )
        units = parse(Document(text, format=DocumentFormat.HTML))
        assert [(u.kind, u.level, u.content) for u in units] == [
            (UnitKind.HEADING, 1, "Tool"),
            (UnitKind.PARAGRAPH, 0, "Converts data files."),
            (UnitKind.HEADING, 2, "Installation"),
            (UnitKind.HEADING, 2, "Usage"),
            (UnitKind.HEADING, 2, "License"),
        ]
        assert all(u.text == text[u.span.start : u.span.end] for u in units)

    def test_html_attribute_with_angle_bracket(self):
        text = '<p>Read <a title="a > b">the guide</a> first.</p>\n'
        units = parse(Document(text, format=DocumentFormat.HTML))
        assert len(units) == 1
        assert units[0].content == "Read the guide first."
        assert units[0].text == text.rstrip("\n")

    def test_html_inline_text_inside_container(self):
        text = "<div>\n  Loose text with <b>bold</b> words.\n  <p>Then a paragraph.</p>\n</div>\n"
        units = parse(Document(text, format=DocumentFormat.HTML))
        assert [u.content for u in units] == ["Loose text with bold words.", "Then a paragraph."]
        assert units[0].text == "Loose text with <b>bold</b> words."

    def test_html_skips_scripts_and_comments(self):
        text = (
            "<head><title>Ignored</title><style>p { color: red }</style></head>\n"
            "<!-- build notes -->\n<p>Visible text here.</p>\n"
            "<script>var x = 1;</script>\n"
        )
        units = parse(Document(text, format=DocumentFormat.HTML))
        assert [u.content for u in units] == ["Visible text here."]

    def test_html_unclosed_paragraphs(self):
        text = "<section>\n<p>First point here.\n<h2>Next</h2>\n</section>\n"
        units = parse(Document(text, format=DocumentFormat.HTML))
        assert [(u.kind, u.content) for u in units] == [
            (UnitKind.PARAGRAPH, "First point here."),
            (UnitKind.HEADING, "Next"),
        ]

    def test_html_sensitivity_markers(self):
        text = (
            "<p>Public introduction text.</p>\n"
            "<!-- sensitive:start -->\n<p>Internal hostnames live here.</p>\n"
            "<!-- sensitive:end -->\n"
        )
        units = parse(Document(text, format=DocumentFormat.HTML))
        assert [u.sensitivity for u in units] == [
            SensitivityLabel.UNLABELED,
            SensitivityLabel.SENSITIVE,
        ]

    def test_tex(self):
        text = (
            "\\documentclass{article}\n\\begin{document}\n"
            "\\section{Introduction}\nThis tool converts data files.\n"
            "\\begin{verbatim}\nmake all\n\\end{verbatim}\n"
            "\\begin{itemize}\n\\item Fast\n\\end{itemize}\n"
            "\\end{document}\n"
        )
        units = parse(Document(text, format=DocumentFormat.TEX))
        assert [(u.kind, u.level) for u in units] == [
            (UnitKind.HEADING, 2),
            (UnitKind.PARAGRAPH, 0),
            (UnitKind.CODE_BLOCK, 0),
            (UnitKind.LIST, 0),
        ]
        assert units[1].content == "This tool converts data files."
        assert units[2].content == "make all"

    def test_plain(self):
        text = (
            "USER GUIDE\n\nOverview\n--------\n\nThis guide covers the basics.\n\n"
            "    run-tool --help\n\n- first point\n- second point\n"
        )
        units = parse(Document(text, format=DocumentFormat.PLAIN))
        assert [(u.kind, u.level) for u in units] == [
            (UnitKind.HEADING, 1),
            (UnitKind.HEADING, 2),
            (UnitKind.PARAGRAPH, 0),
            (UnitKind.CODE_BLOCK, 0),
            (UnitKind.LIST, 0),
        ]
        assert units[1].content == "Overview"

    def test_notebook_offsets_refer_to_the_cell_view(self, notebook):
        units = parse(notebook)
        body = body_of(notebook)
        assert [u.kind for u in units] == [UnitKind.HEADING, UnitKind.PARAGRAPH, UnitKind.CODE_BLOCK]
        for unit in units:
            assert body[unit.span.start : unit.span.end] == unit.text
        assert units[2].text == "import pandas as pd\ndf = pd.read_csv('data.csv')"

    def test_notebook_view_cells(self, notebook):
        view = notebook_view(notebook)
        assert [c.cell_type for c in view.cells] == ["markdown", "code"]
        assert view.text.startswith("# Notebook\n")


class TestMalformedInput:
    @pytest.mark.parametrize("text", ["", "   \n\n\t", "abc\x00def"])
    def test_empty_or_binary_text(self, text):
        with pytest.raises(MalformedInputError):
            parse(Document(text))

    def test_no_units(self):
        with pytest.raises(MalformedInputError):
            parse(Document("---\n\n***\n"))

    def test_undecodable_bytes(self):
        with pytest.raises(MalformedInputError):
            Document.from_bytes(b"\xff\xfe\x00\x81")

    def test_empty_bytes_parse_as_malformed(self):
        with pytest.raises(MalformedInputError):
            parse(Document.from_bytes(b""))

    def test_unknown_format(self):
        with pytest.raises(MalformedInputError, match="Unsupported document format"):
            DocumentFormat.resolve("docx")

    def test_invalid_notebook_json(self):
        with pytest.raises(MalformedInputError):
            parse(Document("{not json", format=DocumentFormat.NOTEBOOK))

    def test_error_payload(self):
        with pytest.raises(MalformedInputError) as info:
            parse(Document(""))
        assert info.value.to_dict()["kind"] == "malformed_input"


class TestDocumentMetadata:
    @pytest.mark.parametrize(
        ("name", "kind"),
        [
            ("README.md", DocumentKind.README),
            ("docs/CHANGELOG.rst", DocumentKind.CHANGELOG),
            ("api-reference.md", DocumentKind.API_REFERENCE),
            ("tutorial.adoc", DocumentKind.TUTORIAL),
            ("notes.txt", DocumentKind.GENERIC),
            (None, DocumentKind.GENERIC),
        ],
    )
    def test_kind_inferred_from_name(self, name, kind):
        assert DocumentKind.infer(name) is kind

    def test_from_bytes_resolves_extension(self):
        document = Document.from_bytes(b"Hello there.", ".rst", name="README.rst")
        assert document.format is DocumentFormat.RST
        assert document.kind is DocumentKind.README


class TestRenderSection:
    def test_markdown(self):
        assert render_section(DocumentFormat.MARKDOWN, "License", "MIT.", 2) == "## License\n\nMIT."

    def test_rst_uses_underline(self):
        assert render_section(DocumentFormat.RST, "Usage", "Run it.", 2) == "Usage\n-----\n\nRun it."

    def test_html_escapes(self):
        out = render_section(DocumentFormat.HTML, "Q&A", "Ask <here>.", 2)
        assert out == "<h2>Q&amp;A</h2>\n\n<p>Ask &lt;here&gt;.</p>"

    def test_rendered_section_parses_back(self):
        for fmt in (
            DocumentFormat.MARKDOWN,
            DocumentFormat.RST,
            DocumentFormat.ADOC,
            DocumentFormat.HTML,
            DocumentFormat.TEX,
        ):
            text = "Intro sentence here.\n\n" + render_section(fmt, "License", "Licensed under MIT.", 2)
            units = parse(Document(text, format=fmt))
            assert [u.kind for u in units] == [
                UnitKind.PARAGRAPH,
                UnitKind.HEADING,
                UnitKind.PARAGRAPH,
            ], fmt
            assert units[1].content == "License"


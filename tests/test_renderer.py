from __future__ import annotations

import json
import re
import unittest
from html.parser import HTMLParser

from askpop.renderer import (
    BRIDGE_OBJECT_NAME,
    DIAGRAM_ELEMENT_ID,
    SERIALIZE_DOCUMENT_JS,
    DocumentRenderer,
    RenderMode,
    placeholder_html,
    script_string_literal,
)

NASTY_SOURCE = (
    'graph TD\n  A["quote \\" and `tick` ${x}"] --> B</script><script>alert(1)</script>\n'
    "  B --> C & D \u2028 \u2029 \\n literal\n"
)


class _ScriptScanner(HTMLParser):
    """Collects script bodies and any markup that leaks into the page body."""

    def __init__(self) -> None:
        super().__init__()
        self.scripts: list[str] = []
        self.stray_tags: list[str] = []
        self._in_body = False
        self._in_script = False

    def handle_starttag(self, tag, attrs):
        if tag == "body":
            self._in_body = True
        elif tag == "script":
            self._in_script = True
            self.scripts.append("")
        elif self._in_body and tag != "article":
            self.stray_tags.append(tag)

    def handle_endtag(self, tag):
        if tag == "script":
            self._in_script = False

    def handle_data(self, data):
        if self._in_script:
            self.scripts[-1] += data

    def handle_comment(self, data):
        if self._in_body:
            self.stray_tags.append("!--")


class ScriptLiteralTests(unittest.TestCase):
    def test_round_trip_preserves_text(self) -> None:
        for text in ("", "plain", NASTY_SOURCE, "中文 <b>粗体</b>", "\\", "\t\r\n"):
            with self.subTest(text=text):
                self.assertEqual(json.loads(script_string_literal(text)), text)

    def test_literal_cannot_close_script_element(self) -> None:
        literal = script_string_literal(NASTY_SOURCE)
        self.assertNotIn("</script", literal.lower())
        self.assertNotIn("<", literal)
        self.assertNotIn("\u2028", literal)
        self.assertNotIn("\u2029", literal)


class DocumentRendererTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.renderer = DocumentRenderer()

    def test_empty_input_renders_placeholder(self) -> None:
        page = self.renderer.build_page("   \n", RenderMode.MERMAID, token=3)
        self.assertIn("Please enter Mermaid code", page)
        self.assertIn('"empty"', page)
        self.assertIn("window.__askpopToken = 3;", page)

        page = self.renderer.build_page("", RenderMode.MARKDOWN)
        self.assertIn("Please enter Markdown content", page)

    def test_placeholder_escapes_message(self) -> None:
        page = placeholder_html("<b>hi</b>")
        self.assertIn("&lt;b&gt;hi&lt;/b&gt;", page)

    def test_mermaid_page_embeds_source_as_literal(self) -> None:
        page = self.renderer.build_page(NASTY_SOURCE, RenderMode.MERMAID, token=9)
        self.assertEqual(page.lower().count("</script>"), page.lower().count("<script"))
        self.assertNotIn("alert(1)</script>", page)
        match = re.search(r"const source = (\".*?\");\n", page)
        self.assertIsNotNone(match)
        self.assertEqual(json.loads(match.group(1)), NASTY_SOURCE.strip())
        self.assertIn(DIAGRAM_ELEMENT_ID, page)
        self.assertIn(json.dumps(BRIDGE_OBJECT_NAME), page)
        self.assertIn("window.__askpopToken = 9;", page)

    def test_markdown_mermaid_fence_becomes_diagram_block(self) -> None:
        body, env = self.renderer.render_markdown_body("# Title\n\n```mermaid\ngraph TD\n  A-->B\n```\n")
        self.assertEqual(env["mermaid_count"], 1)
        self.assertIn('<div class="mermaid"', body)
        self.assertIn("A--&gt;B", body)
        self.assertFalse(env["has_math"])

    def test_markdown_math_is_flagged(self) -> None:
        body, env = self.renderer.render_markdown_body("Euler: $e^{i\\pi} + 1 = 0$\n")
        self.assertTrue(env["has_math"])
        self.assertIn("$e^{i\\pi} + 1 = 0$", body)

    def test_markdown_tables_and_code_render(self) -> None:
        body, _env = self.renderer.render_markdown_body(
            "| a | b |\n|---|---|\n| 1 | 2 |\n\n```python\nprint('<x>')\n```\n"
        )
        self.assertIn("<table>", body)
        self.assertIn("&lt;x&gt;", body)

    def test_markdown_page_reports_completion(self) -> None:
        page = self.renderer.build_page("hello **world**", RenderMode.MARKDOWN, token=2)
        self.assertIn(script_string_literal("<strong>world</strong>")[1:-1], page)
        self.assertIn("__askpopNotify(\"success\"", page)
        self.assertIn("window.__askpopToken = 2;", page)

    def test_markdown_markup_cannot_swallow_completion_script(self) -> None:
        for text in ("hello\n\n<!--\nworld", "hello\n\n<textarea>\nworld", "<title>\nhi", "<script>x = 1"):
            with self.subTest(text=text):
                page = self.renderer.build_page(text, RenderMode.MARKDOWN, token=4)
                scanner = _ScriptScanner()
                scanner.feed(page)
                scanner.close()
                notifying = [script for script in scanner.scripts if "__askpopNotify(" in script]
                self.assertEqual(len(notifying), 1)
                self.assertEqual(scanner.stray_tags, [])

                body, _env = self.renderer.render_markdown_body(text)
                match = re.search(r"content\.innerHTML = (\".*?\");\n", page)
                self.assertIsNotNone(match)
                self.assertEqual(json.loads(match.group(1)), body)

    def test_mermaid_sources_fall_back_to_cdn(self) -> None:
        sources = self.renderer.mermaid_sources
        self.assertTrue(sources)
        self.assertTrue(sources[-1].startswith("https://"))

    def test_serializer_strips_scripts(self) -> None:
        self.assertIn('querySelectorAll("script")', SERIALIZE_DOCUMENT_JS)


if __name__ == "__main__":
    unittest.main()

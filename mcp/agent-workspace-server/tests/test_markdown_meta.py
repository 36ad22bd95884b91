"""
Tests for markdown frontmatter handling.

Run with: pytest tests/test_markdown_meta.py -v
"""

from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from agent_workspace_server import markdown_meta


class TestParse:
    def test_frontmatter_and_body(self):
        result = markdown_meta.parse("---\nid: T039\nparent: PRD-001 / E003\n---\n\n# Title\n")
        assert result["data"] == {"id": "T039", "parent": "PRD-001 / E003"}
        assert result["body"] == "# Title\n"

    def test_no_frontmatter(self):
        content = "# Just a heading\n"
        assert markdown_meta.parse(content) == {"data": {}, "body": content}

    def test_text_before_delimiter_is_not_frontmatter(self):
        content = "intro\n---\nid: T1\n---\n"
        assert markdown_meta.parse(content)["data"] == {}

    def test_invalid_yaml(self):
        content = "---\nid: [broken\n---\nbody"
        assert markdown_meta.parse(content) == {"data": {}, "body": content}

    def test_dashes_inside_value_do_not_close_block(self):
        content = "---\ntitle: Login --- form\nstatus: Done\nparent: PRD-001 / E003\n---\nbody --- text\n"
        result = markdown_meta.parse(content)
        assert result["data"] == {"title": "Login --- form", "status": "Done", "parent": "PRD-001 / E003"}
        assert result["body"] == "body --- text\n"

    def test_closing_fence_must_be_own_line(self):
        content = "---\ntitle: A\nstatus: Todo ---\n"
        assert markdown_meta.parse(content) == {"data": {}, "body": content}

    def test_crlf_fences(self):
        result = markdown_meta.parse("---\r\nid: T1\r\n---\r\nbody\r\n")
        assert result["data"] == {"id": "T1"}
        assert result["body"] == "body\r\n"

    def test_scalar_frontmatter_ignored(self):
        assert markdown_meta.parse("---\njust text\n---\nbody")["data"] == {}


class TestStringify:
    def test_preserves_key_order(self):
        text = markdown_meta.stringify({"status": "Todo", "id": "T1"}, "# Body\n")
        assert text.startswith("---\nstatus: Todo\nid: T1\n---\n\n# Body")

    def test_parse_reads_stringified(self, tmp_path):
        path = tmp_path / "T001.md"
        path.write_text(markdown_meta.stringify({"id": "T001", "title": "Täsk"}, "body\n"), encoding="utf-8")
        loaded = markdown_meta.load(path)
        assert loaded["data"]["title"] == "Täsk"
        assert loaded["body"] == "body\n"

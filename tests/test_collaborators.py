"""
Tests for the filesystem collaborators: directives, project facts, file
reading, editing and syntax validation.
"""

import json

import pytest

from toolflow_mcp.collaborators import (
    AgentsFileDirectiveProvider,
    LocalFileReader,
    ProjectFactDetector,
    SyntaxValidator,
    WorkspaceEditor,
    parse_directives,
    resolve_in_root,
)
from toolflow_mcp.collaborators.editor import summarize_diff
from toolflow_mcp.collaborators.validator import bracket_errors
from toolflow_mcp.errors import ScopeViolation
from toolflow_mcp.interfaces import EditStep


class TestDirectives:

    def test_priority_ordering(self):
        content = (
            "# Style\n"
            "- Prefer small functions\n"
            "- You MAY use dataclasses\n"
            "## CRITICAL rules\n"
            "1. Never log secrets\n"
            "2) Keep the public API stable\n"
            "## Notes\n"
            "* ALWAYS run the linter\n"
        )

        assert parse_directives(content) == [
            "Never log secrets",
            "Keep the public API stable",
            "ALWAYS run the linter",
            "Prefer small functions",
            "You MAY use dataclasses",
        ]

    def test_code_blocks_ignored(self):
        content = "- real item\n```\n- not an item\n```\n"

        assert parse_directives(content) == ["real item"]

    @pytest.mark.asyncio
    async def test_reads_project_agents_file(self, project_dir):
        directives = await AgentsFileDirectiveProvider(project_dir).read()

        assert directives == ["Run the tests before committing", "Use type hints"]

    @pytest.mark.asyncio
    async def test_docs_location(self, tmp_path):
        (tmp_path / "docs").mkdir()
        (tmp_path / "docs" / "AGENTS.md").write_text("- from docs\n")

        assert await AgentsFileDirectiveProvider(tmp_path).read() == ["from docs"]

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path):
        assert await AgentsFileDirectiveProvider(tmp_path).read() == []


class TestProjectFacts:

    @pytest.mark.asyncio
    async def test_python_project(self, project_dir):
        facts = await ProjectFactDetector(project_dir).detect()

        assert facts == {
            "language:python",
            "framework:fastapi",
            "dep:fastapi@0.110.0",
            "structure:src",
            "structure:tests",
        }

    @pytest.mark.asyncio
    async def test_javascript_project(self, tmp_path):
        (tmp_path / "package.json").write_text(json.dumps({
            "dependencies": {"react": "^18.2.0"},
            "devDependencies": {"typescript": "5.4.0"},
        }))

        facts = await ProjectFactDetector(tmp_path).detect()

        assert facts == {
            "language:javascript",
            "language:typescript",
            "framework:react",
            "dep:react@18.2.0",
        }

    @pytest.mark.asyncio
    async def test_version_change_changes_facts(self, project_dir):
        before = await ProjectFactDetector(project_dir).detect()
        (project_dir / "requirements.txt").write_text("fastapi==0.111.0\n")
        after = await ProjectFactDetector(project_dir).detect()

        assert "dep:fastapi@0.111.0" in after
        assert before != after

    @pytest.mark.asyncio
    async def test_invalid_package_json(self, tmp_path):
        (tmp_path / "package.json").write_text("{not json")

        assert await ProjectFactDetector(tmp_path).detect() == {"language:javascript"}

    @pytest.mark.asyncio
    async def test_empty_directory(self, tmp_path):
        assert await ProjectFactDetector(tmp_path).detect() == set()


class TestFileReader:

    def test_resolve_inside_root(self, tmp_path):
        assert resolve_in_root(tmp_path, "src/app.py") == (tmp_path / "src" / "app.py").resolve()

    @pytest.mark.parametrize("path", ["../outside.py", "/etc/passwd", "", "a\x00b"])
    def test_resolve_rejects(self, tmp_path, path):
        with pytest.raises(ScopeViolation):
            resolve_in_root(tmp_path, path)

    @pytest.mark.asyncio
    async def test_read_preview(self, project_dir):
        text = await LocalFileReader(project_dir).read("src/app.py")

        assert text.startswith("def handler():")

    @pytest.mark.asyncio
    async def test_truncates_long_files(self, tmp_path):
        (tmp_path / "big.py").write_text("x" * 50)

        text = await LocalFileReader(tmp_path, preview_chars=10).read("big.py")

        assert text == "x" * 10 + "\n... (preview truncated)"

    @pytest.mark.asyncio
    async def test_latin1_fallback(self, tmp_path):
        (tmp_path / "legacy.py").write_bytes(b"name = 'caf\xe9'\n")

        assert "café" in await LocalFileReader(tmp_path).read("legacy.py")

    @pytest.mark.asyncio
    async def test_missing_file_raises_oserror(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            await LocalFileReader(tmp_path).read("missing.py")


class TestWorkspaceEditor:

    def test_summarize_diff(self):
        diff = ["--- a/x", "+++ b/x", "@@ -1 +1 @@", "-old", "+new", " same"]

        assert summarize_diff(diff) == (2, 1)

    @pytest.mark.asyncio
    async def test_dry_run_leaves_file(self, tmp_path):
        target = tmp_path / "a.py"
        target.write_text("x = 1\n")
        editor = WorkspaceEditor(tmp_path, write=True)

        [edit] = await editor.apply([EditStep("a.py", "x = 2\n")], dry_run=True)

        assert edit.lines_changed == 2
        assert edit.hunks == 1
        assert edit.written is False
        assert "+x = 2" in edit.diff
        assert target.read_text() == "x = 1\n"

    @pytest.mark.asyncio
    async def test_writes_when_enabled(self, tmp_path):
        editor = WorkspaceEditor(tmp_path, write=True)

        [edit] = await editor.apply([EditStep("pkg/new.py", "VALUE = 1\n")])

        assert edit.written is True
        assert edit.created is True
        assert (tmp_path / "pkg" / "new.py").read_text() == "VALUE = 1\n"

    @pytest.mark.asyncio
    async def test_never_writes_when_disabled(self, tmp_path):
        editor = WorkspaceEditor(tmp_path)

        [edit] = await editor.apply([EditStep("new.py", "VALUE = 1\n")])

        assert edit.written is False
        assert not (tmp_path / "new.py").exists()

    @pytest.mark.asyncio
    async def test_unchanged_content_not_rewritten(self, tmp_path):
        (tmp_path / "a.py").write_text("x = 1\n")

        [edit] = await WorkspaceEditor(tmp_path, write=True).apply([EditStep("a.py", "x = 1\n")])

        assert edit.written is False
        assert edit.hunks == 0

    @pytest.mark.asyncio
    async def test_escape_refused(self, tmp_path):
        with pytest.raises(ScopeViolation):
            await WorkspaceEditor(tmp_path, write=True).apply([EditStep("../evil.py", "")])


class TestSyntaxValidator:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("artifact,content,passed", [
        ("ok.py", "def f():\n    return 1\n", True),
        ("bad.py", "def f(:\n", False),
        ("ok.json", '{"a": [1, 2]}', True),
        ("bad.json", "{", False),
        ("ok.ts", "function f(a: number[]) { return [a]; }", True),
        ("bad.ts", "function f() { return [1, 2; }", False),
        ("README.md", "anything (", True),
    ])
    async def test_check(self, artifact, content, passed):
        outcome = await SyntaxValidator().check(artifact, content)

        assert outcome.artifact == artifact
        assert outcome.passed is passed
        assert outcome.details

    def test_brackets_skip_strings_and_comments(self):
        source = "const s = '}'; // )\n/* ( */ f();"

        assert bracket_errors(source) == []

    def test_unclosed_bracket_reports_line(self):
        assert bracket_errors("if (a) {\n") == ["line 1: unclosed '{'"]

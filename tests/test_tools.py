"""Tests for the built-in tools."""

import os
import time

import pytest

from chatrelay.tools.bash import BashTool, is_blocked
from chatrelay.tools.files import EditTool, ReadTool, WriteTool
from chatrelay.tools.search import GlobTool, GrepTool


# ── Bash ──────────────────────────────────────────────────────────────────────


def test_bash_runs_in_working_directory(tool_context, workdir):
    result = BashTool().execute({"command": "pwd"}, tool_context)
    assert not result.is_error
    assert result.output == str(workdir.resolve()) or result.output == str(workdir)


def test_bash_nonzero_exit_is_error(tool_context):
    result = BashTool().execute({"command": "echo oops >&2; exit 3"}, tool_context)
    assert result.is_error
    assert result.output.startswith("Exit code 3:")
    assert "oops" in result.output


def test_bash_no_output(tool_context):
    assert BashTool().execute({"command": "true"}, tool_context).output == "(no output)"


def test_bash_timeout(tool_context):
    result = BashTool().execute({"command": "sleep 5", "timeout": 1}, tool_context)
    assert result.is_error
    assert "timed out after 1 seconds" in result.output


def test_bash_output_truncated(tool_context):
    tool_context.max_output_length = 50
    result = BashTool().execute({"command": "yes x | head -n 200"}, tool_context)
    assert "[Output truncated at 50 characters]" in result.output


@pytest.mark.parametrize("command", ["rm -rf /", "rm -fr / ", "mkfs.ext4 /dev/sda1", ":(){ :|:& };:"])
def test_bash_blocks_destructive_commands(command, tool_context):
    assert is_blocked(command)
    result = BashTool().execute({"command": command}, tool_context)
    assert result.is_error
    assert "blocked" in result.output


def test_bash_requires_command(tool_context):
    result = BashTool().execute({}, tool_context)
    assert result.is_error
    assert result.output == "command is required"


@pytest.mark.asyncio
async def test_bash_async_path_matches_sync(tool_context):
    result = await BashTool().aexecute({"command": "echo oops >&2; exit 3"}, tool_context)
    assert result.is_error
    assert result.output.startswith("Exit code 3:")
    assert (await BashTool().aexecute({"command": "rm -rf /"}, tool_context)).output == "Command blocked for safety reasons"


@pytest.mark.asyncio
async def test_bash_async_timeout_kills_process_group(tool_context, workdir):
    started = time.monotonic()
    result = await BashTool().aexecute(
        {"command": "echo $$ > pid.txt; sleep 30", "timeout": 1}, tool_context
    )
    assert result.output == "Command timed out after 1 seconds"
    assert time.monotonic() - started < 10
    with pytest.raises(ProcessLookupError):
        os.kill(int((workdir / "pid.txt").read_text()), 0)


# ── Read / Write / Edit ───────────────────────────────────────────────────────


def test_read_numbers_lines(tool_context, workdir):
    (workdir / "a.txt").write_text("one\ntwo\nthree\n")
    result = ReadTool().execute({"file_path": "a.txt"}, tool_context)
    assert result.output == "     1\tone\n     2\ttwo\n     3\tthree"


def test_read_offset_and_limit_adds_footer(tool_context, workdir):
    (workdir / "a.txt").write_text("\n".join(f"line {i}" for i in range(1, 11)))
    result = ReadTool().execute({"file_path": "a.txt", "offset": 3, "limit": 2}, tool_context)
    assert result.output.splitlines()[0] == "     3\tline 3"
    assert result.output.endswith("[Showing lines 3-4 of 10]")


def test_read_empty_and_missing(tool_context, workdir):
    (workdir / "empty.txt").write_text("")
    assert ReadTool().execute({"file_path": "empty.txt"}, tool_context).output == "(empty file)"
    missing = ReadTool().execute({"file_path": "nope.txt"}, tool_context)
    assert missing.is_error
    assert "File not found" in missing.output


def test_read_outside_root_is_denied(tool_context, tmp_path):
    (tmp_path / "secret.txt").write_text("x")
    result = ReadTool().execute({"file_path": str(tmp_path / "secret.txt")}, tool_context)
    assert result.is_error
    assert result.output.startswith("Access denied:")


def test_write_creates_parents(tool_context, workdir):
    result = WriteTool().execute({"file_path": "sub/dir/f.txt", "content": "a\nb"}, tool_context)
    assert not result.is_error
    assert result.output == "Created 3 bytes (2 lines) to sub/dir/f.txt"
    assert (workdir / "sub" / "dir" / "f.txt").read_text() == "a\nb"

    again = WriteTool().execute({"file_path": "sub/dir/f.txt", "content": "c"}, tool_context)
    assert again.output.startswith("Wrote 1 bytes")


def test_edit_unique_match(tool_context, workdir):
    path = workdir / "f.py"
    path.write_text("x = 1\ny = 2\n")
    result = EditTool().execute({"file_path": "f.py", "old_string": "y = 2", "new_string": "y = 3"}, tool_context)
    assert result.output == "File updated successfully"
    assert path.read_text() == "x = 1\ny = 3\n"


def test_edit_ambiguous_match_needs_replace_all(tool_context, workdir):
    path = workdir / "f.txt"
    path.write_text("a a a")
    result = EditTool().execute({"file_path": "f.txt", "old_string": "a", "new_string": "b"}, tool_context)
    assert result.is_error
    assert "appears 3 times" in result.output

    result = EditTool().execute(
        {"file_path": "f.txt", "old_string": "a", "new_string": "b", "replace_all": True}, tool_context
    )
    assert result.output == "Replaced 3 occurrence(s)"
    assert path.read_text() == "b b b"


def test_edit_not_found(tool_context, workdir):
    (workdir / "f.txt").write_text("hello")
    result = EditTool().execute({"file_path": "f.txt", "old_string": "bye", "new_string": "x"}, tool_context)
    assert result.is_error
    assert result.output.startswith("old_string not found")


# ── Glob / Grep ───────────────────────────────────────────────────────────────


def test_glob_newest_first(tool_context, workdir):
    old = workdir / "old.py"
    new = workdir / "pkg" / "new.py"
    new.parent.mkdir()
    old.write_text("")
    new.write_text("")
    past = time.time() - 100
    os.utime(old, (past, past))
    (workdir / "notes.txt").write_text("")

    result = GlobTool().execute({"pattern": "**/*.py"}, tool_context)
    assert result.output.splitlines() == ["pkg/new.py", "old.py"]


def test_glob_limit_and_no_match(tool_context, workdir):
    for i in range(5):
        (workdir / f"f{i}.txt").write_text("")
    result = GlobTool().execute({"pattern": "*.txt", "limit": 2}, tool_context)
    assert result.output.endswith("[Limited to 2 results]")
    assert GlobTool().execute({"pattern": "*.md"}, tool_context).output == "No files found matching pattern"


def _grep_tree(workdir):
    (workdir / "a.py").write_text("import os\nprint('Hello')\n")
    (workdir / "b.txt").write_text("hello world\nbye\nhello again\n")
    hidden = workdir / ".git"
    hidden.mkdir()
    (hidden / "config").write_text("hello hidden\n")
    (workdir / "bin.dat").write_bytes(b"hello\0binary")


def test_grep_files_with_matches(tool_context, workdir):
    _grep_tree(workdir)
    result = GrepTool().execute({"pattern": "hello"}, tool_context)
    assert result.output.splitlines() == ["b.txt"]


def test_grep_case_insensitive_count(tool_context, workdir):
    _grep_tree(workdir)
    result = GrepTool().execute({"pattern": "hello", "case_insensitive": True, "output_mode": "count"}, tool_context)
    assert result.output.splitlines() == ["a.py:1", "b.txt:2"]


def test_grep_content_with_context(tool_context, workdir):
    _grep_tree(workdir)
    result = GrepTool().execute(
        {"pattern": "^hello", "output_mode": "content", "glob": "*.txt", "context": 0}, tool_context
    )
    assert result.output.splitlines() == ["b.txt:1:hello world", "b.txt:3:hello again"]


def test_grep_no_matches_and_bad_regex(tool_context, workdir):
    _grep_tree(workdir)
    assert GrepTool().execute({"pattern": "zzz"}, tool_context).output == "No matches found"
    bad = GrepTool().execute({"pattern": "("}, tool_context)
    assert bad.is_error
    assert bad.output.startswith("Invalid regular expression")

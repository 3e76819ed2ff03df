from __future__ import annotations

import pytest

from agentweb.engine.errors import NotFoundError, PathViolation, ValidationError
from agentweb.engine.tools.files import DiffTool, EditTool, ReadTool, WriteTool


@pytest.mark.asyncio
async def test_write_outside_working_dir_is_rejected_without_touching_disk(tmp_path) -> None:
    root = tmp_path / "project"
    root.mkdir()
    outside = tmp_path / "escape.txt"

    with pytest.raises(PathViolation):
        await WriteTool().execute({"file_path": "../escape.txt", "content": "x"}, str(root))

    assert not outside.exists()


@pytest.mark.asyncio
async def test_symlink_pointing_outside_is_rejected(tmp_path) -> None:
    root = tmp_path / "project"
    root.mkdir()
    secret = tmp_path / "secret.txt"
    secret.write_text("top secret", encoding="utf-8")
    (root / "link.txt").symlink_to(secret)

    with pytest.raises(PathViolation):
        await ReadTool().execute({"file_path": "link.txt"}, str(root))


@pytest.mark.asyncio
async def test_write_creates_parents_and_reports_counts(tmp_path) -> None:
    result = await WriteTool().execute(
        {"file_path": "src/pkg/mod.py", "content": "a = 1\nb = 2\n"}, str(tmp_path)
    )
    assert not result.is_error
    assert result.content.startswith("Created src/pkg/mod.py")
    assert "12 bytes, 2 lines" in result.content
    assert (tmp_path / "src" / "pkg" / "mod.py").read_text(encoding="utf-8") == "a = 1\nb = 2\n"

    again = await WriteTool().execute({"file_path": "src/pkg/mod.py", "content": ""}, str(tmp_path))
    assert again.content.startswith("Overwrote src/pkg/mod.py")


@pytest.mark.asyncio
async def test_read_numbers_lines_and_honours_offset_and_limit(tmp_path) -> None:
    (tmp_path / "f.txt").write_text("\n".join(f"line {i}" for i in range(1, 11)), encoding="utf-8")

    result = await ReadTool().execute({"file_path": "f.txt", "offset": 3, "limit": 2}, str(tmp_path))

    lines = result.content.splitlines()
    assert lines[0] == "File: f.txt (lines 3-4 of 10)"
    assert lines[1] == "     3\tline 3"
    assert lines[2] == "     4\tline 4"
    assert len(lines) == 3


@pytest.mark.asyncio
async def test_read_empty_file(tmp_path) -> None:
    (tmp_path / "empty.txt").write_text("", encoding="utf-8")
    result = await ReadTool().execute({"file_path": "empty.txt"}, str(tmp_path))
    assert not result.is_error
    assert "(lines 0-0 of 0)" in result.content
    assert "(empty file)" in result.content


@pytest.mark.asyncio
async def test_read_missing_and_binary_files(tmp_path) -> None:
    with pytest.raises(NotFoundError):
        await ReadTool().execute({"file_path": "nope.txt"}, str(tmp_path))

    (tmp_path / "blob.bin").write_bytes(b"\xff\xfe\x00\x81")
    with pytest.raises(ValidationError):
        await ReadTool().execute({"file_path": "blob.bin"}, str(tmp_path))


@pytest.mark.asyncio
async def test_edit_replaces_only_first_occurrence_by_default(tmp_path) -> None:
    path = tmp_path / "a.txt"
    path.write_text("x + x", encoding="utf-8")

    result = await EditTool().execute(
        {"file_path": "a.txt", "old_string": "x", "new_string": "y"}, str(tmp_path)
    )

    assert not result.is_error
    assert "replaced 1 occurrence" in result.content
    assert path.read_text(encoding="utf-8") == "y + x"


@pytest.mark.asyncio
async def test_edit_replace_all(tmp_path) -> None:
    path = tmp_path / "a.txt"
    path.write_text("x + x", encoding="utf-8")

    result = await EditTool().execute(
        {"file_path": "a.txt", "old_string": "x", "new_string": "y", "replace_all": True},
        str(tmp_path),
    )

    assert "replaced 2 occurrences" in result.content
    assert path.read_text(encoding="utf-8") == "y + y"


@pytest.mark.asyncio
async def test_edit_not_found_shows_preview_and_leaves_file(tmp_path) -> None:
    path = tmp_path / "a.txt"
    path.write_text("alpha\nbeta\n", encoding="utf-8")

    result = await EditTool().execute(
        {"file_path": "a.txt", "old_string": "gamma", "new_string": "delta"}, str(tmp_path)
    )

    assert result.is_error
    assert "old_string not found in a.txt" in result.content
    assert "Searched for:\ngamma" in result.content
    assert "alpha\nbeta" in result.content
    assert path.read_text(encoding="utf-8") == "alpha\nbeta\n"


@pytest.mark.asyncio
async def test_edit_identical_strings_rejected(tmp_path) -> None:
    (tmp_path / "a.txt").write_text("same", encoding="utf-8")
    with pytest.raises(ValidationError):
        await EditTool().execute(
            {"file_path": "a.txt", "old_string": "same", "new_string": "same"}, str(tmp_path)
        )


@pytest.mark.asyncio
async def test_diff_summarizes_and_shows_unified_diff(tmp_path) -> None:
    (tmp_path / "old.txt").write_text("one\ntwo\nthree\nfour\n", encoding="utf-8")
    (tmp_path / "new.txt").write_text("one\n2\nthree\nfour\nfive\n", encoding="utf-8")

    result = await DiffTool().execute({"file1": "old.txt", "file2": "new.txt", "context": 0}, str(tmp_path))

    assert not result.is_error
    summary, _, diff = result.content.partition("\n\n")
    assert summary == "2 lines added, 1 lines removed"
    assert diff.splitlines()[:2] == ["--- old.txt", "+++ new.txt"]
    assert "-two" in diff and "+2" in diff and "+five" in diff
    assert " three" not in diff


@pytest.mark.asyncio
async def test_diff_identical_missing_and_bad_context(tmp_path) -> None:
    (tmp_path / "a.txt").write_text("same\n", encoding="utf-8")
    (tmp_path / "b.txt").write_text("same\n", encoding="utf-8")

    same = await DiffTool().execute({"file1": "a.txt", "file2": "b.txt"}, str(tmp_path))
    assert same.content == "a.txt and b.txt are identical"

    with pytest.raises(NotFoundError):
        await DiffTool().execute({"file1": "a.txt", "file2": "c.txt"}, str(tmp_path))
    with pytest.raises(ValidationError):
        await DiffTool().execute({"file1": "a.txt", "file2": "b.txt", "context": True}, str(tmp_path))
    with pytest.raises(PathViolation):
        await DiffTool().execute({"file1": "a.txt", "file2": "../outside.txt"}, str(tmp_path))

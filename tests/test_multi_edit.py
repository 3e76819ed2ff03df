from __future__ import annotations

import pytest

from agentweb.engine.errors import ValidationError
from agentweb.engine.tools.files import MultiEditTool


def _edits(*pairs):
    return [{"old_string": old, "new_string": new} for old, new in pairs]


@pytest.mark.asyncio
async def test_multi_edit_is_all_or_nothing(tmp_path) -> None:
    path = tmp_path / "code.py"
    path.write_text("def foo():\n    return 1\n", encoding="utf-8")

    result = await MultiEditTool().execute(
        {"file_path": "code.py", "edits": _edits(("foo", "bar"), ("missing", "x"))},
        str(tmp_path),
    )

    assert result.is_error
    assert "No changes made to code.py" in result.content
    assert "1 of 2 edits failed" in result.content
    assert "Edit #2: old_string not found" in result.content
    assert path.read_text(encoding="utf-8") == "def foo():\n    return 1\n"


@pytest.mark.asyncio
async def test_multi_edit_reports_every_failure(tmp_path) -> None:
    path = tmp_path / "f.txt"
    path.write_text("one two two", encoding="utf-8")

    result = await MultiEditTool().execute(
        {"file_path": "f.txt", "edits": _edits(("zero", "0"), ("two", "2"), ("one", "1"))},
        str(tmp_path),
    )

    assert result.is_error
    assert "Edit #1: old_string not found" in result.content
    assert "Edit #2: old_string matches 2 times" in result.content
    assert "Edit #3" not in result.content


@pytest.mark.asyncio
async def test_multi_edit_applies_in_order(tmp_path) -> None:
    path = tmp_path / "f.txt"
    path.write_text("a-b a", encoding="utf-8")

    result = await MultiEditTool().execute(
        {"file_path": "f.txt", "edits": _edits(("a-b", "x"), ("a", "y"))},
        str(tmp_path),
    )

    assert not result.is_error
    assert result.content == "Applied 2 edits to f.txt"
    assert path.read_text(encoding="utf-8") == "x y"


@pytest.mark.asyncio
async def test_later_edit_may_target_text_from_an_earlier_one(tmp_path) -> None:
    path = tmp_path / "f.txt"
    path.write_text("hello", encoding="utf-8")

    result = await MultiEditTool().execute(
        {"file_path": "f.txt", "edits": _edits(("hello", "hello world"), ("world", "there"))},
        str(tmp_path),
    )

    assert not result.is_error
    assert path.read_text(encoding="utf-8") == "hello there"


def test_validate_skips_failed_edits_and_keeps_checking() -> None:
    failures = MultiEditTool.validate("abc", [("zzz", "q"), ("abc", "x"), ("x", "y")])
    assert failures == ["Edit #1: old_string not found"]


@pytest.mark.asyncio
async def test_multi_edit_rejects_malformed_edits(tmp_path) -> None:
    (tmp_path / "f.txt").write_text("abc", encoding="utf-8")
    with pytest.raises(ValidationError):
        await MultiEditTool().execute({"file_path": "f.txt", "edits": []}, str(tmp_path))
    with pytest.raises(ValidationError, match="Edit #1"):
        await MultiEditTool().execute(
            {"file_path": "f.txt", "edits": [{"old_string": "", "new_string": "x"}]}, str(tmp_path)
        )

from __future__ import annotations

import os
import time

import pytest

from agentweb.engine.errors import ValidationError
from agentweb.engine.tools.search import (
    FileTreeTool,
    FindTool,
    GlobTool,
    GrepTool,
    LsTool,
    PathMatcher,
    glob_to_regex,
    parse_age_filter,
    parse_size_filter,
)


@pytest.fixture
def project(tmp_path):
    (tmp_path / "src" / "pkg").mkdir(parents=True)
    (tmp_path / "src" / "pkg" / "core.py").write_text("def run():\n    return 'TODO: fix'\n", encoding="utf-8")
    (tmp_path / "src" / "app.ts").write_text("const x = 1;\n", encoding="utf-8")
    (tmp_path / "src" / "view.tsx").write_text("// TODO later\n", encoding="utf-8")
    (tmp_path / "README.md").write_text("# Demo\nTODO: docs\n", encoding="utf-8")
    (tmp_path / "node_modules" / "dep").mkdir(parents=True)
    (tmp_path / "node_modules" / "dep" / "index.js").write_text("// TODO vendored\n", encoding="utf-8")
    (tmp_path / "image.bin").write_bytes(b"TODO\0\0binary")
    return tmp_path


def test_glob_translation() -> None:
    assert glob_to_regex("**/*.py").match("a/b/c.py")
    assert glob_to_regex("**/*.py").match("c.py")
    assert glob_to_regex("src/*.{ts,tsx}").match("src/view.tsx")
    assert not glob_to_regex("src/*.{ts,tsx}").match("src/deep/view.tsx")
    assert glob_to_regex("file?.[ch]").match("file1.h")
    assert PathMatcher("*.md").matches("docs/guide/intro.md")


@pytest.mark.asyncio
async def test_glob_finds_files_and_skips_ignored_dirs(project) -> None:
    result = await GlobTool().execute({"pattern": "**/*.{ts,tsx,js}"}, str(project))
    assert result.content.splitlines() == ["Found 2 files", "src/app.ts", "src/view.tsx"]


@pytest.mark.asyncio
async def test_glob_no_match(project) -> None:
    result = await GlobTool().execute({"pattern": "*.rs"}, str(project))
    assert not result.is_error
    assert result.content == "No files match *.rs"


@pytest.mark.asyncio
async def test_grep_files_with_matches_default(project) -> None:
    result = await GrepTool().execute({"pattern": "TODO"}, str(project))
    lines = result.content.splitlines()
    assert lines[0] == "Found 3 files"
    assert set(lines[1:]) == {"README.md", "src/pkg/core.py", "src/view.tsx"}


@pytest.mark.asyncio
async def test_grep_content_and_count_modes(project) -> None:
    content = await GrepTool().execute(
        {"pattern": "todo", "case_insensitive": True, "output_mode": "content", "glob": "*.md"},
        str(project),
    )
    assert content.content == "README.md:2: TODO: docs"

    count = await GrepTool().execute({"pattern": "TODO", "output_mode": "count"}, str(project))
    assert "src/pkg/core.py: 1" in count.content
    assert count.content.splitlines()[-1] == "Total: 3 matches in 3 files"


@pytest.mark.asyncio
async def test_grep_no_match_and_bad_regex(project) -> None:
    result = await GrepTool().execute({"pattern": "nothing-here"}, str(project))
    assert result.content == "No matches found for pattern: nothing-here"

    with pytest.raises(ValidationError):
        await GrepTool().execute({"pattern": "("}, str(project))


@pytest.mark.asyncio
async def test_ls_lists_directories_first(project) -> None:
    result = await LsTool().execute({"path": "src"}, str(project))
    lines = result.content.splitlines()
    assert lines[0] == "src/ (3 entries)"
    assert lines[1] == "  pkg/"
    assert lines[2].startswith("  app.ts (")


@pytest.mark.asyncio
async def test_file_tree_respects_depth_and_ignores(project) -> None:
    result = await FileTreeTool().execute({"maxDepth": 1}, str(project))
    text = result.content
    assert "node_modules" not in text
    assert "├── src/" in text
    assert "core.py" not in text
    assert text.rstrip().endswith("1 directories, 2 files")

    deep = await FileTreeTool().execute({"maxDepth": 9}, str(project))
    assert "core.py" in deep.content


def _found(result) -> list[str]:
    # "file     12B  2026-01-01 10:00  src/app.ts" -> "src/app.ts"
    return [line.split("  ")[-1] for line in result.content.splitlines()[1:] if not line.startswith("(")]


def test_size_and_age_filters_parse() -> None:
    assert parse_size_filter("+1M") == ("+", 1024 ** 2)
    assert parse_size_filter("-100k") == ("-", 100 * 1024)
    assert parse_size_filter("512") == ("=", 512)
    assert parse_age_filter("-7d", now=1_000_000) == ("-", 1_000_000 - 7 * 86400)
    assert parse_age_filter("+1h", now=10_000) == ("+", 10_000 - 3600)
    with pytest.raises(ValidationError):
        parse_size_filter("big")
    with pytest.raises(ValidationError):
        parse_age_filter("7 days")


@pytest.mark.asyncio
async def test_find_by_name_and_type(project) -> None:
    (project / ".env").write_text("SECRET=1\n", encoding="utf-8")

    result = await FindTool().execute({"name": "*.TS*"}, str(project))
    assert result.content.startswith("Found 2 entries")
    assert sorted(_found(result)) == ["src/app.ts", "src/view.tsx"]

    dirs = await FindTool().execute({"type": "directory"}, str(project))
    assert sorted(_found(dirs)) == ["src", "src/pkg"]

    files = await FindTool().execute({"type": "file", "maxDepth": 1}, str(project))
    assert sorted(_found(files)) == ["README.md", "image.bin"]

    with pytest.raises(ValidationError):
        await FindTool().execute({"type": "socket"}, str(project))


@pytest.mark.asyncio
async def test_find_by_size_and_age(project) -> None:
    (project / "big.log").write_bytes(b"x" * 4096)
    old = project / "src" / "app.ts"
    week_ago = time.time() - 8 * 86400
    os.utime(old, (week_ago, week_ago))

    big = await FindTool().execute({"type": "file", "size": "+2K"}, str(project))
    assert _found(big) == ["big.log"]
    assert "4.0K" in big.content

    recent = await FindTool().execute({"type": "file", "mtime": "-7d"}, str(project))
    assert "src/app.ts" not in _found(recent)
    assert "README.md" in _found(recent)

    stale = await FindTool().execute({"type": "file", "mtime": "+7d"}, str(project))
    assert _found(stale) == ["src/app.ts"]


@pytest.mark.asyncio
async def test_find_limit_and_no_match(project) -> None:
    limited = await FindTool().execute({"type": "file", "limit": 2}, str(project))
    assert len(_found(limited)) == 2
    assert limited.content.endswith("(results truncated at 2 entries)")

    none = await FindTool().execute({"name": "*.rs"}, str(project))
    assert none.content == "No matching files found"

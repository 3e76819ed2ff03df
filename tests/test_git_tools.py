from __future__ import annotations

import shutil
import subprocess

import pytest

from agentweb.engine.errors import PathViolation
from agentweb.engine.tools.git import GitDiffTool, GitLogTool, GitStatusTool

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def _git(repo, *args) -> None:
    subprocess.run(
        ["git", "-c", "user.name=Test", "-c", "user.email=test@example.com", *args],
        cwd=repo, check=True, capture_output=True,
    )


@pytest.fixture
def repo(tmp_path):
    _git(tmp_path, "init", "-q")
    (tmp_path / "app.py").write_text("print('one')\n", encoding="utf-8")
    _git(tmp_path, "add", "app.py")
    _git(tmp_path, "commit", "-q", "-m", "Initial commit")
    return tmp_path


@pytest.mark.asyncio
async def test_status_lists_changed_and_untracked_files(repo) -> None:
    (repo / "app.py").write_text("print('two')\n", encoding="utf-8")
    (repo / "new.txt").write_text("hi\n", encoding="utf-8")

    result = await GitStatusTool().execute({}, str(repo))

    assert not result.is_error
    assert " M app.py" in result.content
    assert "?? new.txt" in result.content


@pytest.mark.asyncio
async def test_diff_shows_unstaged_then_staged_changes(repo) -> None:
    (repo / "app.py").write_text("print('two')\n", encoding="utf-8")

    unstaged = await GitDiffTool().execute({"file": "app.py"}, str(repo))
    assert "+print('two')" in unstaged.content

    _git(repo, "add", "app.py")
    assert (await GitDiffTool().execute({}, str(repo))).content == "(no output)"
    staged = await GitDiffTool().execute({"staged": True}, str(repo))
    assert "-print('one')" in staged.content


@pytest.mark.asyncio
async def test_log_shows_recent_commits(repo) -> None:
    result = await GitLogTool().execute({"limit": 5}, str(repo))

    assert not result.is_error
    assert "Initial commit" in result.content
    assert "Test" in result.content


@pytest.mark.asyncio
async def test_outside_a_repository_is_an_error_result(tmp_path) -> None:
    result = await GitLogTool().execute({}, str(tmp_path))

    assert result.is_error
    assert result.content.startswith("git log failed")


@pytest.mark.asyncio
async def test_path_outside_working_dir_is_rejected(repo) -> None:
    with pytest.raises(PathViolation):
        await GitStatusTool().execute({"path": ".."}, str(repo))

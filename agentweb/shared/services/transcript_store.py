"""Append-only JSONL transcript per (user, session).

Layout: ``<root>/<user_id>/<session_id>.jsonl``, one message per line,
in append order. Reads skip lines that do not parse.
"""
from __future__ import annotations

import json
import logging
import os
import re
import shutil
from pathlib import Path

from agentweb.engine.errors import NotFoundError, ValidationError
from agentweb.shared.models.message import TranscriptEntry
from agentweb.shared.services.durable_write import atomic_write_text

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9_.@-]{1,128}$")


def _check_id(kind: str, value: str) -> str:
    if not _SAFE_ID.match(value or "") or value in (".", ".."):
        raise ValidationError(f"Invalid {kind}: {value!r}")
    return value


class TranscriptStore:
    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def path_for(self, user_id: str, session_id: str) -> Path:
        return self.root / _check_id("user id", user_id) / f"{_check_id('session id', session_id)}.jsonl"

    def exists(self, user_id: str, session_id: str) -> bool:
        return self.path_for(user_id, session_id).exists()

    def append(self, user_id: str, entry: TranscriptEntry) -> None:
        path = self.path_for(user_id, entry.session_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(entry.to_dict(), ensure_ascii=False)
        with open(path, "a", encoding="utf-8") as f:
            f.write(line + "\n")
            f.flush()
            os.fsync(f.fileno())

    def read(self, user_id: str, session_id: str) -> list[TranscriptEntry]:
        path = self.path_for(user_id, session_id)
        if not path.exists():
            return []
        entries: list[TranscriptEntry] = []
        with open(path, encoding="utf-8", errors="replace") as f:
            for line_no, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(TranscriptEntry.from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
                    logger.warning(
                        "TranscriptStore: skipping line %d of %s: %s", line_no, path, exc,
                    )
        return entries

    def count(self, user_id: str, session_id: str) -> int:
        return len(self.read(user_id, session_id))

    def copy(self, user_id: str, source_id: str, target_id: str, limit: int | None = None) -> int:
        """Copy the first ``limit`` entries (all when None) into a new session.

        Entries are re-tagged with the target session id. Returns the
        number of entries copied.
        """
        entries = self.read(user_id, source_id)
        if limit is not None:
            entries = entries[:max(0, limit)]
        lines = []
        for entry in entries:
            entry.session_id = target_id
            lines.append(json.dumps(entry.to_dict(), ensure_ascii=False))
        atomic_write_text(self.path_for(user_id, target_id), "".join(l + "\n" for l in lines))
        return len(lines)

    def delete(self, user_id: str, session_id: str) -> bool:
        path = self.path_for(user_id, session_id)
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False

    def import_file(self, user_id: str, session_id: str, source: str | Path) -> int:
        """Copy a foreign transcript file verbatim as ``session_id``.

        Returns the number of non-empty lines imported.
        """
        source = Path(source).expanduser()
        if not source.is_file():
            raise NotFoundError("Transcript file", str(source))
        target = self.path_for(user_id, session_id)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, target)
        with open(target, encoding="utf-8", errors="replace") as f:
            imported = sum(1 for line in f if line.strip())
        logger.info("TranscriptStore: imported %d lines from %s into %s", imported, source, session_id)
        return imported

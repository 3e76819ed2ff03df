"""NotebookEdit: update, insert or delete one cell of a Jupyter notebook."""
from __future__ import annotations

import json
from typing import Any

from agentweb.engine.errors import NotFoundError, ValidationError
from agentweb.engine.models import Capability, ToolResult
from agentweb.engine.tools.base import MAX_FILE_BYTES, Tool, display_path, require_str, resolve_path
from agentweb.shared.services.durable_write import atomic_write_text

NOTEBOOK_ACTIONS = ("update", "insert", "delete")
CELL_TYPES = ("code", "markdown")


def _source_lines(source: str) -> list[str]:
    # nbformat stores source as lines that keep their newline, except the last.
    lines = source.split("\n")
    return [line + "\n" for line in lines[:-1]] + [lines[-1]]


def new_cell(cell_type: str, source: str) -> dict[str, Any]:
    cell: dict[str, Any] = {"cell_type": cell_type, "metadata": {}, "source": _source_lines(source)}
    if cell_type == "code":
        cell["execution_count"] = None
        cell["outputs"] = []
    return cell


def empty_notebook() -> dict[str, Any]:
    return {
        "cells": [],
        "metadata": {
            "kernelspec": {"display_name": "Python 3", "language": "python", "name": "python3"},
        },
        "nbformat": 4,
        "nbformat_minor": 5,
    }


class NotebookEditTool(Tool):
    name = "NotebookEdit"
    capability = Capability.FILE_SYSTEM
    description = (
        "Edit a Jupyter notebook (.ipynb): update, insert or delete the cell at "
        "cell_index. Inserting into a missing notebook creates it."
    )
    input_schema = {
        "type": "object",
        "properties": {
            "file_path": {"type": "string"},
            "cell_index": {"type": "integer", "minimum": 0},
            "action": {"type": "string", "enum": list(NOTEBOOK_ACTIONS)},
            "cell_type": {"type": "string", "enum": list(CELL_TYPES)},
            "source": {"type": "string"},
        },
        "required": ["file_path", "cell_index", "action"],
    }

    async def execute(self, params, working_dir, *, session_id=None):
        raw_path = require_str(params, "file_path")
        if not raw_path.endswith(".ipynb"):
            raise ValidationError("file_path must be a .ipynb notebook")
        path = resolve_path(raw_path, working_dir)
        rel = display_path(path, working_dir)
        action = params.get("action")
        if action not in NOTEBOOK_ACTIONS:
            raise ValidationError(f"action must be one of {', '.join(NOTEBOOK_ACTIONS)}")
        index = params.get("cell_index")
        if not isinstance(index, int) or isinstance(index, bool):
            raise ValidationError("'cell_index' must be an integer")
        cell_type = params.get("cell_type")
        if cell_type is not None and cell_type not in CELL_TYPES:
            raise ValidationError(f"cell_type must be one of {', '.join(CELL_TYPES)}")
        source = params.get("source")
        if action != "delete" and not isinstance(source, str):
            raise ValidationError(f"'source' is required for {action}")

        notebook = self._load(path, rel, create=action == "insert")
        cells = notebook["cells"]
        upper = len(cells) if action == "insert" else len(cells) - 1
        if index < 0 or index > upper:
            raise ValidationError(f"cell_index {index} is out of range (0-{upper})")

        if action == "insert":
            cells.insert(index, new_cell(cell_type or "code", source))
            done = f"Inserted a new cell at index {index}"
        elif action == "delete":
            del cells[index]
            done = f"Deleted cell {index}"
        else:
            cell = cells[index]
            cell["source"] = _source_lines(source)
            if cell_type and cell_type != cell.get("cell_type"):
                replacement = new_cell(cell_type, source)
                replacement["metadata"] = cell.get("metadata", {})
                cells[index] = replacement
            done = f"Updated cell {index}"

        atomic_write_text(path, json.dumps(notebook, indent=1, ensure_ascii=False) + "\n")
        return ToolResult.ok(f"{done} in {rel}; the notebook now has {len(cells)} cells")

    @staticmethod
    def _load(path, rel: str, *, create: bool) -> dict[str, Any]:
        if not path.exists():
            if create:
                return empty_notebook()
            raise NotFoundError("Notebook", rel)
        if path.stat().st_size > MAX_FILE_BYTES:
            raise ValidationError(f"Notebook is too large; the limit is {MAX_FILE_BYTES} bytes")
        try:
            notebook = json.loads(path.read_text(encoding="utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValidationError(f"{rel} is not a valid notebook: {exc}") from None
        if not isinstance(notebook, dict) or not isinstance(notebook.get("cells"), list):
            raise ValidationError(f"{rel} is not a valid notebook: missing cells list")
        return notebook

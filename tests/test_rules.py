from __future__ import annotations

import json

import pytest

from agentweb.engine.conversation import build_system_prompt
from agentweb.engine.errors import NotFoundError, ValidationError
from agentweb.shared.services.rules import RulesStore


def test_enabled_rules_are_ordered_by_priority_then_age() -> None:
    store = RulesStore()
    store.create("alice", "Tests", "Write a test first.")
    store.create("alice", "Tone", "Be brief.", priority=10)
    store.create("alice", "Off", "Ignore me.", enabled=False, priority=99)
    store.create("bob", "Other", "Not for alice.")

    assert [r.name for r in store.list("alice")] == ["Off", "Tone", "Tests"]
    assert store.enabled_content("alice") == (
        "### Tone\n\nBe brief.\n\n---\n\n### Tests\n\nWrite a test first."
    )
    assert store.enabled_content("carol") == ""


def test_update_delete_and_ownership() -> None:
    store = RulesStore()
    rule = store.create("alice", "Tone", "Be brief.")

    with pytest.raises(NotFoundError):
        store.update("bob", rule.id, {"enabled": False})
    updated = store.update("alice", rule.id, {"content": "Be very brief.", "priority": 2})
    assert updated.content == "Be very brief."
    assert updated.priority == 2

    with pytest.raises(ValidationError):
        store.update("alice", rule.id, {"enabled": "no"})
    with pytest.raises(ValidationError):
        store.create("alice", "", "content")
    with pytest.raises(ValidationError):
        store.create("alice", "Huge", "x" * 20_001)

    store.delete("alice", rule.id)
    assert store.list("alice") == []
    with pytest.raises(NotFoundError):
        store.delete("alice", rule.id)


def test_rules_persist_to_disk(tmp_path) -> None:
    path = tmp_path / "rules.json"
    rule = RulesStore(path).create("alice", "Tone", "Be brief.", priority=3)

    saved = json.loads(path.read_text(encoding="utf-8"))
    assert saved["rules"][0]["user_id"] == "alice"
    reloaded = RulesStore(path).get("alice", rule.id)
    assert (reloaded.name, reloaded.priority) == ("Tone", 3)
    assert "userId" not in reloaded.to_dict()


def test_system_prompt_carries_user_rules() -> None:
    plain = build_system_prompt("/work", ["Read"])
    with_rules = build_system_prompt("/work", ["Read"], "### Tone\n\nBe brief.")

    assert "User rules" not in plain
    assert with_rules.startswith(plain)
    assert with_rules.endswith("User rules (always follow these):\n### Tone\n\nBe brief.")

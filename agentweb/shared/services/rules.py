"""Per-user rules appended to the system prompt of every turn.

Enabled rules are ordered by priority (highest first), then by creation.
"""
from __future__ import annotations

import json
import logging
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from agentweb.engine.errors import NotFoundError, ValidationError
from agentweb.engine.models import utc_now_iso
from agentweb.shared.services.durable_write import atomic_write_text

logger = logging.getLogger(__name__)

MAX_RULE_CHARS = 20_000


@dataclass
class UserRule:
    user_id: str
    name: str
    content: str
    enabled: bool = True
    priority: int = 0
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "content": self.content,
            "enabled": self.enabled,
            "priority": self.priority,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


def _validate(name: Any, content: Any, enabled: Any, priority: Any) -> None:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("name is required")
    if not isinstance(content, str) or not content.strip():
        raise ValidationError("content is required")
    if len(content) > MAX_RULE_CHARS:
        raise ValidationError(f"content is limited to {MAX_RULE_CHARS} characters")
    if not isinstance(enabled, bool):
        raise ValidationError("enabled must be a boolean")
    if not isinstance(priority, int) or isinstance(priority, bool):
        raise ValidationError("priority must be an integer")


class RulesStore:
    """User rules persisted to a JSON file (in memory when path is None)."""

    def __init__(self, path: str | Path | None = None) -> None:
        self._path = Path(path) if path else None
        self._rules: dict[str, UserRule] = {}
        self._load()

    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
            for entry in raw.get("rules", []):
                rule = UserRule(**entry)
                self._rules[rule.id] = rule
        except (OSError, json.JSONDecodeError, TypeError) as exc:
            logger.warning("RulesStore: failed to load %s: %s", self._path, exc)

    def _save(self) -> None:
        if self._path is None:
            return
        payload = {"rules": [asdict(r) for r in self._rules.values()]}
        atomic_write_text(self._path, json.dumps(payload, indent=2))

    def list(self, user_id: str) -> list[UserRule]:
        rules = [r for r in self._rules.values() if r.user_id == user_id]
        rules.sort(key=lambda r: r.created_at)
        rules.sort(key=lambda r: r.priority, reverse=True)
        return rules

    def get(self, user_id: str, rule_id: str) -> UserRule:
        rule = self._rules.get(rule_id)
        if rule is None or rule.user_id != user_id:
            raise NotFoundError("Rule", rule_id)
        return rule

    def create(self, user_id: str, name: Any, content: Any, enabled: Any = True, priority: Any = 0) -> UserRule:
        _validate(name, content, enabled, priority)
        rule = UserRule(user_id=user_id, name=name.strip(), content=content, enabled=enabled, priority=priority)
        self._rules[rule.id] = rule
        self._save()
        return rule

    def update(self, user_id: str, rule_id: str, changes: dict[str, Any]) -> UserRule:
        rule = self.get(user_id, rule_id)
        name = changes.get("name", rule.name)
        content = changes.get("content", rule.content)
        enabled = changes.get("enabled", rule.enabled)
        priority = changes.get("priority", rule.priority)
        _validate(name, content, enabled, priority)
        rule.name = name.strip()
        rule.content = content
        rule.enabled = enabled
        rule.priority = priority
        rule.updated_at = utc_now_iso()
        self._save()
        return rule

    def delete(self, user_id: str, rule_id: str) -> None:
        self.get(user_id, rule_id)
        del self._rules[rule_id]
        self._save()

    def enabled_content(self, user_id: str) -> str:
        """Enabled rules as markdown sections; empty when there are none."""
        return "\n\n---\n\n".join(
            f"### {rule.name}\n\n{rule.content.strip()}"
            for rule in self.list(user_id) if rule.enabled
        )

"""Feature-flag policy sources.

The dispatcher asks its source for the current ``{fileSystem, bash}``
flags on every call, so edits made while a session is running apply
to the very next tool call.
"""
from __future__ import annotations

import logging
from pathlib import Path

import yaml

from agentweb.engine.models import FeatureFlags
from agentweb.shared.services.durable_write import atomic_write_text

logger = logging.getLogger(__name__)


class StaticFeatureFlagSource:
    """In-memory flags; mutable through ``set_flags``."""

    def __init__(self, flags: FeatureFlags | None = None) -> None:
        self._flags = flags or FeatureFlags()

    async def get_flags(self) -> FeatureFlags:
        return FeatureFlags(self._flags.file_system, self._flags.bash)

    async def set_flags(self, flags: FeatureFlags) -> FeatureFlags:
        self._flags = FeatureFlags(flags.file_system, flags.bash)
        logger.info("Feature flags updated: %s", self._flags.to_dict())
        return await self.get_flags()


class FileFeatureFlagSource:
    """Flags persisted in a small YAML file, re-read on every call.

    Example file::

        fileSystem: true
        bash: false

    A missing file means the defaults. A file that cannot be parsed
    disables every gated capability until it is fixed.
    """

    def __init__(self, path: str | Path, defaults: FeatureFlags | None = None) -> None:
        self._path = Path(path)
        self._defaults = defaults or FeatureFlags()

    @property
    def path(self) -> Path:
        return self._path

    async def get_flags(self) -> FeatureFlags:
        if not self._path.exists():
            return FeatureFlags(self._defaults.file_system, self._defaults.bash)
        try:
            raw = yaml.safe_load(self._path.read_text(encoding="utf-8")) or {}
            if not isinstance(raw, dict):
                raise ValueError("feature file must contain a mapping")
        except (OSError, yaml.YAMLError, ValueError) as exc:
            logger.warning(
                "FileFeatureFlagSource: cannot read %s (%s); gated tools disabled",
                self._path, exc,
            )
            return FeatureFlags(file_system=False, bash=False)
        merged = self._defaults.to_dict()
        merged.update({k: v for k, v in raw.items() if k in merged})
        return FeatureFlags.from_dict(merged)

    async def set_flags(self, flags: FeatureFlags) -> FeatureFlags:
        atomic_write_text(self._path, yaml.safe_dump(flags.to_dict(), sort_keys=True))
        logger.info("Feature flags written to %s: %s", self._path, flags.to_dict())
        return await self.get_flags()

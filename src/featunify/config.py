"""Per-workspace settings from Cargo metadata and .featunify.toml."""

from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

CONFIG_FILE = ".featunify.toml"


@dataclass(frozen=True)
class Settings:
    no_dev: bool = False
    target: str | None = None

    def merged(self, table: dict[str, Any] | None) -> Settings:
        """Settings with the recognised keys of *table* applied on top."""
        if not table:
            return self
        changes: dict[str, Any] = {}
        no_dev = table.get("no-dev", table.get("no_dev"))
        if isinstance(no_dev, bool):
            changes["no_dev"] = no_dev
        target = table.get("target")
        if isinstance(target, str) and target:
            changes["target"] = target
        unknown = set(table) - {"no-dev", "no_dev", "target"}
        if unknown:
            logger.warning("Ignoring unknown featunify settings: %s", ", ".join(sorted(unknown)))
        return replace(self, **changes)


def load_settings(
    workspace_root: Path | None, workspace_metadata: dict[str, Any] | None = None
) -> Settings:
    """Settings from ``[workspace.metadata.featunify]`` then ``.featunify.toml``.

    *workspace_metadata* is the ``metadata`` field of the cargo metadata
    snapshot.  Values in the config file win.
    """
    settings = Settings()
    if isinstance(workspace_metadata, dict):
        settings = settings.merged(workspace_metadata.get("featunify"))

    if workspace_root is None:
        return settings
    config = workspace_root / CONFIG_FILE
    if config.exists():
        try:
            with open(config, "rb") as f:
                data = tomllib.load(f)
            settings = settings.merged(data.get("featunify"))
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.warning("Could not read %s: %s", config, e)
    return settings

"""Open-project state for the ``project:*`` channels.

A project is a directory containing ``.claude/``. Its optional config lives
at ``.claude/config/project.yaml``; features come from that config's
``features:`` list or, failing that, from the directories under ``docs/``.
"""

import asyncio
import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

import yaml

from loopdesk.foundation.errors import ErrorCode, LoopDeskError, config_missing, from_os_error
from loopdesk.foundation.timestamps import iso_timestamp
from loopdesk.host.models import FeatureInfo, ProjectOpenRequest, ProjectSnapshot

logger = logging.getLogger(__name__)

CONFIG_RELATIVE_PATH = Path(".claude") / "config" / "project.yaml"


def load_project_config(project_path: Path) -> dict[str, Any]:
    """Read ``.claude/config/project.yaml``; missing or invalid files yield ``{}``."""
    config_path = project_path / CONFIG_RELATIVE_PATH
    try:
        with open(config_path, encoding="utf-8") as f:
            parsed = yaml.safe_load(f)
    except FileNotFoundError:
        return {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Ignoring unreadable project config %s: %s", config_path, e)
        return {}
    return parsed if isinstance(parsed, dict) else {}


def discover_features(project_path: Path, config: dict[str, Any]) -> list[FeatureInfo]:
    """Features declared in config, else one per directory under ``docs/``."""
    declared = config.get("features")
    if isinstance(declared, list) and declared:
        features = []
        for entry in declared:
            if isinstance(entry, str):
                entry = {"id": entry}
            if not isinstance(entry, dict) or not entry.get("id"):
                logger.warning("Skipping malformed feature entry: %r", entry)
                continue
            feature_id = str(entry["id"])
            rel = entry.get("path") or os.path.join("docs", feature_id)
            features.append(
                FeatureInfo(
                    id=feature_id,
                    name=str(entry.get("name") or feature_id),
                    path=str(project_path / rel),
                )
            )
        return features

    docs = project_path / "docs"
    if not docs.is_dir():
        return []
    return [
        FeatureInfo(id=child.name, name=child.name, path=str(child))
        for child in sorted(docs.iterdir())
        if child.is_dir() and not child.name.startswith(".")
    ]


def _build_snapshot(project_path: Path, opened_at: str, active_feature_id: str | None) -> ProjectSnapshot:
    config = load_project_config(project_path)
    features = discover_features(project_path, config)
    if active_feature_id not in {f.id for f in features}:
        active_feature_id = features[0].id if features else None
    return ProjectSnapshot(
        id=str(project_path),
        name=project_path.name or str(project_path),
        path=str(project_path),
        version=str(config.get("version") or "1.0.0"),
        auto_save=bool(config.get("auto_save", True)),
        claude_code_path=config.get("claude_code_path"),
        default_model=config.get("default_model"),
        features=features,
        active_feature_id=active_feature_id,
        opened_at=opened_at,
    )


def _open(path: str) -> ProjectSnapshot:
    project_path = Path(path)
    try:
        if not project_path.is_dir():
            raise LoopDeskError(code=ErrorCode.FS_NOT_FOUND, context={"path": path})
    except OSError as e:
        raise from_os_error(e, path) from e
    if not (project_path / ".claude").is_dir():
        raise config_missing(f"Not a project: .claude directory not found in {path}")
    return _build_snapshot(project_path, iso_timestamp(), None)


class ProjectService:
    """Holds the currently open project.

    Args:
        on_open: Called with the project path after a successful open
            (the host starts the file watch from here).
    """

    def __init__(self, on_open: Callable[[str], None] | None = None) -> None:
        self._current: ProjectSnapshot | None = None
        self._on_open = on_open

    @property
    def current(self) -> ProjectSnapshot | None:
        return self._current

    def require_current(self) -> ProjectSnapshot:
        if self._current is None:
            raise config_missing("No project is currently open")
        return self._current

    def find_feature(self, feature_id: str) -> FeatureInfo:
        project = self.require_current()
        for feature in project.features:
            if feature.id == feature_id:
                return feature
        raise LoopDeskError(
            code=ErrorCode.FS_NOT_FOUND,
            context={"path": f"feature {feature_id}", "feature_id": feature_id},
        )

    async def open(self, request: ProjectOpenRequest) -> ProjectSnapshot:
        snapshot = await asyncio.to_thread(_open, request.path)
        self._current = snapshot
        logger.info("Opened project %s (%d features)", snapshot.path, len(snapshot.features))
        if self._on_open is not None:
            self._on_open(snapshot.path)
        return snapshot

    async def state(self, _request: Any = None) -> ProjectSnapshot:
        """Current project with features re-read from disk."""
        current = self.require_current()
        snapshot = await asyncio.to_thread(
            _build_snapshot,
            Path(current.path),
            current.opened_at,
            current.active_feature_id,
        )
        self._current = snapshot
        return snapshot

    def close(self) -> None:
        self._current = None

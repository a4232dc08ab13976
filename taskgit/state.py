"""JSON persistence for the lifecycle state file."""

import json
import logging
import os
import tempfile
from dataclasses import asdict
from pathlib import Path
from typing import Any

from taskgit.config import METADATA_DIR
from taskgit.models import (
    STATE_VERSION,
    LifecycleState,
    OperationLogEntry,
    ReviewBranchInfo,
    TaskBranchMapping,
)

logger = logging.getLogger(__name__)

STATE_FILENAME = "git-state.json"


def default_state_path(project_root: Path) -> Path:
    return project_root / METADATA_DIR / STATE_FILENAME


def state_to_dict(state: LifecycleState) -> dict[str, Any]:
    return asdict(state)


def state_from_dict(data: dict[str, Any]) -> LifecycleState:
    """Rebuild a LifecycleState; raises KeyError/TypeError on malformed input."""
    review = data.get("review_branch")
    return LifecycleState(
        mappings=[TaskBranchMapping(**item) for item in data.get("mappings", [])],
        review_branch=ReviewBranchInfo(**review) if review else None,
        operation_log=[OperationLogEntry(**item) for item in data.get("operation_log", [])],
        version=int(data.get("version", STATE_VERSION)),
    )


class StateStore:
    """Reads and wholesale-rewrites one state file."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> LifecycleState:
        if not self.path.is_file():
            return LifecycleState()
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(raw, dict):
                raise TypeError("state file does not contain an object")
            return state_from_dict(raw)
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning("Ignoring unreadable state file %s: %s", self.path, exc)
            return LifecycleState()

    def _ensure_ignored(self) -> None:
        # The state file must never show up as a working tree change.
        ignore = self.path.parent / ".gitignore"
        if not ignore.exists():
            ignore.write_text(
                f".gitignore\n{self.path.name}\n.{self.path.name}.*\n", encoding="utf-8"
            )

    def save(self, state: LifecycleState) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_ignored()
        payload = json.dumps(state_to_dict(state), indent=2) + "\n"
        fd, tmp_name = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

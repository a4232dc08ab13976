"""Project git settings."""

import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import cast

METADATA_DIR = ".taskgit"

DEFAULT_COMMIT_TEMPLATE = "{taskId}: {title}\n\nMoving to review."


class ConfigError(Exception):
    """Settings file is missing required structure or is not valid JSON."""


class GitMode(str, Enum):
    NONE = "none"
    BASIC = "basic"
    ADVANCED = "advanced"


@dataclass(frozen=True)
class GitConfig:
    """Git automation settings for a project. Read-only for the lifecycle manager."""

    git_enabled: bool = False
    mode: GitMode = GitMode.NONE
    main_branch: str = "main"
    review_branch: str | None = None
    branch_convention: str = "task/{taskId}-{slug}"
    protected_branches: tuple[str, ...] = field(default=("main", "master"))
    commit_message_template: str = DEFAULT_COMMIT_TEMPLATE

    @property
    def is_active(self) -> bool:
        return self.git_enabled and self.mode is not GitMode.NONE


def settings_path(project_root: Path) -> Path:
    return project_root / METADATA_DIR / "settings.json"


def _load_settings(project_root: Path) -> dict[str, object]:
    path = settings_path(project_root)
    if not path.is_file():
        return {}

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid JSON in {path}") from exc

    if not isinstance(raw, dict):
        raise ConfigError(f"Invalid settings format in {path}")
    return raw


def _expect(value: object, kind: type, key: str) -> object:
    if not isinstance(value, kind):
        raise ConfigError(f"Invalid value for git.{key} in settings.")
    return value


def config_from_dict(data: dict[str, object]) -> GitConfig:
    """Build a GitConfig from the camelCase ``git`` settings section."""
    defaults = GitConfig()
    kwargs: dict[str, object] = {}

    if "gitEnabled" in data:
        kwargs["git_enabled"] = _expect(data["gitEnabled"], bool, "gitEnabled")
    if "mode" in data:
        raw_mode = cast(str, _expect(data["mode"], str, "mode"))
        try:
            kwargs["mode"] = GitMode(raw_mode)
        except ValueError as exc:
            raise ConfigError(f"Unknown git mode '{raw_mode}'.") from exc
    if "mainBranch" in data:
        kwargs["main_branch"] = _expect(data["mainBranch"], str, "mainBranch")
    review = data.get("reviewBranch")
    if review is not None:
        kwargs["review_branch"] = _expect(review, str, "reviewBranch") or None
    if "branchConvention" in data:
        kwargs["branch_convention"] = _expect(
            data["branchConvention"], str, "branchConvention"
        )
    if "protectedBranches" in data:
        raw_protected = _expect(data["protectedBranches"], list, "protectedBranches")
        kwargs["protected_branches"] = tuple(
            str(name) for name in cast(list[object], raw_protected)
        )
    if "commitMessageTemplate" in data:
        kwargs["commit_message_template"] = _expect(
            data["commitMessageTemplate"], str, "commitMessageTemplate"
        )

    if not kwargs:
        return defaults
    return GitConfig(**kwargs)  # type: ignore[arg-type]


def load_config(project_root: Path) -> GitConfig:
    """Read the ``git`` section of the project settings, falling back to defaults."""
    settings = _load_settings(project_root)
    section = settings.get("git")
    if section is None:
        return GitConfig()
    if not isinstance(section, dict):
        raise ConfigError("Invalid git section in settings.")
    return config_from_dict(cast(dict[str, object], section))

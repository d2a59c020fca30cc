"""Load optional gate configuration from `.review_gate/config.yaml`."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .constants import (
    CONFIG_FILE,
    DEFAULT_MAX_WORKERS,
    DEFAULT_TASK_TIMEOUT_SECONDS,
    STATE_DIR_NAME,
)
from .io_utils import _load_yaml_with_error


@dataclass(frozen=True)
class ReviewTaskSpec:
    """One configured review task in the dispatch roster."""

    name: str
    command: str
    timeout_seconds: Optional[float] = None
    config: dict[str, Any] = field(default_factory=dict, hash=False)


@dataclass(frozen=True)
class ReviewRuntimeConfig:
    """Resolved review-phase settings for a run."""

    roster: tuple[ReviewTaskSpec, ...] = ()
    follow_up: Optional[ReviewTaskSpec] = None
    max_workers: int = DEFAULT_MAX_WORKERS
    task_timeout_seconds: float = DEFAULT_TASK_TIMEOUT_SECONDS
    task_config: dict[str, Any] = field(default_factory=dict, hash=False)


def load_gate_config(project_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional config file.

    Args:
        project_dir: Repository root directory.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    path = project_dir.resolve() / STATE_DIR_NAME / CONFIG_FILE
    data, err = _load_yaml_with_error(path, {})
    if err:
        return {}, err
    return data, None


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _positive_number(value: Any, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if number > 0 else default


def _task_spec(raw: Any, errors: list[str], where: str) -> Optional[ReviewTaskSpec]:
    if not isinstance(raw, dict):
        errors.append(f"{where}: expected mapping")
        return None
    name = str(raw.get("name") or "").strip()
    command = str(raw.get("command") or "").strip()
    if not name:
        errors.append(f"{where}: missing name")
        return None
    if not command:
        errors.append(f"{where} ({name}): missing command")
        return None
    timeout: Optional[float] = None
    if raw.get("timeout_seconds") is not None:
        timeout = _positive_number(raw.get("timeout_seconds"), 0) or None
        if timeout is None:
            errors.append(f"{where} ({name}): timeout_seconds must be a positive number")
    return ReviewTaskSpec(
        name=name,
        command=command,
        timeout_seconds=timeout,
        config=_as_dict(raw.get("config")),
    )


def get_review_config(config: dict[str, Any]) -> tuple[ReviewRuntimeConfig, list[str]]:
    """Resolve the `review` block into a typed config.

    Args:
        config: Raw configuration mapping.

    Returns:
        A tuple of `(review_config, problems)`; problems describe entries that were skipped.
    """
    review_cfg = _as_dict(config.get("review"))
    problems: list[str] = []

    raw_roster = review_cfg.get("roster") or []
    if not isinstance(raw_roster, list):
        problems.append("review.roster: expected list")
        raw_roster = []

    roster: list[ReviewTaskSpec] = []
    seen: set[str] = set()
    for i, raw in enumerate(raw_roster):
        spec = _task_spec(raw, problems, f"review.roster[{i}]")
        if spec is None:
            continue
        if spec.name in seen:
            problems.append(f"review.roster[{i}]: duplicate task name {spec.name!r}")
            continue
        seen.add(spec.name)
        roster.append(spec)

    follow_up = None
    if review_cfg.get("follow_up") is not None:
        follow_up = _task_spec(review_cfg.get("follow_up"), problems, "review.follow_up")

    max_workers = int(_positive_number(review_cfg.get("max_workers"), DEFAULT_MAX_WORKERS))
    timeout = _positive_number(review_cfg.get("task_timeout_seconds"), DEFAULT_TASK_TIMEOUT_SECONDS)

    return (
        ReviewRuntimeConfig(
            roster=tuple(roster),
            follow_up=follow_up,
            max_workers=max_workers,
            task_timeout_seconds=timeout,
            task_config=_as_dict(review_cfg.get("task_config")),
        ),
        problems,
    )


def get_gate_config(config: dict[str, Any]) -> dict[str, Any]:
    """Extract the `gate` configuration block.

    Returns:
        The `gate` mapping, or an empty dict if not present.
    """
    return _as_dict(config.get("gate"))


def get_logging_level(config: dict[str, Any]) -> Optional[str]:
    raw = _as_dict(config.get("logging")).get("level")
    if isinstance(raw, str) and raw.strip():
        return raw.strip().upper()
    return None

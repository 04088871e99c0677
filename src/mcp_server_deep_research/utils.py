"""Utilities for research artifact files."""

import json
import logging
import re
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

LOG_FILE_PREFIX = "research_log"
REPORT_FILE_PREFIX = "final_report"
ACTION_PLAN_FILE_PREFIX = "action_plan"


@dataclass(frozen=True)
class ArtifactPaths:
    """Where one research run writes its log, report and action plan."""

    log_path: Path
    report_path: Path
    action_plan_path: Path


def artifact_timestamp(now: datetime | None = None) -> str:
    """Filesystem-safe ISO timestamp (``:`` and ``.`` replaced by ``-``)."""
    stamp = (now or datetime.now(UTC)).isoformat(timespec="milliseconds")
    return re.sub(r"[:.]", "-", stamp.replace("+00:00", "Z"))


def safe_file_name(name: str) -> str:
    """Strip directory components and unsafe characters from a user supplied file name."""
    base = Path(name).name
    cleaned = re.sub(r"[^\w\-.]", "_", base).lstrip(".")
    if not cleaned:
        raise ValueError(f"Invalid file name: {name!r}")
    return cleaned


def resolve_artifact_paths(
    output_dir: Path,
    log_file_name: str | None = None,
    report_file_name: str | None = None,
    action_plan_file_name: str | None = None,
    now: datetime | None = None,
) -> ArtifactPaths:
    """Build artifact paths inside ``output_dir``, creating the directory.

    Names that are not given default to ``<prefix>_<timestamp>.<ext>``.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    timestamp = artifact_timestamp(now)

    def pick(name: str | None, prefix: str, suffix: str) -> Path:
        return output_dir / (safe_file_name(name) if name else f"{prefix}_{timestamp}{suffix}")

    return ArtifactPaths(
        log_path=pick(log_file_name, LOG_FILE_PREFIX, ".txt"),
        report_path=pick(report_file_name, REPORT_FILE_PREFIX, ".md"),
        action_plan_path=pick(action_plan_file_name, ACTION_PLAN_FILE_PREFIX, ".json"),
    )


def write_text_artifact(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    logger.info(f"Saved {path.name} to {path.parent}")
    return path


def write_json_artifact(path: Path, data: Any) -> Path:
    return write_text_artifact(path, json.dumps(data, indent=2, ensure_ascii=False, default=str))


def cleanup_old_artifacts(directory: Path, max_age_hours: float) -> int:
    """Delete research artifacts older than ``max_age_hours``. Returns count deleted."""
    if not directory.exists():
        return 0

    cutoff = time.time() - max_age_hours * 3600
    prefixes = (LOG_FILE_PREFIX, REPORT_FILE_PREFIX, ACTION_PLAN_FILE_PREFIX)
    deleted = 0
    for path in directory.iterdir():
        if not path.is_file() or not path.name.startswith(prefixes):
            continue
        if path.stat().st_mtime < cutoff:
            try:
                path.unlink()
                deleted += 1
            except OSError as e:
                logger.warning(f"Failed to delete {path}: {e}")
    return deleted

"""Startup sweep of stale restore scratch workspaces."""

import logging
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path

from savesync.config import TEMP_BACKUP_RETENTION_DAYS

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


@dataclass
class SweepReport:
    removed: list[str] = field(default_factory=list)
    retained: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


def sweep_scratch_workspaces(
    temp_root: str,
    retention_days: float = TEMP_BACKUP_RETENTION_DAYS,
    now: float | None = None,
) -> SweepReport:
    """Delete entries under ``temp_root`` last modified before the cutoff.

    Every entry is handled on its own: one that cannot be inspected or
    removed is recorded in ``failed`` and the sweep moves on.
    """
    report = SweepReport()
    root = Path(temp_root)
    root.mkdir(parents=True, exist_ok=True)
    cutoff = (now if now is not None else time.time()) - retention_days * SECONDS_PER_DAY

    for entry in root.iterdir():
        try:
            if entry.stat(follow_symlinks=False).st_mtime >= cutoff:
                report.retained.append(str(entry))
                continue
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry)
            else:
                entry.unlink()
            report.removed.append(str(entry))
        except OSError as exc:
            logger.warning("Could not sweep %s: %s", entry, exc)
            report.failed[str(entry)] = str(exc)

    if report.removed:
        logger.info("Retention sweep removed %d workspace(s) from %s",
                    len(report.removed), root)
    return report

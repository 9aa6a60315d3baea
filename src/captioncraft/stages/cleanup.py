"""Temporary file sweeper.

Stage workers write intermediate files (audio tracks, subtitle files, renders)
into the shared temp directory and delete them when a job ends. This stage is
the safety net for anything a crashed worker left behind: a recurring
``clean-temp-files`` job deletes regular files older than the age threshold.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from ..models import CleanupConfig
from ..queue.models import CleanupJob, Job, JobHandle, payload_to_wire
from ..queue.registry import QueueRegistry

logger = logging.getLogger(__name__)

CLEANUP_QUEUE = "cleanup-queue"


@dataclass
class SweepResult:
    """What one sweep did."""
    deleted: List[Path] = field(default_factory=list)
    kept: int = 0
    errors: List[str] = field(default_factory=list)


def sweep_temp_dir(
    tmp_dir: Union[str, Path],
    max_age_s: float = 300.0,
    now: Optional[float] = None,
) -> SweepResult:
    """Delete regular files in ``tmp_dir`` whose mtime is older than ``max_age_s``.

    Subdirectories are left alone. A file that cannot be inspected or deleted
    is logged and skipped; the sweep continues with the next one.

    Args:
        tmp_dir: Directory to sweep (a missing directory is an empty sweep)
        max_age_s: Age threshold in seconds
        now: Reference time as a Unix timestamp (default: current time)

    Returns:
        SweepResult listing deleted paths, kept count and per-file errors
    """
    tmp_dir = Path(tmp_dir)
    now = time.time() if now is None else now
    result = SweepResult()

    if not tmp_dir.is_dir():
        logger.debug("Temp directory %s does not exist, nothing to sweep", tmp_dir)
        return result

    for path in sorted(tmp_dir.iterdir()):
        try:
            if not path.is_file():
                continue
            if now - path.stat().st_mtime > max_age_s:
                path.unlink()
                result.deleted.append(path)
                logger.info("Deleted old temporary file: %s", path)
            else:
                result.kept += 1
        except OSError as e:
            result.errors.append(f"{path}: {e}")
            logger.warning("Could not process or delete file %s: %s", path, e)

    return result


def remove_temp_files(paths: Iterable[Optional[Union[str, Path]]]) -> None:
    """Best-effort removal of a job's own temp files (missing ones are fine)."""
    for path in paths:
        if path is None:
            continue
        try:
            Path(path).unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Failed to delete temp file %s: %s", path, e)


async def schedule_cleanup(
    registry: QueueRegistry,
    interval_s: float = 300.0,
    queue_name: str = CLEANUP_QUEUE,
) -> JobHandle:
    """Register the recurring sweep; an already scheduled recurrence is reused."""
    payload = CleanupJob(timestamp=datetime.now(timezone.utc).isoformat())
    handle = await registry.get_queue(queue_name).add(
        payload.job_type, payload_to_wire(payload), {"repeat_every_s": interval_s}
    )
    logger.info("Scheduled temp file cleanup every %.0fs (job %s)", interval_s, handle.job_id)
    return handle


class CleanupStage:
    """Handler for ``clean-temp-files`` jobs."""

    def __init__(self, config: Optional[CleanupConfig] = None):
        self.config = config or CleanupConfig()

    async def __call__(self, job: Job) -> Dict[str, Any]:
        payload = job.typed_payload()
        logger.info("Starting cleanup job %s (scheduled %s)...", job.job_id, payload.timestamp)

        result = await asyncio.to_thread(
            sweep_temp_dir, self.config.tmp_dir, self.config.max_age_s
        )

        logger.info(
            "Cleanup job %s completed: %d deleted, %d kept, %d errors",
            job.job_id, len(result.deleted), result.kept, len(result.errors),
        )
        return {
            "status": "completed",
            "deleted": len(result.deleted),
            "kept": result.kept,
            "errors": len(result.errors),
        }

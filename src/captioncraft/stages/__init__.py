"""Stage workers: one handler per pipeline queue."""

from .burn_in import BurnInStage
from .cleanup import CleanupStage, SweepResult, schedule_cleanup, sweep_temp_dir
from .transcription import TranscriptionStage

__all__ = [
    "BurnInStage",
    "CleanupStage",
    "SweepResult",
    "TranscriptionStage",
    "schedule_cleanup",
    "sweep_temp_dir",
]

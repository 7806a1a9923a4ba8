import logging
from pathlib import Path
from typing import Optional, Set

TEMP_SUFFIX = ".tmp"
OUTPUT_SUFFIXES = ("_compressed", "_small", "_squeezed", "_compact")


class HousekeepingService:
    """Output naming and cleanup of temporary encode files."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def default_output_path(
        self, input_path: Path, output_dir: Optional[Path] = None, taken: Optional[Set[Path]] = None
    ) -> Path:
        """
        First free name among video_compressed.mp4, video_small.mp4, ... then video_compressed_2.mp4.

        Names in `taken` count as used; the chosen name is added to it.
        """
        taken = taken if taken is not None else set()
        directory = output_dir or input_path.parent
        stem = input_path.stem
        for suffix in OUTPUT_SUFFIXES:
            candidate = directory / f"{stem}{suffix}.mp4"
            if not candidate.exists() and candidate != input_path and candidate not in taken:
                taken.add(candidate)
                return candidate
        counter = 2
        while True:
            candidate = directory / f"{stem}{OUTPUT_SUFFIXES[0]}_{counter}.mp4"
            if not candidate.exists() and candidate not in taken:
                taken.add(candidate)
                return candidate
            counter += 1

    def temp_path_for(self, output_path: Path) -> Path:
        return output_path.with_name(output_path.name + TEMP_SUFFIX)

    def discard(self, path: Path) -> bool:
        """Removes a partial output; True when something was deleted."""
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            self.logger.warning(f"Failed to remove partial output {path}: {e}")
            return False
        self.logger.debug(f"Removed partial output {path}")
        return True

    def cleanup_temp_files(self, directory: Path) -> int:
        """Removes stale *.mp4.tmp files left by interrupted runs."""
        removed = 0
        if not directory.is_dir():
            return removed
        for tmp in directory.glob(f"*.mp4{TEMP_SUFFIX}"):
            if self.discard(tmp):
                removed += 1
        if removed:
            self.logger.info(f"Removed {removed} stale temporary file(s) from {directory}")
        return removed

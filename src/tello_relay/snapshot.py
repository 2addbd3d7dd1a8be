"""Still-photo capture from the transcoder's refreshed frame file."""
from __future__ import annotations

import asyncio
import logging
import shutil
import time
from pathlib import Path
from typing import Callable

from .errors import ErrorKind, OperationResult

logger = logging.getLogger(__name__)


def prepare_media_dirs(root: Path) -> tuple[Path, Path]:
    """Create the media root with its ``photos`` and ``mp4_recordings`` folders."""

    photos = root / "photos"
    recordings = root / "mp4_recordings"
    for directory in (root, photos, recordings):
        directory.mkdir(parents=True, exist_ok=True)
    return photos, recordings


class SnapshotCapture:
    """Copy the current frame into a timestamped photo file."""

    def __init__(
        self,
        frame_path: Path,
        photos_dir: Path,
        *,
        stream_active: Callable[[], bool],
        retries: int = 3,
        retry_delay: float = 0.1,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if retries < 1:
            raise ValueError("retries must be at least 1")
        self._frame_path = Path(frame_path)
        self._photos_dir = Path(photos_dir)
        self._stream_active = stream_active
        self._retries = retries
        self._retry_delay = retry_delay
        self._clock = clock

    async def capture(self) -> OperationResult:
        if not self._stream_active():
            return OperationResult.failure(
                ErrorKind.RESOURCE_UNAVAILABLE, "Video stream not active"
            )
        if not self._frame_path.exists():
            return OperationResult.failure(
                ErrorKind.RESOURCE_UNAVAILABLE, "No frame available for capture"
            )

        timestamp = int(self._clock() * 1000)
        file_name = f"photo_{timestamp}.jpg"
        destination = self._photos_dir / file_name
        for attempt in range(1, self._retries + 1):
            try:
                size = await asyncio.to_thread(self._copy, destination)
            except OSError as exc:
                logger.debug("Photo capture attempt %d failed: %s", attempt, exc)
            else:
                if size > 0:
                    return OperationResult.success(
                        "Photo captured",
                        {"file_name": file_name, "size": size, "timestamp": timestamp},
                    )
                logger.debug("Photo capture attempt %d produced an empty file", attempt)
            if attempt < self._retries:
                await asyncio.sleep(self._retry_delay)
        logger.error("[FILE] Failed to capture valid photo after %d attempts", self._retries)
        return OperationResult.failure(
            ErrorKind.RESOURCE_UNAVAILABLE,
            "Failed to capture valid photo after multiple attempts",
        )

    def _copy(self, destination: Path) -> int:
        shutil.copyfile(self._frame_path, destination)
        return destination.stat().st_size


__all__ = ["SnapshotCapture", "prepare_media_dirs"]

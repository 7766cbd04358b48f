"""
Background sweeper for temp archives left behind by crashed or killed jobs.

Jobs delete their own temp files; this only catches orphans older than
``max_age_minutes`` that no running job owns.
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import Callable, List, Optional

from services.transport import remove_temp_file

logger = logging.getLogger(__name__)


class TempFileSweeper:
    """Periodically removes stale ``<prefix>*.zip`` files from the temp dir."""

    def __init__(
        self,
        temp_dir: str,
        prefix: str = "folder-",
        max_age_minutes: float = 60,
        interval_seconds: float = 1800,
        is_active: Optional[Callable[[Path], bool]] = None,
    ):
        self.temp_dir = Path(temp_dir)
        self.prefix = prefix
        self.max_age_seconds = max_age_minutes * 60
        self.interval_seconds = interval_seconds
        self.is_active = is_active or (lambda path: False)
        self._task: Optional[asyncio.Task] = None
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def sweep_once(self) -> List[Path]:
        """Delete stale temp archives now. Returns the removed paths."""
        now = time.time()
        removed = []
        for path in self.temp_dir.glob(f"{self.prefix}*.zip"):
            if self.is_active(path):
                continue
            try:
                age = now - path.stat().st_mtime
            except FileNotFoundError:
                continue
            if age > self.max_age_seconds:
                remove_temp_file(path)
                removed.append(path)

        if removed:
            self.logger.info(f"🧹 Removed {len(removed)} stale temp archive(s)")
        return removed

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self._sweep_loop())
            self.logger.info(
                f"✓ Temp sweeper started (every {self.interval_seconds:.0f}s, "
                f"max age {self.max_age_seconds / 60:.0f} min)"
            )

    async def _sweep_loop(self):
        """Background sweep task"""
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                self.sweep_once()
            except OSError as e:
                self.logger.error(f"Temp sweep error: {e}")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self.logger.info("Temp sweeper stopped")

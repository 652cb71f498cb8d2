"""
Resource Janitor

Owns the working directory of one pipeline run and removes it, together with
every file tracked during the run, on every exit path.
"""

import logging
import shutil
import uuid
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)


class ResourceJanitor:
    """
    Tracks temporary files and directories of one run and deletes them.

    Usage:
        async with ResourceJanitor(work_root) as janitor:
            path = janitor.run_dir / "audio.m4a"
            ...
        # run_dir and everything tracked is gone here
    """

    def __init__(self, work_root: Path, run_id: Optional[str] = None):
        self.work_root = Path(work_root)
        self.run_id = run_id or uuid.uuid4().hex
        self.run_dir = self.work_root / f"run_{self.run_id}"
        self._tracked: List[Path] = []
        self._cleaned = False

    def prepare(self) -> Path:
        """Create the run directory."""
        self.run_dir.mkdir(parents=True, exist_ok=True)
        return self.run_dir

    def subdir(self, name: str) -> Path:
        """Create a directory inside the run directory."""
        path = self.run_dir / name
        path.mkdir(parents=True, exist_ok=True)
        return path

    def track(self, path: Path) -> Path:
        """Register a path created outside the run directory."""
        path = Path(path)
        if path not in self._tracked:
            self._tracked.append(path)
        return path

    @property
    def tracked(self) -> List[Path]:
        return list(self._tracked)

    def cleanup(self) -> None:
        """Remove tracked paths and the run directory. Never raises."""
        for path in reversed(self._tracked):
            self._remove(path)
        self._tracked.clear()
        self._remove(self.run_dir)
        self._cleaned = True

    def _remove(self, path: Path) -> None:
        try:
            if path.is_dir():
                shutil.rmtree(path)
                logger.debug(f"Cleaned up directory: {path}")
            elif path.exists():
                path.unlink()
                logger.debug(f"Cleaned up temp file: {path}")
        except OSError as e:
            logger.warning(f"Failed to clean up {path}: {e}")

    async def __aenter__(self) -> 'ResourceJanitor':
        self.prepare()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        self.cleanup()
        return False

"""Debounced JSON snapshot of the cache root on disk."""

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path

from release_dashboard.state.models import CacheRoot

logger = logging.getLogger(__name__)

DEBOUNCE_SECONDS = 1.0


def load_snapshot(path: Path) -> CacheRoot | None:
    """Read a snapshot. Missing, malformed or empty snapshots yield None."""
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text())
        root = CacheRoot.from_dict(data)
    except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError, AttributeError) as e:
        logger.warning("Ignoring unreadable cache snapshot %s: %s", path, e)
        return None
    if not root.projects:
        return None
    logger.info("Loaded cache snapshot with %d projects from %s", len(root.projects), path)
    return root


def write_snapshot(path: Path, data: dict):
    """Write atomically: temp file in the same directory, then rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class SnapshotWriter:
    """Coalesces saves into at most one pending disk write.

    ``save()`` marks the state dirty and makes sure a single drain task is
    running; the task waits out the debounce window and writes the latest
    state. Saves arriving while a write is in flight trigger one more write.
    """

    def __init__(self, path: Path, get_data, debounce: float = DEBOUNCE_SECONDS):
        self.path = path
        self.get_data = get_data
        self.debounce = debounce
        self._dirty = False
        self._task: asyncio.Task | None = None

    def save(self):
        self._dirty = True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._write_now()
            return
        if self._task is None or self._task.done():
            self._task = loop.create_task(self._drain())

    async def _drain(self):
        while self._dirty:
            await asyncio.sleep(self.debounce)
            self._dirty = False
            data = self.get_data()
            try:
                await asyncio.to_thread(write_snapshot, self.path, data)
                logger.debug("Cache snapshot written to %s", self.path)
            except OSError as e:
                logger.warning("Failed to write cache snapshot %s: %s", self.path, e)

    def _write_now(self):
        self._dirty = False
        try:
            write_snapshot(self.path, self.get_data())
        except OSError as e:
            logger.warning("Failed to write cache snapshot %s: %s", self.path, e)

    async def flush(self):
        """Wait for any pending write to land."""
        if self._task is not None:
            await self._task
        if self._dirty:
            self._write_now()

    @property
    def pending(self) -> bool:
        return self._dirty or (self._task is not None and not self._task.done())

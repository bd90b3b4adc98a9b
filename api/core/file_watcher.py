"""
Watch directory monitor.

Polls the watch directory for certificate files, imports new ones through
store discovery and queues a renewal evaluation for records whose source
file changed. Changes to one path within the debounce window coalesce
into a single evaluation.
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import Callable

from core.cert_store import DISCOVERY_SUFFIXES, CertificateStore, DiscoveryResult
from core.errors import CertManagerError
from core.event_bus import EventBus
from core.renewal_engine import RenewalEngine
from models.event import Topic
from models.renewal import RenewalTrigger

logger = logging.getLogger(__name__)


class FileWatcher:
    """Debounced polling watcher over the discovery directory."""

    def __init__(
        self,
        store: CertificateStore,
        engine: RenewalEngine,
        bus: EventBus,
        directory: str | Path,
        debounce_seconds: float = 2.0,
        poll_interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.engine = engine
        self.bus = bus
        self.directory = Path(directory)
        self.debounce_seconds = debounce_seconds
        self.poll_interval = poll_interval
        self._clock = clock
        self._seen: dict[str, tuple[int, int]] = {}
        self._pending: dict[str, float] = {}
        self._task: asyncio.Task | None = None
        self.enabled = True

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.is_running:
            return
        self.directory.mkdir(parents=True, exist_ok=True)
        self._seen = await asyncio.to_thread(self.snapshot)
        await self.scan()
        self._task = asyncio.create_task(self._loop(), name="file-watcher")
        logger.info(f"Watching {self.directory} for certificates (debounce {self.debounce_seconds}s)")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
            logger.info("File watcher stopped")

    def snapshot(self) -> dict[str, tuple[int, int]]:
        """(mtime_ns, size) for every candidate file under the directory."""
        files: dict[str, tuple[int, int]] = {}
        if not self.directory.is_dir():
            return files
        for path in self.directory.rglob("*"):
            if path.suffix.lower() not in DISCOVERY_SUFFIXES + (".key",):
                continue
            try:
                stat = path.stat()
            except OSError:
                continue
            if path.is_file():
                files[str(path)] = (stat.st_mtime_ns, stat.st_size)
        return files

    def note_change(self, path: str) -> None:
        """Record a change; restarts the path's debounce window."""
        self._pending[path] = self._clock() + self.debounce_seconds

    def due_paths(self) -> list[str]:
        now = self._clock()
        return [p for p, deadline in self._pending.items() if deadline <= now]

    async def poll_once(self) -> DiscoveryResult | None:
        """Compare against the last snapshot and flush settled changes."""
        if not self.enabled:
            return None
        current = await asyncio.to_thread(self.snapshot)
        for path, signature in current.items():
            if self._seen.get(path) != signature:
                self.note_change(path)
        self._seen = current

        due = self.due_paths()
        if not due:
            return None
        for path in due:
            del self._pending[path]
        logger.debug(f"Settled changes: {', '.join(due)}")
        return await self.scan()

    async def scan(self) -> DiscoveryResult:
        """Run discovery once and queue renewal evaluations for changed sources."""
        result = await asyncio.to_thread(self.store.discover, self.directory)
        for fingerprint in result.imported:
            self.bus.publish(Topic.CERTIFICATE_UPDATED, {"fingerprint": fingerprint, "action": "imported"})
        for fingerprint in result.changed:
            try:
                await self.engine.enqueue(fingerprint, RenewalTrigger.FILE_WATCH, only_if_due=True)
            except CertManagerError as e:
                logger.warning(f"Unable to queue renewal for changed source of {fingerprint[:16]}...: {e.message}")
        return result

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                await self.poll_once()
            except Exception as e:
                logger.exception(f"File watcher poll failed: {e}")

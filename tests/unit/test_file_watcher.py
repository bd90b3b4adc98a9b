"""
Unit tests for the watch directory monitor.
"""

from pathlib import Path

import pytest

from core.file_watcher import FileWatcher
from models.event import Topic
from models.renewal import RenewalTrigger


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def watcher(services, clock):
    services.store.open()
    directory = Path(services.settings.resolved_watch_dir)
    directory.mkdir(parents=True, exist_ok=True)
    return FileWatcher(services.store, services.engine, services.bus, directory, debounce_seconds=2.0, clock=clock)


class TestDebounce:
    """Changes settle before discovery runs."""

    def test_repeated_changes_extend_window(self, watcher, clock):
        watcher.note_change("/watch/a.crt")
        clock.now += 1.5
        watcher.note_change("/watch/a.crt")
        clock.now += 1.5
        assert watcher.due_paths() == []
        clock.now += 1.0
        assert watcher.due_paths() == ["/watch/a.crt"]

    @pytest.mark.asyncio
    async def test_new_file_imported_after_debounce(self, services, watcher, clock, cert_pair):
        updates = services.bus.subscribe({Topic.CERTIFICATE_UPDATED})
        cert_pem, key_pem = cert_pair
        (watcher.directory / "site.crt").write_bytes(cert_pem)
        (watcher.directory / "site.key").write_bytes(key_pem)

        assert await watcher.poll_once() is None
        clock.now += 1.0
        assert await watcher.poll_once() is None
        clock.now += 1.5
        result = await watcher.poll_once()

        assert len(result.imported) == 1
        record = services.store.get(result.imported[0])
        assert record.key_path is not None
        assert record.source_path == str(watcher.directory / "site.crt")
        assert updates.drain()[0].payload["action"] == "imported"

    @pytest.mark.asyncio
    async def test_changed_source_queues_evaluation(self, services, watcher, clock, cert_pair, cert_factory):
        (watcher.directory / "site.crt").write_bytes(cert_pair[0])
        await watcher.poll_once()
        clock.now += 3
        imported = (await watcher.poll_once()).imported[0]

        (watcher.directory / "site.crt").write_bytes(cert_factory("other.example.test")[0])
        await watcher.poll_once()
        clock.now += 3
        result = await watcher.poll_once()

        assert result.changed == [imported]
        job = services.engine.latest_job(imported)
        assert job.trigger == RenewalTrigger.FILE_WATCH

    @pytest.mark.asyncio
    async def test_disabled_watcher_does_nothing(self, watcher, clock, cert_pair):
        watcher.enabled = False
        (watcher.directory / "site.crt").write_bytes(cert_pair[0])
        clock.now += 10
        assert await watcher.poll_once() is None
        assert watcher.store.count() == 0

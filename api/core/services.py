"""
Service container.

Every component is built once per application and handed to request
handlers through ``Depends(get_services)``; tests build a fresh container
per case.
"""

import asyncio
import logging
from dataclasses import dataclass

from fastapi import Request

from config import Settings
from core.acme_service import ACMEService
from core.cert_scheduler import CertScheduler
from core.cert_store import CertificateStore
from core.database import Database
from core.deploy_pipeline import DeploymentPipeline
from core.docker_service import DockerService
from core.event_bus import EventBus
from core.event_store import EventStore
from core.file_watcher import FileWatcher
from core.passphrase_vault import PassphraseVault
from core.renewal_engine import RenewalEngine
from core.settings_store import SettingsStore
from models.settings import GlobalSettings

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    store: CertificateStore
    vault: PassphraseVault
    acme: ACMEService
    docker: DockerService
    pipeline: DeploymentPipeline
    bus: EventBus
    engine: RenewalEngine
    scheduler: CertScheduler
    event_store: EventStore
    watcher: FileWatcher
    settings_store: SettingsStore

    @property
    def global_settings(self) -> GlobalSettings:
        return self.settings_store.get()

    def apply_global_settings(self, global_settings: GlobalSettings) -> None:
        self.store.configure(
            backup_retention_days=global_settings.backup_retention_days,
            keep_backups_forever=global_settings.keep_backups_forever,
            enable_backups=global_settings.enable_certificate_backups,
        )
        self.engine.global_settings = global_settings
        self.scheduler.reschedule(global_settings)
        self.watcher.enabled = global_settings.enable_file_watch

    async def startup(self) -> None:
        """Open storage, load settings and start background workers."""
        await asyncio.to_thread(self.store.open)
        await self.event_store.initialize()
        self.bus.add_listener(self.event_store.listener)
        self.settings_store.load()

        self.engine.start()
        if self.settings.enable_scheduler:
            await self.scheduler.start()
        if self.settings.enable_file_watch:
            await self.watcher.start()
        self.bus.publish_server_status("running")
        logger.info("Services started")

    async def shutdown(self) -> None:
        self.bus.publish_server_status("stopping")
        await self.watcher.stop()
        await self.scheduler.stop()
        await self.engine.stop()
        await self.event_store.flush()
        logger.info("Services stopped")


def build_services(settings: Settings, vault_iterations: int = 480000) -> Services:
    """Wire every component from startup settings."""
    bus = EventBus()
    global_settings = GlobalSettings()
    store = CertificateStore(
        settings.cert_root,
        watch_dir=settings.resolved_watch_dir,
        redirect_seconds=settings.fingerprint_redirect_seconds,
    )
    vault = PassphraseVault(
        settings.config_dir, master_secret=settings.vault_master_secret, iterations=vault_iterations
    )
    acme = ACMEService(
        settings.config_dir,
        settings.acme_directory_url,
        account_email=settings.acme_account_email,
        challenge_dir=settings.acme_challenge_dir,
        standalone_port=settings.acme_standalone_port,
        dns_hook=settings.acme_dns_hook,
        dns_propagation_seconds=settings.acme_dns_propagation_seconds,
        timeout=settings.acme_timeout,
    )
    docker = DockerService()
    pipeline = DeploymentPipeline(docker, command_timeout=settings.command_timeout)
    engine = RenewalEngine(
        store,
        vault,
        acme,
        pipeline,
        bus,
        global_settings=global_settings,
        workers=settings.renewal_workers,
        passphrase_timeout=settings.passphrase_timeout,
    )
    event_store = EventStore(Database(settings.resolved_activity_db))
    scheduler = CertScheduler(
        store,
        engine,
        bus,
        event_store=event_store,
        global_settings=global_settings,
        event_retention_days=settings.event_retention_days,
    )
    watcher = FileWatcher(
        store,
        engine,
        bus,
        settings.resolved_watch_dir,
        debounce_seconds=settings.watch_debounce_seconds,
        poll_interval=settings.watch_poll_interval,
    )
    settings_store = SettingsStore(settings.settings_file)

    services = Services(
        settings=settings,
        store=store,
        vault=vault,
        acme=acme,
        docker=docker,
        pipeline=pipeline,
        bus=bus,
        engine=engine,
        scheduler=scheduler,
        event_store=event_store,
        watcher=watcher,
        settings_store=settings_store,
    )
    settings_store.add_listener(services.apply_global_settings)
    return services


def get_services(request: Request) -> Services:
    """FastAPI dependency returning the application's service container."""
    return request.app.state.services


def get_principal(request: Request) -> str | None:
    """Opaque principal declared by the caller, recorded in the activity log."""
    return request.headers.get("X-Principal") or None

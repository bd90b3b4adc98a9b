"""
Unit tests for global settings persistence and validation.
"""

import json
import logging

import pytest

from core.errors import InvalidRequestError
from core.settings_store import SettingsStore
from models.settings import GlobalSettings


@pytest.fixture
def settings_path(tmp_path):
    return tmp_path / "settings.json"


class TestGlobalSettingsModel:
    """Model defaults and validation."""

    def test_defaults(self):
        gs = GlobalSettings()
        assert gs.renew_days_before_expiry == 30
        assert gs.ca_validity_period.for_type("rootCA") == 3650
        assert gs.ca_validity_period.for_type("intermediateCA") == 1825
        assert gs.ca_validity_period.for_type("standard") == 90

    def test_camel_case_round_trip(self):
        data = GlobalSettings().to_json()
        assert "renewDaysBeforeExpiry" in data
        assert "backupRetention" in data
        assert "rootCA" in data["caValidityPeriod"]

    @pytest.mark.parametrize("schedule", ["0 0 * * *", "*/15 * * * *", "30 3 * * 1-5"])
    def test_valid_schedules(self, schedule):
        assert GlobalSettings(renewal_schedule=schedule).renewal_schedule == schedule

    def test_invalid_schedule(self):
        with pytest.raises(ValueError):
            GlobalSettings(renewal_schedule="every day")

    def test_invalid_log_level(self):
        with pytest.raises(ValueError):
            GlobalSettings(log_level="loud")


class TestSettingsStore:
    """Load, update and apply."""

    def test_load_missing_file_uses_defaults(self, settings_path):
        store = SettingsStore(settings_path)
        assert store.load() == GlobalSettings()

    def test_load_invalid_file_uses_defaults(self, settings_path):
        settings_path.write_text(json.dumps({"renewDaysBeforeExpiry": 500}))
        assert SettingsStore(settings_path).load().renew_days_before_expiry == 30

    def test_update_merges_and_persists(self, settings_path):
        settings_path.write_text(json.dumps({"apiHost": "127.0.0.1"}))
        store = SettingsStore(settings_path)
        store.load()

        updated = store.update({"renewDaysBeforeExpiry": 14, "caValidityPeriod": {"standard": 30}})

        assert updated.renew_days_before_expiry == 14
        assert updated.ca_validity_period.standard == 30
        assert updated.ca_validity_period.root_ca == 3650

        on_disk = json.loads(settings_path.read_text())
        assert on_disk["apiHost"] == "127.0.0.1"
        assert on_disk["renewDaysBeforeExpiry"] == 14
        assert SettingsStore(settings_path).load().renew_days_before_expiry == 14

    def test_update_accepts_snake_case(self, settings_path):
        store = SettingsStore(settings_path)
        assert store.update({"keep_backups_forever": True}).keep_backups_forever is True

    def test_invalid_update_rejected(self, settings_path):
        store = SettingsStore(settings_path)
        with pytest.raises(InvalidRequestError) as exc_info:
            store.update({"renewalSchedule": "not a cron"})

        assert exc_info.value.details["errors"][0]["field"] == "renewalSchedule"
        assert store.get().renewal_schedule == "0 0 * * *"
        assert not settings_path.exists()

    def test_listeners_receive_updates(self, settings_path):
        store = SettingsStore(settings_path)
        seen = []
        store.add_listener(seen.append)

        store.update({"enableFileWatch": False})

        assert seen[-1].enable_file_watch is False

    def test_log_level_applied(self, settings_path):
        root = logging.getLogger()
        previous = root.level
        try:
            SettingsStore(settings_path).update({"logLevel": "warning"})
            assert root.level == logging.WARNING
        finally:
            root.setLevel(previous)

    def test_update_reconfigures_services(self, services):
        services.settings_store.update({"backupRetention": 7, "enableAutoRenewalJob": False})

        assert services.store.backup_retention_days == 7
        assert services.scheduler.status()["enabled"] is False
        assert services.engine.global_settings.backup_retention_days == 7

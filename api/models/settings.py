"""
Operator-editable global settings.

Persisted as camelCase JSON alongside the startup settings.
"""

import logging

from apscheduler.triggers.cron import CronTrigger
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

LOG_LEVELS = ("debug", "info", "warning", "error", "critical")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CaValidityPeriod(CamelModel):
    """Default validity in days per certificate type."""

    root_ca: int = Field(default=3650, ge=1, le=36500, alias="rootCA")
    intermediate_ca: int = Field(default=1825, ge=1, le=36500, alias="intermediateCA")
    standard: int = Field(default=90, ge=1, le=3650)

    def for_type(self, cert_type: str) -> int:
        return {
            "rootCA": self.root_ca,
            "intermediateCA": self.intermediate_ca,
        }.get(cert_type, self.standard)


class AcmeServer(CamelModel):
    name: str
    directory_url: str = Field(..., pattern=r"^https?://")


def default_acme_servers() -> list[AcmeServer]:
    return [
        AcmeServer(name="letsencrypt", directory_url="https://acme-v02.api.letsencrypt.org/directory"),
        AcmeServer(name="letsencrypt-staging", directory_url="https://acme-staging-v02.api.letsencrypt.org/directory"),
    ]


class GlobalSettings(CamelModel):
    """
    Global settings singleton.

    Serialized with camelCase keys (``model_dump(by_alias=True)``); both
    camelCase and snake_case are accepted on input.
    """

    renew_days_before_expiry: int = Field(default=30, ge=1, le=90)
    auto_renew_by_default: bool = True
    ca_validity_period: CaValidityPeriod = Field(default_factory=CaValidityPeriod)
    enable_certificate_backups: bool = True
    backup_retention_days: int = Field(default=90, ge=1, alias="backupRetention")
    keep_backups_forever: bool = False

    # HTTPS admin interface
    enable_https: bool = False
    https_port: int = Field(default=4443, ge=1, le=65535)
    https_cert_path: str | None = None
    https_key_path: str | None = None

    acme_servers: list[AcmeServer] = Field(default_factory=default_acme_servers)
    log_level: str = "info"

    enable_auto_renewal_job: bool = True
    renewal_schedule: str = "0 0 * * *"
    enable_file_watch: bool = True

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in LOG_LEVELS:
            raise ValueError(f"logLevel must be one of {', '.join(LOG_LEVELS)}")
        return v

    @field_validator("renewal_schedule")
    @classmethod
    def validate_renewal_schedule(cls, v: str) -> str:
        v = v.strip()
        try:
            CronTrigger.from_crontab(v)
        except ValueError as e:
            raise ValueError(f"Invalid cron expression {v!r}: {e}") from e
        return v

    @property
    def python_log_level(self) -> int:
        return getattr(logging, self.log_level.upper(), logging.INFO)

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)

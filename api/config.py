"""
Configuration utilities and settings management.

Startup settings are resolved from environment variables first, then from
the operator-editable settings file, then from defaults.
"""

import os
from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import (
    BaseSettings,
    JsonConfigSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

DEFAULT_CONFIG_DIR = "/config"


def get_settings_file() -> Path:
    """Location of the shared settings.json (startup values + global settings)."""
    config_dir = os.environ.get("CONFIG_DIR", DEFAULT_CONFIG_DIR)
    return Path(os.environ.get("SETTINGS_FILE", str(Path(config_dir) / "settings.json")))


def _alias(env_name: str, file_name: str) -> AliasChoices:
    return AliasChoices(env_name, file_name)


class Settings(BaseSettings):
    """Application settings loaded from environment, settings file and defaults."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # API Configuration
    api_host: str = Field(default="0.0.0.0", validation_alias=_alias("API_HOST", "apiHost"))
    https_port: int = Field(default=4443, validation_alias=_alias("HTTPS_PORT", "httpsPort"))
    api_debug: bool = Field(default=False, validation_alias=_alias("API_DEBUG", "apiDebug"))
    cors_allowed_origins: str = Field(
        default="",
        validation_alias=_alias("CORS_ALLOWED_ORIGINS", "corsAllowedOrigins"),
        description="Comma-separated list of allowed CORS origins (empty = wildcard in debug mode only)",
    )

    # Storage
    config_dir: str = Field(default=DEFAULT_CONFIG_DIR, validation_alias=_alias("CONFIG_DIR", "configDir"))
    cert_root: str = Field(
        default="/certs",
        validation_alias=_alias("CERT_ROOT", "certsDir"),
        description="Root directory holding live, backup and staging certificate material",
    )
    watch_dir: str | None = Field(
        default=None,
        validation_alias=_alias("WATCH_DIR", "watchDir"),
        description="Directory scanned for certificates to import (defaults to <cert_root>/import)",
    )
    activity_db_path: str | None = Field(
        default=None,
        validation_alias=_alias("ACTIVITY_DB_PATH", "activityDbPath"),
        description="SQLite database for the activity log (defaults to <config_dir>/activity.db)",
    )

    # ACME
    acme_directory_url: str = Field(
        default="https://acme-v02.api.letsencrypt.org/directory",
        validation_alias=_alias("ACME_DIRECTORY_URL", "acmeDirectoryUrl"),
    )
    acme_account_email: str = Field(default="", validation_alias=_alias("ACME_ACCOUNT_EMAIL", "acmeAccountEmail"))
    acme_challenge_dir: str = Field(
        default="/var/www/.well-known/acme-challenge",
        validation_alias=_alias("ACME_CHALLENGE_DIR", "acmeChallengeDir"),
        description="Webroot directory for ACME HTTP-01 challenge files",
    )
    acme_standalone_port: int = Field(default=80, validation_alias=_alias("ACME_STANDALONE_PORT", "acmeStandalonePort"))
    acme_dns_hook: str = Field(
        default="",
        validation_alias=_alias("ACME_DNS_HOOK", "acmeDnsHook"),
        description="Command publishing/removing DNS-01 TXT records (ACME_ACTION, ACME_TXT_NAME, ACME_TXT_VALUE)",
    )
    acme_dns_propagation_seconds: int = Field(
        default=30, validation_alias=_alias("ACME_DNS_PROPAGATION_SECONDS", "acmeDnsPropagationSeconds")
    )

    # Vault
    vault_master_secret: str | None = Field(
        default=None,
        validation_alias=_alias("VAULT_MASTER_SECRET", "vaultMasterSecret"),
        description="Master secret for encrypting persisted CA passphrases",
    )

    # Renewal engine
    renewal_workers: int = Field(default=4, ge=1, validation_alias=_alias("RENEWAL_WORKERS", "renewalWorkers"))
    acme_timeout: float = Field(default=600.0, validation_alias=_alias("ACME_TIMEOUT", "acmeTimeout"))
    command_timeout: float = Field(default=120.0, validation_alias=_alias("COMMAND_TIMEOUT", "commandTimeout"))
    passphrase_timeout: float = Field(default=300.0, validation_alias=_alias("PASSPHRASE_TIMEOUT", "passphraseTimeout"))
    request_wait_timeout: float = Field(
        default=60.0,
        validation_alias=_alias("REQUEST_WAIT_TIMEOUT", "requestWaitTimeout"),
        description="Seconds an HTTP renew call waits for the job to settle before answering 'queued'",
    )
    fingerprint_redirect_seconds: float = Field(
        default=60.0, validation_alias=_alias("FINGERPRINT_REDIRECT_SECONDS", "fingerprintRedirectSeconds")
    )

    # Background jobs
    enable_scheduler: bool = Field(default=True, validation_alias=_alias("ENABLE_SCHEDULER", "enableScheduler"))
    enable_file_watch: bool = Field(default=True, validation_alias=_alias("ENABLE_FILE_WATCH", "enableFileWatch"))
    watch_debounce_seconds: float = Field(
        default=2.0, validation_alias=_alias("WATCH_DEBOUNCE_SECONDS", "watchDebounceSeconds")
    )
    watch_poll_interval: float = Field(default=1.0, validation_alias=_alias("WATCH_POLL_INTERVAL", "watchPollInterval"))
    event_retention_days: int = Field(
        default=90, validation_alias=_alias("EVENT_RETENTION_DAYS", "eventRetentionDays")
    )

    # Rate limiting
    rate_limit_enabled: bool = Field(default=True, validation_alias=_alias("RATE_LIMIT_ENABLED", "rateLimitEnabled"))
    rate_limit_default: str = Field(default="120/minute", validation_alias=_alias("RATE_LIMIT_DEFAULT", "rateLimitDefault"))

    # Logging
    log_level: str = Field(default="INFO", validation_alias=_alias("LOG_LEVEL", "logLevel"))

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # environment > settings file > defaults
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            JsonConfigSettingsSource(settings_cls, json_file=get_settings_file()),
            file_secret_settings,
        )

    @property
    def settings_file(self) -> Path:
        return Path(self.config_dir) / "settings.json"

    @property
    def resolved_watch_dir(self) -> Path:
        if self.watch_dir:
            return Path(self.watch_dir)
        return Path(self.cert_root) / "import"

    @property
    def resolved_activity_db(self) -> Path:
        if self.activity_db_path:
            return Path(self.activity_db_path)
        return Path(self.config_dir) / "activity.db"


def load_settings(**overrides) -> Settings:
    """Build a fresh Settings instance; keyword overrides win over every source."""
    return Settings(**overrides)


def ensure_directories(settings: Settings) -> None:
    """Ensure required directories exist."""
    dirs_to_create = [
        settings.config_dir,
        settings.cert_root,
        settings.resolved_watch_dir,
    ]

    for dir_path in dirs_to_create:
        Path(dir_path).mkdir(parents=True, exist_ok=True)

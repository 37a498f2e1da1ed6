"""Runtime configuration — env-driven via pydantic-settings.

Reads from a .env file and ENVFORGE_* environment variables.
"""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

from envforge.core.session import DEFAULT_PURE_KEEP


class EnvforgeSettings(BaseSettings):
    """Configuration with environment variable overrides.

    All settings can be overridden via ENVFORGE_* environment variables
    or a .env file in the working directory.

    Examples
    --------
    Override via environment::

        export ENVFORGE_STORE_PATH=/var/cache/envforge/store
        export ENVFORGE_MAX_PARALLEL_BUILDS=8
        export ENVFORGE_LOG_LEVEL=DEBUG

    Or via .env file::

        ENVFORGE_CATALOG_PATH=/srv/catalog.toml
        ENVFORGE_VERIFY_ON_REUSE=false
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="ENVFORGE_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Runtime environment
    environment: str = "development"
    log_level: str = "INFO"
    debug: bool = False

    # Storage paths
    store_path: Path = Path(".envforge/store")
    catalog_path: Path = Path(".envforge/catalog.toml")
    ledger_path: Path = Path(".envforge/ledger.db")

    # Materialization
    max_parallel_builds: int = 4
    lock_timeout_seconds: float = 600.0
    lock_poll_interval_seconds: float = 0.05
    verify_on_reuse: bool = True

    # Sessions
    shell: str | None = None  # interactive shell for `activate`; falls back to $SHELL
    pure_keep_variables: tuple[str, ...] = DEFAULT_PURE_KEEP

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


# Module-level singleton; import as `from envforge.config import settings`
settings = EnvforgeSettings()

"""
Kinsync Configuration Settings
"""
from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Paths (use KINSYNC_ prefix)
    data_path: Path = Field(
        default=Path("./data"),
        alias="KINSYNC_DATA_PATH",
        description="Directory holding sync.db and the local secret key"
    )

    # Server
    port: int = Field(default=8000, alias="KINSYNC_PORT")
    host: str = Field(default="0.0.0.0", alias="KINSYNC_HOST")

    # Identity of this application as seen by the counterpart
    app_name: str = Field(
        default="temerio",
        alias="KINSYNC_APP_NAME",
        description="Name this app announces when pairing"
    )
    public_base_url: str = Field(
        default="http://localhost:8000",
        alias="KINSYNC_PUBLIC_BASE_URL",
        description="Externally reachable base URL of this app"
    )

    # Counterpart defaults (used when a pairing request names no address)
    remote_base_url: str = Field(
        default="",
        alias="KINSYNC_REMOTE_BASE_URL",
        description="Base URL of the counterpart app"
    )
    remote_app_name: str = Field(default="cherishly", alias="KINSYNC_REMOTE_APP_NAME")

    # Peer endpoint prefix (must match on both sides)
    sync_path_prefix: str = Field(default="/api/sync/peer", alias="KINSYNC_SYNC_PATH_PREFIX")

    # Pairing
    pairing_code_ttl_minutes: int = Field(default=10, alias="KINSYNC_PAIRING_CODE_TTL")
    pairing_code_length: int = Field(default=6, alias="KINSYNC_PAIRING_CODE_LENGTH")

    # Transport
    pull_batch_limit: int = Field(default=200, alias="KINSYNC_PULL_BATCH_LIMIT")
    list_people_limit: int = Field(default=500, alias="KINSYNC_LIST_PEOPLE_LIMIT")
    remote_timeout_seconds: float = Field(
        default=30.0,
        alias="KINSYNC_REMOTE_TIMEOUT",
        description="Timeout for a single counterpart call (no retries)"
    )

    # Secrets at rest. Leave empty to generate data/secret.key on first use.
    secret_encryption_key: str = Field(
        default="",
        alias="KINSYNC_SECRET_KEY",
        description="Fernet key used to encrypt shared secrets at rest"
    )

    # User assumed when a request carries no X-User-Id header
    default_user_id: str = Field(default="local-user", alias="KINSYNC_DEFAULT_USER")

    @property
    def sync_db_path(self) -> Path:
        """Path to the sync SQLite database."""
        return Path(self.data_path) / "sync.db"

    @property
    def secret_key_path(self) -> Path:
        """Path to the generated Fernet key file."""
        return Path(self.data_path) / "secret.key"

    @property
    def pairing_enabled(self) -> bool:
        """Check if this app can initiate pairing without an explicit address."""
        return bool(self.remote_base_url)


settings = Settings()

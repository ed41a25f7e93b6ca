"""Application configuration via environment variables."""

from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Mailkan settings."""

    # IMAP
    imap_host: str = "127.0.0.1"
    imap_port: int = 993
    imap_user: str = ""
    imap_password: str = ""
    imap_use_ssl: bool = True
    # Self-hosted servers often run with self-signed certs
    imap_verify_ssl: bool = False

    # Timeouts (seconds)
    connect_timeout: float = 3.0
    response_timeout: float = 10.0

    # Live fetch
    cache_ttl_seconds: float = 60.0
    max_messages_per_folder: int = 100

    # Moves
    settle_delay_seconds: float = 1.0
    resolve_new_uid: bool = True

    # Persisted board snapshot
    data_file: Path = Path("data/emails.json")

    # Polling (0 disables the background task)
    sync_interval_minutes: int = 0

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 3000
    api_token: str = ""

    @property
    def imap_configured(self) -> bool:
        return bool(self.imap_user and self.imap_password)

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()

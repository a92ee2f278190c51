"""Application configuration"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings"""

    # Database
    database_url: str = "sqlite:///./issuesync.db"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Target repository (single target per run)
    github_owner: str = ""
    github_repo: str = ""
    github_api_url: str = "https://api.github.com"

    # Credentials. A PAT wins when both modes are configured.
    github_token: str | None = None
    github_app_id: int | None = None
    github_app_private_key: str | None = None
    github_app_private_key_path: str | None = None
    github_installation_id: int | None = None

    # Remote calls
    request_timeout_seconds: int = 30

    # Sync
    sync_interval_minutes: int = 30
    sync_batch_size: int = 100
    sync_limit: int = 100000
    # Incremental runs re-read this much history before the last checkpoint.
    incremental_skew_minutes: int = 60
    # A lock older than this is considered abandoned (crashed worker).
    sync_lock_ttl_minutes: int = 120
    scheduler_enabled: bool = True

    # Person backfill maintenance job
    backfill_interval_minutes: int = 60
    backfill_person_batch_size: int = 500

    # Logging
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = False

    @property
    def target(self) -> str:
        return f"{self.github_owner}/{self.github_repo}"


settings = Settings()

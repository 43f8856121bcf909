from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    github_app_id: str = ""
    github_app_private_key: str = ""  # PEM text (escaped \n allowed) or a path to a .pem file
    github_api_url: str = "https://api.github.com"
    github_api_version: str = "2022-11-28"
    github_http_timeout_seconds: float = 15.0
    github_cache_tokens: bool = False
    sync_log_hard_failures: bool = False  # write an "error" SyncLog when auth/listing aborts a run
    database_url: str = "sqlite:///./ghfolio.db"
    repo_sync_interval_hours: int = 6

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings

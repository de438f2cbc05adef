"""
Runtime settings for the command line front-end, using pydantic-settings.
"""

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="PLMCHAT_", env_file=".env", env_file_encoding="utf-8", case_sensitive=False
    )

    data_dir: Path = Path.home() / ".plmchat"
    log_level: str = "INFO"

    @property
    def store_path(self) -> Path:
        return self.data_dir / "store.json"


def get_settings() -> Settings:
    return Settings()

"""Server settings.

Values are read from environment variables with the ``CHAT_`` prefix (or a
``.env`` file), e.g. ``CHAT_DATABASE_URL=sqlite:///./chat.db``.
"""

from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings for the directory/relay server."""

    model_config = SettingsConfigDict(env_prefix="CHAT_", env_file=".env", extra="ignore")

    app_name: str = "Encrypted Chat Server"
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    # None keeps all state in memory; any SQLAlchemy URL persists it
    database_url: Optional[str] = None

    # Per-recipient inbox cap; 0 disables the cap
    max_queue_length: int = Field(default=1000, ge=0)

    # Who inherits a group when its creator leaves
    creator_succession: Literal["first", "alphabetical"] = "first"


def get_settings() -> Settings:
    return Settings()

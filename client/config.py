"""
Client configuration, read from ``CHAT_CLIENT_*`` environment variables.
"""

from typing import Literal
from pydantic_settings import BaseSettings, SettingsConfigDict

from .storage import ClientStorage, EncryptedStorage, JsonFileStorage, MemoryStorage


class ClientSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CHAT_CLIENT_", env_file=".env", extra="ignore")

    server_url: str = "http://localhost:8000"
    data_dir: str = "client_data"
    storage: Literal["json", "encrypted", "memory"] = "json"
    log_level: str = "WARNING"


def open_storage(settings: ClientSettings, username: str) -> ClientStorage:
    """
    Build the configured storage backend for a user.

    Encrypted storage is returned locked; the caller must unlock() it.
    """
    if settings.storage == "memory":
        return MemoryStorage(username)
    if settings.storage == "encrypted":
        return EncryptedStorage(username, settings.data_dir)
    return JsonFileStorage(username, settings.data_dir)

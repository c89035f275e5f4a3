import logging
import os
from functools import lru_cache
from typing import Optional

from pydantic import BaseModel, Field, field_validator


def _env(name: str, default: Optional[str] = None, *aliases: str) -> Optional[str]:
    for key in (name, *aliases):
        value = os.getenv(key)
        if value:
            return value
    return default


class Settings(BaseModel):
    provider_base: str = Field("http://localhost:5021", description="Payment QR provider base URL")
    callback_secret: str = ""
    admin_key: str = ""
    device_pepper: str = ""
    request_timeout: float = Field(20.0, gt=0)

    store_backend: str = Field("github", pattern="^(github|mongo|memory)$")
    gh_owner: str = ""
    gh_repo: str = ""
    gh_branch: str = "main"
    gh_path: str = "database.json"
    gh_token: str = ""
    database_url: Optional[str] = None
    database_name: Optional[str] = None

    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def known_log_level(cls, value: str) -> str:
        level = value.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"unknown log level: {value}")
        return level


def load_settings() -> Settings:
    return Settings(
        provider_base=_env("PROVIDER_BASE", "http://localhost:5021", "VPS_BASE").rstrip("/"),
        callback_secret=_env("CALLBACK_SECRET", ""),
        admin_key=_env("ADMIN_KEY", ""),
        device_pepper=_env("DEVICE_PEPPER", ""),
        request_timeout=float(_env("REQUEST_TIMEOUT", "20")),
        store_backend=_env("STORE_BACKEND", "github").lower(),
        gh_owner=_env("GH_OWNER", ""),
        gh_repo=_env("GH_REPO", ""),
        gh_branch=_env("GH_BRANCH", "main"),
        gh_path=_env("GH_PATH", "database.json"),
        gh_token=_env("GH_TOKEN", ""),
        database_url=_env("DATABASE_URL"),
        database_name=_env("DATABASE_NAME"),
        log_level=_env("LOG_LEVEL", "INFO").upper(),
    )


@lru_cache
def get_settings() -> Settings:
    return load_settings()

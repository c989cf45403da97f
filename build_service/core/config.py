"""
Service configuration from environment variables and an optional .env file.
All settings have defaults; the two bearer secrets default to empty, which
locks the corresponding routes.
"""
import logging
import re
import shlex
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_BUILD_TIMEOUT_S = 60 * 60

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(h|ms|m|s)")
_UNIT_SECONDS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


def parse_duration(value: str, default: float = DEFAULT_BUILD_TIMEOUT_S) -> float:
    """
    Parse a duration such as "60m", "1h30m", "90s" or "3600" into seconds.

    Invalid or non-positive values fall back to the default with a warning.
    """
    text = (value or "").strip()
    if not text:
        return default
    try:
        seconds = float(text)
    except ValueError:
        seconds = None
    if seconds is None:
        parts = _DURATION_PART.findall(text)
        if not parts or "".join(n + u for n, u in parts) != text:
            logger.warning(f"invalid_duration value={text!r} default_s={default}")
            return default
        seconds = sum(float(n) * _UNIT_SECONDS[u] for n, u in parts)
    if seconds <= 0:
        logger.warning(f"invalid_duration value={text!r} default_s={default}")
        return default
    return seconds


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    listen_host: str = "0.0.0.0"
    server_port: int = 8080
    shutdown_timeout: int = 5

    log_directory: str = "/home/server/expo-build-service/logs"
    log_file: str = "server.log"
    log_level: str = "INFO"
    log_poll_interval: float = 0.1

    build_timeout: str = "60m"
    temp_dir_prefix: str = "build-"
    temp_dir_root: Optional[str] = None
    default_clone_branch: str = "main"
    allowed_platforms: str = "android,ios"
    install_command: str = "npm install"
    build_command: str = "eas build"

    update_script_path: str = "/home/server/expo-build-service/update_server.sh"
    update_timeout: str = "30m"

    # Never logged
    auth_token: str = ""
    update_auth_token: str = ""

    @property
    def log_path(self) -> Path:
        return Path(self.log_directory) / self.log_file

    @property
    def build_timeout_s(self) -> float:
        return parse_duration(self.build_timeout)

    @property
    def update_timeout_s(self) -> float:
        return parse_duration(self.update_timeout, default=30 * 60)

    @property
    def platforms(self) -> list[str]:
        return [p.strip().lower() for p in self.allowed_platforms.split(",") if p.strip()]

    @property
    def install_argv(self) -> list[str]:
        return shlex.split(self.install_command)

    @property
    def build_argv(self) -> list[str]:
        return shlex.split(self.build_command)


@lru_cache
def get_settings() -> Settings:
    """Load settings once per process."""
    return Settings()

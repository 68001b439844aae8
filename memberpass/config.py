from __future__ import annotations

from typing import Optional

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    backend_url: str = "http://localhost:54321"
    backend_anon_key: str = ""

    # Explicit timeout and bounded retry of connection failures
    request_timeout: float = 10.0
    request_retries: int = 2

    history_page_size: int = 20
    # Zone used to turn custom history dates into day boundaries
    timezone: str = "UTC"
    client_cache_ttl: float = 300.0

    # Camera indices per facing mode; rear is tried first
    camera_rear_index: int = 0
    camera_front_index: Optional[int] = 1
    scan_fps: float = 10.0

    qr_service_url: str = "https://api.qrserver.com/v1/create-qr-code/"
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_prefix = "MEMBERPASS_"


@lru_cache
def get_settings() -> Settings:
    return Settings()

from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    db_path: str
    statistics_db_path: str
    server_url: str
    username: str
    password: str
    catalog_username: str
    catalog_password: str
    request_timeout: float
    session_detection_mode: str
    min_duration_seconds: int
    min_pages: int
    progress_decimal_places: int
    manual_sync_only: bool
    force_push_on_suspend: bool
    secure_logs: bool
    log_file: str
    log_level: str

    @property
    def has_catalog_credentials(self) -> bool:
        return bool(self.catalog_username and self.catalog_password)

    @staticmethod
    def from_env() -> "Settings":
        def _b(name: str, default: str) -> bool:
            return os.getenv(name, default).strip() in ("1", "true", "True", "yes", "YES")

        def _i(name: str, default: str) -> int:
            return int(os.getenv(name, default).strip())

        return Settings(
            db_path=os.getenv("DB_PATH", "/app/_local/data/readsync.db").strip(),
            statistics_db_path=os.getenv("STATISTICS_DB_PATH", "").strip(),
            server_url=os.getenv("SERVER_URL", "").strip().rstrip("/"),
            username=os.getenv("SYNC_USERNAME", "").strip(),
            password=os.getenv("SYNC_PASSWORD", ""),
            catalog_username=os.getenv("CATALOG_USERNAME", "").strip(),
            catalog_password=os.getenv("CATALOG_PASSWORD", ""),
            request_timeout=float(os.getenv("REQUEST_TIMEOUT", "10").strip()),
            session_detection_mode=os.getenv("SESSION_DETECTION_MODE", "duration").strip().lower(),
            min_duration_seconds=_i("MIN_DURATION_SECONDS", "30"),
            min_pages=_i("MIN_PAGES", "5"),
            progress_decimal_places=_i("PROGRESS_DECIMAL_PLACES", "2"),
            manual_sync_only=_b("MANUAL_SYNC_ONLY", "0"),
            force_push_on_suspend=_b("FORCE_PUSH_ON_SUSPEND", "0"),
            secure_logs=_b("SECURE_LOGS", "0"),
            log_file=os.getenv("LOG_FILE", "").strip(),
            log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
        )

from __future__ import annotations

import os
from dataclasses import dataclass


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _url_env(name: str, default: str) -> str:
    return os.getenv(name, default).strip().rstrip("/")


@dataclass(frozen=True)
class Settings:
    app_env: str
    persistence_enabled: bool
    persistence_db_path: str
    database_url: str
    auth_enabled: bool
    jwt_secret: str
    jwt_algorithm: str
    gateway_webhook_secret: str
    webhook_max_retries: int
    webhook_retry_backoff_seconds: int
    evolution_base_url: str
    evolution_api_key: str
    uazapi_base_url: str
    gateway_timeout_seconds: int
    hubla_webhook_token: str
    onesignal_app_id: str
    onesignal_api_key: str
    ai_gateway_url: str
    ai_gateway_api_key: str
    ai_default_model: str
    flow_lock_timeout_seconds: int
    flow_max_inline_delay_seconds: int
    delay_queue_batch_size: int
    blaster_batch_size: int
    blaster_flow_batch_size: int
    inbound_dedupe_window_seconds: int
    commerce_dedupe_window_seconds: int


def load_settings() -> Settings:
    persistence_db_path = os.getenv("PERSISTENCE_DB_PATH", "data/zapdesk.sqlite3").strip()
    database_url = os.getenv("DATABASE_URL", "").strip()
    if not database_url:
        database_url = f"sqlite:///{persistence_db_path.replace(chr(92), '/')}"
    return Settings(
        app_env=os.getenv("APP_ENV", "development"),
        persistence_enabled=_bool_env("PERSISTENCE_ENABLED", True),
        persistence_db_path=persistence_db_path,
        database_url=database_url,
        auth_enabled=_bool_env("AUTH_ENABLED", False),
        jwt_secret=os.getenv("JWT_SECRET", "dev-only-secret-change-in-prod").strip(),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256").strip(),
        gateway_webhook_secret=os.getenv("GATEWAY_WEBHOOK_SECRET", "").strip(),
        webhook_max_retries=max(1, _int_env("WEBHOOK_MAX_RETRIES", 3)),
        webhook_retry_backoff_seconds=max(1, _int_env("WEBHOOK_RETRY_BACKOFF_SECONDS", 60)),
        evolution_base_url=_url_env("EVOLUTION_BASE_URL", "https://api.chatwp.xyz"),
        evolution_api_key=os.getenv("EVOLUTION_API_KEY", "").strip(),
        uazapi_base_url=_url_env("UAZAPI_BASE_URL", "https://zapdata.uazapi.com"),
        gateway_timeout_seconds=max(1, _int_env("GATEWAY_TIMEOUT_SECONDS", 15)),
        hubla_webhook_token=os.getenv("HUBLA_WEBHOOK_TOKEN", "").strip(),
        onesignal_app_id=os.getenv("ONESIGNAL_APP_ID", "").strip(),
        onesignal_api_key=os.getenv("ONESIGNAL_API_KEY", "").strip(),
        ai_gateway_url=_url_env(
            "AI_GATEWAY_URL", "https://ai.gateway.lovable.dev/v1/chat/completions"
        ),
        ai_gateway_api_key=os.getenv("AI_GATEWAY_API_KEY", "").strip(),
        ai_default_model=os.getenv("AI_DEFAULT_MODEL", "google/gemini-2.5-flash").strip(),
        flow_lock_timeout_seconds=max(1, _int_env("FLOW_LOCK_TIMEOUT_SECONDS", 60)),
        flow_max_inline_delay_seconds=max(0, _int_env("FLOW_MAX_INLINE_DELAY_SECONDS", 20)),
        delay_queue_batch_size=max(1, min(500, _int_env("DELAY_QUEUE_BATCH_SIZE", 50))),
        blaster_batch_size=max(1, _int_env("BLASTER_BATCH_SIZE", 10)),
        blaster_flow_batch_size=max(1, _int_env("BLASTER_FLOW_BATCH_SIZE", 5)),
        inbound_dedupe_window_seconds=max(0, _int_env("INBOUND_DEDUPE_WINDOW_SECONDS", 30)),
        commerce_dedupe_window_seconds=max(0, _int_env("COMMERCE_DEDUPE_WINDOW_SECONDS", 60)),
    )

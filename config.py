"""
config.py
Settings read from the environment (and a local .env file when present).
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv


@dataclass(frozen=True)
class Settings:
    supabase_url: str
    supabase_key: str
    club_name: str = "BodyForce"
    log_level: str = "INFO"
    fetch_page_size: int = 1000
    invite_expiry_days: int = 7
    invite_resend_minutes: int = 5
    invite_function: str = "invitation-sender"
    app_url: str = "http://localhost:8501"


def _require(name: str) -> str:
    value = os.getenv(name, "").strip()
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def load_settings(env_file: str | None = None) -> Settings:
    load_dotenv(env_file)
    return Settings(
        supabase_url=_require("SUPABASE_URL"),
        supabase_key=_require("SUPABASE_ANON_KEY"),
        club_name=os.getenv("CLUB_NAME", "BodyForce"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        fetch_page_size=int(os.getenv("FETCH_PAGE_SIZE", "1000")),
        invite_expiry_days=int(os.getenv("INVITE_EXPIRY_DAYS", "7")),
        invite_resend_minutes=int(os.getenv("INVITE_RESEND_MINUTES", "5")),
        invite_function=os.getenv("INVITE_FUNCTION", "invitation-sender"),
        app_url=os.getenv("APP_URL", "http://localhost:8501").rstrip("/"),
    )

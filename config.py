"""
Runtime configuration

Everything is read from the environment (a local .env file is honoured).
Import `settings` and `get_logger` from here rather than calling os.getenv
around the codebase.
"""

import logging
import os
from typing import Dict, List

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()


def _split_csv(raw: str) -> List[str]:
    return [part.strip() for part in (raw or "").split(",") if part.strip()]


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


class Settings(BaseModel):
    database_url: str = os.getenv("DATABASE_URL", "")
    database_name: str = os.getenv("DATABASE_NAME", "")

    jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change-me")
    jwt_alg: str = os.getenv("JWT_ALG", "HS256")
    jwt_expire_minutes: int = _int_env("JWT_EXPIRE_MIN", 720)
    # "email:hash,email:hash" where hash is a passlib bcrypt hash
    superadmin_accounts: str = os.getenv("SUPERADMIN_ACCOUNTS", "")

    google_maps_api_key: str = os.getenv("GOOGLE_MAPS_API_KEY", "").strip()
    maps_timeout_seconds: int = _int_env("MAPS_TIMEOUT_SECONDS", 10)

    emailjs_service_id: str = os.getenv("EMAILJS_SERVICE_ID", "").strip()
    emailjs_template_id: str = os.getenv("EMAILJS_TEMPLATE_ID", "").strip()
    emailjs_public_key: str = os.getenv("EMAILJS_PUBLIC_KEY", "").strip()
    admin_notify_emails: List[str] = _split_csv(os.getenv("ADMIN_NOTIFY_EMAILS", ""))

    live_refresh_seconds: int = _int_env("LIVE_REFRESH_SECONDS", 0)
    tracking_poll_seconds: int = _int_env("TRACKING_POLL_SECONDS", 5)

    allow_origins: List[str] = _split_csv(os.getenv("ALLOW_ORIGINS", "*"))
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

    def superadmins(self) -> Dict[str, str]:
        accounts: Dict[str, str] = {}
        for entry in _split_csv(self.superadmin_accounts):
            email, sep, hashed = entry.partition(":")
            if sep and email.strip() and hashed.strip():
                accounts[email.strip().lower()] = hashed.strip()
        return accounts


settings = Settings()


# -------------------- Logger --------------------
logger = logging.getLogger("sachio")
if not logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("[SACHIO] %(levelname)s %(name)s: %(message)s"))
    logger.addHandler(_handler)
logger.setLevel(settings.log_level)


def get_logger(name: str) -> logging.Logger:
    return logger.getChild(name)

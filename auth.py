from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from passlib.context import CryptContext

import database
from config import settings, get_logger
from schemas import StaffSession

logger = get_logger("auth")

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

ROLE_SUPERADMIN = "superadmin"
ROLE_STAFF = "staff"


class AuthError(Exception):
    """Login refused. The message is safe to show to the user."""


def hash_password(p: str) -> str:
    return pwd_context.hash(p)


def verify_password(p: str, h: Optional[str]) -> bool:
    if not h:
        return False
    try:
        return pwd_context.verify(p, h)
    except ValueError:
        return False


def create_token(email: str, role: str, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    payload = {
        "sub": email,
        "role": role,
        "iat": now,
        "exp": now + timedelta(minutes=settings.jwt_expire_minutes),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_alg)


def decode_token(token: str) -> Optional[Dict[str, Any]]:
    try:
        data = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_alg])
    except jwt.PyJWTError:
        return None
    if not data.get("sub") or data.get("role") not in (ROLE_SUPERADMIN, ROLE_STAFF):
        return None
    return {"email": data["sub"], "role": data["role"]}


def find_staff_account(email: str) -> Optional[dict]:
    found = database.get_documents("staffAccounts", {"email": email}, limit=1)
    return found[0] if found else None


def touch_staff_session(email: str, status: str, now: Optional[datetime] = None) -> None:
    """Best-effort presence heartbeat in staffSessions/<email>."""
    try:
        database.set_document(
            "staffSessions",
            email,
            StaffSession(email=email, role=ROLE_STAFF, status=status, last_active=now or datetime.now(timezone.utc)),
        )
    except database.DatabaseUnavailable as exc:
        logger.warning("Staff session update failed for %s: %s", email, exc)


def authenticate(email: str, password: str) -> Dict[str, str]:
    """Check credentials and return the session principal {email, role}."""
    email = email.strip().lower()
    superadmin_hash = settings.superadmins().get(email)
    if superadmin_hash is not None:
        if not verify_password(password, superadmin_hash):
            raise AuthError("Invalid email or password.")
        logger.info("superadmin login: %s", email)
        return {"email": email, "role": ROLE_SUPERADMIN}

    account = find_staff_account(email)
    if not account:
        raise AuthError("You are not authorized as staff.")
    if account.get("blocked"):
        raise AuthError("This staff account is blocked. Contact your administrator.")
    if not verify_password(password, account.get("passwordHash")):
        raise AuthError("Invalid email or password.")
    touch_staff_session(email, "online")
    logger.info("staff login: %s", email)
    return {"email": email, "role": ROLE_STAFF}


def is_staff_blocked(email: str) -> bool:
    account = find_staff_account(email)
    return account is None or bool(account.get("blocked"))

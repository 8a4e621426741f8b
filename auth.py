from __future__ import annotations

import asyncio
import hashlib
import hmac
import secrets
from dataclasses import dataclass
from typing import Any, Dict, Optional

from itsdangerous import BadData, URLSafeSerializer
from passlib.context import CryptContext

from errors import InternalError, InvalidInput

# Author: Daniel Neugent

SESSION_COOKIE_NAME = "lenon_session"
CSRF_COOKIE_NAME = "lenon_csrf"
CSRF_HEADER_NAME = "x-csrf-token"
DEFAULT_MAX_AGE = 60 * 60 * 24  # 1 day

# argon2id with passlib's default cost parameters; the hash string embeds
# algorithm, cost, salt and digest.
pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")


@dataclass
class SessionToken:
    token: str
    token_hash: str


def _hash_password_sync(plain: str) -> str:
    try:
        return pwd_context.hash(plain)
    except Exception as exc:
        raise InternalError("Password hashing failed.") from exc


def _verify_password_sync(plain: str, hashed: str) -> bool:
    try:
        return pwd_context.verify(plain, hashed)
    except (ValueError, TypeError):
        # Unparseable or foreign hash formats count as a mismatch.
        return False


async def hash_password(plain: str) -> str:
    """Derive a salted argon2 hash on a worker thread."""
    if not plain:
        raise InvalidInput("Hasło jest wymagane.")
    return await asyncio.to_thread(_hash_password_sync, plain)


async def verify_password(plain: str, hashed: str) -> bool:
    """Compare a plaintext password against the stored hash on a worker thread."""
    if not plain or not hashed:
        return False
    return await asyncio.to_thread(_verify_password_sync, plain, hashed)


async def dummy_verify() -> None:
    """Spend the cost of one verification so unknown usernames take as long."""
    await asyncio.to_thread(pwd_context.dummy_verify)


def hash_session_token(token: str) -> str:
    """Only this digest of a session token is ever stored."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def verify_session_token(token: str, token_hash: str) -> bool:
    return hmac.compare_digest(hash_session_token(token), token_hash)


class SessionTokenSigner:
    """Issues random session tokens signed with the application secret.

    The signature lets forged or mangled cookies be rejected before any
    storage lookup.
    """

    def __init__(self, secret_key: str) -> None:
        self.serializer = URLSafeSerializer(secret_key, salt="lenon.session")

    def issue(self) -> SessionToken:
        token = self.serializer.dumps(secrets.token_urlsafe(32))
        return SessionToken(token=token, token_hash=hash_session_token(token))

    def is_authentic(self, token: Optional[str]) -> bool:
        if not token:
            return False
        try:
            self.serializer.loads(token)
        except BadData:
            return False
        return True


def generate_csrf_token() -> str:
    return secrets.token_urlsafe(32)


def verify_csrf_token(cookie_token: Optional[str], submitted: Optional[str]) -> bool:
    """Double-submit check: the form or header value must equal the cookie."""
    if not cookie_token or not submitted:
        return False
    return hmac.compare_digest(cookie_token.encode("utf-8"), submitted.encode("utf-8"))


def cookie_settings(*, secure: bool = False, max_age: int = DEFAULT_MAX_AGE) -> Dict[str, Any]:
    """Standard cookie arguments that make session cookies httponly and samesite=lax."""
    return {
        "httponly": True,
        "samesite": "lax",
        "secure": secure,
        "max_age": max_age,
        "path": "/",
    }


def csrf_cookie_settings(*, secure: bool = False) -> Dict[str, Any]:
    settings = cookie_settings(secure=secure)
    settings["httponly"] = False
    return settings


def cookie_clear_settings(*, secure: bool = False) -> Dict[str, Any]:
    """Special cookie instructions required to immediately forget a session."""
    return {
        "max_age": 0,
        "expires": "Thu, 01 Jan 1970 00:00:00 GMT",
        "path": "/",
        "secure": secure,
        "httponly": True,
        "samesite": "lax",
    }

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from accounts import AccountDirectory
from auth import (
    DEFAULT_MAX_AGE,
    SessionToken,
    SessionTokenSigner,
    dummy_verify,
    hash_session_token,
    verify_password,
)
from database import AccountRecord, Database
from errors import AuthFailure

# Author: Daniel Neugent

logger = logging.getLogger(__name__)


def _is_expired(expires_at: str, now: datetime) -> bool:
    try:
        return datetime.fromisoformat(expires_at) <= now
    except ValueError:
        return True


class SessionBinder:
    """Binds authenticated accounts to server-side session rows.

    Cookies carry a signed random token; storage keeps only its SHA-256
    digest. Expiry is based on inactivity: each successful resolve pushes
    ``expires_at`` forward by the idle window.
    """

    def __init__(
        self,
        db: Database,
        directory: AccountDirectory,
        signer: SessionTokenSigner,
        *,
        idle_seconds: int = DEFAULT_MAX_AGE,
    ) -> None:
        self.db = db
        self.directory = directory
        self.signer = signer
        self.idle_window = timedelta(seconds=idle_seconds)

    async def login(
        self,
        username: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
        previous_token: Optional[str] = None,
    ) -> tuple[SessionToken, AccountRecord]:
        """Verify credentials and open a session.

        Unknown usernames, wrong passwords and corrupt stored hashes all raise
        the same AuthFailure.
        """
        account = await self.directory.find_by_username(username)
        if account is None:
            await dummy_verify()
            logger.warning("login failed username=%s", username)
            raise AuthFailure()
        if not await verify_password(password, account.password_hash):
            logger.warning("login failed username=%s", username)
            raise AuthFailure()

        if previous_token:
            await self.logout(previous_token)
        session_token = self.signer.issue()
        now = datetime.utcnow()
        await self.db.create_session(
            account_id=account.id,
            token_hash=session_token.token_hash,
            expires_at=(now + self.idle_window).isoformat(),
            user_agent=user_agent,
            ip_address=ip_address,
        )
        logger.info("login succeeded account_id=%s", account.id)
        return session_token, account

    async def resolve(self, token: Optional[str]) -> Optional[str]:
        """Return the account id bound to ``token``, or None when absent or expired."""
        if not self.signer.is_authentic(token):
            return None
        session = await self.db.fetch_session_by_token_hash(hash_session_token(token))
        if session is None or session.revoked_at:
            return None
        now = datetime.utcnow()
        if _is_expired(session.expires_at, now):
            await self.db.revoke_session(session.id, now.isoformat())
            logger.info("session expired session_id=%s", session.id)
            return None
        await self.db.touch_session(
            session.id, now.isoformat(), (now + self.idle_window).isoformat()
        )
        return session.account_id

    async def logout(self, token: Optional[str]) -> None:
        if not token:
            return
        await self.db.revoke_session_by_hash(
            hash_session_token(token), datetime.utcnow().isoformat()
        )

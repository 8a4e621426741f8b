from __future__ import annotations

import logging
import re
from typing import Optional

import aiosqlite

from auth import hash_password
from database import AccountRecord, Database
from errors import Conflict, InvalidInput, NotFound
from models import Role

# Author: Daniel Neugent

logger = logging.getLogger(__name__)

USERNAME_PATTERN = re.compile(r"^[\w.-]{3,50}$")
MAX_EMAIL_LENGTH = 254
MAX_BIO_LENGTH = 2000


def normalize_username(username: Optional[str]) -> str:
    return (username or "").strip()


def validate_profile_fields(username: str, email: str) -> None:
    """Reject usernames that cannot live in a URL and obviously broken emails."""
    if not USERNAME_PATTERN.match(username):
        raise InvalidInput(
            "Nazwa użytkownika musi mieć 3-50 znaków (litery, cyfry, kropka, myślnik)."
        )
    if "@" not in email or len(email) > MAX_EMAIL_LENGTH:
        raise InvalidInput("Podaj poprawny adres email.")


class AccountDirectory:
    """Creates and looks up creator accounts."""

    def __init__(self, db: Database, *, require_approval: bool = True) -> None:
        self.db = db
        self.require_approval = require_approval

    async def create(self, username: str, email: str, password: str) -> str:
        username = normalize_username(username)
        email = (email or "").strip()
        validate_profile_fields(username, email)
        # Hash before touching storage so no connection waits on argon2.
        password_hash = await hash_password(password)
        try:
            record = await self.db.create_account(
                username,
                email,
                password_hash,
                is_approved=not self.require_approval,
            )
        except aiosqlite.IntegrityError:
            logger.info("registration rejected username=%s reason=duplicate", username)
            raise Conflict() from None
        logger.info("account created account_id=%s username=%s", record.id, username)
        return record.id

    async def find_by_username(self, username: str) -> Optional[AccountRecord]:
        username = normalize_username(username)
        if not username:
            return None
        return await self.db.fetch_account_by_username(username)

    async def find_by_id(self, account_id: str) -> Optional[AccountRecord]:
        if not account_id:
            return None
        return await self.db.fetch_account_by_id(account_id)

    async def list_public(self) -> list[AccountRecord]:
        """Accounts shown on the homepage, online ones first."""
        return await self.db.list_accounts(approved_only=self.require_approval)

    async def list_all(self) -> list[AccountRecord]:
        return await self.db.list_accounts()

    async def update_profile(
        self,
        account_id: str,
        username: str,
        email: str,
        bio: Optional[str],
        avatar_url: Optional[str] = None,
    ) -> None:
        """Overwrite username, email and bio; keep the avatar unless a new one is given."""
        username = normalize_username(username)
        email = (email or "").strip()
        validate_profile_fields(username, email)
        bio = (bio or "").strip()[:MAX_BIO_LENGTH] or None
        try:
            updated = await self.db.update_account_profile(
                account_id, username, email, bio, avatar_url
            )
        except aiosqlite.IntegrityError:
            raise Conflict() from None
        if not updated:
            raise NotFound()
        logger.info(
            "profile updated account_id=%s avatar_changed=%s",
            account_id,
            avatar_url is not None,
        )

    async def set_role(self, account_id: str, role: Role) -> None:
        """Storage side of a role change; reached through AccountAdministration."""
        if not await self.db.set_account_role(account_id, role):
            raise NotFound()
        logger.info("role changed account_id=%s role=%s", account_id, role.value)

    async def set_approved(self, account_id: str, approved: bool) -> None:
        if not await self.db.set_account_approved(account_id, approved):
            raise NotFound()
        logger.info("approval changed account_id=%s approved=%s", account_id, approved)

    async def toggle_online(self, account_id: str) -> bool:
        new_state = await self.db.toggle_account_online(account_id)
        if new_state is None:
            raise NotFound()
        logger.info("online status changed account_id=%s online=%s", account_id, new_state)
        return new_state

from __future__ import annotations

import logging
from typing import Optional

from accounts import AccountDirectory
from authorization import Authorizer
from database import AccountRecord, GalleryRecord
from errors import InvalidInput, NotFound
from models import Role

# Author: Daniel Neugent

logger = logging.getLogger(__name__)


class AccountAdministration:
    """The only path to role and approval changes: every call re-checks Admin."""

    def __init__(self, directory: AccountDirectory, authorizer: Authorizer) -> None:
        self.directory = directory
        self.authorizer = authorizer

    async def list_accounts(self, actor_id: str) -> list[AccountRecord]:
        await self.authorizer.require_role(actor_id, Role.ADMIN)
        return await self.directory.list_all()

    async def get_account(
        self, actor_id: str, account_id: str
    ) -> tuple[AccountRecord, list[GalleryRecord]]:
        await self.authorizer.require_role(actor_id, Role.ADMIN)
        account = await self.directory.find_by_id(account_id)
        if account is None:
            raise NotFound()
        galleries = await self.directory.db.list_galleries_for_account(account.id)
        return account, galleries

    async def approve(self, actor_id: str, account_id: str) -> None:
        await self.authorizer.require_role(actor_id, Role.ADMIN)
        await self.directory.set_approved(account_id, True)
        logger.info("admin approved account actor_id=%s account_id=%s", actor_id, account_id)

    async def set_role(self, actor_id: str, account_id: str, role_text: Optional[str]) -> Role:
        await self.authorizer.require_role(actor_id, Role.ADMIN)
        try:
            role = Role((role_text or "").strip())
        except ValueError:
            raise InvalidInput("Nieznana rola.") from None
        await self.directory.set_role(account_id, role)
        logger.info(
            "admin changed role actor_id=%s account_id=%s role=%s",
            actor_id,
            account_id,
            role.value,
        )
        return role

    async def update_profile(
        self,
        actor_id: str,
        account_id: str,
        username: str,
        email: str,
        bio: Optional[str],
    ) -> None:
        """Edit a creator's profile on their behalf. The avatar is left alone."""
        await self.authorizer.require_role(actor_id, Role.ADMIN)
        await self.directory.update_profile(account_id, username, email, bio)
        logger.info("admin updated profile actor_id=%s account_id=%s", actor_id, account_id)

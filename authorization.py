from __future__ import annotations

import logging

from accounts import AccountDirectory
from database import AccountRecord, Database, GalleryRecord, PhotoRecord
from errors import NotFound, Unauthorized
from models import Role

# Author: Daniel Neugent

logger = logging.getLogger(__name__)


class Authorizer:
    """Ownership and role checks run before every state-changing operation.

    Every check re-reads current rows from storage; nothing is trusted from
    the session beyond the account id, so role changes apply on the next
    request.
    """

    def __init__(self, db: Database, directory: AccountDirectory) -> None:
        self.db = db
        self.directory = directory

    @staticmethod
    def require_owner(account_id: str, owner_id: str) -> None:
        if not account_id or account_id != owner_id:
            raise Unauthorized()

    async def require_account(self, account_id: str) -> AccountRecord:
        account = await self.directory.find_by_id(account_id)
        if account is None:
            raise Unauthorized()
        return account

    async def require_role(self, account_id: str, role: Role) -> AccountRecord:
        account = await self.require_account(account_id)
        if not account.role.at_least(role):
            logger.warning(
                "role check failed account_id=%s required=%s actual=%s",
                account_id,
                role.value,
                account.role.value,
            )
            raise Unauthorized()
        return account

    async def require_gallery_owner(self, account_id: str, gallery_id: str) -> GalleryRecord:
        # Missing and foreign galleries look the same to the caller.
        gallery = await self.db.fetch_gallery(gallery_id) if gallery_id else None
        if gallery is None:
            raise Unauthorized()
        try:
            self.require_owner(account_id, gallery.account_id)
        except Unauthorized:
            logger.warning(
                "gallery ownership check failed account_id=%s gallery_id=%s",
                account_id,
                gallery_id,
            )
            raise
        return gallery

    async def require_photo_in_gallery(self, photo_id: str, gallery_id: str) -> PhotoRecord:
        photo = await self.db.fetch_photo(photo_id) if photo_id else None
        if photo is None:
            raise NotFound()
        if photo.gallery_id != gallery_id:
            logger.warning(
                "cross-gallery photo access photo_id=%s gallery_id=%s",
                photo_id,
                gallery_id,
            )
            raise Unauthorized()
        return photo

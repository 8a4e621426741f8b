from __future__ import annotations

import asyncio
import logging
import re
import time
from pathlib import Path, PurePosixPath
from typing import Optional
from uuid import uuid4

from authorization import Authorizer
from database import Database, GalleryRecord, PhotoRecord
from errors import InternalError, NotFound
from models import GalleryCategory, parse_price

# Author: Daniel Neugent

logger = logging.getLogger(__name__)

DEFAULT_EXTENSION = "jpg"
MAX_DESCRIPTION_LENGTH = 2000
_EXTENSION_PATTERN = re.compile(r"^[a-z0-9]{1,10}$")


def _safe_extension(original_filename: Optional[str]) -> str:
    suffix = PurePosixPath((original_filename or "").replace("\\", "/")).suffix
    extension = suffix.lstrip(".").lower()
    if _EXTENSION_PATTERN.match(extension):
        return extension
    return DEFAULT_EXTENSION


def _write_bytes(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as handle:
        handle.write(data)


class UploadStore:
    """Public file storage served by the web server under ``url_prefix``."""

    def __init__(self, root: Path, url_prefix: str = "/uploads") -> None:
        self.root = Path(root)
        self.url_prefix = "/" + url_prefix.strip("/")

    def ensure_root(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def stored_filename(prefix: str, original_filename: Optional[str]) -> str:
        """``<prefix>_<random>_<unix time>.<ext>``; the extension falls back to jpg."""
        return f"{prefix}_{uuid4().hex}_{int(time.time())}.{_safe_extension(original_filename)}"

    def path_for_url(self, public_url: str) -> Path:
        if not public_url.startswith(self.url_prefix + "/"):
            raise InternalError("File reference is outside the upload store.")
        name = public_url[len(self.url_prefix) + 1 :]
        root = self.root.resolve()
        path = (root / name).resolve()
        if path.parent != root:
            raise InternalError("File reference is outside the upload store.")
        return path

    async def save(self, data: bytes, *, prefix: str, original_filename: Optional[str]) -> str:
        """Write ``data`` to a fresh file and return its public URL."""
        filename = self.stored_filename(prefix, original_filename)
        path = self.root / filename
        try:
            await asyncio.to_thread(_write_bytes, path, data)
        except OSError as exc:
            logger.error("file write failed path=%s error=%s", path, exc)
            raise InternalError("Nie udało się zapisać pliku.") from exc
        logger.info("file stored path=%s bytes=%s", path, len(data))
        return f"{self.url_prefix}/{filename}"

    async def delete(self, public_url: str) -> None:
        """Remove a stored file. One that is already gone counts as removed, so a
        retried delete can still drop its row; any other OSError is InternalError.
        """
        path = self.path_for_url(public_url)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            logger.warning("file already absent path=%s", path)
        except OSError as exc:
            logger.error("file delete failed path=%s error=%s", path, exc)
            raise InternalError("Nie udało się usunąć pliku.") from exc


class GalleryService:
    """Gallery and photo lifecycle; every mutation checks ownership first."""

    def __init__(self, db: Database, authorizer: Authorizer, store: UploadStore) -> None:
        self.db = db
        self.authorizer = authorizer
        self.store = store

    async def create_gallery(self, owner_id: str, category_text: Optional[str]) -> GalleryRecord:
        category = GalleryCategory.parse(category_text)
        await self.authorizer.require_account(owner_id)
        gallery = await self.db.create_gallery(owner_id, category)
        logger.info(
            "gallery created account_id=%s gallery_id=%s category=%s",
            owner_id,
            gallery.id,
            category.value,
        )
        return gallery

    async def list_galleries(self, owner_id: str) -> list[GalleryRecord]:
        return await self.db.list_galleries_for_account(owner_id)

    async def get_managed_gallery(
        self, account_id: str, gallery_id: str
    ) -> tuple[GalleryRecord, list[PhotoRecord]]:
        gallery = await self.authorizer.require_gallery_owner(account_id, gallery_id)
        photos = await self.db.list_photos_for_gallery(gallery.id)
        return gallery, photos

    async def get_public_gallery(self, gallery_id: str) -> GalleryRecord:
        gallery = await self.db.fetch_gallery(gallery_id) if gallery_id else None
        if gallery is None:
            raise NotFound()
        return gallery

    async def update_gallery_details(
        self,
        account_id: str,
        gallery_id: str,
        category_text: Optional[str],
        description: Optional[str],
        price_text: Optional[str],
    ) -> GalleryRecord:
        gallery = await self.authorizer.require_gallery_owner(account_id, gallery_id)
        category = GalleryCategory.parse(category_text)
        price = parse_price(price_text)
        description = (description or "").strip()[:MAX_DESCRIPTION_LENGTH] or None
        await self.db.update_gallery_details(gallery.id, category, description, price)
        logger.info(
            "gallery updated account_id=%s gallery_id=%s category=%s price=%s",
            account_id,
            gallery.id,
            category.value,
            price,
        )
        gallery.category = category
        gallery.description = description
        gallery.price_pln = price
        return gallery

    async def upload_photo(
        self,
        account_id: str,
        gallery_id: str,
        data: bytes,
        original_filename: Optional[str],
    ) -> Optional[PhotoRecord]:
        """Store the file, then record it. Empty payloads are ignored."""
        gallery = await self.authorizer.require_gallery_owner(account_id, gallery_id)
        if not data:
            logger.info(
                "upload skipped account_id=%s gallery_id=%s reason=empty_payload",
                account_id,
                gallery.id,
            )
            return None
        file_url = await self.store.save(
            data, prefix=gallery.id, original_filename=original_filename
        )
        photo = await self.db.create_photo(gallery.id, file_url)
        logger.info(
            "photo uploaded account_id=%s gallery_id=%s photo_id=%s bytes=%s",
            account_id,
            gallery.id,
            photo.id,
            len(data),
        )
        return photo

    async def delete_photo(self, photo_id: str, gallery_id: str, requestor_id: str) -> None:
        """Remove the backing file, then the row. A failed file delete keeps the row."""
        gallery = await self.authorizer.require_gallery_owner(requestor_id, gallery_id)
        photo = await self.authorizer.require_photo_in_gallery(photo_id, gallery.id)
        await self.store.delete(photo.file_url)
        await self.db.delete_photo(photo.id)
        logger.info(
            "photo deleted account_id=%s gallery_id=%s photo_id=%s",
            requestor_id,
            gallery.id,
            photo.id,
        )

    async def save_avatar(
        self, account_id: str, data: bytes, original_filename: Optional[str]
    ) -> Optional[str]:
        if not data:
            return None
        return await self.store.save(
            data, prefix=account_id, original_filename=original_filename
        )

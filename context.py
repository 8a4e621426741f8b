from __future__ import annotations

import logging
from dataclasses import dataclass

from accounts import AccountDirectory
from admin import AccountAdministration
from auth import SessionTokenSigner
from authorization import Authorizer
from config import Settings
from database import Database
from galleries import GalleryService, UploadStore
from sessions import SessionBinder

# Author: Daniel Neugent

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Every service a request handler may use, built once per process."""

    settings: Settings
    db: Database
    directory: AccountDirectory
    sessions: SessionBinder
    authorizer: Authorizer
    administration: AccountAdministration
    store: UploadStore
    galleries: GalleryService

    @classmethod
    def from_settings(cls, settings: Settings) -> "AppContext":
        db = Database(settings.db_path, max_connections=settings.db_max_connections)
        directory = AccountDirectory(db, require_approval=settings.require_approval)
        authorizer = Authorizer(db, directory)
        store = UploadStore(settings.upload_dir, settings.upload_url_prefix)
        return cls(
            settings=settings,
            db=db,
            directory=directory,
            sessions=SessionBinder(
                db,
                directory,
                SessionTokenSigner(settings.secret_key),
                idle_seconds=settings.session_idle_seconds,
            ),
            authorizer=authorizer,
            administration=AccountAdministration(directory, authorizer),
            store=store,
            galleries=GalleryService(db, authorizer, store),
        )

    async def startup(self) -> None:
        """Prepare the sqlite file and upload directory before the first request."""
        self.store.ensure_root()
        await self.db.initialize()
        logger.info(
            "application ready db_path=%s upload_dir=%s",
            self.settings.db_path,
            self.settings.upload_dir,
        )

    async def shutdown(self) -> None:
        await self.db.close()
        logger.info("application stopped")

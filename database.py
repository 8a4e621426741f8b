from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, AsyncIterator, Optional, Sequence
from uuid import uuid4

import aiosqlite

from config import DEFAULT_DB_PATH
from errors import InternalError
from models import GalleryCategory, Role, format_price

# Author: Daniel Neugent

DEFAULT_MAX_CONNECTIONS = 5
BUSY_TIMEOUT_SECONDS = 10.0

ACCOUNT_COLUMNS = (
    "id, username, email, password_hash, role, is_approved, is_online, "
    "bio, profile_image_url, created_at"
)
SESSION_COLUMNS = (
    "id, account_id, token_hash, created_at, expires_at, "
    "last_seen_at, user_agent, ip_address, revoked_at"
)
GALLERY_COLUMNS = "id, account_id, category, description, price_pln, created_at"
PHOTO_COLUMNS = "id, gallery_id, file_url, description, created_at"


def _now_iso() -> str:
    return datetime.utcnow().isoformat()


def _new_id() -> str:
    return uuid4().hex


def username_key(username: str) -> str:
    """Unicode-aware case folding; "Żaneta" and "żaneta" share one key."""
    return username.casefold()


@dataclass
class AccountRecord:
    id: str
    username: str
    email: str
    password_hash: str = field(repr=False)
    role: Role
    is_approved: bool
    is_online: bool
    bio: Optional[str]
    profile_image_url: Optional[str]
    created_at: str

    @classmethod
    def from_row(cls, row: aiosqlite.Row) -> "AccountRecord":
        return cls(
            id=row["id"],
            username=row["username"],
            email=row["email"],
            password_hash=row["password_hash"],
            role=Role(row["role"]),
            is_approved=bool(row["is_approved"]),
            is_online=bool(row["is_online"]),
            bio=row["bio"],
            profile_image_url=row["profile_image_url"],
            created_at=row["created_at"],
        )

    @property
    def is_admin(self) -> bool:
        return self.role.at_least(Role.ADMIN)


@dataclass
class SessionRecord:
    id: int
    account_id: str
    token_hash: str
    created_at: str
    expires_at: str
    last_seen_at: str
    user_agent: Optional[str]
    ip_address: Optional[str]
    revoked_at: Optional[str]


@dataclass
class GalleryRecord:
    id: str
    account_id: str
    category: GalleryCategory
    description: Optional[str]
    price_pln: Optional[Decimal]
    created_at: str

    @classmethod
    def from_row(cls, row: aiosqlite.Row) -> "GalleryRecord":
        raw_price = row["price_pln"]
        return cls(
            id=row["id"],
            account_id=row["account_id"],
            category=GalleryCategory.parse(row["category"]),
            description=row["description"],
            price_pln=Decimal(raw_price) if raw_price is not None else None,
            created_at=row["created_at"],
        )


@dataclass
class PhotoRecord:
    id: str
    gallery_id: str
    file_url: str
    description: Optional[str]
    created_at: str


class Database:
    """Thin aiosqlite wrapper holding every query the application runs."""

    def __init__(
        self,
        db_path: Path = DEFAULT_DB_PATH,
        *,
        max_connections: int = DEFAULT_MAX_CONNECTIONS,
    ) -> None:
        self.db_path = db_path
        self._slots = asyncio.Semaphore(max_connections)
        self._closed = False

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Borrow one of the bounded connection slots, with foreign keys enabled."""
        if self._closed:
            raise InternalError("Database is shut down.")
        async with self._slots:
            try:
                async with aiosqlite.connect(
                    self.db_path, timeout=BUSY_TIMEOUT_SECONDS
                ) as conn:
                    conn.row_factory = aiosqlite.Row
                    await conn.execute("PRAGMA foreign_keys = ON;")
                    yield conn
            except aiosqlite.OperationalError as exc:
                # IntegrityError stays visible so callers can map it to Conflict.
                raise InternalError("Storage is unavailable.") from exc

    async def initialize(self) -> None:
        """Create the data directory and every table the app needs."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._closed = False
        async with self._connection() as conn:
            await conn.execute("PRAGMA journal_mode = WAL;")
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS accounts (
                    id TEXT PRIMARY KEY,
                    username TEXT NOT NULL,
                    username_key TEXT NOT NULL UNIQUE,
                    email TEXT NOT NULL,
                    password_hash TEXT NOT NULL,
                    role TEXT NOT NULL DEFAULT 'Member'
                        CHECK (role IN ('Member', 'Admin')),
                    is_approved INTEGER NOT NULL DEFAULT 0,
                    is_online INTEGER NOT NULL DEFAULT 0,
                    bio TEXT,
                    profile_image_url TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id TEXT NOT NULL,
                    token_hash TEXT NOT NULL UNIQUE,
                    created_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    last_seen_at TEXT NOT NULL,
                    user_agent TEXT,
                    ip_address TEXT,
                    revoked_at TEXT,
                    FOREIGN KEY(account_id) REFERENCES accounts(id) ON DELETE CASCADE
                )
                """
            )
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS galleries (
                    id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    category TEXT NOT NULL,
                    description TEXT,
                    price_pln TEXT,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY(account_id) REFERENCES accounts(id) ON DELETE CASCADE
                )
                """
            )
            await conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_galleries_account ON galleries(account_id)"
            )
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS photos (
                    id TEXT PRIMARY KEY,
                    gallery_id TEXT NOT NULL,
                    file_url TEXT NOT NULL,
                    description TEXT,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY(gallery_id) REFERENCES galleries(id) ON DELETE CASCADE
                )
                """
            )
            await conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_photos_gallery ON photos(gallery_id)"
            )
            await conn.commit()

    async def close(self) -> None:
        """Refuse new work. Connections are per-operation so none stay open."""
        self._closed = True

    async def fetch_one(
        self, query: str, params: Sequence[Any]
    ) -> Optional[aiosqlite.Row]:
        """Execute a single-row SELECT statement with given parameters."""
        async with self._connection() as conn:
            cursor = await conn.execute(query, params)
            row = await cursor.fetchone()
            await cursor.close()
            return row

    async def fetch_all(self, query: str, params: Sequence[Any]) -> list[aiosqlite.Row]:
        async with self._connection() as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return list(rows)

    async def execute(self, query: str, params: Sequence[Any]) -> int:
        """Run one write statement and return the number of affected rows."""
        async with self._connection() as conn:
            cursor = await conn.execute(query, params)
            await conn.commit()
            return cursor.rowcount

    # Accounts

    async def create_account(
        self,
        username: str,
        email: str,
        password_hash: str,
        *,
        is_approved: bool = False,
    ) -> AccountRecord:
        """Insert a Member account. Duplicate usernames raise IntegrityError."""
        record = AccountRecord(
            id=_new_id(),
            username=username,
            email=email.lower(),
            password_hash=password_hash,
            role=Role.MEMBER,
            is_approved=is_approved,
            is_online=False,
            bio=None,
            profile_image_url=None,
            created_at=_now_iso(),
        )
        await self.execute(
            """
            INSERT INTO accounts (
                id, username, username_key, email, password_hash, role,
                is_approved, is_online, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?)
            """,
            (
                record.id,
                record.username,
                username_key(record.username),
                record.email,
                record.password_hash,
                record.role.value,
                int(record.is_approved),
                record.created_at,
            ),
        )
        return record

    async def fetch_account_by_id(self, account_id: str) -> Optional[AccountRecord]:
        row = await self.fetch_one(
            f"SELECT {ACCOUNT_COLUMNS} FROM accounts WHERE id = ?", (account_id,)
        )
        return AccountRecord.from_row(row) if row else None

    async def fetch_account_by_username(self, username: str) -> Optional[AccountRecord]:
        """Case-insensitive lookup through the casefolded key column."""
        row = await self.fetch_one(
            f"SELECT {ACCOUNT_COLUMNS} FROM accounts WHERE username_key = ?",
            (username_key(username),),
        )
        return AccountRecord.from_row(row) if row else None

    async def list_accounts(self, *, approved_only: bool = False) -> list[AccountRecord]:
        where = "WHERE is_approved = 1" if approved_only else ""
        rows = await self.fetch_all(
            f"""
            SELECT {ACCOUNT_COLUMNS} FROM accounts
            {where}
            ORDER BY is_online DESC, username_key
            """,
            (),
        )
        return [AccountRecord.from_row(row) for row in rows]

    async def update_account_profile(
        self,
        account_id: str,
        username: str,
        email: str,
        bio: Optional[str],
        avatar_url: Optional[str] = None,
    ) -> int:
        """Overwrite profile fields. A None avatar keeps the stored one."""
        return await self.execute(
            """
            UPDATE accounts
            SET username = ?, username_key = ?, email = ?, bio = ?,
                profile_image_url = COALESCE(?, profile_image_url)
            WHERE id = ?
            """,
            (
                username,
                username_key(username),
                email.lower(),
                bio,
                avatar_url,
                account_id,
            ),
        )

    async def set_account_role(self, account_id: str, role: Role) -> int:
        return await self.execute(
            "UPDATE accounts SET role = ? WHERE id = ?", (role.value, account_id)
        )

    async def set_account_approved(self, account_id: str, approved: bool) -> int:
        return await self.execute(
            "UPDATE accounts SET is_approved = ? WHERE id = ?",
            (int(approved), account_id),
        )

    async def toggle_account_online(self, account_id: str) -> Optional[bool]:
        """Flip is_online inside a write transaction and return the new value."""
        async with self._connection() as conn:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                cursor = await conn.execute(
                    "UPDATE accounts SET is_online = 1 - is_online WHERE id = ?",
                    (account_id,),
                )
                if cursor.rowcount == 0:
                    await conn.rollback()
                    return None
                cursor = await conn.execute(
                    "SELECT is_online FROM accounts WHERE id = ?", (account_id,)
                )
                row = await cursor.fetchone()
                await cursor.close()
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise
        return bool(row["is_online"])

    # Sessions

    async def create_session(
        self,
        *,
        account_id: str,
        token_hash: str,
        expires_at: str,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> SessionRecord:
        """Insert a new session row for an account."""
        created_at = _now_iso()
        async with self._connection() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO sessions (
                    account_id,
                    token_hash,
                    created_at,
                    expires_at,
                    last_seen_at,
                    user_agent,
                    ip_address,
                    revoked_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, NULL)
                """,
                (
                    account_id,
                    token_hash,
                    created_at,
                    expires_at,
                    created_at,
                    user_agent,
                    ip_address,
                ),
            )
            await conn.commit()
            lastrowid = cursor.lastrowid
        if lastrowid is None:
            raise InternalError("Failed to read the inserted session ID.")
        return SessionRecord(
            id=int(lastrowid),
            account_id=account_id,
            token_hash=token_hash,
            created_at=created_at,
            expires_at=expires_at,
            last_seen_at=created_at,
            user_agent=user_agent,
            ip_address=ip_address,
            revoked_at=None,
        )

    async def fetch_session_by_token_hash(
        self, token_hash: str
    ) -> Optional[SessionRecord]:
        """Retrieve a session by its hashed token value."""
        row = await self.fetch_one(
            f"SELECT {SESSION_COLUMNS} FROM sessions WHERE token_hash = ?",
            (token_hash,),
        )
        return SessionRecord(**row) if row else None

    async def touch_session(
        self, session_id: int, last_seen_at: str, expires_at: str
    ) -> None:
        """Record activity and slide the inactivity deadline forward."""
        await self.execute(
            "UPDATE sessions SET last_seen_at = ?, expires_at = ? WHERE id = ?",
            (last_seen_at, expires_at, session_id),
        )

    async def revoke_session(self, session_id: int, revoked_at: str) -> None:
        await self.execute(
            "UPDATE sessions SET revoked_at = ? WHERE id = ?", (revoked_at, session_id)
        )

    async def revoke_session_by_hash(self, token_hash: str, revoked_at: str) -> None:
        await self.execute(
            """
            UPDATE sessions SET revoked_at = ?
            WHERE token_hash = ? AND revoked_at IS NULL
            """,
            (revoked_at, token_hash),
        )

    # Galleries

    async def create_gallery(
        self, account_id: str, category: GalleryCategory
    ) -> GalleryRecord:
        record = GalleryRecord(
            id=_new_id(),
            account_id=account_id,
            category=category,
            description=None,
            price_pln=None,
            created_at=_now_iso(),
        )
        await self.execute(
            """
            INSERT INTO galleries (id, account_id, category, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (record.id, record.account_id, record.category.value, record.created_at),
        )
        return record

    async def fetch_gallery(self, gallery_id: str) -> Optional[GalleryRecord]:
        row = await self.fetch_one(
            f"SELECT {GALLERY_COLUMNS} FROM galleries WHERE id = ?", (gallery_id,)
        )
        return GalleryRecord.from_row(row) if row else None

    async def list_galleries_for_account(self, account_id: str) -> list[GalleryRecord]:
        rows = await self.fetch_all(
            f"""
            SELECT {GALLERY_COLUMNS} FROM galleries
            WHERE account_id = ?
            ORDER BY created_at DESC
            """,
            (account_id,),
        )
        return [GalleryRecord.from_row(row) for row in rows]

    async def update_gallery_details(
        self,
        gallery_id: str,
        category: GalleryCategory,
        description: Optional[str],
        price_pln: Optional[Decimal],
    ) -> int:
        price = format_price(price_pln) if price_pln is not None else None
        return await self.execute(
            """
            UPDATE galleries SET category = ?, description = ?, price_pln = ?
            WHERE id = ?
            """,
            (category.value, description, price, gallery_id),
        )

    # Photos

    async def create_photo(
        self, gallery_id: str, file_url: str, description: Optional[str] = None
    ) -> PhotoRecord:
        record = PhotoRecord(
            id=_new_id(),
            gallery_id=gallery_id,
            file_url=file_url,
            description=description,
            created_at=_now_iso(),
        )
        await self.execute(
            """
            INSERT INTO photos (id, gallery_id, file_url, description, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                record.id,
                record.gallery_id,
                record.file_url,
                record.description,
                record.created_at,
            ),
        )
        return record

    async def fetch_photo(self, photo_id: str) -> Optional[PhotoRecord]:
        row = await self.fetch_one(
            f"SELECT {PHOTO_COLUMNS} FROM photos WHERE id = ?", (photo_id,)
        )
        return PhotoRecord(**row) if row else None

    async def list_photos_for_gallery(self, gallery_id: str) -> list[PhotoRecord]:
        rows = await self.fetch_all(
            f"""
            SELECT {PHOTO_COLUMNS} FROM photos
            WHERE gallery_id = ?
            ORDER BY created_at ASC
            """,
            (gallery_id,),
        )
        return [PhotoRecord(**row) for row in rows]

    async def delete_photo(self, photo_id: str) -> int:
        return await self.execute("DELETE FROM photos WHERE id = ?", (photo_id,))

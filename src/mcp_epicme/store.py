"""SQLite persistence for users, grants, validation tokens, entries, and tags.

Database location: <data_dir>/epicme.db
"""

from __future__ import annotations

import hmac
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Optional

from .errors import DuplicateTagError, InvalidToken, NotFoundError, TokenNotFound
from .models import (
    Entry,
    EntrySummary,
    EntryTag,
    Grant,
    Tag,
    User,
    ValidationToken,
    format_timestamp,
    parse_timestamp,
    utc_now,
)

# Entry columns a caller may set through create/update
ENTRY_FIELDS = ("title", "content", "mood", "location", "weather", "is_private", "is_favorite")


class JournalStore:
    """SQLite store backing the auth bridge and the journal."""

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path):
        """Initialize the store.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._connection: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._ensure_schema()

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create the database connection."""
        if self._connection is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,  # We use our own lock
                isolation_level=None,  # explicit transactions only
            )
            self._connection.row_factory = sqlite3.Row
            self._connection.execute("PRAGMA foreign_keys = ON")
            self._connection.execute("PRAGMA journal_mode = WAL")
        return self._connection

    @contextmanager
    def _transaction(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """Run a block in one transaction, holding the store lock."""
        with self._lock:
            conn = self._get_connection()
            conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")

    def _ensure_schema(self) -> None:
        """Create the database schema if it doesn't exist."""
        with self._lock:
            conn = self._get_connection()
            cursor = conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
            )
            if cursor.fetchone() is None:
                self._init_schema(conn)

    def _init_schema(self, conn: sqlite3.Connection) -> None:
        """Initialize the database schema."""
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY
            );
            INSERT INTO schema_version (version) VALUES (1);

            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                email TEXT NOT NULL UNIQUE,
                created_at TEXT NOT NULL
            );

            -- owner_user_id is NULL while the grant is unclaimed
            CREATE TABLE IF NOT EXISTS grants (
                id TEXT PRIMARY KEY,
                grant_user_id TEXT NOT NULL,
                owner_user_id INTEGER REFERENCES users(id) ON DELETE SET NULL,
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_grants_owner ON grants(owner_user_id);

            CREATE TABLE IF NOT EXISTS validation_tokens (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                email TEXT NOT NULL,
                grant_id TEXT NOT NULL REFERENCES grants(id) ON DELETE CASCADE,
                code TEXT NOT NULL,
                created_at TEXT NOT NULL,
                expires_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_tokens_grant ON validation_tokens(grant_id);

            CREATE TABLE IF NOT EXISTS entries (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                title TEXT NOT NULL,
                content TEXT NOT NULL,
                mood TEXT,
                location TEXT,
                weather TEXT,
                is_private INTEGER NOT NULL DEFAULT 1,
                is_favorite INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_entries_user ON entries(user_id);

            CREATE TABLE IF NOT EXISTS tags (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                name TEXT NOT NULL,
                description TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (user_id, name)
            );

            CREATE TABLE IF NOT EXISTS entry_tags (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                entry_id INTEGER NOT NULL REFERENCES entries(id) ON DELETE CASCADE,
                tag_id INTEGER NOT NULL REFERENCES tags(id) ON DELETE CASCADE,
                created_at TEXT NOT NULL,
                UNIQUE (entry_id, tag_id)
            );
        """)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None

    # ========== users ==========

    def _row_to_user(self, row: sqlite3.Row) -> User:
        return User(id=row["id"], email=row["email"], created_at=parse_timestamp(row["created_at"]))

    def get_user_by_id(self, user_id: int) -> Optional[User]:
        with self._lock:
            row = self._get_connection().execute(
                "SELECT * FROM users WHERE id = ?", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._lock:
            row = self._get_connection().execute(
                "SELECT * FROM users WHERE email = ?", (email,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_or_create_user(self, email: str) -> User:
        """Resolve a user by email, creating one on first sight."""
        with self._transaction(immediate=True) as conn:
            conn.execute(
                "INSERT OR IGNORE INTO users (email, created_at) VALUES (?, ?)",
                (email, format_timestamp(utc_now())),
            )
            row = conn.execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()
        return self._row_to_user(row)

    # ========== grants ==========

    def _row_to_grant(self, row: sqlite3.Row) -> Grant:
        return Grant(
            id=row["id"],
            grant_user_id=row["grant_user_id"],
            owner_user_id=row["owner_user_id"],
            created_at=parse_timestamp(row["created_at"]),
        )

    def create_unclaimed_grant(self, grant_user_id: str) -> str:
        """Persist a grant with no owner and return its id."""
        grant_id = uuid.uuid4().hex
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO grants (id, grant_user_id, owner_user_id, created_at) VALUES (?, ?, NULL, ?)",
                (grant_id, grant_user_id, format_timestamp(utc_now())),
            )
        return grant_id

    def get_grant(self, grant_id: str) -> Optional[Grant]:
        with self._lock:
            row = self._get_connection().execute(
                "SELECT * FROM grants WHERE id = ?", (grant_id,)
            ).fetchone()
        return self._row_to_grant(row) if row else None

    def get_user_by_grant_id(self, grant_id: str) -> Optional[User]:
        with self._lock:
            row = self._get_connection().execute(
                """
                SELECT users.* FROM users
                JOIN grants ON grants.owner_user_id = users.id
                WHERE grants.id = ?
                """,
                (grant_id,),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def set_grant_owner(self, grant_id: str, user_id: int) -> None:
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE grants SET owner_user_id = ? WHERE id = ?", (user_id, grant_id)
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Grant {grant_id} not found")

    def unclaim_grant(self, grant_id: str) -> bool:
        """Clear the grant owner. Returns True if the grant was claimed."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE grants SET owner_user_id = NULL WHERE id = ? AND owner_user_id IS NOT NULL",
                (grant_id,),
            )
            return cursor.rowcount > 0

    # ========== validation tokens ==========

    def create_validation_token(
        self,
        email: str,
        grant_id: str,
        code: str,
        created_at: datetime,
        expires_at: datetime,
    ) -> ValidationToken:
        """Store a token, superseding every earlier token for the grant."""
        with self._transaction(immediate=True) as conn:
            conn.execute("DELETE FROM validation_tokens WHERE grant_id = ?", (grant_id,))
            conn.execute(
                """
                INSERT INTO validation_tokens (email, grant_id, code, created_at, expires_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (email, grant_id, code, format_timestamp(created_at), format_timestamp(expires_at)),
            )
        return ValidationToken(
            email=email,
            grant_id=grant_id,
            code=code,
            created_at=created_at,
            expires_at=expires_at,
        )

    def _row_to_token(self, row: sqlite3.Row) -> ValidationToken:
        return ValidationToken(
            email=row["email"],
            grant_id=row["grant_id"],
            code=row["code"],
            created_at=parse_timestamp(row["created_at"]),
            expires_at=parse_timestamp(row["expires_at"]),
        )

    def get_validation_token(self, grant_id: str) -> Optional[ValidationToken]:
        with self._lock:
            row = self._get_connection().execute(
                "SELECT * FROM validation_tokens WHERE grant_id = ? ORDER BY id DESC LIMIT 1",
                (grant_id,),
            ).fetchone()
        return self._row_to_token(row) if row else None

    def consume_validation_token(self, grant_id: str, code: str, now: datetime) -> str:
        """Check and delete the live token for a grant in one transaction.

        Returns:
            The email the token was issued to

        Raises:
            TokenNotFound: No token, or the token has expired (it is deleted)
            InvalidToken: The code does not match (the token is kept)
        """
        with self._transaction(immediate=True) as conn:
            row = conn.execute(
                "SELECT * FROM validation_tokens WHERE grant_id = ? ORDER BY id DESC LIMIT 1",
                (grant_id,),
            ).fetchone()
            if row is None:
                raise TokenNotFound(grant_id)
            token = self._row_to_token(row)

            if token.is_expired(now):
                conn.execute("DELETE FROM validation_tokens WHERE id = ?", (row["id"],))
                expired = True
            else:
                expired = False
                if not hmac.compare_digest(token.code.encode(), code.strip().encode()):
                    raise InvalidToken()
                conn.execute("DELETE FROM validation_tokens WHERE id = ?", (row["id"],))

        if expired:
            raise TokenNotFound(grant_id)
        return token.email

    def purge_expired_tokens(self, now: datetime) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM validation_tokens WHERE expires_at <= ?", (format_timestamp(now),)
            )
            return cursor.rowcount

    # ========== tags ==========

    def _row_to_tag(self, row: sqlite3.Row) -> Tag:
        return Tag(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            description=row["description"],
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )

    def create_tag(self, user_id: int, name: str, description: Optional[str] = None) -> Tag:
        now = format_timestamp(utc_now())
        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO tags (user_id, name, description, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (user_id, name, description, now, now),
                )
                tag_id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise DuplicateTagError(f'Tag "{name}" already exists') from e
        return self.get_tag(user_id, tag_id)

    def get_tag(self, user_id: int, tag_id: int) -> Optional[Tag]:
        with self._lock:
            row = self._get_connection().execute(
                "SELECT * FROM tags WHERE id = ? AND user_id = ?", (tag_id, user_id)
            ).fetchone()
        return self._row_to_tag(row) if row else None

    def get_tag_by_name(self, user_id: int, name: str) -> Optional[Tag]:
        with self._lock:
            row = self._get_connection().execute(
                "SELECT * FROM tags WHERE name = ? AND user_id = ?", (name, user_id)
            ).fetchone()
        return self._row_to_tag(row) if row else None

    def get_tags(self, user_id: int) -> list[Tag]:
        with self._lock:
            rows = self._get_connection().execute(
                "SELECT * FROM tags WHERE user_id = ? ORDER BY name", (user_id,)
            ).fetchall()
        return [self._row_to_tag(row) for row in rows]

    def update_tag(self, user_id: int, tag_id: int, updates: dict[str, Any]) -> Tag:
        allowed = {k: v for k, v in updates.items() if k in ("name", "description")}
        if self.get_tag(user_id, tag_id) is None:
            raise NotFoundError(f'Tag ID "{tag_id}" not found')
        if allowed:
            assignments = ", ".join(f"{k} = ?" for k in allowed)
            params = list(allowed.values()) + [format_timestamp(utc_now()), tag_id, user_id]
            try:
                with self._transaction() as conn:
                    conn.execute(
                        f"UPDATE tags SET {assignments}, updated_at = ? WHERE id = ? AND user_id = ?",
                        params,
                    )
            except sqlite3.IntegrityError as e:
                raise DuplicateTagError(f'Tag "{allowed.get("name")}" already exists') from e
        return self.get_tag(user_id, tag_id)

    def delete_tag(self, user_id: int, tag_id: int) -> None:
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM tags WHERE id = ? AND user_id = ?", (tag_id, user_id)
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f'Tag ID "{tag_id}" not found')

    # ========== entries ==========

    def _row_to_entry(self, row: sqlite3.Row, tags: list[dict[str, Any]]) -> Entry:
        return Entry(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            content=row["content"],
            mood=row["mood"],
            location=row["location"],
            weather=row["weather"],
            is_private=bool(row["is_private"]),
            is_favorite=bool(row["is_favorite"]),
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
            tags=tags,
        )

    def create_entry(
        self,
        user_id: int,
        fields: dict[str, Any],
        tag_ids: Optional[list[int]] = None,
    ) -> Entry:
        """Insert an entry and link ``tag_ids`` to it.

        Nothing is written if any tag is missing or belongs to another user.
        """
        values = {k: fields[k] for k in ENTRY_FIELDS if k in fields and fields[k] is not None}
        if "title" not in values or "content" not in values:
            raise ValueError("Entries require a title and content")
        now = format_timestamp(utc_now())
        columns = ["user_id", *values.keys(), "created_at", "updated_at"]
        params = [user_id, *values.values(), now, now]
        with self._transaction(immediate=True) as conn:
            cursor = conn.execute(
                f"INSERT INTO entries ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
                params,
            )
            entry_id = cursor.lastrowid
            for tag_id in tag_ids or []:
                owned = conn.execute(
                    "SELECT 1 FROM tags WHERE id = ? AND user_id = ?", (tag_id, user_id)
                ).fetchone()
                if owned is None:
                    raise NotFoundError(f'Tag ID "{tag_id}" not found')
                conn.execute(
                    "INSERT OR IGNORE INTO entry_tags (entry_id, tag_id, created_at) VALUES (?, ?, ?)",
                    (entry_id, tag_id, now),
                )
        return self.get_entry(user_id, entry_id)

    def get_entry(self, user_id: int, entry_id: int) -> Optional[Entry]:
        with self._lock:
            row = self._get_connection().execute(
                "SELECT * FROM entries WHERE id = ? AND user_id = ?", (entry_id, user_id)
            ).fetchone()
            if row is None:
                return None
            tags = [tag.to_ref() for tag in self.get_entry_tags(user_id, entry_id)]
        return self._row_to_entry(row, tags)

    def get_entries(
        self,
        user_id: int,
        tag_ids: Optional[list[int]] = None,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
    ) -> list[EntrySummary]:
        """List entries, optionally filtered by tags (any match) and date range.

        Dates are YYYY-MM-DD and inclusive.
        """
        conditions = ["e.user_id = ?"]
        params: list[Any] = [user_id]

        if tag_ids:
            placeholders = ", ".join("?" for _ in tag_ids)
            conditions.append(
                f"e.id IN (SELECT entry_id FROM entry_tags WHERE tag_id IN ({placeholders}))"
            )
            params.extend(tag_ids)
        if date_from:
            conditions.append("substr(e.created_at, 1, 10) >= ?")
            params.append(date_from)
        if date_to:
            conditions.append("substr(e.created_at, 1, 10) <= ?")
            params.append(date_to)

        sql = f"""
            SELECT e.id, e.title, e.created_at, COUNT(et.id) AS tag_count
            FROM entries e
            LEFT JOIN entry_tags et ON et.entry_id = e.id
            WHERE {' AND '.join(conditions)}
            GROUP BY e.id
            ORDER BY e.created_at DESC, e.id DESC
        """
        with self._lock:
            rows = self._get_connection().execute(sql, params).fetchall()
        return [
            EntrySummary(
                id=row["id"],
                title=row["title"],
                tag_count=row["tag_count"],
                created_at=parse_timestamp(row["created_at"]),
            )
            for row in rows
        ]

    def update_entry(self, user_id: int, entry_id: int, updates: dict[str, Any]) -> Entry:
        """Update provided fields. Keys absent from ``updates`` are left alone."""
        if self.get_entry(user_id, entry_id) is None:
            raise NotFoundError(f'Entry with ID "{entry_id}" not found')
        allowed = {k: v for k, v in updates.items() if k in ENTRY_FIELDS}
        if allowed:
            assignments = ", ".join(f"{k} = ?" for k in allowed)
            params = list(allowed.values()) + [format_timestamp(utc_now()), entry_id, user_id]
            with self._transaction() as conn:
                conn.execute(
                    f"UPDATE entries SET {assignments}, updated_at = ? WHERE id = ? AND user_id = ?",
                    params,
                )
        return self.get_entry(user_id, entry_id)

    def delete_entry(self, user_id: int, entry_id: int) -> None:
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM entries WHERE id = ? AND user_id = ?", (entry_id, user_id)
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f'Entry with ID "{entry_id}" not found')

    # ========== entry tags ==========

    def get_entry_tags(self, user_id: int, entry_id: int) -> list[Tag]:
        with self._lock:
            rows = self._get_connection().execute(
                """
                SELECT tags.* FROM tags
                JOIN entry_tags ON entry_tags.tag_id = tags.id
                WHERE entry_tags.entry_id = ? AND tags.user_id = ?
                ORDER BY tags.name
                """,
                (entry_id, user_id),
            ).fetchall()
        return [self._row_to_tag(row) for row in rows]

    def add_tag_to_entry(self, user_id: int, entry_id: int, tag_id: int) -> EntryTag:
        """Link a tag to an entry. Linking an already-linked tag is a no-op."""
        with self._transaction(immediate=True) as conn:
            owned = conn.execute(
                """
                SELECT
                    (SELECT COUNT(*) FROM entries WHERE id = ? AND user_id = ?),
                    (SELECT COUNT(*) FROM tags WHERE id = ? AND user_id = ?)
                """,
                (entry_id, user_id, tag_id, user_id),
            ).fetchone()
            if not owned[0]:
                raise NotFoundError(f'Entry with ID "{entry_id}" not found')
            if not owned[1]:
                raise NotFoundError(f'Tag ID "{tag_id}" not found')
            conn.execute(
                "INSERT OR IGNORE INTO entry_tags (entry_id, tag_id, created_at) VALUES (?, ?, ?)",
                (entry_id, tag_id, format_timestamp(utc_now())),
            )
            row = conn.execute(
                "SELECT * FROM entry_tags WHERE entry_id = ? AND tag_id = ?", (entry_id, tag_id)
            ).fetchone()
        return EntryTag(
            id=row["id"],
            entry_id=row["entry_id"],
            tag_id=row["tag_id"],
            created_at=parse_timestamp(row["created_at"]),
        )

"""SQLite-backed persistence for user records."""
from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional

from .models import User


class DuplicateEmailError(ValueError):
    """Raised when the store's unique email constraint rejects a write."""

    def __init__(self, email: str) -> None:
        super().__init__(f"A user with email {email} already exists")
        self.email = email


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def resolve_database_path(env_value: Optional[str]) -> Path:
    """Resolve the on-disk path for the application database."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    base_dir = Path(__file__).resolve().parent.parent / "data"
    return (base_dir / "users.sqlite3").resolve(strict=False)


def _current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(value: datetime) -> str:
    return value.isoformat()


def _parse_datetime(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _is_email_conflict(exc: sqlite3.IntegrityError) -> bool:
    return "users.email" in str(exc)


class UserRepository:
    """Store operations bound to a single open transaction.

    Instances are handed out by :meth:`Database.transaction` and must not be
    used after the surrounding ``with`` block has exited.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def exists_by_email(self, email: str) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM users WHERE email = ? LIMIT 1",
            (email,),
        ).fetchone()
        return row is not None

    def exists_by_email_excluding_id(self, email: str, user_id: int) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM users WHERE email = ? AND id != ? LIMIT 1",
            (email, user_id),
        ).fetchone()
        return row is not None

    def exists_by_id(self, user_id: int) -> bool:
        row = self._conn.execute("SELECT 1 FROM users WHERE id = ?", (user_id,)).fetchone()
        return row is not None

    def find_by_id(self, user_id: int) -> Optional[User]:
        row = self._conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def find_all(self) -> List[User]:
        rows = self._conn.execute("SELECT * FROM users ORDER BY id").fetchall()
        return [self._row_to_user(row) for row in rows]

    def save(self, user: User) -> User:
        """Insert ``user`` when it has no id yet, otherwise update it in place.

        The store owns the timestamps: both are set on insert and
        ``updated_at`` is refreshed on every update.
        """

        now = _serialize_datetime(_current_timestamp())
        try:
            if user.id is None:
                cursor = self._conn.execute(
                    """
                    INSERT INTO users (name, email, age, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (user.name, user.email, user.age, now, now),
                )
                user_id = int(cursor.lastrowid)
            else:
                cursor = self._conn.execute(
                    "UPDATE users SET name = ?, email = ?, age = ?, updated_at = ? WHERE id = ?",
                    (user.name, user.email, user.age, now, user.id),
                )
                if cursor.rowcount == 0:
                    raise LookupError(f"User {user.id} does not exist")
                user_id = user.id
        except sqlite3.IntegrityError as exc:
            if _is_email_conflict(exc):
                raise DuplicateEmailError(user.email) from exc
            raise

        saved = self.find_by_id(user_id)
        if saved is None:  # pragma: no cover - the row was written in this transaction
            raise RuntimeError("Failed to load user after saving")
        return saved

    def delete_by_id(self, user_id: int) -> None:
        self._conn.execute("DELETE FROM users WHERE id = ?", (user_id,))

    def _row_to_user(self, row: sqlite3.Row) -> User:
        return User(
            id=int(row["id"]),
            name=str(row["name"]),
            email=str(row["email"]),
            age=int(row["age"]),
            created_at=_parse_datetime(str(row["created_at"])),
            updated_at=_parse_datetime(str(row["updated_at"])),
        )


class Database:
    """Simple wrapper around SQLite for persisting users."""

    def __init__(self, path: Path, *, timeout: float = 30.0) -> None:
        _ensure_directory(path)
        self._path = path
        self._timeout = timeout

    @property
    def path(self) -> Path:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        # Autocommit mode: transactions are opened explicitly in transaction().
        conn = sqlite3.connect(
            self._path,
            timeout=self._timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        return conn

    def initialize(self) -> None:
        """Create the required tables if they do not already exist."""

        conn = self._connect()
        try:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL CHECK (length(name) BETWEEN 1 AND 25),
                    email TEXT NOT NULL UNIQUE COLLATE NOCASE
                        CHECK (length(email) BETWEEN 1 AND 50),
                    age INTEGER NOT NULL CHECK (age >= 0),
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )
        finally:
            conn.close()

    @contextmanager
    def transaction(self, *, immediate: bool = False) -> Iterator[UserRepository]:
        """Run the enclosed block as one unit of work.

        The transaction commits when the block exits normally and rolls back
        when it raises. ``immediate`` takes SQLite's write lock up front so
        concurrent writers are serialised by the store.
        """

        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            try:
                yield UserRepository(conn)
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def list_users(self) -> List[User]:
        with self.transaction() as users:
            return users.find_all()


__all__ = [
    "Database",
    "DuplicateEmailError",
    "UserRepository",
    "resolve_database_path",
]

"""Domain models for the user lifecycle service."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class User:
    """Represents a user record stored in the users table.

    ``id`` and both timestamps are ``None`` until the store has persisted the
    record for the first time.
    """

    name: str
    email: str
    age: int
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class NewUser:
    """Validated input for creating a user."""

    name: str
    email: str
    age: int

    def to_user(self) -> User:
        return User(name=self.name, email=self.email, age=self.age)


@dataclass(frozen=True)
class UserChanges:
    """Partial update where ``None`` means "keep the stored value"."""

    name: Optional[str] = None
    email: Optional[str] = None
    age: Optional[int] = None

    def apply_to(self, user: User) -> User:
        # Zero is a legitimate age, so only ``None`` counts as absent.
        return replace(
            user,
            name=self.name if self.name is not None else user.name,
            email=self.email if self.email is not None else user.email,
            age=self.age if self.age is not None else user.age,
        )


__all__ = ["NewUser", "User", "UserChanges"]

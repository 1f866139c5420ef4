"""User lifecycle service.

This module is the only place that mutates user records. It owns the email
uniqueness invariant, decides the transaction boundary of every operation and
announces creations and deletions as :class:`~userservice.events.UserEvent`
messages once the store has committed.
"""

from __future__ import annotations

import logging
from typing import List

from .database import Database, DuplicateEmailError
from .events import EventType, UserEvent, UserEventPublisher
from .models import NewUser, User, UserChanges

logger = logging.getLogger("userservice.users")


class UserServiceError(Exception):
    """Base class for errors surfaced to callers of :class:`UserService`."""


class UserNotFoundError(UserServiceError):
    def __init__(self, user_id: int) -> None:
        super().__init__(f"User with id {user_id} not found")
        self.user_id = user_id


class UserAlreadyExistsError(UserServiceError):
    def __init__(self, email: str) -> None:
        super().__init__(f"User with email {email} already exists")
        self.email = email


class UserService:
    """Create, read, update and delete users."""

    def __init__(self, database: Database, publisher: UserEventPublisher) -> None:
        self._database = database
        self._publisher = publisher

    def create_user(self, new_user: NewUser) -> User:
        try:
            with self._database.transaction(immediate=True) as users:
                if users.exists_by_email(new_user.email):
                    raise UserAlreadyExistsError(new_user.email)
                created = users.save(new_user.to_user())
        except DuplicateEmailError as exc:
            # A concurrent create won the race after our existence check.
            raise UserAlreadyExistsError(new_user.email) from exc

        logger.info("Created user %s", created.id)
        self._emit(EventType.USER_CREATED, created)
        return created

    def get_user(self, user_id: int) -> User:
        with self._database.transaction() as users:
            user = users.find_by_id(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    def list_users(self) -> List[User]:
        with self._database.transaction() as users:
            return users.find_all()

    def update_user(self, user_id: int, changes: UserChanges) -> User:
        """Apply ``changes`` to the stored user and return the result.

        Fields left as ``None`` keep their stored value. Changing the email
        re-checks uniqueness against every other user; keeping the current
        email never conflicts. Updates do not emit events.
        """

        try:
            with self._database.transaction(immediate=True) as users:
                current = users.find_by_id(user_id)
                if current is None:
                    raise UserNotFoundError(user_id)

                merged = changes.apply_to(current)
                if merged.email != current.email and users.exists_by_email_excluding_id(
                    merged.email, user_id
                ):
                    raise UserAlreadyExistsError(merged.email)

                updated = users.save(merged)
        except DuplicateEmailError as exc:
            raise UserAlreadyExistsError(exc.email) from exc

        logger.info("Updated user %s", user_id)
        return updated

    def delete_user(self, user_id: int) -> None:
        with self._database.transaction(immediate=True) as users:
            user = users.find_by_id(user_id)
            if user is None:
                raise UserNotFoundError(user_id)
            # The record and its email are gone once the delete commits.
            event = UserEvent.for_user(EventType.USER_DELETED, user)
            users.delete_by_id(user_id)

        logger.info("Deleted user %s", user_id)
        self._publish(event)

    def _emit(self, event_type: EventType, user: User) -> None:
        self._publish(UserEvent.for_user(event_type, user))

    def _publish(self, event: UserEvent) -> None:
        try:
            self._publisher.send(event)
        except Exception:
            logger.exception(
                "Could not hand off %s event for user %s",
                event.event_type.value,
                event.user_id,
            )


__all__ = [
    "UserAlreadyExistsError",
    "UserNotFoundError",
    "UserService",
    "UserServiceError",
]

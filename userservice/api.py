"""FastAPI application that exposes the user lifecycle endpoints."""
from __future__ import annotations

import os
from datetime import datetime
from typing import Dict, List, Optional

import anyio
from email_validator import EmailNotValidError, validate_email
from fastapi import APIRouter, Depends, FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from .database import Database, resolve_database_path
from .events import InMemoryEventChannel, UserEventPublisher
from .models import NewUser, User, UserChanges
from .users import UserAlreadyExistsError, UserNotFoundError, UserService

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
NAME_MAX_LENGTH = 25
EMAIL_MAX_LENGTH = 50
AGE_MAX = 2**31 - 1

_MISSING_FIELD_MESSAGES = {
    "name": "Name must not be blank",
    "email": "Email must not be blank",
    "age": "Age must not be null",
}
_UNSET = object()


def _clean_name(value: str) -> str:
    stripped = value.strip()
    if not stripped:
        raise ValueError("Name must not be blank")
    if len(stripped) > NAME_MAX_LENGTH:
        raise ValueError(f"Name must be at most {NAME_MAX_LENGTH} characters")
    return stripped


def _clean_email(value: str) -> str:
    stripped = value.strip()
    if not stripped:
        raise ValueError("Email must not be blank")
    if len(stripped) > EMAIL_MAX_LENGTH:
        raise ValueError(f"Email must be at most {EMAIL_MAX_LENGTH} characters")
    try:
        validate_email(stripped, check_deliverability=False)
    except EmailNotValidError as exc:
        raise ValueError("Email should be valid") from exc
    return stripped.lower()


def _check_age(value: int) -> int:
    if value < 0:
        raise ValueError("Age must be positive or zero")
    if value > AGE_MAX:
        raise ValueError(f"Age must be at most {AGE_MAX}")
    return value


class CreateUserRequest(BaseModel):
    name: str
    email: str
    age: int

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        return _clean_name(value)

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        return _clean_email(value)

    @field_validator("age")
    @classmethod
    def _validate_age(cls, value: int) -> int:
        return _check_age(value)

    def to_new_user(self) -> NewUser:
        return NewUser(name=self.name, email=self.email, age=self.age)


class UpdateUserRequest(BaseModel):
    """Partial update: ``null`` (or an omitted field) keeps the stored value."""

    name: Optional[str] = None
    email: Optional[str] = None
    age: Optional[int] = None

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _clean_name(value)

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _clean_email(value)

    @field_validator("age")
    @classmethod
    def _validate_age(cls, value: Optional[int]) -> Optional[int]:
        return None if value is None else _check_age(value)

    def to_changes(self) -> UserChanges:
        return UserChanges(name=self.name, email=self.email, age=self.age)


class UserResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: int = Field(alias="userId")
    name: str
    email: str
    age: int
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")
    links: Dict[str, Dict[str, str]] = Field(default_factory=dict, alias="_links")

    @field_serializer("created_at", "updated_at")
    def _format_timestamp(self, value: datetime) -> str:
        return value.strftime(TIMESTAMP_FORMAT)


def user_to_response(user: User, request: Request) -> UserResponse:
    self_url = str(request.url_for("read_user", user_id=user.id))
    return UserResponse(
        user_id=user.id,
        name=user.name,
        email=user.email,
        age=user.age,
        created_at=user.created_at,
        updated_at=user.updated_at,
        links={"self": {"href": self_url}},
    )


def _validation_message(field: str, error: Dict[str, object]) -> str:
    if error.get("type") == "missing" or error.get("input", _UNSET) is None:
        return _MISSING_FIELD_MESSAGES.get(field, "Field is required")
    ctx = error.get("ctx")
    if error.get("type") == "value_error" and isinstance(ctx, dict) and "error" in ctx:
        return str(ctx["error"])
    return str(error.get("msg", "Invalid value"))


def create_app(
    *,
    database: Database | None = None,
    publisher: UserEventPublisher | None = None,
    initialize_database: bool = False,
) -> FastAPI:
    if database is None:
        database = Database(resolve_database_path(os.getenv("USERSERVICE_DB_PATH")))
        database.initialize()
    elif initialize_database:
        database.initialize()

    if publisher is None:
        publisher = UserEventPublisher(InMemoryEventChannel())
    publisher.start()

    service = UserService(database, publisher)

    app = FastAPI(
        title="User Lifecycle Service",
        description="Create, read, update and delete users and announce their lifecycle events",
        version="1.0.0",
    )
    app.state.database = database
    app.state.publisher = publisher
    app.state.user_service = service

    def get_user_service() -> UserService:
        return service

    @app.get("/health")
    async def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    router = APIRouter(prefix="/api/v1/users", tags=["users"])

    @router.post("", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
    async def create_user(
        payload: CreateUserRequest,
        request: Request,
        users: UserService = Depends(get_user_service),
    ) -> UserResponse:
        user = await anyio.to_thread.run_sync(users.create_user, payload.to_new_user())
        return user_to_response(user, request)

    @router.get("", response_model=List[UserResponse])
    async def list_users(
        request: Request,
        users: UserService = Depends(get_user_service),
    ) -> List[UserResponse]:
        records = await anyio.to_thread.run_sync(users.list_users)
        return [user_to_response(user, request) for user in records]

    @router.get("/{user_id}", response_model=UserResponse, name="read_user")
    async def read_user(
        user_id: int,
        request: Request,
        users: UserService = Depends(get_user_service),
    ) -> UserResponse:
        user = await anyio.to_thread.run_sync(users.get_user, user_id)
        return user_to_response(user, request)

    @router.put("/{user_id}", response_model=UserResponse)
    async def update_user(
        user_id: int,
        payload: UpdateUserRequest,
        request: Request,
        users: UserService = Depends(get_user_service),
    ) -> UserResponse:
        user = await anyio.to_thread.run_sync(users.update_user, user_id, payload.to_changes())
        return user_to_response(user, request)

    @router.delete("/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_user(
        user_id: int,
        users: UserService = Depends(get_user_service),
    ) -> Response:
        await anyio.to_thread.run_sync(users.delete_user, user_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    app.include_router(router)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(_: Request, exc: RequestValidationError):
        errors: Dict[str, str] = {}
        for error in exc.errors():
            location = [str(part) for part in error.get("loc", ()) if part != "body"]
            field = ".".join(location) or "body"
            errors.setdefault(field, _validation_message(field, error))
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=errors)

    @app.exception_handler(UserNotFoundError)
    async def handle_user_not_found(_: Request, exc: UserNotFoundError):
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"message": str(exc)})

    @app.exception_handler(UserAlreadyExistsError)
    async def handle_user_already_exists(_: Request, exc: UserAlreadyExistsError):
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"message": str(exc)})

    return app


__all__ = [
    "CreateUserRequest",
    "UpdateUserRequest",
    "UserResponse",
    "create_app",
    "user_to_response",
]

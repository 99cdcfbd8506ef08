"""Token management for the admin API.

Validates user ids and tokens, then persists changes through ``ConfigStore``.
"""

from __future__ import annotations

import re
import secrets
import string
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from tunnelgate.core.config import UserRecord

if TYPE_CHECKING:
    from tunnelgate.core.store import ConfigStore

logger = structlog.get_logger()

USERNAME_PATTERN = re.compile(r"[a-z0-9-]+")
TOKEN_MIN_LENGTH = 8
TOKEN_MAX_LENGTH = 32
GENERATED_TOKEN_LENGTH = 20
TOKEN_ALPHABET = string.ascii_letters + string.digits


class TokenError(Exception):
    """Base class for rejected token operations."""

    status = 400


class TokenValidationError(TokenError):
    status = 400


class UserExistsError(TokenError):
    status = 409


class UserNotFoundError(TokenError):
    status = 404


def generate_token(length: int = GENERATED_TOKEN_LENGTH) -> str:
    """Generate a random alphanumeric token."""
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))


def validate_username(username: str) -> None:
    if not USERNAME_PATTERN.fullmatch(username):
        raise TokenValidationError(
            "Username must contain only lowercase letters, numbers and hyphens"
        )


def validate_token(token: str) -> None:
    if not TOKEN_MIN_LENGTH <= len(token) <= TOKEN_MAX_LENGTH:
        raise TokenValidationError(
            f"Token must be {TOKEN_MIN_LENGTH}-{TOKEN_MAX_LENGTH} characters"
        )


@dataclass
class TokenEntry:
    """One row of the token listing."""

    user: str
    token: str
    subdomain: str
    last_login: str | None
    last_ip: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "user": self.user,
            "token": self.token,
            "subdomain": self.subdomain,
            "lastLogin": self.last_login,
            "lastIp": self.last_ip,
        }


class TokenService:
    """CRUD over the ``users`` section of the configuration."""

    def __init__(self, store: ConfigStore) -> None:
        self._store = store

    def list_tokens(self) -> list[TokenEntry]:
        entries = []
        for user, record in self._store.config.users.items():
            activity = self._store.activity(user)
            entries.append(
                TokenEntry(
                    user=user,
                    token=record.token,
                    subdomain=record.resolved_subdomain(user),
                    last_login=activity.last_login.isoformat() if activity else None,
                    last_ip=activity.last_ip if activity else None,
                )
            )
        return entries

    async def add(self, username: str | None, token: str | None) -> None:
        """Create a user whose subdomain equals its id.

        Raises:
            TokenValidationError: Missing or malformed username/token.
            UserExistsError: The user already exists.
            ConfigError: The configuration could not be saved.
        """
        if not username or not token:
            raise TokenValidationError("Username and token are required")
        validate_username(username)
        validate_token(token)

        record = UserRecord(token=token, subdomain=username)
        if not await self._store.create_user(username, record):
            raise UserExistsError("User already exists")
        logger.info("Added new user", user=username)

    async def update(self, username: str, token: str | None) -> None:
        """Replace a user's token; a missing token leaves the record as is.

        Raises:
            UserNotFoundError: The user does not exist.
            TokenValidationError: The new token has an invalid length.
            ConfigError: The configuration could not be saved.
        """
        if token:
            validate_token(token)

        def change(record: UserRecord) -> UserRecord:
            return record.model_copy(update={"token": token}) if token else record

        if not await self._store.update_user(username, change):
            raise UserNotFoundError("User not found")
        logger.info("Updated user", user=username)

    async def delete(self, username: str) -> None:
        """Delete a user together with its login activity.

        Raises:
            UserNotFoundError: The user does not exist.
            ConfigError: The configuration could not be saved.
        """
        if not await self._store.delete_user(username):
            raise UserNotFoundError("User not found")
        logger.info("Deleted user", user=username)

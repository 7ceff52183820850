#!/usr/bin/env python3
"""
PlexShelf Authentication

This module answers one question for the rest of the service: is there an
authenticated caller, and who is it? Users are stored in the application
database with bcrypt password hashes; a successful login returns a signed
JWT access token which later requests present as a Bearer token.

Token validation is an in-process call (AuthService.resolve_user); the API
layer never calls its own HTTP endpoints to find out who the user is.

Classes:
    AuthenticationError: Credentials or token were rejected
    RegistrationError: A new account could not be created
    AccountError: An account change (password, profile) was rejected
    AuthenticatedUser: The caller resolved from a valid token
    AuthService: Registration, login, token resolution and account management

Functions:
    hash_password: bcrypt-hash a password
    verify_password: Check a password against a bcrypt hash

Project: PlexShelf
Version: 1.0.0
License: MIT
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, Optional

import aiosqlite
import bcrypt
import jwt

from .config_models import AuthConfig
from .database_manager import DatabaseManager
from .utils import get_logger


# bcrypt only looks at the first 72 bytes of a password
MAX_PASSWORD_BYTES = 72
MIN_PASSWORD_LENGTH = 8


class AuthenticationError(Exception):
    """Raised when credentials or a token are rejected."""


class RegistrationError(Exception):
    """Raised when a new account cannot be created."""


class AccountError(Exception):
    """Raised when a password or profile change is rejected."""


@dataclass(frozen=True)
class AuthenticatedUser:
    id: int
    username: str


def hash_password(password: str) -> str:
    """
    Hash a password with a fresh bcrypt salt.

    Raises:
        ValueError: If the password is longer than bcrypt can hash
    """
    encoded = password.encode('utf-8')
    if len(encoded) > MAX_PASSWORD_BYTES:
        raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")
    return bcrypt.hashpw(encoded, bcrypt.gensalt()).decode('utf-8')


def verify_password(password: str, password_hash: str) -> bool:
    encoded = password.encode('utf-8')
    if len(encoded) > MAX_PASSWORD_BYTES:
        return False
    try:
        return bcrypt.checkpw(encoded, password_hash.encode('utf-8'))
    except ValueError:
        # Malformed stored hash
        return False


class AuthService:
    """
    User registration, login and JWT resolution.

    Attributes:
        config (AuthConfig): Secret, algorithm, expiry and registration policy
        db_manager (DatabaseManager): Storage for user accounts

    Example:
        ```python
        auth = AuthService(config.auth, db_manager)
        await auth.register("alice", "correct horse battery")
        token = await auth.authenticate("alice", "correct horse battery")
        user = await auth.resolve_user(token)   # AuthenticatedUser(id=1, username="alice")
        ```
    """

    def __init__(self, config: AuthConfig, db_manager: DatabaseManager):
        self.config = config
        self.db_manager = db_manager
        self.logger = get_logger("plexshelf.auth")

    async def register(self, username: str, password: str, name: Optional[str] = None) -> AuthenticatedUser:
        """
        Create a user account. The display name defaults to the username.

        Raises:
            RegistrationError: If registration is disabled, the input is invalid
                or the username is taken
        """
        if not self.config.allow_registration:
            raise RegistrationError("Registration is disabled")

        username = username.strip()
        if not username:
            raise RegistrationError("Username cannot be empty")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise RegistrationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")

        try:
            password_hash = hash_password(password)
        except ValueError as e:
            raise RegistrationError(str(e)) from e

        try:
            user = await self.db_manager.create_user(username, password_hash, name=(name or "").strip() or None)
        except aiosqlite.IntegrityError as e:
            raise RegistrationError(f"Username '{username}' is already taken") from e

        self.logger.info(f"Registered user '{username}' (id {user['id']})")
        return AuthenticatedUser(id=user['id'], username=user['username'])

    async def authenticate(self, username: str, password: str) -> str:
        """
        Check credentials and return a new access token.

        Raises:
            AuthenticationError: If the username or password is wrong
        """
        user = await self.db_manager.get_user_by_username(username.strip())
        if not user or not verify_password(password, user['password_hash']):
            self.logger.warning(f"Failed login attempt for '{username}'")
            raise AuthenticationError("Invalid username or password")

        self.logger.info(f"User '{user['username']}' logged in")
        return self.create_access_token(AuthenticatedUser(id=user['id'], username=user['username']))

    def create_access_token(self, user: AuthenticatedUser, expires_delta: Optional[timedelta] = None) -> str:
        """Create a signed access token for a user."""
        expire = datetime.now(timezone.utc) + (
            expires_delta or timedelta(minutes=self.config.access_token_expire_minutes)
        )
        payload: Dict[str, Any] = {
            "sub": str(user.id),
            "username": user.username,
            "exp": expire,
            "type": "access",
        }
        return jwt.encode(payload, self.config.jwt_secret, algorithm=self.config.jwt_algorithm)

    async def resolve_user(self, token: Optional[str]) -> Optional[AuthenticatedUser]:
        """
        Return the user a token belongs to, or None for an anonymous caller.

        A missing, malformed, expired or non-access token, or a token for a
        user that no longer exists, all resolve to None.
        """
        if not token:
            return None

        try:
            payload = jwt.decode(token, self.config.jwt_secret, algorithms=[self.config.jwt_algorithm])
        except jwt.ExpiredSignatureError:
            self.logger.debug("Rejected expired token")
            return None
        except jwt.InvalidTokenError as e:
            self.logger.debug(f"Rejected invalid token: {e}")
            return None

        if payload.get("type") != "access":
            return None

        try:
            user_id = int(payload.get("sub", ""))
        except ValueError:
            return None

        user = await self.db_manager.get_user(user_id)
        if user is None:
            return None
        return AuthenticatedUser(id=user['id'], username=user['username'])

    # ==================== ACCOUNT MANAGEMENT ====================

    async def get_profile(self, user: AuthenticatedUser) -> Dict[str, Any]:
        """Return the public profile (id, username, name) of a user."""
        stored = await self.db_manager.get_user(user.id)
        if stored is None:
            raise AccountError("User not found")
        return {'id': stored['id'], 'username': stored['username'], 'name': stored['name'] or stored['username']}

    async def change_password(self, user: AuthenticatedUser, current_password: str, new_password: str) -> None:
        """
        Replace a user's password after checking the current one.

        Tokens issued before the change stay valid until they expire.

        Raises:
            AccountError: If the current password is wrong or the new one is invalid
        """
        stored = await self.db_manager.get_user(user.id, include_password_hash=True)
        if stored is None:
            raise AccountError("User not found")
        if not verify_password(current_password, stored['password_hash']):
            self.logger.warning(f"Password change for '{user.username}' rejected: wrong current password")
            raise AccountError("Current password is incorrect")
        if len(new_password) < MIN_PASSWORD_LENGTH:
            raise AccountError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")

        try:
            password_hash = hash_password(new_password)
        except ValueError as e:
            raise AccountError(str(e)) from e

        await self.db_manager.update_user(user.id, password_hash=password_hash)
        self.logger.info(f"User '{user.username}' changed their password")

    async def update_profile(self, user: AuthenticatedUser, name: str) -> Dict[str, Any]:
        """
        Change a user's display name.

        Raises:
            AccountError: If the name is blank or the user no longer exists
        """
        name = name.strip()
        if not name:
            raise AccountError("Name cannot be empty")
        if not await self.db_manager.update_user(user.id, name=name):
            raise AccountError("User not found")
        self.logger.info(f"User '{user.username}' updated their profile")
        return await self.get_profile(user)

    async def delete_account(self, user: AuthenticatedUser) -> None:
        """Delete a user and all of their records; their tokens stop resolving."""
        if not await self.db_manager.delete_user(user.id):
            raise AccountError("User not found")
        self.logger.info(f"Deleted account '{user.username}' (id {user.id})")

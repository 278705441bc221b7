import hashlib
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict

from vmplatform.database import models
from vmplatform.repositories.interfaces import IUserRepository
from vmplatform.services.exceptions import (
    AuthenticationError,
    TokenInvalidError,
    UserCreationError,
    UserNotFoundError,
)


def hash_password(password: str) -> str:
    return hashlib.sha256(password.encode('utf-8')).hexdigest()


class IdentityService:
    """Resolves callers: password login to a bearer token, token back to a user id."""
    _token_cache = {}

    def __init__(self, user_repo: IUserRepository, token_ttl_minutes: int = 60):
        self.user_repo = user_repo
        self.token_ttl = timedelta(minutes=token_ttl_minutes)

    def create_user(self, username: str, password: str) -> Dict[str, Any]:
        """
        Raises:
            UserCreationError: the username is empty or already taken.
        """
        if not username or not password:
            raise UserCreationError("Username and password are required.")
        if self.user_repo.find_by_username(username):
            raise UserCreationError(f"User with username '{username}' already exists.")

        created_user = self.user_repo.create(models.User(username=username, password_hash=hash_password(password)))
        return {"id": created_user.id, "username": created_user.username}

    def get_user(self, user_id: int) -> Dict[str, Any]:
        user = self.user_repo.find_by_id(user_id)
        if not user:
            raise UserNotFoundError(f"User with id '{user_id}' not found.")
        return {"id": user.id, "username": user.username}

    def authenticate(self, username: str = None, password: str = None) -> Dict[str, Any]:
        """
        Checks the credentials and issues a token valid for ``token_ttl_minutes``.

        Raises:
            AuthenticationError: unknown user or wrong password.
        """
        user = self.user_repo.find_by_username(username) if username else None
        if not user or user.password_hash != hash_password(password or ''):
            raise AuthenticationError("Invalid username or password.")

        token = str(uuid.uuid4())
        expires_at = datetime.now() + self.token_ttl
        self._token_cache[token] = {
            'user_id': user.id,
            'expires_at': expires_at
        }
        return {"token": token, "expires_at": expires_at.isoformat(), "user_id": user.id}

    def validate_token(self, token: str) -> Dict[str, Any]:
        """
        Raises:
            TokenInvalidError: unknown or expired token.
        """
        token_data = self._token_cache.get(token)
        if not token_data:
            raise TokenInvalidError("Token not found or invalid.")

        if datetime.now() > token_data['expires_at']:
            del self._token_cache[token]
            raise TokenInvalidError("Token has expired.")

        return token_data

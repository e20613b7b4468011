"""Manager accounts stored as ``users/<username>.json``."""

from __future__ import annotations

import logging
import re
from typing import Any

import bcrypt

from .content import GitHubContentStore, StoredFile
from .errors import ConflictError, InvalidCredentials, ValidationError
from .schemas import Registration, User, parse_document
from .utils import iso_now

logger = logging.getLogger(__name__)

USERNAME_PATTERN = re.compile(r"^[a-z0-9._-]{3,50}$")
MAX_PASSWORD_LENGTH = 128
MIN_PASSWORD_LENGTH = 8
BCRYPT_ROUNDS = 10
PROFILE_FIELDS = frozenset({"name", "email", "branch", "rank"})


def normalize_username(username: str | None) -> str:
    return (username or "").strip().lower()


def user_path(username: str) -> str:
    return f"users/{normalize_username(username)}.json"


def hash_password(password: str, *, rounds: int = BCRYPT_ROUNDS) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds)).decode("utf-8")


def verify_password(password: str, password_hash: str | None) -> bool:
    if not password_hash or not password_hash.startswith("$2"):
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def password_problems(password: str) -> list[str]:
    problems = []
    if len(password) < MIN_PASSWORD_LENGTH:
        problems.append(f"at least {MIN_PASSWORD_LENGTH} characters")
    if len(password) > MAX_PASSWORD_LENGTH:
        problems.append(f"at most {MAX_PASSWORD_LENGTH} characters")
    if not re.search(r"[A-Z]", password):
        problems.append("an uppercase letter")
    if not re.search(r"[a-z]", password):
        problems.append("a lowercase letter")
    if not re.search(r"\d", password):
        problems.append("a number")
    return problems


class UserStore:
    def __init__(self, content: GitHubContentStore) -> None:
        self.content = content

    def get(self, username: str) -> tuple[User, StoredFile] | None:
        stored = self.content.get_file(user_path(username))
        if stored is None or not isinstance(stored.content, dict):
            return None
        return parse_document(User, stored.content), stored

    def save(self, user: User, *, sha: str | None = None, message: str | None = None) -> None:
        self.content.put_file(
            user_path(user.username),
            user.to_json(),
            message or f"Register user: {user.username}",
            sha=sha,
        )

    def authenticate(self, username: str, password: str) -> User:
        """Return the user for valid credentials or raise InvalidCredentials."""
        username = normalize_username(username)
        if not USERNAME_PATTERN.match(username) or len(password) > MAX_PASSWORD_LENGTH:
            raise InvalidCredentials("Invalid credentials")
        found = self.get(username)
        if found is None or not verify_password(password, found[0].password_hash):
            raise InvalidCredentials("Invalid credentials")
        return found[0]

    def register(self, registration: Registration) -> User:
        username = normalize_username(registration.username)
        if not USERNAME_PATTERN.match(username):
            raise ValidationError("Invalid username format")
        if not registration.name.strip() or not registration.email.strip():
            raise ValidationError("Name and email are required")
        if not registration.password or len(registration.password) > MAX_PASSWORD_LENGTH:
            raise ValidationError("Invalid password")
        if self.get(username) is not None:
            raise ConflictError(409, "Username already exists")
        user = User(
            username=username,
            name=registration.name.strip(),
            email=registration.email.strip().lower(),
            branch=registration.branch.strip(),
            rank=registration.rank.strip(),
            password_hash=hash_password(registration.password),
            created=iso_now(),
        )
        self.save(user)
        return user

    def change_password(self, username: str, current: str, new: str) -> User:
        problems = password_problems(new)
        if problems:
            raise ValidationError("New password must contain " + ", ".join(problems))
        found = self.get(username)
        if found is None or not verify_password(current, found[0].password_hash):
            raise InvalidCredentials("Current password is incorrect")
        user, stored = found
        now = iso_now()
        updated = user.model_copy(
            update={
                "password_hash": hash_password(new),
                "password_changed_at": now,
                "last_modified": now,
            }
        )
        self.save(updated, sha=stored.sha, message=f"Update password for user: {user.username}")
        return updated

    def update_profile(self, username: str, updates: dict[str, Any]) -> User:
        found = self.get(username)
        if found is None:
            raise InvalidCredentials("User not found")
        user, stored = found
        allowed = {key: value for key, value in updates.items() if key in PROFILE_FIELDS}
        updated = user.model_copy(update={**allowed, "last_modified": iso_now()})
        self.save(updated, sha=stored.sha, message=f"Update profile for user: {user.username}")
        return updated

    def list_users(self) -> list[User]:
        """Every readable account, newest first."""
        users = []
        for path, data in self.content.load_json_files("users/").items():
            try:
                users.append(parse_document(User, data))
            except ValidationError as exc:
                logger.warning("Skipping invalid user %s: %s", path, exc)
        return sorted(users, key=lambda user: user.created or "", reverse=True)

    def reset_password(self, username: str, new: str) -> User:
        problems = password_problems(new)
        if problems:
            raise ValidationError("Password must contain " + ", ".join(problems))
        found = self.get(username)
        if found is None:
            raise ValidationError("User not found")
        user, stored = found
        now = iso_now()
        updated = user.model_copy(
            update={
                "password_hash": hash_password(new),
                "password_changed_at": now,
                "last_modified": now,
            }
        )
        self.save(updated, sha=stored.sha, message=f"Reset password for {user.username}")
        return updated

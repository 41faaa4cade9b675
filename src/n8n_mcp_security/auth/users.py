"""User directory with argon2id password verification."""

from __future__ import annotations

import logging
import threading
import uuid
from pathlib import Path
from typing import Any

import yaml
from argon2 import PasswordHasher
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from n8n_mcp_security.auth.models import Role, User
from n8n_mcp_security.errors import ValidationError

logger = logging.getLogger(__name__)


class UserDirectory:
    """
    In-memory account store.

    Accounts are provisioned out of band (directly or from a YAML file) and
    only ``role`` and ``is_active`` may change afterwards.
    """

    def __init__(self, hasher: PasswordHasher | None = None) -> None:
        self._hasher = hasher or PasswordHasher()
        self._by_username: dict[str, User] = {}
        self._by_id: dict[str, User] = {}
        self._lock = threading.Lock()
        # Verified against for unknown usernames so lookups cost the same.
        self._dummy_hash = self._hasher.hash(uuid.uuid4().hex)

    def hash_password(self, password: str) -> str:
        return self._hasher.hash(password)

    def provision(
        self,
        username: str,
        email: str,
        role: Role | str,
        tenant_id: str = "default",
        *,
        password: str | None = None,
        password_hash: str | None = None,
        user_id: str | None = None,
        is_active: bool = True,
    ) -> User:
        if not username or not username.strip():
            raise ValidationError("username is required")
        if (password is None) == (password_hash is None):
            raise ValidationError("exactly one of password or password_hash is required")
        if not tenant_id:
            raise ValidationError("tenant_id is required")
        role = _coerce_role(role)

        user = User(
            id=user_id or str(uuid.uuid4()),
            username=username,
            email=email,
            password_hash=password_hash or self._hasher.hash(password or ""),
            role=role,
            tenant_id=tenant_id,
            is_active=is_active,
        )
        with self._lock:
            if username in self._by_username:
                raise ValidationError(f"username already exists: {username}")
            if user.id in self._by_id:
                raise ValidationError(f"user id already exists: {user.id}")
            self._by_username[username] = user
            self._by_id[user.id] = user
        logger.info("Provisioned user %s (role=%s, tenant=%s)", user.id, role.value, tenant_id)
        return user

    def get_by_username(self, username: str) -> User | None:
        return self._by_username.get(username)

    def get_by_id(self, user_id: str) -> User | None:
        return self._by_id.get(user_id)

    def verify_credentials(self, username: str, password: str) -> User | None:
        """Return the active user matching the credentials, else None."""
        user = self._by_username.get(username)
        stored_hash = user.password_hash if user else self._dummy_hash
        try:
            self._hasher.verify(stored_hash, password)
        except (VerifyMismatchError, VerificationError, InvalidHash):
            return None
        if user is None or not user.is_active:
            return None
        return user

    def set_role(self, user_id: str, role: Role | str) -> User:
        role = _coerce_role(role)
        with self._lock:
            user = self._require_unlocked(user_id)
            user.role = role
        return user

    def set_active(self, user_id: str, is_active: bool) -> User:
        with self._lock:
            user = self._require_unlocked(user_id)
            user.is_active = is_active
        return user

    def load_users_file(self, path: str | Path) -> int:
        """Provision accounts from a YAML file with a top-level ``users`` list.

        Entries carry a pre-computed argon2 ``password_hash``; plain passwords
        are not accepted from files.
        """
        with open(path, encoding="utf-8") as fh:
            try:
                data = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise ValidationError(f"Invalid YAML in {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ValidationError(f"Users file must be a mapping: {path}")
        entries = data.get("users") or []
        if not isinstance(entries, list):
            raise ValidationError(f"'users' must be a list in {path}")

        count = 0
        for index, entry in enumerate(entries):
            if not isinstance(entry, dict):
                raise ValidationError(f"users[{index}] must be a mapping")
            self.provision(
                username=_require_str(entry, "username", index),
                email=str(entry.get("email", "")),
                role=_require_str(entry, "role", index),
                tenant_id=str(entry.get("tenant_id", "default")),
                password_hash=_require_str(entry, "password_hash", index),
                user_id=entry.get("id"),
                is_active=bool(entry.get("is_active", True)),
            )
            count += 1
        logger.info("Loaded %d user(s) from %s", count, path)
        return count

    def __len__(self) -> int:
        return len(self._by_id)

    def _require_unlocked(self, user_id: str) -> User:
        user = self._by_id.get(user_id)
        if user is None:
            raise ValidationError(f"unknown user: {user_id}")
        return user


def _coerce_role(role: Role | str) -> Role:
    try:
        return Role(role)
    except ValueError:
        allowed = ", ".join(r.value for r in Role)
        raise ValidationError(f"invalid role {role!r}; expected one of: {allowed}") from None


def _require_str(entry: dict[str, Any], key: str, index: int) -> str:
    value = entry.get(key)
    if not isinstance(value, str) or not value:
        raise ValidationError(f"users[{index}].{key} must be a non-empty string")
    return value

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, MutableMapping, Optional

from fastapi import Request

from .errors import UnauthorizedError


@dataclass
class SessionContext:
    """
    Typed view over the signed session cookie.

    Handlers receive it as a dependency and sign users in or out through it
    instead of poking at ``request.session`` directly.
    """
    store: MutableMapping[str, Any]

    @property
    def user_id(self) -> Optional[int]:
        uid = self.store.get("user_id")
        return int(uid) if uid is not None else None

    @property
    def email(self) -> Optional[str]:
        return self.store.get("email")

    @property
    def admin_user(self) -> Optional[str]:
        return self.store.get("admin_user")

    @property
    def is_admin(self) -> bool:
        return bool(self.admin_user)

    def sign_in(self, user_id: int, email: str) -> None:
        # drop whatever the old cookie carried before binding a new user
        self.store.clear()
        self.store["user_id"] = int(user_id)
        self.store["email"] = email

    def sign_in_admin(self, username: str) -> None:
        self.store["admin_user"] = username

    def clear(self) -> None:
        self.store.clear()

    def require_user(self) -> int:
        uid = self.user_id
        if uid is None:
            raise UnauthorizedError("unauthorized")
        return uid

    def require_admin(self) -> str:
        if not self.is_admin:
            raise UnauthorizedError("unauthorized")
        return self.admin_user


def session_context(request: Request) -> SessionContext:
    return SessionContext(request.session)

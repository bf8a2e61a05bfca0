from __future__ import annotations

from typing import Protocol

from taskmanager.errors import AuthRequiredError
from taskmanager.observability import get_json_logger


class AuthGateway(Protocol):
    """Source of the signed-in user. ``None`` means nobody is signed in."""

    def current_user_id(self) -> str | None: ...


class SessionAuthGateway(AuthGateway):
    """Holds an explicit session instead of reaching for a global SDK handle."""

    def __init__(self, user_id: str | None = None) -> None:
        self._user_id: str | None = None
        if user_id:
            self.sign_in(user_id)

    def current_user_id(self) -> str | None:
        return self._user_id

    def sign_in(self, user_id: str) -> None:
        uid = (user_id or "").strip()
        if not uid:
            raise ValueError("user_id must be non-empty")
        self._user_id = uid
        get_json_logger("taskmanager.auth").info(
            "signed in", extra={"event": "auth_sign_in", "user_id": uid}
        )

    def sign_out(self) -> None:
        if self._user_id is None:
            return
        get_json_logger("taskmanager.auth").info(
            "signed out", extra={"event": "auth_sign_out", "user_id": self._user_id}
        )
        self._user_id = None


def require_user(auth: AuthGateway) -> str:
    user_id = auth.current_user_id()
    if not user_id:
        raise AuthRequiredError()
    return user_id


__all__ = ["AuthGateway", "SessionAuthGateway", "require_user"]

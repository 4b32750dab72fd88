"""
Caller authentication by credential inspection.

Two credential kinds are accepted in the ``Authorization: Bearer`` header:

* the service-role key, identifying a trusted internal caller;
* a signed caller token (``CallerTokenEncoder``) carrying a user id and an
  expiry. Whether the user is an admin is read from the user's profile record.
"""

from __future__ import annotations

import base64
import binascii
import hmac
import json
import time
from dataclasses import dataclass
from hashlib import sha256
from typing import Any, Callable, Dict, Mapping, Optional

from takeoff.clients.sqlite_store import RecordStore


class AuthorizationError(Exception):
    """Raised when a caller is unauthenticated (401) or not allowed (403)."""

    def __init__(self, message: str, *, status_code: int = 401) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True, slots=True)
class CallerIdentity:
    user_id: Optional[str]
    is_service: bool = False
    is_admin: bool = False

    @property
    def is_privileged(self) -> bool:
        return self.is_service or self.is_admin

    def owns(self, record: Mapping[str, Any]) -> bool:
        return self.is_service or (
            self.user_id is not None and record.get("user_id") == self.user_id
        )


class CallerTokenEncoder:
    """Encode and verify signed caller tokens to guard against tampering."""

    def __init__(self, secret_key: str, *, clock: Callable[[], float] = time.time) -> None:
        self._secret_key = secret_key.encode("utf-8")
        self._clock = clock

    def issue(self, user_id: str, *, ttl_seconds: int = 3600) -> str:
        return self.encode({"sub": user_id, "exp": int(self._clock()) + ttl_seconds})

    def encode(self, payload: Dict[str, Any]) -> str:
        serialized = json.dumps(payload, separators=(",", ":"), sort_keys=True)
        signature = hmac.new(self._secret_key, serialized.encode("utf-8"), sha256).digest()
        return base64.urlsafe_b64encode(signature + serialized.encode("utf-8")).decode("utf-8")

    def decode(self, token: str) -> Dict[str, Any]:
        try:
            decoded = base64.urlsafe_b64decode(token.encode("utf-8"))
        except (binascii.Error, ValueError) as exc:
            raise AuthorizationError("Malformed caller token.") from exc
        signature, serialized = decoded[:32], decoded[32:]
        expected_signature = hmac.new(self._secret_key, serialized, sha256).digest()
        if not hmac.compare_digest(signature, expected_signature):
            raise AuthorizationError("Invalid caller token signature.")
        try:
            payload = json.loads(serialized)
        except ValueError as exc:
            raise AuthorizationError("Malformed caller token.") from exc
        if not isinstance(payload, dict) or not payload.get("sub"):
            raise AuthorizationError("Caller token has no subject.")
        expires_at = payload.get("exp")
        if expires_at is not None and expires_at < self._clock():
            raise AuthorizationError("Caller token has expired.")
        return payload


class Authenticator:
    """Resolve an ``Authorization`` header into a :class:`CallerIdentity`."""

    def __init__(
        self,
        *,
        service_role_key: str,
        encoder: CallerTokenEncoder,
        store: RecordStore,
    ) -> None:
        self._service_role_key = service_role_key
        self._encoder = encoder
        self._store = store

    def authenticate(self, authorization: Optional[str]) -> CallerIdentity:
        if not authorization:
            raise AuthorizationError("Missing Authorization header.")
        scheme, _, credential = authorization.strip().partition(" ")
        credential = credential.strip()
        if scheme.lower() != "bearer" or not credential:
            raise AuthorizationError("Authorization header must use the Bearer scheme.")
        if self._service_role_key and hmac.compare_digest(
            credential.encode("utf-8"), self._service_role_key.encode("utf-8")
        ):
            return CallerIdentity(user_id=None, is_service=True)

        payload = self._encoder.decode(credential)
        user_id = str(payload["sub"])
        profile = self._store.get_item(partition_key=f"user#{user_id}", sort_key="profile") or {}
        return CallerIdentity(user_id=user_id, is_admin=bool(profile.get("is_admin")))


__all__ = [
    "Authenticator",
    "AuthorizationError",
    "CallerIdentity",
    "CallerTokenEncoder",
]

"""Caller identity supplied by the upstream auth gateway.

Token verification happens before requests reach this service; the gateway
forwards the verified user as ``X-User-Id`` / ``X-User-Role``. When
``AUTH_GATEWAY_KEY`` is configured the gateway must also present it in
``X-Gateway-Key``.
"""
from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from enum import Enum

from fastapi import Header, HTTPException

from .settings import settings

log = logging.getLogger(__name__)


class Role(str, Enum):
    ADMIN = "admin"
    USER = "user"


@dataclass(frozen=True)
class CurrentUser:
    user_id: str
    role: Role = Role.USER


def get_current_user(
    x_user_id: str | None = Header(default=None, alias="X-User-Id"),
    x_user_role: str | None = Header(default=None, alias="X-User-Role"),
    x_gateway_key: str | None = Header(default=None, alias="X-Gateway-Key"),
) -> CurrentUser:
    expected = settings.auth_gateway_key
    if expected:
        if not x_gateway_key or not hmac.compare_digest(x_gateway_key, expected):
            log.warning("[AUTH] request without a valid gateway key")
            raise HTTPException(status_code=401, detail="Invalid gateway key")
    else:
        log.debug("[AUTH] AUTH_GATEWAY_KEY not set, trusting identity headers (DEV ONLY)")

    if not x_user_id:
        raise HTTPException(status_code=401, detail="Access token required")
    try:
        role = Role(x_user_role or Role.USER.value)
    except ValueError:
        raise HTTPException(status_code=403, detail="Unknown role")
    return CurrentUser(user_id=x_user_id, role=role)

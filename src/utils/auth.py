import hmac
import os
from typing import Optional

from fastapi import Header

from src.utils.errors import Unauthorized


def _matches(expected: Optional[str], provided: Optional[str]) -> bool:
    if not expected or not provided:
        return False
    return hmac.compare_digest(expected.encode(), provided.encode())


def _admin_key() -> str:
    return os.environ.get("ADMIN_API_KEY") or os.environ.get("ADMIN_SECRET") or ""


def require_admin(
    x_admin_key: Optional[str] = Header(None),
    x_admin_token: Optional[str] = Header(None),
    authorization: Optional[str] = Header(None),
) -> None:
    """Dependency: admin key via x-admin-key, x-admin-token or a Bearer token.

    An unset ADMIN_API_KEY locks every admin route.
    """
    expected = _admin_key()
    bearer = None
    if authorization and authorization.lower().startswith("bearer "):
        bearer = authorization[7:].strip()
    for candidate in (x_admin_key, x_admin_token, bearer):
        if _matches(expected, candidate):
            return None
    raise Unauthorized("Unauthorized")


def require_internal(x_internal_secret: Optional[str] = Header(None)) -> None:
    """Dependency: server-to-server calls carry INTERNAL_API_SECRET."""
    if not _matches(os.environ.get("INTERNAL_API_SECRET"), x_internal_secret):
        raise Unauthorized("Unauthorized")

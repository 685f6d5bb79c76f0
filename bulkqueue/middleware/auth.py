import hmac
from typing import Optional

from fastapi import Cookie, Depends, Header, HTTPException

from bulkqueue.config import Settings, get_settings
from bulkqueue.utils.logger import logger


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


async def require_admin(
    authorization: Optional[str] = Header(None),
    admin_token: Optional[str] = Cookie(None),
    settings: Settings = Depends(get_settings),
) -> None:
    """
    Dependency guarding the job endpoints.

    Accepts the admin token as `Authorization: Bearer <token>` or as the
    `admin_token` cookie. With no ADMIN_TOKEN configured every request is denied.

    Usage:
        @router.post("", dependencies=[Depends(require_admin)])
    """
    expected = settings.admin_token
    provided = _bearer_token(authorization) or admin_token

    if not expected:
        logger.warning("auth.admin_token_unset")
    if not expected or not provided or not hmac.compare_digest(provided, expected):
        raise HTTPException(
            status_code=401,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )

"""
Caller identity.

Authentication happens upstream; the gateway forwards the verified user id
in the X-User-Id header. The engine only decides what that user may do.
"""

from typing import Optional

from fastapi import Header, HTTPException, status


async def get_current_user_id(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
) -> int:
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing caller identity",
        )
    try:
        user_id = int(x_user_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Malformed caller identity",
        )
    if user_id <= 0:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Malformed caller identity",
        )
    return user_id


async def get_optional_user_id(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
) -> Optional[int]:
    """Caller identity where anonymous access is allowed (quotes, calendars)."""
    if not x_user_id:
        return None
    return await get_current_user_id(x_user_id)

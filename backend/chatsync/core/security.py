"""Caller identity. Authentication happens upstream; the owner id arrives as an opaque header."""

from fastapi import Header, HTTPException, status


async def get_owner_id(x_owner_id: str = Header("", alias="X-Owner-Id")) -> str:
    if not x_owner_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing owner identity",
        )
    return x_owner_id.strip()


async def get_display_name(x_display_name: str = Header("", alias="X-Display-Name")) -> str:
    return x_display_name.strip()

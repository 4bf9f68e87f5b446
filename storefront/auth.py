from typing import Optional

from fastapi import Cookie, Header, HTTPException
from jose import JWTError, jwt

from storefront import config


def _token_from(authorization: Optional[str], cookie_token: Optional[str]) -> Optional[str]:
    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() == "bearer" and token.strip():
            return token.strip()
        return None
    return cookie_token or None


def current_user(
    authorization: Optional[str] = Header(default=None),
    token: Optional[str] = Cookie(default=None),
) -> str:
    """Return the user id carried by the session JWT (header or ``token`` cookie)."""
    raw = _token_from(authorization, token)
    if not raw or not config.JWT_SECRET:
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    try:
        claims = jwt.decode(raw, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or missing token")

    user_id = claims.get("sub") or claims.get("userId")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    return str(user_id)

from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from .settings import config_settings

# Tokens are issued by the platform's auth collaborator; this service only
# checks them against the configured allow-list.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/token")
optional_oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/token", auto_error=False)


def require_auth_token(token: Annotated[str, Depends(oauth2_scheme)]):
    """
    Dependency for admin routes. OAuth2PasswordBearer already raises a 401
    when the header is missing; here we reject unknown tokens.
    """
    if not token or token not in config_settings.TOKENS:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return token


def is_admin_request(token: Annotated[str | None, Depends(optional_oauth2_scheme)]) -> bool:
    """True when the request carries a valid admin token. Never raises."""
    return bool(token) and token in config_settings.TOKENS

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from typing import Annotated

from .settings import config_settings

# Admin clients send "Authorization: Bearer <token>"; tokenUrl is only
# advertised in the OpenAPI docs.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/token")


def require_auth_token(token: Annotated[str, Depends(oauth2_scheme)]):
    """
    Dependency guarding the admin routes.

    A missing header is rejected with 401 by OAuth2PasswordBearer itself;
    a token not listed in TOKENS is rejected here.
    """
    if not token or token not in config_settings.TOKENS:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return token

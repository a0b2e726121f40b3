"""
Bearer token helpers.

Tokens are issued by the account service; here we only verify the signature
and read the user id out of them.
"""
from dataclasses import dataclass
from typing import Any, Dict

import jwt
from fastapi import HTTPException, status

from app.core import config
from app.features.permissions.errors import InvalidValueError
from app.features.permissions.types import Subject, user_subject


@dataclass(frozen=True)
class Principal:
    """Authenticated caller, identified by its ``user:<id>`` subject."""
    subject: Subject

    @property
    def user_id(self) -> str:
        return self.subject.split(":", 1)[1]


def verify_jwt_token(token: str) -> Dict[str, Any]:
    """
    Verify a bearer token and return its payload.

    Args:
        token: JWT token from Authorization header

    Returns:
        Decoded JWT payload

    Raises:
        HTTPException: If token is invalid or expired
    """
    try:
        return jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {str(e)}",
            headers={"WWW-Authenticate": "Bearer"},
        )


def principal_from_payload(payload: Dict[str, Any]) -> Principal:
    """Build the principal from the ``user_id`` claim (``sub`` as fallback)."""
    user_id = payload.get("user_id", payload.get("sub"))
    if user_id is None or isinstance(user_id, bool):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return Principal(subject=user_subject(user_id))
    except InvalidValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )

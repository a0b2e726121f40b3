"""
FastAPI dependencies for authentication.
"""
from typing import Annotated, Optional
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.features.users.auth import Principal, principal_from_payload, verify_jwt_token


security = HTTPBearer(auto_error=False)


async def get_current_principal(
    request: Request,
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> Principal:
    """
    Get the authenticated principal for this request.

    A principal already placed on ``request.state.principal`` by an upstream
    authentication layer is used as is; otherwise the bearer token is read.

    Usage:
        @router.get("/me")
        async def get_me(principal: Principal = Depends(get_current_principal)):
            return {"subject": principal.subject}
    """
    upstream = getattr(request.state, "principal", None)
    if isinstance(upstream, Principal):
        return upstream

    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = verify_jwt_token(credentials.credentials)
    return principal_from_payload(payload)

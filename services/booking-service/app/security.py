from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .domain import Actor, ActorRole

bearer_scheme = HTTPBearer(auto_error=False)

# strongest role wins when a token carries several; "system" is never granted by a token
_ROLE_ORDER = (ActorRole.ADMIN, ActorRole.WORKER, ActorRole.CUSTOMER)


def get_current_actor(
    request: Request,
    creds: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Actor:
    token = None
    if creds and creds.scheme.lower() == "bearer":
        token = creds.credentials

    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Bearer token",
        )

    try:
        payload = jwt.decode(
            token,
            request.app.state.jwt_secret,
            algorithms=[request.app.state.jwt_algorithm],
        )
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )

    sub = payload.get("sub")
    roles = payload.get("roles")
    if not sub or not isinstance(roles, list) or not roles:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Roles missing in token",
        )

    granted = {str(r).lower() for r in roles}
    for role in _ROLE_ORDER:
        if role.value in granted:
            return Actor(role, str(sub))

    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Access forbidden for this role",
    )


def require_role(actor: Actor, allowed: list[ActorRole]):
    if actor.role not in allowed:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access forbidden for this role",
        )

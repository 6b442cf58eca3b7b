"""
School Ledger - FastAPI Dependencies

Shared dependencies for the request actor and role checks.

Authentication happens upstream; the ledger trusts the actor id and role
forwarded in the ``X-Actor-Id`` and ``X-Actor-Role`` headers.
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from pydantic import BaseModel


class Actor(BaseModel):
    """The caller of a ledger operation."""
    id: int
    role: Optional[str] = None


async def get_current_actor(
    x_actor_id: Optional[str] = Header(None),
    x_actor_role: Optional[str] = Header(None),
) -> Actor:
    """
    Resolve the acting user from request headers.
    
    Raises:
        HTTPException: 401 if the actor id is missing or not an integer
    """
    if not x_actor_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Actor-Id header",
        )
    try:
        actor_id = int(x_actor_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-Actor-Id must be an integer",
        )
    role = x_actor_role.strip() if x_actor_role else None
    return Actor(id=actor_id, role=role or None)


def require_role(allowed_roles: list[str]):
    """
    Dependency factory for role-based access control.
    
    Usage:
        @router.post("/periods/{period_id}/close")
        async def close(actor: Actor = Depends(require_role(["BURSAR", "PRINCIPAL"]))):
            ...
    """
    async def role_checker(actor: Actor = Depends(get_current_actor)) -> Actor:
        if actor.role not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required roles: {allowed_roles}",
            )
        return actor
    
    return role_checker

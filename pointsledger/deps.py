"""Shared FastAPI dependencies."""

from fastapi import Request

from pointsledger.core.exceptions import ForbiddenError, UnauthorizedError
from pointsledger.core.logging import bind_admin
from pointsledger.core.security import load_admin_token


async def require_admin(request: Request) -> str:
    """Dependency: verify the bearer admin token and return the admin id."""
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise UnauthorizedError("Not authenticated")
    payload = load_admin_token(token.strip())
    if not payload:
        raise UnauthorizedError("Invalid or expired token")
    admin_id = payload.get("admin_id")
    if not admin_id:
        raise UnauthorizedError("Invalid token")
    if payload.get("role") != "admin":
        raise ForbiddenError("Admin only")
    bind_admin(admin_id)
    return admin_id

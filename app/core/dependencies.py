import jwt
from fastapi import Header, Request

from app.core.config import settings
from app.core.exceptions import UnauthorizedError
from app.gateway.gateway import InferenceGateway


def client_origin(request: Request) -> str:
    """Origin key for ingress rate limiting.

    First hop of X-Forwarded-For, then X-Real-IP, then the socket peer.
    Callers with none of these share the "anonymous" bucket.
    """
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip
    if request.client and request.client.host:
        return request.client.host
    return "anonymous"


def get_gateway(request: Request) -> InferenceGateway:
    return request.app.state.gateway


async def get_identity(
    authorization: str | None = Header(None, description="Bearer <token>"),
) -> str | None:
    """Authenticated identity (the token's `sub` claim).

    Without a token the request is anonymous: allowed only when
    ALLOW_ANONYMOUS is on, and never counted against a quota.
    """
    if not authorization:
        if settings.allow_anonymous:
            return None
        raise UnauthorizedError("Missing authorization header")

    if not authorization.startswith("Bearer "):
        raise UnauthorizedError("Invalid authorization header")

    token = authorization[7:]
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError:
        raise UnauthorizedError("Invalid or expired token")

    identity = payload.get("sub")
    if not identity:
        raise UnauthorizedError("Invalid token payload")
    return str(identity)


async def require_identity(
    authorization: str | None = Header(None, description="Bearer <token>"),
) -> str:
    """Like `get_identity`, but anonymous callers are always rejected."""
    identity = await get_identity(authorization)
    if identity is None:
        raise UnauthorizedError("Authentication required")
    return identity

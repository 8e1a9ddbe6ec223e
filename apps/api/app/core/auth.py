from dataclasses import dataclass

from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import get_settings
from app.platform.security.context import ANONYMOUS_USER_ID


@dataclass
class AuthUser:
    sub: str
    tenant_id: str | None
    role: str | None


def decode_bearer_token(request: Request) -> dict | None:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""
    if not token:
        return None

    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


async def get_current_user(request: Request) -> AuthUser:
    payload = decode_bearer_token(request)
    if payload is None or not payload.get("sub"):
        return AuthUser(sub=ANONYMOUS_USER_ID, tenant_id=None, role=None)

    subject = str(payload["sub"])
    tenant_id = payload.get("tenant_id")
    role = payload.get("role")
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = subject
        context.tenant_id = str(tenant_id) if tenant_id else None
    return AuthUser(
        sub=subject,
        tenant_id=str(tenant_id) if tenant_id else None,
        role=str(role) if role is not None else None,
    )

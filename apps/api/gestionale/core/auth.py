from dataclasses import dataclass, field

from jose import JWTError, jwt
from starlette.requests import Request

from gestionale.core.config import get_settings


@dataclass
class AuthUser:
    sub: str
    roles: list[str]
    email: str | None = None
    permissions: list[str] = field(default_factory=list)

    @property
    def is_anonymous(self) -> bool:
        return self.sub == "anonymous"


def _anonymous() -> AuthUser:
    return AuthUser(sub="anonymous", roles=["guest"])


def decode_bearer_token(auth_header: str) -> dict | None:
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""
    if not token:
        return None
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


async def get_current_user(request: Request) -> AuthUser:
    payload = decode_bearer_token(request.headers.get("authorization", ""))
    if payload is None:
        return _anonymous()

    subject = str(payload.get("sub", "anonymous"))
    roles = payload.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    permissions = payload.get("permissions", [])
    if not isinstance(permissions, list):
        permissions = []
    email = payload.get("email")
    return AuthUser(
        sub=subject,
        roles=[str(role) for role in roles],
        email=str(email) if email else None,
        permissions=[str(item) for item in permissions],
    )

from dataclasses import dataclass

from jose import JWTError, jwt
from starlette.requests import Request

from leadboard.core.config import get_settings

ANONYMOUS_SUBJECT = "anonymous"


@dataclass
class AuthUser:
    sub: str
    email: str | None = None
    name: str | None = None

    @property
    def is_anonymous(self) -> bool:
        return self.sub == ANONYMOUS_SUBJECT


def decode_token(token: str) -> AuthUser:
    if not token:
        return AuthUser(sub=ANONYMOUS_SUBJECT)

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return AuthUser(sub=ANONYMOUS_SUBJECT)

    subject = payload.get("sub")
    if not subject:
        return AuthUser(sub=ANONYMOUS_SUBJECT)
    email = payload.get("email")
    name = payload.get("name")
    return AuthUser(
        sub=str(subject),
        email=str(email) if email else None,
        name=str(name) if name else None,
    )


def bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""


async def get_current_user(request: Request) -> AuthUser:
    auth_user = decode_token(bearer_token(request))
    context = getattr(request.state, "context", None)
    if context is not None and not auth_user.is_anonymous:
        context.user_id = auth_user.sub
    return auth_user

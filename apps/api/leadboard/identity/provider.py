from __future__ import annotations

import uuid
from typing import Any, Protocol

from passlib.context import CryptContext
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from leadboard.identity.models import AuthIdentity


pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


class IdentityProvider(Protocol):
    """Authentication backend that owns login-capable identities."""

    def email_registered(self, session: Session, email: str) -> bool: ...

    def create_identity(
        self,
        session: Session,
        *,
        email: str,
        password: str,
        email_confirmed: bool,
        metadata: dict[str, Any],
    ) -> str: ...

    def delete_identity(self, session: Session, identity_id: str) -> None: ...


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


class LocalIdentityProvider:
    """Stores identities in ``identity_auth_identity`` next to the profiles."""

    def email_registered(self, session: Session, email: str) -> bool:
        normalized = email.strip().lower()
        existing = session.scalar(select(AuthIdentity.id).where(func.lower(AuthIdentity.email) == normalized))
        return existing is not None

    def create_identity(
        self,
        session: Session,
        *,
        email: str,
        password: str,
        email_confirmed: bool,
        metadata: dict[str, Any],
    ) -> str:
        identity = AuthIdentity(
            id=str(uuid.uuid4()),
            email=email.strip().lower(),
            password_hash=hash_password(password),
            email_confirmed=email_confirmed,
            user_metadata=dict(metadata),
        )
        session.add(identity)
        session.flush()
        return identity.id

    def delete_identity(self, session: Session, identity_id: str) -> None:
        identity = session.get(AuthIdentity, identity_id)
        if identity is None:
            return
        session.delete(identity)
        session.commit()

    def authenticate(self, session: Session, email: str, password: str) -> AuthIdentity | None:
        normalized = email.strip().lower()
        identity = session.scalar(select(AuthIdentity).where(func.lower(AuthIdentity.email) == normalized))
        if identity is None or not identity.email_confirmed:
            return None
        if not verify_password(password, identity.password_hash):
            return None
        return identity

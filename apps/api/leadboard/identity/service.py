from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from leadboard import audit
from leadboard.core.auth import AuthUser
from leadboard.core.config import get_settings
from leadboard.core.errors import ConflictError, NotFound, PartialFailure, PermissionDenied, PersistenceError
from leadboard.identity.models import Profile, utcnow
from leadboard.identity.provider import IdentityProvider, LocalIdentityProvider
from leadboard.identity.schemas import ProfileRead, SubUserCreate, TeamMemberRead
from leadboard.metrics import observe_persistence_failure, observe_visibility_denied
from leadboard.platform.security.context import ROLE_MASTER, ROLE_USER, Principal
from leadboard.platform.security.visibility import get_team_members


logger = logging.getLogger("leadboard.identity")


def principal_from_profile(profile: Profile, *, correlation_id: str | None = None) -> Principal:
    return Principal(
        user_id=profile.id,
        role=profile.role,
        master_account_id=profile.master_account_id,
        is_active=profile.is_active,
        name=profile.name,
        email=profile.email,
        correlation_id=correlation_id,
    )


def is_online(profile: Profile, *, now: datetime | None = None, threshold_seconds: int | None = None) -> bool:
    if profile.last_seen_at is None:
        return False
    threshold = threshold_seconds if threshold_seconds is not None else get_settings().presence_online_threshold_seconds
    current = now or utcnow()
    last_seen = profile.last_seen_at
    if last_seen.tzinfo is None:
        # sqlite drops tzinfo on the way back
        last_seen = last_seen.replace(tzinfo=current.tzinfo)
    return current - last_seen <= timedelta(seconds=threshold)


class IdentityService:
    entity_type = "identity.profile"

    def __init__(self, provider: IdentityProvider | None = None) -> None:
        self.provider: IdentityProvider = provider or LocalIdentityProvider()

    def resolve_principal(
        self,
        session: Session,
        auth_user: AuthUser,
        *,
        correlation_id: str | None = None,
    ) -> Principal | None:
        if auth_user.is_anonymous:
            return None

        profile = session.get(Profile, auth_user.sub)
        if profile is None:
            profile = self._create_master_profile(session, auth_user)
        if not profile.is_active:
            logger.info("identity.inactive_principal", extra={"user_id": profile.id})
            return None
        return principal_from_profile(profile, correlation_id=correlation_id)

    def create_sub_user(self, session: Session, master_id: str, dto: SubUserCreate) -> ProfileRead:
        master = session.get(Profile, master_id)
        if master is None or master.role != ROLE_MASTER:
            raise NotFound("Master account not found")

        email = str(dto.email).strip().lower()
        profile_taken = session.scalar(select(Profile.id).where(func.lower(Profile.email) == email))
        if profile_taken is not None or self.provider.email_registered(session, email):
            raise ConflictError("Email already registered", details={"email": email})

        try:
            identity_id = self.provider.create_identity(
                session,
                email=email,
                password=dto.password,
                email_confirmed=True,
                metadata={"name": dto.name, "is_subuser": True, "master_account_id": master_id},
            )
            profile = Profile(
                id=identity_id,
                name=dto.name,
                email=email,
                role=ROLE_USER,
                master_account_id=master_id,
                is_active=True,
            )
            session.add(profile)
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            observe_persistence_failure("identity.profile", "create")
            raise PersistenceError("Failed to create user", details=str(exc)) from exc

        created = ProfileRead.model_validate(profile)
        audit.record(
            actor_user_id=master_id,
            entity_type=self.entity_type,
            entity_id=profile.id,
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
        )
        logger.info("identity.sub_user_created", extra={"user_id": profile.id, "tenant_id": master_id})
        return created

    def delete_sub_user(self, session: Session, principal: Principal | None, sub_user_id: str) -> None:
        """Remove a team member's profile, then its authentication identity.

        The profile delete is committed before the identity is touched. If the
        identity removal then fails the caller gets a ``PartialFailure`` naming
        both steps instead of a plain error.
        """

        if principal is None or not principal.is_master:
            observe_visibility_denied("identity.profile", "delete")
            raise PermissionDenied("Only masters can remove users")

        profile = session.get(Profile, sub_user_id)
        if profile is None or profile.master_account_id != principal.user_id:
            raise NotFound("User not found")

        before = ProfileRead.model_validate(profile).model_dump(mode="json")
        try:
            session.delete(profile)
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            observe_persistence_failure("identity.profile", "delete")
            raise PersistenceError("Failed to delete profile", details=str(exc)) from exc

        audit.record(
            actor_user_id=principal.user_id,
            entity_type=self.entity_type,
            entity_id=sub_user_id,
            action="delete",
            before=before,
            after=None,
            correlation_id=principal.correlation_id,
        )

        try:
            self.provider.delete_identity(session, sub_user_id)
        except Exception as exc:
            session.rollback()
            logger.exception("identity.identity_delete_failed", extra={"user_id": sub_user_id, "error": str(exc)[:500]})
            raise PartialFailure(
                "Profile removed, but removing the account failed",
                completed=["profile"],
                failed="identity",
                details=str(exc),
            ) from exc

        logger.info("identity.sub_user_deleted", extra={"user_id": sub_user_id, "tenant_id": principal.user_id})

    def set_active(self, session: Session, principal: Principal | None, member_id: str, is_active: bool) -> ProfileRead:
        if principal is None or not principal.is_master:
            observe_visibility_denied("identity.profile", "set_active")
            raise PermissionDenied("Only masters can change user status")

        profile = session.get(Profile, member_id)
        if profile is None or profile.master_account_id != principal.user_id:
            raise NotFound("User not found")

        before = ProfileRead.model_validate(profile).model_dump(mode="json")
        profile.is_active = is_active
        try:
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            observe_persistence_failure("identity.profile", "update")
            raise PersistenceError("Failed to update user", details=str(exc)) from exc

        updated = ProfileRead.model_validate(profile)
        audit.record(
            actor_user_id=principal.user_id,
            entity_type=self.entity_type,
            entity_id=member_id,
            action="set_active",
            before=before,
            after=updated.model_dump(mode="json"),
            correlation_id=principal.correlation_id,
        )
        return updated

    def touch_presence(self, session: Session, user_id: str, *, now: datetime | None = None) -> datetime:
        profile = session.get(Profile, user_id)
        if profile is None:
            raise NotFound("User not found")
        seen_at = now or utcnow()
        profile.last_seen_at = seen_at
        try:
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            observe_persistence_failure("identity.profile", "presence")
            raise PersistenceError("Failed to record presence", details=str(exc)) from exc
        return seen_at

    def list_team(self, session: Session, principal: Principal | None) -> list[TeamMemberRead]:
        now = utcnow()
        members = get_team_members(session, principal)
        return [
            TeamMemberRead.model_validate(member).model_copy(update={"is_online": is_online(member, now=now)})
            for member in members
        ]

    def _create_master_profile(self, session: Session, auth_user: AuthUser) -> Profile:
        profile = Profile(
            id=auth_user.sub,
            name=auth_user.name or (auth_user.email.split("@")[0] if auth_user.email else auth_user.sub),
            email=auth_user.email,
            role=ROLE_MASTER,
            master_account_id=None,
            is_active=True,
        )
        session.add(profile)
        try:
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            observe_persistence_failure("identity.profile", "create")
            raise PersistenceError("Failed to create profile", details=str(exc)) from exc
        logger.info("identity.master_profile_created", extra={"user_id": profile.id})
        return profile


identity_service = IdentityService()

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class ProfileRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    email: str | None
    role: str
    master_account_id: str | None
    is_active: bool
    last_seen_at: datetime | None
    created_at: datetime


class TeamMemberRead(ProfileRead):
    is_online: bool = False


class SubUserCreate(BaseModel):
    name: str = Field(min_length=1)
    email: EmailStr
    password: str = Field(min_length=6)


class SubUserCreated(BaseModel):
    success: bool = True
    user: ProfileRead


class SubUserDeleted(BaseModel):
    success: bool = True
    message: str


class SetActiveRequest(BaseModel):
    is_active: bool


class UserStatsRead(BaseModel):
    total_users: int
    active_users: int
    administrators: int


class PresenceRead(BaseModel):
    user_id: str
    last_seen_at: datetime
    is_online: bool

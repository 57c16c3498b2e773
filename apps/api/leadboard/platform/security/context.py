from __future__ import annotations

from dataclasses import dataclass

ROLE_MASTER = "master"
ROLE_USER = "user"


@dataclass(slots=True)
class Principal:
    """Resolved caller identity, threaded explicitly through every scoped call."""

    user_id: str
    role: str
    master_account_id: str | None = None
    is_active: bool = True
    name: str | None = None
    email: str | None = None
    correlation_id: str | None = None

    @property
    def is_master(self) -> bool:
        return self.role == ROLE_MASTER

    @property
    def team_owner_id(self) -> str:
        if self.is_master or self.master_account_id is None:
            return self.user_id
        return self.master_account_id

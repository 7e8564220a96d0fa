"""Resolves the caller of a request to a user and their active organization."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends

from ...components.chat.errors import AbortReason, ChatAborted
from ...deps import get_optional_user
from ...models.user import User

NO_ORGANIZATION_MESSAGE = "No organizations found. Please create or join an organization."


@dataclass(frozen=True)
class Principal:
    user_id: int
    email: str
    organization_id: Optional[int]


class IdentityResolver:
    """Wraps the already-authenticated user (if any) for the chat pipeline."""

    def __init__(self, user: Optional[User]):
        self._user = user

    def principal(self) -> Principal:
        """
        Return the authenticated principal.

        Raises:
            ChatAborted: Unauthenticated when no valid bearer token was sent,
                NoBillingEntity when the user has no organization.
        """
        if self._user is None:
            raise ChatAborted(AbortReason.UNAUTHENTICATED, "Unauthorized")
        if self._user.organization_id is None:
            raise ChatAborted(AbortReason.NO_BILLING_ENTITY, NO_ORGANIZATION_MESSAGE)
        return Principal(
            user_id=self._user.id,
            email=self._user.email,
            organization_id=self._user.organization_id,
        )


def get_identity_resolver(user: Optional[User] = Depends(get_optional_user)) -> IdentityResolver:
    return IdentityResolver(user)

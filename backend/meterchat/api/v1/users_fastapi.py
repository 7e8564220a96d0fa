"""
FastAPI-Users configuration: user manager, auth backend, schemas, signup credit grant.
"""

import logging
import re
from typing import Optional

from fastapi import Depends, Request
from fastapi_users import BaseUserManager, FastAPIUsers, IntegerIDMixin, InvalidPasswordException, exceptions
from fastapi_users.authentication import AuthenticationBackend, BearerTransport, JWTStrategy
from fastapi_users.db import SQLAlchemyUserDatabase
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ...models.user import User
from ...models.organization import Organization
from ...platform.config import settings
from ...platform.database import get_async_db
from ...services.credit_ledger_service import grant_credits

logger = logging.getLogger("meterchat.auth")


# ---- Schemas (extend FastAPI-Users base) ----
from fastapi_users import schemas


class UserRead(schemas.BaseUser[int]):
    full_name: Optional[str] = None
    organization_id: Optional[int] = None


class UserCreate(schemas.BaseUserCreate):
    full_name: Optional[str] = None
    organization_name: Optional[str] = None


class UserUpdate(schemas.BaseUserUpdate):
    full_name: Optional[str] = None


def slugify_organization_name(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (name or "").strip().lower()).strip("-")
    return slug or "org"


# ---- User Manager ----
class UserManager(IntegerIDMixin, BaseUserManager[User, int]):
    reset_password_token_secret = settings.SECRET_KEY
    verification_token_secret = settings.SECRET_KEY
    reset_password_token_lifetime_seconds = 3600
    verification_token_lifetime_seconds = 86400  # 24 hours

    async def validate_password(self, password: str, user) -> None:
        if len(password) < 8:
            raise InvalidPasswordException(reason="Password should be at least 8 characters")

    async def create(self, user_create, safe: bool = False, request: Optional[Request] = None) -> User:
        await self.validate_password(user_create.password, user_create)

        existing_user = await self.user_db.get_by_email(user_create.email)
        if existing_user is not None:
            raise exceptions.UserAlreadyExists()

        user_dict = (
            user_create.create_update_dict()
            if safe
            else user_create.create_update_dict_superuser()
        )
        password = user_dict.pop("password")
        user_dict["hashed_password"] = self.password_helper.hash(password)

        organization_name = user_dict.pop("organization_name", None) or getattr(user_create, "organization_name", None)

        org_id = None
        new_org = False
        if organization_name:
            session: AsyncSession = self.user_db.session
            slug = slugify_organization_name(organization_name)
            result = await session.execute(select(Organization).where(Organization.slug == slug))
            org = result.scalar_one_or_none()
            if not org:
                org = Organization(name=organization_name.strip(), slug=slug, credits_balance=0, plan="free")
                session.add(org)
                await session.flush()
                new_org = True
            org_id = org.id
        user_dict["organization_id"] = org_id

        created_user = await self.user_db.create(user_dict)
        if new_org and settings.SIGNUP_CREDITS > 0:
            await grant_credits(
                self.user_db.session,
                organization_id=org_id,
                amount=settings.SIGNUP_CREDITS,
                reason="Signup credits",
                external_ref=f"signup:{org_id}",
                metadata={"user_id": created_user.id},
            )
        await self.on_after_register(created_user, request)
        return created_user

    async def on_after_register(self, user: User, request: Optional[Request] = None) -> None:
        logger.info("User registered id=%s organization_id=%s", user.id, user.organization_id)

    async def on_after_forgot_password(
        self, user: User, token: str, request: Optional[Request] = None
    ) -> None:
        # No mail provider is wired up; the reset link is only logged outside production
        if settings.DEPLOYMENT_ENV != "production":
            logger.info("Password reset link for user id=%s: %s/#/reset-password?token=%s", user.id, settings.FRONTEND_URL, token)

    async def on_after_request_verify(
        self, user: User, token: str, request: Optional[Request] = None
    ) -> None:
        if settings.DEPLOYMENT_ENV != "production":
            logger.info("Verification link for user id=%s: %s/#/verify-email?token=%s", user.id, settings.FRONTEND_URL, token)


async def get_user_db(session: AsyncSession = Depends(get_async_db)):
    yield SQLAlchemyUserDatabase(session, User)


async def get_user_manager(user_db: SQLAlchemyUserDatabase = Depends(get_user_db)):
    yield UserManager(user_db)


# ---- Auth Backend ----
bearer_transport = BearerTransport(tokenUrl="/api/v1/auth/jwt/login")


def get_jwt_strategy() -> JWTStrategy:
    return JWTStrategy(
        secret=settings.SECRET_KEY,
        lifetime_seconds=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )


auth_backend = AuthenticationBackend(
    name="jwt",
    transport=bearer_transport,
    get_strategy=get_jwt_strategy,
)

fastapi_users = FastAPIUsers[User, int](get_user_manager, [auth_backend])

current_active_user = fastapi_users.current_user(active=True)
optional_active_user = fastapi_users.current_user(active=True, optional=True)

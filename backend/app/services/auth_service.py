"""계정 서비스: 가입, 로그인, 역할 변경.

Roles live on the user row and are re-read on every request, so a role
change takes effect without reissuing tokens.
"""

import logging

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.core.exceptions import (
    EmailAlreadyExistsError,
    InvalidCredentialsError,
    NotFoundError,
    UsernameAlreadyExistsError,
    ValidationError,
)
from app.core.permissions import Capability, Principal, Role
from app.core.security import create_access_token, hash_password, verify_password
from app.models import User

settings = get_settings()
logger = logging.getLogger(__name__)


class AuthService:
    @staticmethod
    def initial_role_for(email: str) -> Role:
        """The bootstrap admin address registers as admin; everyone else gets the default role."""
        bootstrap = settings.bootstrap_admin_email.strip().lower()
        if bootstrap and email.lower() == bootstrap:
            return Role.admin
        return Role(settings.default_user_role)

    @staticmethod
    async def register_user(db: AsyncSession, email: str, username: str, password: str) -> User:
        """
        Create an account with a hashed password.

        Raises:
            ValidationError: A field is blank
            EmailAlreadyExistsError: Email is already registered
            UsernameAlreadyExistsError: Username is already taken
        """
        email, username = email.strip(), username.strip()
        if not email or not username or not password:
            raise ValidationError("email, username and password are required")

        taken = await db.scalar(
            select(User).where(or_(User.email == email, User.username == username))
        )
        if taken is not None:
            if taken.email == email:
                raise EmailAlreadyExistsError(email)
            raise UsernameAlreadyExistsError(username)

        role = AuthService.initial_role_for(email)
        user = User(
            email=email,
            username=username,
            hashed_password=hash_password(password),
            role=role.value,
        )
        db.add(user)
        try:
            await db.commit()
        except IntegrityError as e:
            # Lost a race with a concurrent registration
            await db.rollback()
            if "email" in str(e.orig):
                raise EmailAlreadyExistsError(email)
            raise UsernameAlreadyExistsError(username)
        await db.refresh(user)
        logger.info(f"Registered user {user.id} ({email}) as {role.value}")
        return user

    @staticmethod
    async def authenticate_user(db: AsyncSession, email: str, password: str) -> tuple[User, str]:
        """Check credentials and issue an access token whose subject is the user id."""
        user = await db.scalar(select(User).where(User.email == email.strip()))
        if user is None or not verify_password(password, user.hashed_password):
            raise InvalidCredentialsError()
        return user, create_access_token({"sub": str(user.id)})

    @staticmethod
    async def get_user_by_id(db: AsyncSession, user_id: int) -> User:
        user = await db.get(User, user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        return user

    @staticmethod
    async def set_role(db: AsyncSession, principal: Principal, user_id: int, role: Role) -> User:
        principal.require(Capability.user_manage)
        user = await AuthService.get_user_by_id(db, user_id)
        previous, user.role = user.role, Role(role).value
        await db.commit()
        logger.info(f"User {principal.user_id} changed role of user {user_id}: {previous} → {user.role}")
        return user

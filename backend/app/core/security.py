from datetime import timedelta

from jose import JWTError, jwt
from passlib.context import CryptContext
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.core.clock import utcnow
from app.core.database import get_db
from app.core.permissions import Capability, Principal, Role
from app.models import User

settings = get_settings()
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"{settings.api_prefix}/auth/login")

_CREDENTIALS_ERROR = HTTPException(
    status_code=status.HTTP_401_UNAUTHORIZED,
    detail="Invalid authentication token",
    headers={"WWW-Authenticate": "Bearer"},
)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(data: dict) -> str:
    to_encode = data.copy()
    expire = utcnow() + timedelta(minutes=settings.access_token_expire_minutes)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def decode_access_token(token: str) -> dict:
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
        return payload
    except JWTError:
        raise _CREDENTIALS_ERROR


def user_id_from_token(token: str) -> int:
    payload = decode_access_token(token)
    user_id = payload.get("sub")
    if user_id is None:
        raise _CREDENTIALS_ERROR
    try:
        return int(user_id)
    except ValueError:
        raise _CREDENTIALS_ERROR


async def principal_for_token(db: AsyncSession, token: str) -> Principal:
    """Resolve a bearer token to a Principal; the role is read from the database."""
    user = await db.get(User, user_id_from_token(token))
    if user is None:
        raise _CREDENTIALS_ERROR
    return Principal(user_id=user.id, role=Role(user.role))


async def get_current_principal(
    token: str = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
) -> Principal:
    return await principal_for_token(db, token)


def require_capability(capability: Capability):
    """Dependency factory: the caller must hold ``capability``."""

    async def _dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        principal.require(capability)
        return principal

    return _dependency

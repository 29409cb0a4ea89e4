import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.exceptions import AccountConflictError, InvalidCredentialsError
from app.core.permissions import Capability, Principal
from app.core.security import get_current_principal, require_capability
from app.services import AuthService
from app.schemas.user import RoleUpdate, TokenResponse, UserCreate, UserLogin, UserResponse

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/register", response_model=UserResponse, status_code=201)
async def register(user_in: UserCreate, db: AsyncSession = Depends(get_db)):
    """Register a new user."""
    try:
        return await AuthService.register_user(
            db=db,
            email=user_in.email,
            username=user_in.username,
            password=user_in.password,
        )
    except AccountConflictError as e:
        logger.warning(f"Registration rejected: {e}")
        raise


@router.post("/login", response_model=TokenResponse)
async def login(user_in: UserLogin, db: AsyncSession = Depends(get_db)):
    """Authenticate user and return access token."""
    try:
        _, token = await AuthService.authenticate_user(db=db, email=user_in.email, password=user_in.password)
    except InvalidCredentialsError:
        logger.warning(f"Login failed for email: {user_in.email}")
        raise
    return TokenResponse(access_token=token)


@router.get("/me", response_model=UserResponse)
async def get_me(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    return await AuthService.get_user_by_id(db, principal.user_id)


@router.patch("/users/{user_id}/role", response_model=UserResponse)
async def update_role(
    user_id: int,
    body: RoleUpdate,
    principal: Principal = Depends(require_capability(Capability.user_manage)),
    db: AsyncSession = Depends(get_db),
):
    """Change a user's role (admin only). Applies from the user's next request."""
    return await AuthService.set_role(db, principal, user_id, body.role)

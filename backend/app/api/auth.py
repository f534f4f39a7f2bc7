from fastapi import APIRouter, Depends, HTTPException, status, Request
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select
import time
from typing import Optional
import structlog

from app.core.security import (
    PasswordValidator,
    authenticate_user,
    blacklist_token,
    create_access_token,
    get_current_user,
    get_password_hash,
    oauth2_scheme,
    performance_timer,
    settings,
)
from app.db.session import get_session
from app.db.models import User
from app.api.schemas import Token, UserCreate, UserRead

# Set up logging
logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

# Failed logins per username, shared across requests of this process
failed_attempts = {}
MAX_FAILED_ATTEMPTS = 5
LOCKOUT_SECONDS = 900

class AuthService:
    """Service class for handling authentication operations"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def authenticate_user_safe(self, username: str, password: str) -> Optional[User]:
        """Authenticate with a lockout after repeated failures"""
        if self._is_rate_limited(username):
            logger.warning("login_rate_limited", username=username)
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many failed login attempts. Please try again later."
            )

        user = await authenticate_user(username, password, self.session)
        if user:
            failed_attempts.pop(username, None)
            return user

        self._track_failed_attempt(username)
        logger.warning("login_failed", username=username)
        return None

    def _track_failed_attempt(self, username: str):
        attempts = failed_attempts.setdefault(username, {"count": 0, "last_attempt": 0})
        current_time = time.time()

        # Reset if the lockout period has passed
        if current_time - attempts["last_attempt"] > LOCKOUT_SECONDS:
            attempts["count"] = 0

        attempts["count"] += 1
        attempts["last_attempt"] = current_time

    def _is_rate_limited(self, username: str) -> bool:
        attempts = failed_attempts.get(username)
        if not attempts:
            return False
        if time.time() - attempts["last_attempt"] > LOCKOUT_SECONDS:
            attempts["count"] = 0
            return False
        return attempts["count"] >= MAX_FAILED_ATTEMPTS

    async def register_user(self, data: UserCreate) -> User:
        """Register a new user"""
        validation = PasswordValidator.validate_password(data.password)
        if not validation["is_valid"]:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="; ".join(validation["errors"])
            )

        existing = await self.session.scalar(
            select(User).where((User.username == data.username) | (User.email == data.email))
        )
        if existing:
            detail = "Username already registered" if existing.username == data.username else "Email already registered"
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)

        try:
            new_user = User(
                username=data.username,
                email=data.email,
                password_hash=get_password_hash(data.password),
                role=data.role,
            )
            self.session.add(new_user)
            await self.session.commit()
            await self.session.refresh(new_user)
        except Exception as e:
            await self.session.rollback()
            logger.error(
                "user_registration_error",
                username=data.username,
                error=str(e),
                error_type=type(e).__name__
            )
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Registration failed"
            )

        logger.info("user_registered", username=new_user.username, user_id=str(new_user.id))
        return new_user

@router.post("/login",
    response_model=Token,
    responses={
        200: {"description": "Successfully authenticated"},
        401: {"description": "Invalid credentials"},
        429: {"description": "Too many failed attempts"},
    },
    summary="User login",
    description="Authenticate user and return access token"
)
async def login(
    request: Request,
    form_data: OAuth2PasswordRequestForm = Depends(),
    session: AsyncSession = Depends(get_session),
):
    """Authenticate user and return access token"""
    async with performance_timer("user_login"):
        user = await AuthService(session).authenticate_user_safe(form_data.username, form_data.password)
        if not user:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Incorrect username or password",
                headers={"WWW-Authenticate": "Bearer"},
            )

        access_token = create_access_token({"sub": str(user.id), "role": user.role.value})
        logger.info(
            "user_login_success",
            username=user.username,
            user_id=str(user.id),
            ip_address=request.client.host if request.client else None
        )
        return {
            "access_token": access_token,
            "token_type": "bearer",
            "expires_in": settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60
        }

@router.post("/register",
    response_model=UserRead,
    status_code=status.HTTP_201_CREATED,
    responses={
        201: {"description": "User registered successfully"},
        400: {"description": "Invalid input or user already exists"},
    },
    summary="User registration",
    description="Register a new user or partner account"
)
async def register(
    user_data: UserCreate,
    session: AsyncSession = Depends(get_session),
):
    async with performance_timer("user_registration"):
        new_user = await AuthService(session).register_user(user_data)
        return UserRead.model_validate(new_user)

@router.post("/logout",
    summary="User logout",
    description="Invalidate the current access token"
)
async def logout(
    token: str = Depends(oauth2_scheme),
    current_user: User = Depends(get_current_user),
):
    blacklist_token(token)
    logger.info("user_logout", user_id=str(current_user.id))
    return {"message": "Successfully logged out"}

@router.get("/me",
    response_model=UserRead,
    summary="Get current user",
)
async def get_current_user_info(
    current_user: User = Depends(get_current_user),
):
    return UserRead.model_validate(current_user)

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any
from contextlib import asynccontextmanager
from uuid import UUID

from jose import JWTError, jwt
from passlib.context import CryptContext
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select
from app.core.authorization import Actor, Role
from app.core.settings import Settings
from app.db.session import get_session
from app.db.models import User

# Set up logging
logger = logging.getLogger(__name__)

settings = Settings()

ALGORITHM = "HS256"

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login")
optional_oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login", auto_error=False)

# In-memory token blacklist, cleared on restart
token_blacklist = set()

# Performance timer
@asynccontextmanager
async def performance_timer(operation: str):
    """Context manager for timing operations"""
    start = time.time()
    try:
        yield
    finally:
        duration = time.time() - start
        logger.info(f"{operation} completed in {duration:.2f}s")

class PasswordValidator:
    """Password validation utility"""

    @staticmethod
    def validate_password(password: str) -> Dict[str, Any]:
        """Validate password strength and return detailed feedback"""
        errors = []

        if len(password) < settings.PASSWORD_MIN_LENGTH:
            errors.append(f"Password must be at least {settings.PASSWORD_MIN_LENGTH} characters")

        if settings.PASSWORD_REQUIRE_UPPERCASE and not any(c.isupper() for c in password):
            errors.append("Password must contain at least one uppercase letter")

        if settings.PASSWORD_REQUIRE_NUMBER and not any(c.isdigit() for c in password):
            errors.append("Password must contain at least one number")

        # bcrypt only looks at the first 72 bytes
        if len(password.encode("utf-8")) > 72:
            errors.append("Password must be at most 72 bytes")

        return {"is_valid": len(errors) == 0, "errors": errors}

def verify_password(plain: str, hashed: str) -> bool:
    """Verify a password against its hash"""
    try:
        return pwd_context.verify(plain, hashed)
    except Exception as e:
        logger.error(f"Password verification error: {e}")
        return False

def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token"""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire, "type": "access"})

    token = jwt.encode(to_encode, settings.JWT_SECRET, algorithm=ALGORITHM)
    logger.info("Access token created", extra={'user_id': data.get('sub')})
    return token

def blacklist_token(token: str) -> None:
    token_blacklist.add(token)
    logger.info("Token added to blacklist")

def is_token_blacklisted(token: str) -> bool:
    return token in token_blacklist

async def authenticate_user(
    username_or_email: str,
    password: str,
    session: AsyncSession
) -> Optional[User]:
    """Look a user up by username or email and check the password"""
    async with performance_timer("user_authentication"):
        username_or_email = username_or_email.strip().lower()

        result = await session.execute(
            select(User).where(
                (User.username == username_or_email) | (User.email == username_or_email)
            )
        )
        user = result.scalar_one_or_none()

        if not user:
            logger.warning(f"Authentication failed: user not found - {username_or_email}")
            return None

        if not verify_password(password, user.password_hash):
            logger.warning(f"Authentication failed: invalid password for user - {username_or_email}")
            return None

        logger.info(f"User authenticated successfully: {user.username}")
        return user

async def get_current_user(
    token: str = Depends(oauth2_scheme),
    session: AsyncSession = Depends(get_session),
) -> User:
    """Get current user from JWT token"""
    credentials_exc = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if is_token_blacklisted(token):
        logger.warning("Attempted to use blacklisted token")
        raise credentials_exc

    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[ALGORITHM])
        user_id = UUID(payload.get("sub") or "")
        if payload.get("type") != "access":
            raise credentials_exc
    except (JWTError, ValueError) as e:
        logger.warning(f"JWT decode error: {e}")
        raise credentials_exc

    user = await session.get(User, user_id)
    if not user or not user.is_active:
        logger.warning(f"User not found or inactive for token: {user_id}")
        raise credentials_exc
    return user

async def get_current_actor(user: User = Depends(get_current_user)) -> Actor:
    """Reduce the authenticated user to what the booking core needs"""
    return Actor(id=user.id, role=Role(user.role))

async def get_optional_actor(
    token: Optional[str] = Depends(optional_oauth2_scheme),
    session: AsyncSession = Depends(get_session),
) -> Optional[Actor]:
    """Actor for an optional bearer token; anonymous callers get None"""
    if not token:
        return None
    user = await get_current_user(token, session)
    return Actor(id=user.id, role=Role(user.role))

async def require_admin(actor: Actor = Depends(get_current_actor)) -> Actor:
    if not actor.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return actor

async def require_partner_or_admin(actor: Actor = Depends(get_current_actor)) -> Actor:
    if actor.role not in (Role.ADMIN, Role.PARTNER):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Partner or admin access required")
    return actor

"""
FastAPI dependencies for authentication.
"""
from typing import Annotated
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.users.models import User
from app.features.users.auth import get_appwrite_user_id, get_appwrite_user
from app.utils import get_logger, utcnow


log = get_logger(__name__)
security = HTTPBearer()


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
    db: Annotated[AsyncSession, Depends(get_db)]
) -> User:
    """
    Get the current authenticated user from the bearer token.

    This dependency:
    1. Extracts the Appwrite user id from the JWT
    2. Looks up the local user, creating it (without a role) on first login
    3. Updates last_login_at
    4. Rejects inactive and deleted accounts

    A user created here holds no role, so the decision engine denies it
    everything until an administrator assigns one.
    """
    appwrite_user_id = get_appwrite_user_id(credentials.credentials)

    result = await db.execute(
        select(User).where(User.appwrite_id == appwrite_user_id)
    )
    user = result.scalar_one_or_none()

    if user is None:
        appwrite_user = await get_appwrite_user(appwrite_user_id)
        user = User(
            appwrite_id=appwrite_user_id,
            email=appwrite_user.get("email", ""),
            name=appwrite_user.get("name") or "Unknown",
            last_login_at=utcnow(),
        )
        db.add(user)
        log.info(f"Created local user for Appwrite account {appwrite_user_id}")
    else:
        user.last_login_at = utcnow()
    await db.commit()
    await db.refresh(user)

    if not user.is_active or user.is_deleted:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is deactivated",
        )

    return user


def get_authorization_header(request: Request) -> str:
    """
    Extract authorization header for rate limiting.
    Used as the slowapi Limiter key.
    """
    auth = request.headers.get("Authorization", "")
    return auth or "anonymous"

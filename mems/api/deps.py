"""
FastAPI dependency providers for Mems.

This module provides:
- Database session dependencies
- Configuration and blob storage access
- Bearer token authentication
- Service factories bound to the request session
"""

from typing import Generator, Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from ..adapters.storage_s3 import S3Storage, s3_storage
from ..core.config import Settings, settings
from ..core.logging import get_logger, user_id_ctx
from ..core.security import TokenError, jwt_manager
from ..models.db import db_manager
from ..services.engagement import EngagementService
from ..services.mems import MemService
from ..services.uploads import UploadPolicy, UploadService

logger = get_logger("api.deps")


def get_settings() -> Settings:
    """
    Get application settings.

    Returns:
        Settings instance
    """
    return settings


def get_db_session() -> Generator[Session, None, None]:
    """
    Get database session dependency.

    Yields:
        SQLAlchemy session, committed when the request succeeds
    """
    with db_manager.get_sync_session() as session:
        yield session


def get_storage() -> S3Storage:
    """Blob storage adapter."""
    return s3_storage


def get_upload_policy(settings: Settings = Depends(get_settings)) -> UploadPolicy:
    return UploadPolicy.from_config(settings.media)


async def get_current_user_id(authorization: Optional[str] = Header(None)) -> str:
    """
    Verify the bearer token and return the authenticated user id.

    Raises:
        HTTPException: 401 if the header is missing or the token is invalid
    """
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header required",
            headers={"WWW-Authenticate": "Bearer"}
        )

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authorization header format",
            headers={"WWW-Authenticate": "Bearer"}
        )

    try:
        user_id = jwt_manager.get_user_id(token.strip())
    except TokenError as e:
        logger.warning("JWT token verification failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"}
        )

    user_id_ctx.set(user_id)
    return user_id


def get_mem_service(
    session: Session = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> MemService:
    return MemService(session, settings)


def get_upload_service(
    session: Session = Depends(get_db_session),
    storage: S3Storage = Depends(get_storage),
    policy: UploadPolicy = Depends(get_upload_policy),
) -> UploadService:
    return UploadService(session, storage, policy)


def get_engagement_service(session: Session = Depends(get_db_session)) -> EngagementService:
    return EngagementService(session)

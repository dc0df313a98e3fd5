"""FastAPI dependencies: database sessions and the two shared-secret checks."""

import hmac
import logging
from typing import AsyncIterator, Optional

from fastapi import Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from releasewatch.config import settings
from releasewatch.db.session import get_db

logger = logging.getLogger(__name__)


async def get_database() -> AsyncIterator[AsyncSession]:
    """Dependency for database session."""
    async for session in get_db():
        yield session
        break  # Only yield once, as FastAPI handles the session lifecycle


def _secret_matches(provided: Optional[str], expected: str) -> bool:
    if not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


async def require_admin_api_key(
    x_admin_api_key: str = Header(..., alias="X-Admin-API-Key")
) -> None:
    """
    Guard operator routes (queue runs, dispatch, version curation).

    The operator API stays closed until ADMIN_API_KEY is set.

    Raises:
        HTTPException: 503 if no key is configured, 403 if the key does not match
    """
    if not settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API key not configured"
        )

    if not _secret_matches(x_admin_api_key, settings.admin_api_key):
        logger.warning("Rejected operator request: invalid admin API key")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin API key"
        )


async def require_webhook_secret(
    x_webhook_secret: Optional[str] = Header(None, alias="X-Webhook-Secret")
) -> None:
    """
    Check the shared secret on provider webhooks.

    Webhooks are open when WEBHOOK_SECRET is empty, so the provider can be
    wired up before a secret is agreed.

    Raises:
        HTTPException: 401 if a secret is configured and the header does not match
    """
    if not settings.webhook_secret:
        return

    if not _secret_matches(x_webhook_secret, settings.webhook_secret):
        logger.warning("Rejected provider webhook: invalid or missing secret")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook secret"
        )

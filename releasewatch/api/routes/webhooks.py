"""Email provider event webhook."""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from releasewatch.api.deps import get_database, require_webhook_secret
from releasewatch.notify.suppression import handle_provider_event

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/webhooks",
    tags=["webhooks"],
    dependencies=[Depends(require_webhook_secret)],
)


@router.post("/email")
async def email_event(
    event: Dict[str, Any],
    db: AsyncSession = Depends(get_database),
):
    """Apply a delivery, bounce or complaint event from the email provider."""
    try:
        result = await handle_provider_event(db, event)
    except ValueError as e:
        raise HTTPException(400, str(e))

    logger.debug(f"Provider event processed: {result}")
    return result

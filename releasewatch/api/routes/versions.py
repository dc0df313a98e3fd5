"""Version history routes."""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from releasewatch.api.deps import get_database, require_admin_api_key
from releasewatch.db.models import VersionRecord
from releasewatch.versions import history
from releasewatch.versions.resolver import order_history

router = APIRouter(
    prefix="/api/versions",
    tags=["versions"],
    dependencies=[Depends(require_admin_api_key)],
)


class VersionCreate(BaseModel):
    """Request model for recording a version."""
    product_id: int
    version: str = Field(..., min_length=1, max_length=128)
    previous_version: Optional[str] = None
    release_date: Optional[datetime] = None
    notes: Optional[List[str]] = None
    raw_notes: Optional[str] = None
    update_type: Optional[str] = Field(None, pattern="^(major|minor|patch)$")
    source: Optional[str] = "manual"
    verified: bool = False
    verified_by: Optional[str] = None


class VerifyRequest(BaseModel):
    verified_by: Optional[str] = None


class VersionResponse(BaseModel):
    """Response model for a version record."""
    id: int
    product_id: int
    version: str
    previous_version: Optional[str]
    release_date: Optional[datetime]
    detected_at: datetime
    notes: Optional[List[str]]
    update_type: Optional[str]
    source: Optional[str]
    verified: bool
    is_current_override: bool
    verified_by: Optional[str]
    verified_at: Optional[datetime]

    class Config:
        from_attributes = True


@router.post("", response_model=Optional[VersionResponse], status_code=201)
async def record_version(data: VersionCreate, db: AsyncSession = Depends(get_database)):
    """Record a detected version (returns null when filtered for the product)."""
    try:
        return await history.record_version(
            db,
            product_id=data.product_id,
            version=data.version,
            previous_version=data.previous_version,
            release_date=data.release_date,
            notes=data.notes,
            raw_notes=data.raw_notes,
            update_type=data.update_type,
            source=data.source,
            verified=data.verified,
            verified_by=data.verified_by,
        )
    except history.RecordNotFoundError as e:
        raise HTTPException(404, str(e))
    except ValueError as e:
        raise HTTPException(400, str(e))


@router.post("/{record_id}/verify", response_model=VersionResponse)
async def verify_version(
    record_id: int,
    data: Optional[VerifyRequest] = None,
    db: AsyncSession = Depends(get_database),
):
    """Approve a version record."""
    try:
        return await history.verify_version(db, record_id, data.verified_by if data else None)
    except history.RecordNotFoundError as e:
        raise HTTPException(404, str(e))


@router.post("/{record_id}/override", response_model=VersionResponse)
async def set_override(
    record_id: int,
    data: Optional[VerifyRequest] = None,
    db: AsyncSession = Depends(get_database),
):
    """Pin a record as its product's current version."""
    try:
        return await history.set_current_override(db, record_id, data.verified_by if data else None)
    except history.RecordNotFoundError as e:
        raise HTTPException(404, str(e))


@router.delete("/products/{product_id}/override")
async def clear_override(product_id: int, db: AsyncSession = Depends(get_database)):
    """Remove the pinned current version from a product."""
    cleared = await history.clear_current_override(db, product_id)
    return {"product_id": product_id, "cleared": cleared}


@router.get("/products/{product_id}/current", response_model=VersionResponse)
async def get_current(product_id: int, db: AsyncSession = Depends(get_database)):
    """Resolved current version of a product."""
    current = await history.get_current_version(db, product_id)
    if current is None:
        raise HTTPException(404, "No verified version for product")
    return current


@router.get("/products/{product_id}", response_model=List[VersionResponse])
async def list_history(product_id: int, db: AsyncSession = Depends(get_database)):
    """Verified history of a product, newest version first."""
    result = await db.execute(
        select(VersionRecord).where(VersionRecord.product_id == product_id)
    )
    return order_history(result.scalars().all())

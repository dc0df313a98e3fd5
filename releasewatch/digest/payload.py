"""Digest payload stored on queue items and consumed by the renderer."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, computed_field


class UpdateEntry(BaseModel):
    """One product whose current version changed within the window."""
    product_id: int
    name: str
    manufacturer: str = ""
    category: str = ""
    old_version: str = "N/A"
    new_version: str
    release_date: Optional[datetime] = None
    release_notes: List[str] = Field(default_factory=list)
    update_type: str = "patch"


class NewProductEntry(BaseModel):
    """A product added to the platform within the window."""
    product_id: int
    name: str
    manufacturer: str = ""
    category: str = ""
    initial_version: str = "N/A"
    added_date: Optional[datetime] = None


class SponsorBlock(BaseModel):
    """Sponsor shown at the bottom of the email."""
    id: Optional[int] = None
    name: str
    tagline: Optional[str] = None
    description: Optional[str] = None
    image_url: Optional[str] = None
    cta_url: str
    cta_text: str = "Learn More"

    class Config:
        from_attributes = True


class DigestPayload(BaseModel):
    """Everything needed to render one subscriber's digest."""
    updates: List[UpdateEntry] = Field(default_factory=list)
    new_products: List[NewProductEntry] = Field(default_factory=list)
    sponsor: Optional[SponsorBlock] = None
    all_quiet_message: Optional[str] = None
    tracked_count: int = 0
    total_updates: int = 0
    has_more: bool = False
    dashboard_url: str = ""
    frequency: str = "weekly"

    @computed_field
    @property
    def has_updates(self) -> bool:
        return len(self.updates) > 0

    def to_queue_json(self) -> dict:
        """JSON-safe dict for the queue's payload column."""
        return self.model_dump(mode="json")


class PopularProductEntry(BaseModel):
    """A widely tracked product suggested to someone tracking nothing."""
    product_id: int
    name: str
    manufacturer: str = ""
    category: str = ""
    current_version: str = "N/A"
    tracker_count: int = 0


class ReminderPayload(BaseModel):
    """Payload of the monthly reminder sent to subscribers with no tracked products."""
    popular_products: List[PopularProductEntry] = Field(default_factory=list)
    sponsor: Optional[SponsorBlock] = None
    subject_line: Optional[str] = None
    dashboard_url: str = ""

    def to_queue_json(self) -> dict:
        """JSON-safe dict for the queue's payload column."""
        return self.model_dump(mode="json")

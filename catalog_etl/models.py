"""Pydantic models shared across catalog ingestion components."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

UNKNOWN_BRAND = "Unknown"
DEFAULT_CATEGORY = "Plugin"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RetailerRole(str, Enum):
    """Write authority of a source site."""

    MASTER = "MASTER"
    SPOKE = "SPOKE"


class FeedStatus(str, Enum):
    """Feed sync state machine: IDLE -> SYNCING -> SUCCESS | ERROR."""

    IDLE = "IDLE"
    SYNCING = "SYNCING"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


class Retailer(BaseModel):
    id: int
    name: str
    domain: str
    role: RetailerRole = RetailerRole.SPOKE
    logo: Optional[str] = None
    scrape_interval_ms: int = 2000

    @property
    def is_master(self) -> bool:
        return self.role == RetailerRole.MASTER


class Product(BaseModel):
    id: int
    slug: str
    title: str
    brand: str = UNKNOWN_BRAND
    category: str = DEFAULT_CATEGORY
    description: Optional[str] = None
    image: Optional[str] = None  # Stored (public) image reference
    source_image_url: Optional[str] = None  # Retailer URL the stored image came from
    min_price: Optional[float] = None
    max_regular_price: Optional[float] = None
    max_discount: int = 0
    tags: List[str] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=_utcnow)


class CatalogEntry(BaseModel):
    """Slim product view used by the matcher's in-memory snapshot."""

    id: int
    slug: str
    title: str
    brand: Optional[str] = None
    image: Optional[str] = None
    source_image_url: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


class Listing(BaseModel):
    id: int
    url: str
    title: str = ""
    price: float
    original_price: Optional[float] = None
    in_stock: bool = True
    currency: str = "USD"
    product_id: int
    retailer_id: int
    last_scraped: datetime = Field(default_factory=_utcnow)


class PricePoint(BaseModel):
    listing_id: int
    seen_at: datetime = Field(default_factory=_utcnow)
    price: float


class Feed(BaseModel):
    id: int
    name: str
    url: str
    format: str = "JSON"
    status: FeedStatus = FeedStatus.IDLE
    error_message: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    retailer: Retailer


class CandidateRecord(BaseModel):
    """A scraped or fed offer, not yet matched or persisted."""

    url: str
    title: str
    price: float
    original_price: Optional[float] = None
    currency: str = "USD"
    in_stock: bool = True
    image: Optional[str] = None
    brand: str = UNKNOWN_BRAND
    category: str = DEFAULT_CATEGORY
    description: Optional[str] = None

    @property
    def regular_price(self) -> float:
        """Original price, never below the sale price."""
        if self.original_price is None or self.original_price < self.price:
            return self.price
        return self.original_price

"""Business profile entities: accounts, locations and the per-location records.

Every table carries a surrogate integer id plus a unique index on its natural
key (``uq_<table>_natural_key``). The Batch Writer upserts by that key; the
Dedup Reconciler cleans up rows written before the index existed.
"""
from datetime import datetime
from typing import Dict, Optional, Tuple, Type

from sqlalchemy import Index
from sqlmodel import Field, SQLModel


class Account(SQLModel, table=True):
    """One row per external business account the caller can access."""

    __table_args__ = (
        Index("uq_account_natural_key", "account_ref", unique=True),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    brand_id: str = Field(index=True)
    account_ref: str  # "accounts/123"
    name: str = ""
    account_type: Optional[str] = None
    raw_json: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Location(SQLModel, table=True):
    """A physical store / listing under an account."""

    __table_args__ = (
        Index("uq_location_natural_key", "brand_id", "location_ref", unique=True),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    brand_id: str = Field(index=True)
    account_ref: str = ""
    location_ref: str = Field(index=True)  # "locations/456"
    name: str
    phone: Optional[str] = None
    address: Optional[str] = None
    primary_category: Optional[str] = None
    website_url: Optional[str] = None
    maps_url: Optional[str] = None
    verified: bool = False
    raw_json: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Review(SQLModel, table=True):
    __table_args__ = (
        Index("uq_review_natural_key", "review_id", unique=True),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    brand_id: str = Field(index=True)
    account_ref: str = ""
    location_id: Optional[int] = Field(default=None, foreign_key="location.id", index=True)
    review_id: str
    reviewer_name: str = "Anonymous"
    star_rating: int
    comment: str = ""
    reply_comment: Optional[str] = None
    create_time: Optional[datetime] = None
    update_time: Optional[datetime] = None
    raw_json: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Post(SQLModel, table=True):
    __table_args__ = (
        Index("uq_post_natural_key", "post_id", unique=True),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    brand_id: str = Field(index=True)
    account_ref: str = ""
    location_id: Optional[int] = Field(default=None, foreign_key="location.id", index=True)
    post_id: str
    summary: str = ""
    topic_type: Optional[str] = None
    state: str = "LIVE"
    language_code: str = "en"
    call_to_action_url: Optional[str] = None
    search_url: Optional[str] = None
    create_time: Optional[datetime] = None
    update_time: Optional[datetime] = None
    raw_json: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class PerformanceRecord(SQLModel, table=True):
    """Aggregated daily-metric totals for one location over one period."""

    __table_args__ = (
        Index(
            "uq_performancerecord_natural_key",
            "location_id", "period_start", "period_end",
            unique=True,
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    brand_id: str = Field(index=True)
    account_ref: str = ""
    location_id: int = Field(foreign_key="location.id", index=True)
    period_start: datetime
    period_end: datetime
    window_days: Optional[int] = None

    desktop_search_impressions: int = 0
    mobile_search_impressions: int = 0
    desktop_maps_impressions: int = 0
    mobile_maps_impressions: int = 0
    call_clicks: int = 0
    website_clicks: int = 0
    direction_requests: int = 0
    conversations: int = 0
    bookings: int = 0

    # Derived at write time
    conversion_rate: float = 0.0
    click_through_rate: float = 0.0

    raw_json: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class SearchKeyword(SQLModel, table=True):
    """Monthly search-keyword impressions for one location."""

    __table_args__ = (
        Index(
            "uq_searchkeyword_natural_key",
            "location_id", "keyword", "year", "month",
            unique=True,
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    brand_id: str = Field(index=True)
    account_ref: str = ""
    location_id: int = Field(foreign_key="location.id", index=True)
    keyword: str
    year: int
    month: int
    impressions: int = 0
    impressions_threshold: Optional[int] = None  # set when the API reports "< N"
    raw_json: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


# entity type -> (model, natural key columns)
NATURAL_KEYS: Dict[str, Tuple[Type[SQLModel], Tuple[str, ...]]] = {
    "accounts": (Account, ("account_ref",)),
    "locations": (Location, ("brand_id", "location_ref")),
    "reviews": (Review, ("review_id",)),
    "posts": (Post, ("post_id",)),
    "performance": (PerformanceRecord, ("location_id", "period_start", "period_end")),
    "keywords": (SearchKeyword, ("location_id", "keyword", "year", "month")),
}

# Per-location record types, in the fixed order a sync processes them
LOCATION_DATA_TYPES: Tuple[str, ...] = ("reviews", "posts", "performance", "keywords")

# Types holding a location_id foreign reference
LOCATION_DEPENDENTS: Tuple[str, ...] = LOCATION_DATA_TYPES

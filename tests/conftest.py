"""Shared test fixtures."""
from datetime import datetime
from typing import Generator

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from profilesync.api_client import Page
from profilesync.models.entities import (  # noqa: F401
    Account,
    Location,
    PerformanceRecord,
    Post,
    Review,
    SearchKeyword,
)
from profilesync.models.sync import SyncCheckpoint, SyncRun  # noqa: F401


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="seeded_location")
def seeded_location_fixture(test_session: Session) -> Location:
    """A persisted Location for use in per-location record tests."""
    location = Location(
        brand_id="brand-1",
        account_ref="accounts/1",
        location_ref="locations/100",
        name="Acme Diner",
        created_at=datetime(2025, 1, 15, 7, 30),
    )
    test_session.add(location)
    test_session.commit()
    test_session.refresh(location)
    return location


# ─── Fake business-data API client ────────────────────────────────────────────

def _make_review(review_id: str, rating: str = "FIVE", **extra) -> dict:
    raw = {
        "name": f"accounts/1/locations/100/reviews/{review_id}",
        "reviewId": review_id,
        "reviewer": {"displayName": "Pat"},
        "starRating": rating,
        "comment": "Great coffee",
        "createTime": "2025-01-15T07:30:00.123Z",
        "updateTime": "2025-01-15T07:30:00Z",
    }
    raw.update(extra)
    return raw


def _make_location(location_ref: str, title: str = "Acme Diner") -> dict:
    return {
        "name": location_ref,
        "title": title,
        "phoneNumbers": {"primaryPhone": "555-0100"},
        "storefrontAddress": {"addressLines": ["1 Main St"], "locality": "Springfield"},
        "categories": {"primaryCategory": {"displayName": "Diner"}},
        "metadata": {"mapsUri": "https://maps.example/1", "hasVoiceOfMerchant": True},
    }


class FakeBusinessClient:
    """
    In-memory stand-in for BusinessProfileClient.

    Paged collections are lists of pages (each a list of items); the page
    token is the stringified index of the next page. ``failures`` maps
    (method, key) to an exception raised on every call, or to a list of
    exceptions raised one per call before falling back to the data.
    """

    def __init__(
        self,
        accounts=None,
        locations=None,
        reviews=None,
        posts=None,
        performance=None,
        keywords=None,
        failures=None,
    ):
        self.accounts = accounts if accounts is not None else [[{"name": "accounts/1", "accountName": "Acme"}]]
        self.locations = locations or {}
        self.reviews = reviews or {}
        self.posts = posts or {}
        self.performance = performance or {}
        self.keywords = keywords or {}
        self.failures = failures or {}
        self.calls = []
        self.closed = False

    def _maybe_fail(self, method, key):
        self.calls.append((method, key))
        failure = self.failures.get((method, key))
        if failure is None:
            return
        if isinstance(failure, list):
            if failure:
                raise failure.pop(0)
            return
        raise failure

    @staticmethod
    def _page(pages, token):
        if not pages:
            return Page(items=[], next_page_token=None)
        index = int(token or 0)
        next_token = str(index + 1) if index + 1 < len(pages) else None
        return Page(items=list(pages[index]), next_page_token=next_token)

    async def list_accounts(self, page_token=None):
        self._maybe_fail("list_accounts", None)
        return self._page(self.accounts, page_token)

    async def list_locations(self, account_ref, page_token=None):
        self._maybe_fail("list_locations", account_ref)
        return self._page(self.locations.get(account_ref, []), page_token)

    async def list_reviews(self, account_ref, location_ref, page_token=None):
        self._maybe_fail("list_reviews", location_ref)
        return self._page(self.reviews.get(location_ref, []), page_token)

    async def list_posts(self, account_ref, location_ref, page_token=None):
        self._maybe_fail("list_posts", location_ref)
        return self._page(self.posts.get(location_ref, []), page_token)

    async def fetch_performance(self, location_ref, start, end, window_days):
        self._maybe_fail("fetch_performance", location_ref)
        metrics = self.performance.get(location_ref, {})
        return Page(items=[{
            "periodStart": start.isoformat(),
            "periodEnd": end.isoformat(),
            "windowDays": window_days,
            "metrics": metrics,
        }])

    async def list_search_keywords(self, location_ref, year, month, page_token=None):
        self._maybe_fail("list_search_keywords", location_ref)
        pages = self.keywords.get(location_ref, [])
        page = self._page(pages, page_token)
        page.items = [dict(item, year=year, month=month) for item in page.items]
        return page

    async def aclose(self):
        self.closed = True


@pytest.fixture(name="fake_client_cls")
def fake_client_cls_fixture():
    return FakeBusinessClient


@pytest.fixture(name="make_review")
def make_review_fixture():
    return _make_review


@pytest.fixture(name="make_location")
def make_location_fixture():
    return _make_location

"""
Integration tests for DedupReconciler.

Duplicates can only exist in a store written before the natural-key unique
indexes, so each test drops the relevant index first.
"""
from datetime import datetime

import pytest
from sqlalchemy import text
from sqlmodel import Session, select

from profilesync.config import Settings
from profilesync.db.migrations import run_migrations
from profilesync.models.entities import (
    Account,
    Location,
    PerformanceRecord,
    Review,
    SearchKeyword,
)
from profilesync.sync.dedup import DedupPolicy, DedupReconciler, location_group_key
from profilesync.sync.normalizer import placeholder_location_name

JAN = datetime(2025, 1, 1)
FEB = datetime(2025, 2, 1)
MAR = datetime(2025, 3, 1)


def _drop_index(engine, name):
    with engine.connect() as conn:
        conn.execute(text(f"DROP INDEX {name}"))
        conn.commit()


def _add(engine, *rows):
    with Session(engine) as s:
        for row in rows:
            s.add(row)
        s.commit()
        for row in rows:
            s.refresh(row)
    return rows


def _all(engine, model):
    with Session(engine) as s:
        return s.exec(select(model).order_by(model.id)).all()


def _location(ref, name, created_at, brand_id="brand-1"):
    return Location(brand_id=brand_id, location_ref=ref, name=name, created_at=created_at)


def _performance(location_id, start, end):
    return PerformanceRecord(
        brand_id="brand-1", location_id=location_id, period_start=start, period_end=end, window_days=7,
    )


@pytest.fixture(name="loose_engine")
def loose_engine_fixture(engine):
    """Store with the location natural-key index removed."""
    _drop_index(engine, "uq_location_natural_key")
    return engine


class TestLocations:
    def test_real_name_beats_placeholders(self, loose_engine):
        acme, stub_1, stub_2 = _add(
            loose_engine,
            _location("locations/9", "Acme Diner", JAN),
            _location("accounts/1/locations/9", "Store accounts/1/locations/9", FEB),
            _location("accounts/2/locations/9", "Store accounts/2/locations/9", MAR),
        )

        result = DedupReconciler(loose_engine).run()

        assert result.removed["locations"] == 2
        assert [loc.id for loc in _all(loose_engine, Location)] == [acme.id]

    def test_real_name_beats_generated_fallback_name(self, loose_engine):
        acme, _ = _add(
            loose_engine,
            _location("accounts/1/locations/9", "Acme Diner", JAN),
            _location("locations/9", placeholder_location_name("locations/9"), FEB),
        )

        result = DedupReconciler(loose_engine).run()

        assert result.removed["locations"] == 1
        assert [loc.name for loc in _all(loose_engine, Location)] == ["Acme Diner"]
        assert _all(loose_engine, Location)[0].id == acme.id

    def test_most_recent_wins_between_real_names(self, loose_engine):
        _, downtown = _add(
            loose_engine,
            _location("locations/9", "Acme Diner", JAN),
            _location("locations/9", "Acme Diner Downtown", FEB),
        )

        DedupReconciler(loose_engine).run()

        assert [loc.name for loc in _all(loose_engine, Location)] == ["Acme Diner Downtown"]
        assert _all(loose_engine, Location)[0].id == downtown.id

    def test_prefer_oldest_policy(self, loose_engine):
        first, _ = _add(
            loose_engine,
            _location("locations/9", "Acme Diner", JAN),
            _location("locations/9", "Acme Diner Downtown", FEB),
        )

        DedupReconciler(loose_engine, DedupPolicy(prefer_recent=False)).run()

        assert [loc.id for loc in _all(loose_engine, Location)] == [first.id]

    def test_different_brands_not_merged(self, loose_engine):
        _add(
            loose_engine,
            _location("locations/9", "Acme Diner", JAN, brand_id="brand-1"),
            _location("locations/9", "Acme Diner", JAN, brand_id="brand-2"),
        )

        result = DedupReconciler(loose_engine).run()

        assert result.total == 0
        assert len(_all(loose_engine, Location)) == 2

    def test_group_key_uses_last_path_segment(self):
        full = _location("accounts/1/locations/9", "x", JAN)
        short = _location("locations/9/", "x", JAN)
        assert location_group_key(full) == location_group_key(short) == ("brand-1", "9")


class TestRepointing:
    def test_dependents_moved_to_winner(self, loose_engine):
        winner, loser = _add(
            loose_engine,
            _location("locations/9", "Acme Diner", JAN),
            _location("accounts/1/locations/9", "Store accounts/1/locations/9", FEB),
        )
        _add(
            loose_engine,
            Review(brand_id="brand-1", location_id=loser.id, review_id="r1", star_rating=4),
            _performance(loser.id, JAN, FEB),
            SearchKeyword(brand_id="brand-1", location_id=loser.id, keyword="pie", year=2025, month=1),
        )

        result = DedupReconciler(loose_engine).run()

        assert result.repointed["reviews"] == 1
        assert result.repointed["performance"] == 1
        assert result.repointed["keywords"] == 1
        for model in (Review, PerformanceRecord, SearchKeyword):
            assert {row.location_id for row in _all(loose_engine, model)} == {winner.id}

    def test_colliding_dependent_deleted_instead(self, loose_engine):
        winner, loser_1, loser_2 = _add(
            loose_engine,
            _location("locations/9", "Acme Diner", JAN),
            _location("accounts/1/locations/9", "Store accounts/1/locations/9", FEB),
            _location("accounts/2/locations/9", "Store accounts/2/locations/9", MAR),
        )
        kept, _, _, moved = _add(
            loose_engine,
            _performance(winner.id, JAN, FEB),
            _performance(loser_1.id, JAN, FEB),
            _performance(loser_2.id, JAN, FEB),
            _performance(loser_2.id, FEB, MAR),
        )

        result = DedupReconciler(loose_engine).run()

        assert result.removed["performance"] == 2
        assert result.repointed["performance"] == 1
        rows = _all(loose_engine, PerformanceRecord)
        assert [r.id for r in rows] == [kept.id, moved.id]
        assert {r.location_id for r in rows} == {winner.id}


class TestNaturalKeyGroups:
    def test_duplicate_reviews_keep_most_recent(self, engine):
        _drop_index(engine, "uq_review_natural_key")
        _, newer, solo = _add(
            engine,
            Review(brand_id="brand-1", review_id="dup", star_rating=2, created_at=JAN),
            Review(brand_id="brand-1", review_id="dup", star_rating=5, created_at=FEB),
            Review(brand_id="brand-1", review_id="solo", star_rating=3, created_at=JAN),
        )

        result = DedupReconciler(engine).run()

        assert result.removed["reviews"] == 1
        assert [r.id for r in _all(engine, Review)] == [newer.id, solo.id]

    def test_duplicate_accounts(self, engine):
        _drop_index(engine, "uq_account_natural_key")
        _add(
            engine,
            Account(brand_id="brand-1", account_ref="accounts/1", created_at=JAN),
            Account(brand_id="brand-1", account_ref="accounts/1", created_at=FEB),
        )

        result = DedupReconciler(engine).run()

        assert result.removed["accounts"] == 1
        assert len(_all(engine, Account)) == 1

    def test_multi_column_keywords(self, engine):
        _drop_index(engine, "uq_searchkeyword_natural_key")
        _add(
            engine,
            SearchKeyword(brand_id="brand-1", location_id=1, keyword="pie", year=2025, month=1),
            SearchKeyword(brand_id="brand-1", location_id=1, keyword="pie", year=2025, month=1),
            SearchKeyword(brand_id="brand-1", location_id=1, keyword="pie", year=2025, month=2),
        )

        result = DedupReconciler(engine).run()

        assert result.removed["keywords"] == 1
        assert len(_all(engine, SearchKeyword)) == 2


class TestIdempotence:
    def test_second_run_removes_nothing(self, loose_engine):
        _add(
            loose_engine,
            _location("locations/9", "Acme Diner", JAN),
            _location("accounts/1/locations/9", "Store accounts/1/locations/9", FEB),
        )

        first = DedupReconciler(loose_engine).run()
        second = DedupReconciler(loose_engine).run()

        assert first.total == 1
        assert second.total == 0
        assert second.to_dict()["repointed"] == {
            "reviews": 0, "posts": 0, "performance": 0, "keywords": 0,
        }

    def test_index_can_be_created_after_dedup(self, loose_engine):
        _add(
            loose_engine,
            _location("locations/9", "Acme Diner", JAN),
            _location("locations/9", "Acme Diner", FEB),
        )
        assert run_migrations(loose_engine) == ["uq_location_natural_key"]

        DedupReconciler(loose_engine).run()

        assert run_migrations(loose_engine) == []


class TestPolicy:
    def test_from_settings(self):
        policy = DedupPolicy.from_settings(
            Settings(placeholder_name_prefixes=["Legacy "], dedup_prefer_recent=False)
        )
        assert policy.placeholder_name_prefixes == ("Legacy ",)
        assert policy.prefer_recent is False

    def test_all_placeholders_fall_back_to_recency(self):
        policy = DedupPolicy()
        old = _location("locations/9", "Store accounts/1/locations/9", JAN)
        new = _location("locations/9", "Store accounts/2/locations/9", FEB)
        old.id, new.id = 1, 2
        assert policy.pick_winner([old, new]) is new

    def test_default_settings_flag_generated_fallback_name(self):
        policy = DedupPolicy.from_settings(Settings())
        assert policy.has_placeholder_name(_location("locations/9", placeholder_location_name("locations/9"), JAN))
        assert policy.has_placeholder_name(_location("locations/9", "Store accounts/1/locations/9", JAN))
        assert not policy.has_placeholder_name(_location("locations/9", "Acme Diner", JAN))

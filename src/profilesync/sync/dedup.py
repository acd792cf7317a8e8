"""
DedupReconciler: merges duplicate persisted records left behind by writes
that predate the natural-key unique indexes.

Locations go first. They are grouped by (brand_id, last segment of
location_ref), which also catches legacy rows stored under a full resource
path ("accounts/1/locations/9" vs "locations/9"). For each group one winner
is kept; every review, post, performance record and keyword pointing at a
loser is re-pointed to the winner, and only then are the losers deleted.
A re-pointed row that would collide with one the winner already has on its
natural key is deleted instead (and counted under its own type).

Every other entity type is then grouped by its natural key with a GROUP BY
query, keeping one row per group.

Running it twice with no writes in between deletes nothing the second time.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func
from sqlmodel import Session, SQLModel, select

from profilesync.models.entities import LOCATION_DEPENDENTS, NATURAL_KEYS, Location

logger = logging.getLogger(__name__)

# Location first so dependents are re-pointed before their own grouping
DEDUP_ORDER: Tuple[str, ...] = ("locations", "accounts", "reviews", "posts", "performance", "keywords")


@dataclass
class DedupPolicy:
    """How a duplicate group picks its winner."""

    placeholder_name_prefixes: Tuple[str, ...] = ("Store accounts/", "Store locations/")
    prefer_recent: bool = True

    @classmethod
    def from_settings(cls, settings) -> "DedupPolicy":
        return cls(
            placeholder_name_prefixes=tuple(settings.placeholder_name_prefixes),
            prefer_recent=settings.dedup_prefer_recent,
        )

    def has_placeholder_name(self, row: SQLModel) -> bool:
        name = getattr(row, "name", None) or ""
        return any(name.startswith(p) for p in self.placeholder_name_prefixes)

    def pick_winner(self, rows: Sequence[SQLModel]) -> SQLModel:
        """A row without a placeholder name beats one with; then recency decides."""
        candidates = [r for r in rows if not self.has_placeholder_name(r)] or list(rows)
        key = lambda r: (r.created_at, r.id)  # noqa: E731
        return max(candidates, key=key) if self.prefer_recent else min(candidates, key=key)


@dataclass
class DedupResult:
    removed: Dict[str, int] = field(default_factory=lambda: {t: 0 for t in DEDUP_ORDER})
    repointed: Dict[str, int] = field(default_factory=lambda: {t: 0 for t in LOCATION_DEPENDENTS})

    @property
    def total(self) -> int:
        return sum(self.removed.values())

    def to_dict(self) -> Dict[str, object]:
        return {"removed": dict(self.removed), "repointed": dict(self.repointed), "total": self.total}


def location_group_key(location: Location) -> Tuple[str, str]:
    return location.brand_id, location.location_ref.rstrip("/").split("/")[-1]


class DedupReconciler:
    def __init__(self, engine, policy: Optional[DedupPolicy] = None):
        self.engine = engine
        self.policy = policy or DedupPolicy()

    def run(self) -> DedupResult:
        """Reconcile every entity type. Returns removed counts per type."""
        result = DedupResult()
        self._dedup_locations(result)
        for entity_type in DEDUP_ORDER[1:]:
            self._dedup_by_natural_key(entity_type, result)
        logger.info("Dedup removed %d records: %s", result.total, result.removed)
        return result

    # ─── Locations ───────────────────────────────────────────────────────────

    def _dedup_locations(self, result: DedupResult) -> None:
        with Session(self.engine) as s:
            groups: Dict[Tuple[str, str], List[Location]] = defaultdict(list)
            for location in s.exec(select(Location).order_by(Location.id)).all():
                groups[location_group_key(location)].append(location)

        for key, group in groups.items():
            if len(group) < 2:
                continue
            winner = self.policy.pick_winner(group)
            losers = [loc for loc in group if loc.id != winner.id]
            logger.info(
                "Location %s/%s: keeping %r (id=%s), merging %d duplicates",
                key[0], key[1], winner.name, winner.id, len(losers),
            )
            self._merge_locations(winner, losers, result)

    def _merge_locations(self, winner: Location, losers: Iterable[Location], result: DedupResult) -> None:
        """Re-point dependents then delete losers, in one transaction per group."""
        loser_ids = [loc.id for loc in losers]
        with Session(self.engine) as s:
            for entity_type in LOCATION_DEPENDENTS:
                model, key_columns = NATURAL_KEYS[entity_type]
                rows = s.exec(
                    select(model).where(model.location_id.in_(loser_ids)).order_by(model.id)
                ).all()
                for row in rows:
                    if "location_id" in key_columns and self._winner_has_key(
                        s, model, key_columns, row, winner.id
                    ):
                        s.delete(row)
                        result.removed[entity_type] += 1
                        continue
                    row.location_id = winner.id
                    s.add(row)
                    result.repointed[entity_type] += 1
                # Make re-pointed rows visible to the next collision check
                s.flush()

            for loser_id in loser_ids:
                s.delete(s.get(Location, loser_id))
                result.removed["locations"] += 1
            s.commit()

    @staticmethod
    def _winner_has_key(s: Session, model, key_columns, row, winner_id: int) -> bool:
        stmt = select(model.id).where(model.location_id == winner_id)
        for column in key_columns:
            if column != "location_id":
                stmt = stmt.where(getattr(model, column) == getattr(row, column))
        return s.exec(stmt).first() is not None

    # ─── Everything else ─────────────────────────────────────────────────────

    def _dedup_by_natural_key(self, entity_type: str, result: DedupResult) -> None:
        model, key_columns = NATURAL_KEYS[entity_type]
        columns = [getattr(model, c) for c in key_columns]
        with Session(self.engine) as s:
            duplicate_keys = s.exec(
                select(*columns).group_by(*columns).having(func.count(model.id) > 1)
            ).all()
            for key in duplicate_keys:
                # A single-column select comes back as scalars
                values = tuple(key) if len(columns) > 1 else (key,)
                stmt = select(model)
                for column, value in zip(columns, values):
                    stmt = stmt.where(column == value)
                group = s.exec(stmt).all()
                winner = self.policy.pick_winner(group)
                for row in group:
                    if row.id != winner.id:
                        s.delete(row)
                        result.removed[entity_type] += 1
            s.commit()
